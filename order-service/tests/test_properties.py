"""
Property-based tests using Hypothesis.

Invariants that must hold for any sequence of requests:
- an order never leaves a terminal state
- an order never goes from pending straight to out_for_delivery
- every accepted change is an edge of the lifecycle table
- a courier, once assigned, is never replaced while out for delivery
- cart totals and counts always match their lines
"""
from types import SimpleNamespace

import pytest
from hypothesis import given, settings, strategies as st

from app import models
from app.enums import OrderStatus
from app.errors import InvalidTransition, RestaurantMismatch, Unauthorized
from app.identity import Principal
from app.state_machine import TRANSITIONS, evaluate

# ============================================================================
# Strategy Definitions
# ============================================================================

actors = st.sampled_from([
    Principal("cust-1", "customer"),
    Principal("cust-2", "customer"),
    Principal("owner-A", "restaurant_admin", "rest-A"),
    Principal("owner-B", "restaurant_admin", "rest-B"),
    Principal("courier-X", "delivery_personnel"),
    Principal("courier-Y", "delivery_personnel"),
    Principal("admin-1", "admin"),
])

statuses = st.sampled_from([s.value for s in OrderStatus])

requests = st.lists(
    st.tuples(actors, statuses, st.one_of(st.none(), st.sampled_from(["courier-X", "courier-Y"]))),
    max_size=30,
)

menu_items = st.tuples(
    st.sampled_from(["item-1", "item-2", "item-3"]),
    st.sampled_from(["Small", "Medium", "Large"]),
    st.floats(min_value=0, max_value=100, allow_nan=False, allow_infinity=False),
    st.integers(min_value=1, max_value=20),
)


def _apply(order, actor, requested, courier_id, admin_override):
    """Apply one request to an in-memory order; returns the (from, to) pair or None."""
    try:
        decision = evaluate(order, actor, requested, courier_id, admin_override=admin_override)
    except (InvalidTransition, Unauthorized):
        return None
    order.status = decision.to_status.value
    if decision.assign_courier_id is not None:
        order.courier_id = decision.assign_courier_id
    return decision.from_status, decision.to_status


# ============================================================================
# Lifecycle properties
# ============================================================================

@settings(max_examples=300)
@given(requests=requests, admin_override=st.booleans())
def test_lifecycle_never_escapes_terminal_or_skips(requests, admin_override):
    order = SimpleNamespace(status="pending", customer_id="cust-1", restaurant_id="rest-A", courier_id=None)
    for actor, requested, courier_id in requests:
        before = OrderStatus(order.status)
        previous_courier = order.courier_id
        applied = _apply(order, actor, requested, courier_id, admin_override)

        if before.is_terminal:
            assert applied is None
            continue
        if applied is None:
            assert order.status == before.value
            assert order.courier_id == previous_courier
            continue

        src, dst = applied
        assert src is before
        assert (src, dst) in TRANSITIONS or dst is OrderStatus.CANCELLED
        assert (src, dst) != (OrderStatus.PENDING, OrderStatus.OUT_FOR_DELIVERY)
        if previous_courier is not None:
            assert order.courier_id == previous_courier


@given(requests=requests)
def test_only_assigned_courier_delivers(requests):
    order = SimpleNamespace(status="pending", customer_id="cust-1", restaurant_id="rest-A", courier_id=None)
    for actor, requested, courier_id in requests:
        applied = _apply(order, actor, requested, courier_id, admin_override=True)
        if applied == (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED) and actor.role == "delivery_personnel":
            assert actor.id == order.courier_id


# ============================================================================
# Cart properties
# ============================================================================

@given(lines=st.lists(menu_items, max_size=25))
def test_cart_total_and_count_match_lines(lines):
    cart = models.Cart(customer_id="cust-1", items=[], total_amount=0.0)
    for menu_item_id, size, price, quantity in lines:
        cart.add_item(menu_item_id, menu_item_id, round(price, 2), quantity=quantity, size=size,
                      restaurant_id="rest-A")

    assert cart.item_count == sum(q for _, _, _, q in lines)
    expected = sum(i.unit_price * i.quantity for i in cart.items)
    assert cart.total_amount == pytest.approx(expected)
    keys = [(i.menu_item_id, i.size) for i in cart.items]
    assert len(keys) == len(set(keys))


@given(lines=st.lists(menu_items, min_size=1, max_size=10), intruder=menu_items)
def test_cross_restaurant_insert_leaves_cart_unchanged(lines, intruder):
    cart = models.Cart(customer_id="cust-1", items=[], total_amount=0.0)
    for menu_item_id, size, price, quantity in lines:
        cart.add_item(menu_item_id, menu_item_id, 2.0, quantity=quantity, size=size, restaurant_id="rest-A")
    before = [(i.menu_item_id, i.size, i.quantity) for i in cart.items]
    total = cart.total_amount

    menu_item_id, size, price, quantity = intruder
    with pytest.raises(RestaurantMismatch):
        cart.add_item(menu_item_id, menu_item_id, price, quantity=quantity, size=size, restaurant_id="rest-B")

    assert [(i.menu_item_id, i.size, i.quantity) for i in cart.items] == before
    assert cart.total_amount == total
