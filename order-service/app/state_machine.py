"""Role-gated order lifecycle.

``evaluate`` is pure: it looks at an order's current fields and the acting
principal and either returns a ``Transition`` describing what to persist, or
raises. It never touches storage, so the coordinator is responsible for
persisting the decision under a guard on ``from_status``.

    pending -> preparing -> ready -> out_for_delivery -> delivered
       |          |           |            |
       +----------+-----------+------------+--> cancelled
"""
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from .enums import OrderStatus, Role
from .errors import InvalidRequest, InvalidTransition, Unauthorized
from .identity import Principal
from .ids import normalize_id, same_id

S = OrderStatus

# Forward edges with the roles that may request them. Admin cancellation from
# any non-terminal state is handled separately in ``evaluate``.
TRANSITIONS = {
    (S.PENDING, S.PREPARING): frozenset({Role.RESTAURANT_ADMIN}),
    (S.PENDING, S.CANCELLED): frozenset({Role.RESTAURANT_ADMIN, Role.ADMIN, Role.CUSTOMER}),
    (S.PREPARING, S.READY): frozenset({Role.RESTAURANT_ADMIN}),
    (S.READY, S.OUT_FOR_DELIVERY): frozenset({Role.DELIVERY_PERSONNEL}),
    (S.OUT_FOR_DELIVERY, S.DELIVERED): frozenset({Role.DELIVERY_PERSONNEL}),
}

NOTIFY_CUSTOMER_READY = "notify_customer_ready"


@dataclass(frozen=True)
class Transition:
    from_status: OrderStatus
    to_status: OrderStatus
    # courier written by the claim edge
    assign_courier_id: Optional[str] = None
    # courier the stored row must hold (None means "must be unassigned" on claim)
    expected_courier_id: Optional[str] = None
    is_claim: bool = False
    side_effects: Tuple[str, ...] = ()


def is_edge(from_status, to_status) -> bool:
    try:
        src, dst = S(from_status), S(to_status)
    except ValueError:
        return False
    if src.is_terminal:
        return False
    return (src, dst) in TRANSITIONS or dst is S.CANCELLED


def allowed_roles(from_status: OrderStatus, to_status: OrderStatus,
                  admin_override: bool = True) -> FrozenSet[Role]:
    roles = set(TRANSITIONS.get((from_status, to_status), ()))
    if to_status is S.CANCELLED or admin_override:
        roles.add(Role.ADMIN)
    return frozenset(roles)


def evaluate(order, actor: Principal, requested_status, courier_id=None,
             admin_override: bool = True) -> Transition:
    """Decide whether ``actor`` may move ``order`` to ``requested_status``.

    ``order`` only needs ``status``, ``customer_id``, ``restaurant_id`` and
    ``courier_id`` attributes.

    Raises InvalidTransition when the edge does not exist for the current
    state and Unauthorized when it exists but the actor's role or ownership
    does not allow it.
    """
    current = S(order.status)
    requested_value = getattr(requested_status, "value", requested_status)
    if not is_edge(current, requested_value):
        raise InvalidTransition(current.value, str(requested_value))
    requested = S(requested_value)

    roles = allowed_roles(current, requested, admin_override)
    if not actor.has_role(*roles):
        raise Unauthorized(
            f"Role {actor.role} may not move an order from {current.value} to {requested.value}",
            allowed_roles=sorted(r.value for r in roles),
        )

    side_effects = (NOTIFY_CUSTOMER_READY,) if requested is S.READY else ()
    if actor.has_role(Role.ADMIN):
        return _admin_transition(order, current, requested, courier_id, side_effects)

    if actor.has_role(Role.RESTAURANT_ADMIN):
        if not same_id(order.restaurant_id, actor.restaurant_id):
            raise Unauthorized(
                "Not authorized to update this order",
                order_restaurant_id=normalize_id(order.restaurant_id),
                actor_restaurant_id=actor.restaurant_id,
            )
    elif actor.has_role(Role.CUSTOMER):
        if not same_id(order.customer_id, actor.id):
            raise Unauthorized("Not authorized to update this order")
    elif actor.has_role(Role.DELIVERY_PERSONNEL):
        return _courier_transition(order, actor, current, requested, courier_id)

    return Transition(current, requested, side_effects=side_effects)


def _courier_transition(order, actor, current, requested, courier_id):
    if courier_id is not None and not same_id(courier_id, actor.id):
        raise Unauthorized("Delivery personnel may only assign orders to themselves")
    assigned = normalize_id(order.courier_id)

    if requested is S.OUT_FOR_DELIVERY:
        if assigned is not None and assigned != actor.id:
            raise InvalidTransition(
                current.value, requested.value, "order already claimed by another courier"
            )
        return Transition(
            current,
            requested,
            assign_courier_id=actor.id,
            expected_courier_id=assigned,
            is_claim=True,
        )

    if assigned != actor.id:
        raise Unauthorized("Not authorized to update this order - it is assigned to another delivery person")
    return Transition(current, requested, expected_courier_id=assigned)


def _admin_transition(order, current, requested, courier_id, side_effects):
    assigned = normalize_id(order.courier_id)
    if requested is S.OUT_FOR_DELIVERY:
        courier = normalize_id(courier_id) or assigned
        if courier is None:
            raise InvalidRequest(
                "courier_id is required to dispatch an order",
                current_status=current.value,
                requested_status=requested.value,
            )
        if assigned is not None and assigned != courier:
            raise InvalidTransition(
                current.value, requested.value, "order already claimed by another courier"
            )
        return Transition(
            current,
            requested,
            assign_courier_id=courier,
            expected_courier_id=assigned,
            is_claim=True,
        )
    return Transition(current, requested, expected_courier_id=assigned, side_effects=side_effects)
