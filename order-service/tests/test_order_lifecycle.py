"""Tests for coordinated status transitions."""
import threading

import pytest

from app.coordinator import OrderCoordinator
from app.errors import InvalidTransition, NotFound, Unauthorized
from app.identity import Principal
from app.notifications import NotificationKind

OWNER = Principal("owner-A", "restaurant_admin", "rest-A")
OTHER_OWNER = Principal("owner-B", "restaurant_admin", "rest-B")
COURIER_X = Principal("courier-X", "delivery_personnel")
COURIER_Y = Principal("courier-Y", "delivery_personnel")
ADMIN = Principal("admin-1", "admin")
CUSTOMER = Principal("cust-1", "customer")


class TestHappyPath:
    def test_full_delivery(self, coordinator, order_at):
        order = order_at("delivered")
        assert order.status == "delivered"
        assert order.courier_id == "courier-X"

        history = coordinator.orders.history(order.order_id)
        assert [(h.from_status, h.to_status, h.actor_id) for h in history] == [
            ("pending", "preparing", "owner-A"),
            ("preparing", "ready", "owner-A"),
            ("ready", "out_for_delivery", "courier-X"),
            ("out_for_delivery", "delivered", "courier-X"),
        ]
        assert {h.actor_role for h in history} == {"restaurant_admin", "delivery_personnel"}

    def test_ready_notifies_customer(self, coordinator, order_at, dispatcher, sender):
        order = order_at("ready")
        dispatcher.flush(timeout=5)
        assert (NotificationKind.ORDER_READY, order.order_id, "cust-1@customers.test") in sender.sent

    def test_other_transitions_do_not_notify(self, coordinator, order_at, dispatcher, sender):
        order_at("preparing")
        dispatcher.flush(timeout=5)
        assert NotificationKind.ORDER_READY not in sender.kinds()

    def test_customer_cancels_pending_order(self, coordinator, place_order):
        order = place_order()
        order = coordinator.transition(order.order_id, CUSTOMER, "cancelled")
        assert order.status == "cancelled"


class TestRejections:
    def test_unknown_order(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.transition("no-such-order", ADMIN, "cancelled")

    def test_non_owning_restaurant_admin(self, coordinator, place_order, session):
        order = place_order()
        with pytest.raises(Unauthorized):
            coordinator.transition(order.order_id, OTHER_OWNER, "preparing")

        session.expire_all()
        assert coordinator.orders.get(order.order_id).status == "pending"
        assert coordinator.orders.history(order.order_id) == []

    def test_skipping_states_is_invalid(self, coordinator, place_order):
        order = place_order()
        with pytest.raises(InvalidTransition) as exc:
            coordinator.transition(order.order_id, COURIER_X, "out_for_delivery")
        assert exc.value.current_status == "pending"
        assert exc.value.requested_status == "out_for_delivery"

    @pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
    def test_terminal_orders_are_final(self, coordinator, order_at, terminal):
        order = order_at(terminal)
        with pytest.raises(InvalidTransition):
            coordinator.transition(order.order_id, ADMIN, "cancelled")

    def test_second_courier_cannot_take_claimed_order(self, coordinator, order_at):
        order = order_at("ready")
        assert order.courier_id is None

        order = coordinator.transition(order.order_id, COURIER_X, "out_for_delivery")
        assert order.courier_id == "courier-X"

        with pytest.raises(InvalidTransition):
            coordinator.transition(order.order_id, COURIER_Y, "out_for_delivery")
        assert coordinator.orders.reload(order.order_id).courier_id == "courier-X"

    def test_other_courier_cannot_deliver(self, coordinator, order_at):
        order = order_at("out_for_delivery")
        with pytest.raises(Unauthorized):
            coordinator.transition(order.order_id, COURIER_Y, "delivered")

    def test_admin_may_not_reassign_active_delivery(self, coordinator, order_at):
        order = order_at("out_for_delivery")
        with pytest.raises(InvalidTransition):
            coordinator.transition(order.order_id, ADMIN, "out_for_delivery", courier_id="courier-Y")


class TestStaleReads:
    def test_stale_decision_writes_nothing(self, session_factory, dispatcher, place_order):
        order = place_order()

        first = session_factory()
        second = session_factory()
        try:
            stale = OrderCoordinator(second, dispatcher)
            # second session reads the order while it is still pending
            assert stale.orders.get(order.order_id).status == "pending"

            OrderCoordinator(first, dispatcher).transition(order.order_id, ADMIN, "cancelled")

            with pytest.raises(InvalidTransition) as exc:
                stale.transition(order.order_id, OWNER, "preparing")
            assert exc.value.current_status == "cancelled"
            assert [h.to_status for h in stale.orders.history(order.order_id)] == ["cancelled"]
        finally:
            first.close()
            second.close()


class TestConcurrentClaim:
    N = 8

    def test_exactly_one_courier_wins(self, session_factory, dispatcher, order_at):
        order = order_at("ready")
        couriers = [Principal(f"courier-{i}", "delivery_personnel") for i in range(self.N)]
        barrier = threading.Barrier(self.N)
        winners, losers, unexpected = [], [], []

        def claim(courier):
            s = session_factory()
            try:
                coordinator = OrderCoordinator(s, dispatcher)
                barrier.wait(timeout=30)
                coordinator.transition(order.order_id, courier, "out_for_delivery")
                winners.append(courier.id)
            except InvalidTransition:
                losers.append(courier.id)
            except Exception as e:
                unexpected.append(e)
            finally:
                s.close()

        threads = [threading.Thread(target=claim, args=(c,)) for c in couriers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert unexpected == []
        assert len(winners) == 1
        assert len(losers) == self.N - 1

        s = session_factory()
        try:
            stored = OrderCoordinator(s, dispatcher).orders.get(order.order_id)
            assert stored.status == "out_for_delivery"
            assert stored.courier_id == winners[0]
            claims = [h for h in OrderCoordinator(s).orders.history(order.order_id)
                      if h.to_status == "out_for_delivery"]
            assert [h.actor_id for h in claims] == winners
        finally:
            s.close()
