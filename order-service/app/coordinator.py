"""Order coordination.

Each operation follows the same shape: validate, commit the state change in
one transaction, then run the side effects. Side effects are isolated steps:
a cart that fails to clear or a notification that fails to send is logged
and never rolls back or fails the change already committed.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, models, schemas, state_machine
from .enums import OrderStatus, PaymentMethod, PaymentStatus, Role
from .errors import (
    EmptyCart,
    IncompleteAddress,
    InvalidRequest,
    InvalidTransition,
    Unauthorized,
)
from .identity import Principal
from .ids import normalize_id, same_id
from .metrics import ORDER_TRANSITIONS, ORDERS_CREATED
from .notifications import Audience, NotificationDispatcher, NotificationKind
from .payments import PaymentGateway, charge_amount_cents
from .store import CartStore, OrderStore

logger = logging.getLogger("order-service.coordinator")

REQUIRED_ADDRESS_FIELDS = ("street", "city", "state")
ADDRESS_TEXT_FIELDS = REQUIRED_ADDRESS_FIELDS + ("zip_code", "country")
CONFIRMABLE_PAYMENT_STATES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


def normalize_address(address) -> dict:
    """Validate a delivery address and fill in defaults."""
    if address is None:
        raise IncompleteAddress("Street, city and state are required in delivery address")
    if hasattr(address, "model_dump"):
        address = address.model_dump()
    address = dict(address)
    for field in ADDRESS_TEXT_FIELDS:
        address[field] = normalize_id(address.get(field))
    missing = [f for f in REQUIRED_ADDRESS_FIELDS if address[f] is None]
    if missing:
        raise IncompleteAddress(
            "Street, city and state are required in delivery address", missing=missing
        )
    if address["zip_code"] is None:
        address["zip_code"] = config.DEFAULT_ZIP_CODE
    return address


class OrderCoordinator:
    def __init__(self, session: Session, dispatcher: Optional[NotificationDispatcher] = None,
                 payment_gateway: Optional[PaymentGateway] = None,
                 admin_override: bool = None, correlation_id: str = "-"):
        self.session = session
        self.orders = OrderStore(session)
        self.carts = CartStore(session)
        self.dispatcher = dispatcher
        self.payment_gateway = payment_gateway
        self.admin_override = config.ORDER_ADMIN_OVERRIDE if admin_override is None else admin_override
        self.correlation_id = correlation_id
        self.extra = {"correlation_id": correlation_id}

    # ----- Creation -----

    def create_order(self, customer_id, delivery_address,
                     payment_method) -> Tuple[models.Order, bool]:
        """Turn the customer's cart into a pending order.

        1. Persist the order (payment completed up front unless paying by card).
        2. Clear the cart, unless paying by card: a card order keeps its cart
           until payment is confirmed so a failed payment can be retried.
        3. Notify customer and restaurant.
        """
        customer_id = normalize_id(customer_id)
        cart = self.carts.find(customer_id)
        if cart is None or not cart.items:
            raise EmptyCart("Cart is empty")
        address = normalize_address(delivery_address)
        try:
            method = PaymentMethod(getattr(payment_method, "value", payment_method))
        except ValueError:
            raise InvalidRequest("Valid payment method is required", payment_method=payment_method)

        payment_status = PaymentStatus.PENDING if method is PaymentMethod.CARD else PaymentStatus.COMPLETED
        try:
            order = self.orders.add_from_cart(cart, address, method.value, payment_status.value)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        ORDERS_CREATED.labels(payment_status.value).inc()
        logger.info(
            f"Order {order.order_id} created for customer {customer_id} "
            f"({method.value}, payment {payment_status.value})",
            extra=self.extra,
        )

        if method is not PaymentMethod.CARD:
            self._clear_cart(customer_id)

        snapshot = self._snapshot(order)
        self._notify(NotificationKind.ORDER_CONFIRMATION, Audience.CUSTOMER, snapshot)
        self._notify(NotificationKind.RESTAURANT_NEW_ORDER, Audience.RESTAURANT, snapshot)
        return order, method is PaymentMethod.CARD

    # ----- Payment -----

    def confirm_payment(self, order_id, actor_id) -> models.Order:
        order = self.orders.get(order_id)
        if not same_id(order.customer_id, actor_id):
            raise Unauthorized("Not authorized to update this order")
        return self._complete_payment(order)

    def record_payment_outcome(self, order_id, succeeded: bool) -> models.Order:
        """Apply a payment-provider callback for ``order_id``."""
        order = self.orders.get(order_id)
        if succeeded:
            return self._complete_payment(order)

        if self.orders.set_payment_status(order.order_id, PaymentStatus.FAILED, [PaymentStatus.PENDING]):
            self.orders.set_payment_record_status(order.order_id, PaymentStatus.FAILED)
            self.session.commit()
            logger.info(f"Payment for order {order.order_id} failed", extra=self.extra)
        else:
            self.session.rollback()
        return self.orders.reload(order.order_id)

    def _complete_payment(self, order: models.Order) -> models.Order:
        order_id = order.order_id
        changed = self.orders.set_payment_status(
            order_id, PaymentStatus.COMPLETED, CONFIRMABLE_PAYMENT_STATES
        )
        if not changed:
            self.session.rollback()
            order = self.orders.reload(order_id)
            if order.payment_status == PaymentStatus.COMPLETED.value:
                logger.info(f"Payment for order {order_id} already completed", extra=self.extra)
                return order
            raise InvalidTransition(
                order.payment_status, PaymentStatus.COMPLETED.value, "payment cannot be completed"
            )

        self.orders.set_payment_record_status(order_id, PaymentStatus.COMPLETED)
        self.session.commit()
        logger.info(f"Payment for order {order_id} completed", extra=self.extra)
        order = self.orders.reload(order_id)
        self._clear_cart(order.customer_id)
        self._notify(NotificationKind.PAYMENT_COMPLETED, Audience.CUSTOMER, self._snapshot(order))
        return order

    def create_payment_intent(self, order_id, actor: Principal) -> Tuple[models.Order, str, int]:
        order = self.orders.get(order_id)
        if not same_id(order.customer_id, actor.id):
            raise Unauthorized("Not authorized to pay for this order")
        if order.payment_method != PaymentMethod.CARD.value:
            raise InvalidRequest("Only card orders are paid through the payment gateway")
        if order.payment_status not in {s.value for s in CONFIRMABLE_PAYMENT_STATES}:
            raise InvalidTransition(
                order.payment_status, PaymentStatus.COMPLETED.value, "payment is not outstanding"
            )
        if self.payment_gateway is None:
            raise InvalidRequest("Card payments are not configured")
        amount = charge_amount_cents(order.order_total)
        intent = self.payment_gateway.create_intent(order, amount, config.CURRENCY)
        try:
            self.orders.record_intent(order, amount / 100, intent.transaction_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info(
            f"Payment intent {intent.transaction_id} created for order {order.order_id} ({amount} cents)",
            extra=self.extra,
        )
        return self.orders.reload(order.order_id), intent.client_secret, amount

    # ----- Lifecycle -----

    def transition(self, order_id, actor: Principal, requested_status,
                   courier_id=None) -> models.Order:
        order = self.orders.get(order_id)
        decision = state_machine.evaluate(
            order, actor, requested_status, courier_id, admin_override=self.admin_override
        )
        try:
            applied = self.orders.apply_transition(order.order_id, decision, actor)
        except SQLAlchemyError:
            self.session.rollback()
            raise

        if not applied:
            # another writer moved the order after we read it
            self.session.rollback()
            current = self.orders.reload(order.order_id)
            logger.info(
                f"Order {order.order_id} changed concurrently; "
                f"{decision.from_status.value} -> {decision.to_status.value} rejected",
                extra=self.extra,
            )
            raise InvalidTransition(current.status, decision.to_status.value, "order changed concurrently")

        self.session.commit()
        ORDER_TRANSITIONS.labels(decision.from_status.value, decision.to_status.value).inc()
        order = self.orders.reload(order.order_id)
        logger.info(
            f"Order {order.order_id} {decision.from_status.value} -> {decision.to_status.value} "
            f"by {actor.role} {actor.id}",
            extra=self.extra,
        )

        if state_machine.NOTIFY_CUSTOMER_READY in decision.side_effects:
            self._notify(NotificationKind.ORDER_READY, Audience.CUSTOMER, self._snapshot(order))
        return order

    # ----- Queries -----

    def get_order(self, order_id, actor: Principal) -> models.Order:
        order = self.orders.get(order_id)
        if not self.can_view(order, actor):
            logger.info(
                f"Unauthorized access to order {order.order_id} by {actor.role} {actor.id}",
                extra=self.extra,
            )
            raise Unauthorized("Not authorized to view this order")
        return order

    def get_history(self, order_id, actor: Principal) -> List[models.StatusHistoryEntry]:
        order = self.get_order(order_id, actor)
        return self.orders.history(order.order_id)

    def list_orders(self, actor: Principal, status=None, courier_id=None) -> List[models.Order]:
        status = normalize_id(status)
        courier_id = normalize_id(courier_id)

        if actor.has_role(Role.ADMIN):
            return self.orders.search(status=status, courier_id=courier_id)

        if actor.has_role(Role.DELIVERY_PERSONNEL):
            if courier_id is not None and courier_id != actor.id:
                raise Unauthorized("Not authorized to view orders for another delivery person")
            if courier_id is None and status == OrderStatus.READY.value:
                # any courier may claim any ready order, so show them all
                return self.orders.search(status=status, unclaimed_only=True)
            return self.orders.search(status=status, courier_id=actor.id)

        if actor.has_role(Role.RESTAURANT_ADMIN):
            if actor.restaurant_id is None:
                raise InvalidRequest("Restaurant ID not found in your profile")
            return self.orders.search(
                status=status, courier_id=courier_id, restaurant_id=actor.restaurant_id
            )

        return self.orders.search(status=status, courier_id=courier_id, customer_id=actor.id)

    @staticmethod
    def can_view(order: models.Order, actor: Principal) -> bool:
        if actor.has_role(Role.ADMIN) or same_id(order.customer_id, actor.id):
            return True
        if actor.has_role(Role.RESTAURANT_ADMIN):
            return same_id(order.restaurant_id, actor.restaurant_id)
        if actor.has_role(Role.DELIVERY_PERSONNEL):
            return order.status == OrderStatus.READY.value or same_id(order.courier_id, actor.id)
        return False

    # ----- Side effects -----

    def _clear_cart(self, customer_id):
        try:
            cart = self.carts.find(customer_id)
            if cart is not None:
                cart.clear()
                self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Failed to clear cart of customer {customer_id}: {e}", extra=self.extra)

    def _snapshot(self, order: models.Order) -> schemas.OrderRead:
        return schemas.OrderRead.model_validate(order)

    def _notify(self, kind: NotificationKind, audience: Audience, snapshot: schemas.OrderRead):
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.dispatch(kind, audience, snapshot, self.correlation_id)
        except RuntimeError as e:
            # executor already shut down
            logger.warning(f"Could not schedule {kind.value} notification: {e}", extra=self.extra)
