"""Persistence for carts and orders.

Every state-changing write on an order is a single guarded ``UPDATE`` whose
``WHERE`` clause names the state the caller decided from. A caller that read a
stale row simply updates zero rows; nothing is locked in process.
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .enums import OrderStatus, PaymentStatus
from .errors import NotFound
from .identity import Principal
from .ids import normalize_id
from .state_machine import Transition


class CartStore:
    def __init__(self, session: Session):
        self.session = session

    def find(self, customer_id) -> Optional[models.Cart]:
        return (
            self.session.query(models.Cart)
            .filter(models.Cart.customer_id == normalize_id(customer_id))
            .first()
        )

    def get(self, customer_id) -> models.Cart:
        cart = self.find(customer_id)
        if cart is None:
            raise NotFound("Cart not found")
        return cart

    def get_or_create(self, customer_id) -> models.Cart:
        cart = self.find(customer_id)
        if cart is not None:
            return cart
        cart = models.Cart(customer_id=normalize_id(customer_id), items=[], total_amount=0.0)
        self.session.add(cart)
        try:
            self.session.flush()
        except IntegrityError:
            # a concurrent first add created the cart; use that one
            self.session.rollback()
            cart = self.get(customer_id)
        return cart


class OrderStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, order_id) -> models.Order:
        order = self.session.get(models.Order, normalize_id(order_id))
        if order is None:
            raise NotFound("Order not found", order_id=normalize_id(order_id))
        return order

    def reload(self, order_id) -> models.Order:
        self.session.expire_all()
        return self.get(order_id)

    def add_from_cart(self, cart: models.Cart, delivery_address: dict,
                      payment_method: str, payment_status: str) -> models.Order:
        # items are copied by value; later cart edits never reach the order
        first = cart.items[0]
        coordinates = delivery_address.get("coordinates") or {}
        order = models.Order(
            customer_id=cart.customer_id,
            restaurant_id=first.restaurant_id,
            restaurant_name=first.restaurant_name,
            order_total=cart.total_amount,
            status=OrderStatus.PENDING.value,
            payment_method=payment_method,
            payment_status=payment_status,
            street=delivery_address["street"],
            city=delivery_address["city"],
            state=delivery_address["state"],
            zip_code=delivery_address["zip_code"],
            country=delivery_address.get("country"),
            latitude=coordinates.get("lat"),
            longitude=coordinates.get("lng"),
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        order.items = [
            models.OrderItem(
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                size=item.size,
                price=item.unit_price,
            )
            for item in cart.items
        ]
        self.session.add(order)
        self.session.flush()
        return order

    def apply_transition(self, order_id, transition: Transition, actor: Principal) -> bool:
        """Persist ``transition`` if the stored row still matches it.

        Returns False, having written nothing, when another writer got there
        first. Does not commit.
        """
        Order = models.Order
        query = self.session.query(Order).filter(
            Order.order_id == normalize_id(order_id),
            Order.status == transition.from_status.value,
        )
        if transition.is_claim and transition.expected_courier_id is None:
            query = query.filter(Order.courier_id.is_(None))
        elif transition.expected_courier_id is not None:
            query = query.filter(Order.courier_id == transition.expected_courier_id)

        values = {"status": transition.to_status.value, "updated_at": datetime.utcnow()}
        if transition.assign_courier_id is not None:
            values["courier_id"] = transition.assign_courier_id

        updated = query.update(values, synchronize_session=False)
        if updated != 1:
            return False

        self.session.add(
            models.StatusHistoryEntry(
                order_id=normalize_id(order_id),
                from_status=transition.from_status.value,
                to_status=transition.to_status.value,
                actor_id=actor.id,
                actor_role=actor.role,
                created_at=datetime.utcnow(),
            )
        )
        self.session.flush()
        return True

    def set_payment_status(self, order_id, new_status: PaymentStatus,
                           expected: Iterable[PaymentStatus]) -> bool:
        Order = models.Order
        updated = (
            self.session.query(Order)
            .filter(
                Order.order_id == normalize_id(order_id),
                Order.payment_status.in_([s.value for s in expected]),
            )
            .update(
                {"payment_status": new_status.value, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )
        )
        return updated == 1

    def history(self, order_id) -> List[models.StatusHistoryEntry]:
        return (
            self.session.query(models.StatusHistoryEntry)
            .filter(models.StatusHistoryEntry.order_id == normalize_id(order_id))
            .order_by(models.StatusHistoryEntry.entry_id)
            .all()
        )

    def search(self, status=None, courier_id=None, customer_id=None, restaurant_id=None,
               unclaimed_only=False) -> List[models.Order]:
        Order = models.Order
        query = self.session.query(Order)
        if status:
            query = query.filter(Order.status == status)
        if courier_id:
            query = query.filter(Order.courier_id == normalize_id(courier_id))
        if customer_id:
            query = query.filter(Order.customer_id == normalize_id(customer_id))
        if restaurant_id:
            query = query.filter(Order.restaurant_id == normalize_id(restaurant_id))
        if unclaimed_only:
            query = query.filter(or_(Order.courier_id.is_(None), Order.courier_id == ""))
        return query.order_by(Order.created_at.desc()).all()

    # ----- Payment records -----

    def payment(self, order_id) -> Optional[models.Payment]:
        return (
            self.session.query(models.Payment)
            .filter(models.Payment.order_id == normalize_id(order_id))
            .first()
        )

    def record_intent(self, order: models.Order, total_charged: float,
                      transaction_id: Optional[str]) -> models.Payment:
        """Create or refresh the payment record of a card order. Does not commit."""
        payment = self.payment(order.order_id)
        if payment is None:
            payment = models.Payment(
                order_id=order.order_id,
                restaurant_id=order.restaurant_id,
                customer_id=order.customer_id,
                payment_method=order.payment_method,
                created_at=datetime.utcnow(),
            )
            self.session.add(payment)
        payment.amount_paid = order.order_total
        payment.total_charged = total_charged
        payment.status = PaymentStatus.PENDING.value
        payment.transaction_id = transaction_id
        payment.updated_at = datetime.utcnow()
        try:
            self.session.flush()
        except IntegrityError:
            # a concurrent intent request inserted the record first
            self.session.rollback()
            return self.record_intent(self.get(order.order_id), total_charged, transaction_id)
        return payment

    def set_payment_record_status(self, order_id, new_status: PaymentStatus) -> int:
        return (
            self.session.query(models.Payment)
            .filter(models.Payment.order_id == normalize_id(order_id))
            .update(
                {"status": new_status.value, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )
        )
