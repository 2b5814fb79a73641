import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .store import CartStore

logger = logging.getLogger("order-service.cart")


class CartService:
    """Customer-facing cart operations; invariants live on ``models.Cart``."""

    def __init__(self, session: Session, correlation_id: str = "-"):
        self.session = session
        self.carts = CartStore(session)
        self.extra = {"correlation_id": correlation_id}

    def get_cart(self, customer_id) -> Optional[models.Cart]:
        return self.carts.find(customer_id)

    def add_item(self, customer_id, menu_item_id, name, unit_price, quantity=1,
                 size="Medium", restaurant_id=None, restaurant_name=None) -> models.Cart:
        cart = self.carts.get_or_create(customer_id)
        try:
            cart.add_item(
                menu_item_id,
                name,
                unit_price,
                quantity=quantity,
                size=size,
                restaurant_id=restaurant_id,
                restaurant_name=restaurant_name,
            )
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        logger.info(
            f"Cart of {cart.customer_id} now holds {cart.item_count} item(s)", extra=self.extra
        )
        return cart

    def update_quantity(self, customer_id, cart_item_id: int, quantity: int) -> models.Cart:
        cart = self.carts.get(customer_id)
        cart.update_quantity(cart_item_id, quantity)
        self.session.commit()
        return cart

    def remove_item(self, customer_id, cart_item_id: int) -> models.Cart:
        cart = self.carts.get(customer_id)
        cart.remove_item(cart_item_id)
        self.session.commit()
        return cart

    def clear(self, customer_id) -> models.Cart:
        cart = self.carts.get(customer_id)
        cart.clear()
        self.session.commit()
        logger.info(f"Cart of {cart.customer_id} cleared", extra=self.extra)
        return cart

    def count(self, customer_id) -> int:
        cart = self.carts.find(customer_id)
        return cart.item_count if cart else 0
