import uuid
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

from .enums import ItemSize, OrderStatus, PaymentStatus
from .errors import InvalidRequest, NotFound, RestaurantMismatch
from .ids import normalize_id

Base = declarative_base()


def _new_order_id() -> str:
    return str(uuid.uuid4())


class Cart(Base):
    __tablename__ = "carts"

    cart_id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(64), nullable=False, unique=True, index=True)
    total_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.cart_item_id",
    )

    @property
    def restaurant_id(self):
        return self.items[0].restaurant_id if self.items else None

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def recalculate(self):
        self.total_amount = sum(item.unit_price * item.quantity for item in self.items)
        self.updated_at = datetime.utcnow()

    def add_item(self, menu_item_id, name, unit_price, quantity=1, size=ItemSize.MEDIUM.value,
                 restaurant_id=None, restaurant_name=None):
        """Add a line, merging it into an existing (menu_item_id, size) line.

        Every check runs before the cart is touched, so a rejected insert
        leaves items and total exactly as they were.
        """
        menu_item_id = normalize_id(menu_item_id)
        restaurant_id = normalize_id(restaurant_id)
        if not (menu_item_id and restaurant_id and name):
            raise InvalidRequest("menu_item_id, restaurant_id and name are required")
        if unit_price is None or unit_price < 0:
            raise InvalidRequest("unit_price must be greater than or equal to 0")
        if quantity is None or quantity < 1:
            raise InvalidRequest("quantity must be at least 1")
        try:
            size = ItemSize(size or ItemSize.MEDIUM.value).value
        except ValueError:
            raise InvalidRequest("size must be Small, Medium, or Large", size=size)

        if self.items and self.restaurant_id != restaurant_id:
            raise RestaurantMismatch(
                "Cannot add items from different restaurants to the same cart. "
                "Please clear your cart first.",
                cart_restaurant_id=self.restaurant_id,
                item_restaurant_id=restaurant_id,
            )

        for item in self.items:
            if item.menu_item_id == menu_item_id and item.size == size:
                item.quantity += quantity
                break
        else:
            self.items.append(
                CartItem(
                    menu_item_id=menu_item_id,
                    name=name,
                    unit_price=unit_price,
                    quantity=quantity,
                    size=size,
                    restaurant_id=restaurant_id,
                    restaurant_name=restaurant_name or "Restaurant",
                )
            )
        self.recalculate()

    def find_item(self, cart_item_id):
        for item in self.items:
            if item.cart_item_id == cart_item_id:
                return item
        raise NotFound("Item not found in cart", cart_item_id=cart_item_id)

    def update_quantity(self, cart_item_id, quantity):
        if quantity is None or quantity < 1:
            raise InvalidRequest("quantity must be at least 1")
        self.find_item(cart_item_id).quantity = quantity
        self.recalculate()

    def remove_item(self, cart_item_id):
        self.items.remove(self.find_item(cart_item_id))
        self.recalculate()

    def clear(self):
        self.items.clear()
        self.recalculate()


class CartItem(Base):
    __tablename__ = "cart_items"

    cart_item_id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.cart_id"), nullable=False, index=True)
    menu_item_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    size = Column(String(16), nullable=False, default=ItemSize.MEDIUM.value)
    restaurant_id = Column(String(64), nullable=False)
    restaurant_name = Column(String(255), nullable=False)

    cart = relationship("Cart", back_populates="items")


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(36), primary_key=True, default=_new_order_id)
    customer_id = Column(String(64), nullable=False, index=True)
    restaurant_id = Column(String(64), nullable=False, index=True)
    restaurant_name = Column(String(255), nullable=False)
    order_total = Column(Float, nullable=False, default=0.0)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = Column(String(16), nullable=False)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    courier_id = Column(String(64), nullable=True, index=True)

    street = Column(String(255), nullable=False)
    city = Column(String(128), nullable=False)
    state = Column(String(128), nullable=False)
    zip_code = Column(String(32), nullable=False)
    country = Column(String(128), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.order_item_id",
    )
    history = relationship(
        "StatusHistoryEntry",
        back_populates="order",
        order_by="StatusHistoryEntry.entry_id",
    )

    @property
    def delivery_address(self):
        coordinates = None
        if self.latitude is not None and self.longitude is not None:
            coordinates = {"lat": self.latitude, "lng": self.longitude}
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "country": self.country,
            "coordinates": coordinates,
        }


class OrderItem(Base):
    __tablename__ = "order_items"

    order_item_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.order_id"), nullable=False, index=True)
    menu_item_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String(16), nullable=False)
    price = Column(Float, nullable=False)  # snapshot of price at order time

    order = relationship("Order", back_populates="items")


class StatusHistoryEntry(Base):
    __tablename__ = "order_status_history"

    entry_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.order_id"), nullable=False, index=True)
    from_status = Column(String(32), nullable=False)
    to_status = Column(String(32), nullable=False)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="history")


class Payment(Base):
    """Card charge registered with the payment service, one per order."""

    __tablename__ = "payments"

    payment_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.order_id"), nullable=False, unique=True, index=True)
    restaurant_id = Column(String(64), nullable=False)
    customer_id = Column(String(64), nullable=False, index=True)
    amount_paid = Column(Float, nullable=False)  # order subtotal
    total_charged = Column(Float, nullable=False)  # subtotal + delivery fee + tax
    payment_method = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    transaction_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
