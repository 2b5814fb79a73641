from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional

from .enums import ItemSize, OrderStatus, PaymentMethod, PaymentStatus


# ----- Cart -----

class CartItemRequest(BaseModel):
    menu_item_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    size: ItemSize = ItemSize.MEDIUM
    restaurant_id: str
    restaurant_name: Optional[str] = None


class CartQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class CartItemRead(BaseModel):
    cart_item_id: int
    menu_item_id: str
    name: str
    unit_price: float
    quantity: int
    size: str
    restaurant_id: str
    restaurant_name: str

    class Config:
        from_attributes = True


class CartRead(BaseModel):
    customer_id: str
    items: List[CartItemRead] = []
    total_amount: float = 0.0

    class Config:
        from_attributes = True


class CartCount(BaseModel):
    count: int


# ----- Orders -----

class Coordinates(BaseModel):
    lat: float
    lng: float


class DeliveryAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class CreateOrderRequest(BaseModel):
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod = PaymentMethod.CASH


class UpdateStatusRequest(BaseModel):
    status: str
    courier_id: Optional[str] = None


class OrderItemRead(BaseModel):
    order_item_id: int
    menu_item_id: str
    name: str
    quantity: int
    size: str
    price: float

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    order_id: str
    customer_id: str
    restaurant_id: str
    restaurant_name: str
    order_total: float
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    courier_id: Optional[str]
    delivery_address: DeliveryAddress
    items: List[OrderItemRead]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderCreated(BaseModel):
    order: OrderRead
    requires_payment_processing: bool


class PaymentCompleted(BaseModel):
    success: bool = True
    order: OrderRead


class StatusHistoryRead(BaseModel):
    from_status: OrderStatus
    to_status: OrderStatus
    actor_id: str
    actor_role: str
    created_at: datetime

    class Config:
        from_attributes = True


# ----- Payments -----

class PaymentIntentRequest(BaseModel):
    order_id: str


class PaymentIntentRead(BaseModel):
    order_id: str
    client_secret: str
    amount_cents: int
    currency: str


class PaymentStatusRead(BaseModel):
    payment_status: PaymentStatus
    payment_method: PaymentMethod
