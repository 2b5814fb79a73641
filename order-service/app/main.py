from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
import json
import logging
import uuid

from . import config, db, schemas
from .cart import CartService
from .coordinator import OrderCoordinator
from .deps import (
    get_correlation_id,
    get_db,
    get_dispatcher,
    get_payment_gateway,
    get_principal,
)
from .errors import InvalidRequest, OrderServiceError, Unauthenticated, Unauthorized
from .identity import Principal
from .ids import same_id
from .metrics import MetricsMiddleware, metrics_endpoint
from .notifications import NotificationDispatcher
from .payments import PaymentGateway, verify_signature


# ----- Logging -----
class CorrelationIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] [order-service] [cid=%(correlation_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())
logger = logging.getLogger("order-service")


# ----- Init -----
@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    yield
    get_dispatcher().shutdown()


app = FastAPI(title="order-service", version="v1", lifespan=lifespan)
app.add_middleware(MetricsMiddleware, service_name="order-service")


@app.exception_handler(OrderServiceError)
def handle_order_service_error(request: Request, exc: OrderServiceError):
    cid = getattr(request.state, "correlation_id", None) or request.headers.get("x-correlation-id")
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"correlation_id": cid or "-"})
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {**exc.to_dict(), "correlationId": cid or str(uuid.uuid4())}},
    )


def get_coordinator(
    db_sess: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cid: str = Depends(get_correlation_id),
) -> OrderCoordinator:
    return OrderCoordinator(db_sess, dispatcher, gateway, correlation_id=cid)


def get_cart_service(
    db_sess: Session = Depends(get_db),
    cid: str = Depends(get_correlation_id),
) -> CartService:
    return CartService(db_sess, correlation_id=cid)


def cart_read(customer_id: str, cart) -> schemas.CartRead:
    if cart is None:
        return schemas.CartRead(customer_id=customer_id)
    return schemas.CartRead.model_validate(cart)


# ----- Infra Endpoints -----
@app.get("/health")
def health():
    return {"status": "ok", "service": "order-service"}


@app.get("/metrics")
def metrics():
    return metrics_endpoint()


# ----- API: Cart -----

@app.get("/v1/cart", response_model=schemas.CartRead)
def get_cart(principal: Principal = Depends(get_principal), carts: CartService = Depends(get_cart_service)):
    return cart_read(principal.id, carts.get_cart(principal.id))


@app.post("/v1/cart/items", response_model=schemas.CartRead, status_code=201)
def add_cart_item(
    payload: schemas.CartItemRequest,
    principal: Principal = Depends(get_principal),
    carts: CartService = Depends(get_cart_service),
):
    cart = carts.add_item(
        principal.id,
        payload.menu_item_id,
        payload.name,
        payload.price,
        quantity=payload.quantity,
        size=payload.size.value,
        restaurant_id=payload.restaurant_id,
        restaurant_name=payload.restaurant_name,
    )
    return cart_read(principal.id, cart)


@app.patch("/v1/cart/items/{cart_item_id}", response_model=schemas.CartRead)
def update_cart_item(
    cart_item_id: int,
    payload: schemas.CartQuantityRequest,
    principal: Principal = Depends(get_principal),
    carts: CartService = Depends(get_cart_service),
):
    return cart_read(principal.id, carts.update_quantity(principal.id, cart_item_id, payload.quantity))


@app.delete("/v1/cart/items/{cart_item_id}", response_model=schemas.CartRead)
def remove_cart_item(
    cart_item_id: int,
    principal: Principal = Depends(get_principal),
    carts: CartService = Depends(get_cart_service),
):
    return cart_read(principal.id, carts.remove_item(principal.id, cart_item_id))


@app.delete("/v1/cart", response_model=schemas.CartRead)
def clear_cart(principal: Principal = Depends(get_principal), carts: CartService = Depends(get_cart_service)):
    return cart_read(principal.id, carts.clear(principal.id))


@app.get("/v1/cart/count", response_model=schemas.CartCount)
def cart_count(principal: Principal = Depends(get_principal), carts: CartService = Depends(get_cart_service)):
    return schemas.CartCount(count=carts.count(principal.id))


# ----- API: Orders -----

@app.post("/v1/orders", response_model=schemas.OrderCreated, status_code=201)
def create_order(
    payload: schemas.CreateOrderRequest,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    order, requires_payment = coordinator.create_order(
        principal.id, payload.delivery_address, payload.payment_method
    )
    return schemas.OrderCreated(
        order=schemas.OrderRead.model_validate(order),
        requires_payment_processing=requires_payment,
    )


@app.get("/v1/orders", response_model=List[schemas.OrderRead])
def list_orders(
    status: Optional[str] = Query(None),
    courier_id: Optional[str] = Query(None, alias="courierId"),
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    orders = coordinator.list_orders(principal, status=status, courier_id=courier_id)
    return [schemas.OrderRead.model_validate(o) for o in orders]


@app.get("/v1/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(
    order_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    return schemas.OrderRead.model_validate(coordinator.get_order(order_id, principal))


@app.get("/v1/orders/{order_id}/history", response_model=List[schemas.StatusHistoryRead])
def get_order_history(
    order_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    return [schemas.StatusHistoryRead.model_validate(e) for e in coordinator.get_history(order_id, principal)]


@app.patch("/v1/orders/{order_id}/status", response_model=schemas.OrderRead)
def update_order_status(
    order_id: str,
    payload: schemas.UpdateStatusRequest,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    order = coordinator.transition(order_id, principal, payload.status, payload.courier_id)
    return schemas.OrderRead.model_validate(order)


@app.post("/v1/orders/{order_id}/payment-completed", response_model=schemas.PaymentCompleted)
def payment_completed(
    order_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    order = coordinator.confirm_payment(order_id, principal.id)
    return schemas.PaymentCompleted(order=schemas.OrderRead.model_validate(order))


# ----- API: Payments -----

@app.post("/v1/payments/intent", response_model=schemas.PaymentIntentRead)
def create_payment_intent(
    payload: schemas.PaymentIntentRequest,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    order, secret, amount = coordinator.create_payment_intent(payload.order_id, principal)
    return schemas.PaymentIntentRead(
        order_id=order.order_id,
        client_secret=secret,
        amount_cents=amount,
        currency=config.CURRENCY,
    )


@app.get("/v1/payments/status/{order_id}", response_model=schemas.PaymentStatusRead)
def payment_status(
    order_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    order = coordinator.get_order(order_id, principal)
    if not same_id(order.customer_id, principal.id):
        raise Unauthorized("Not authorized to view this order")
    return schemas.PaymentStatusRead(
        payment_status=order.payment_status,
        payment_method=order.payment_method,
    )


@app.post("/v1/payments/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
    coordinator: OrderCoordinator = Depends(get_coordinator),
    cid: str = Depends(get_correlation_id),
):
    body = await request.body()
    if not verify_signature(body, x_payment_signature, config.PAYMENT_WEBHOOK_SECRET):
        raise Unauthenticated("Webhook signature verification failed")
    try:
        event = json.loads(body)
        event_type = event["type"]
        order_id = event.get("data", {}).get("object", {}).get("metadata", {}).get("order_id")
    except (ValueError, KeyError, TypeError, AttributeError):
        raise InvalidRequest("Malformed webhook event")

    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        logger.info(f"Unhandled webhook event type {event_type}", extra={"correlation_id": cid})
        return {"received": True}
    if not order_id:
        raise InvalidRequest("Webhook event carries no order_id")

    succeeded = event_type == "payment_intent.succeeded"
    await run_in_threadpool(coordinator.record_payment_outcome, order_id, succeeded)
    return {"received": True}
