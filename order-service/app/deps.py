import uuid
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, Query, Request

from . import config, db
from .errors import Unauthenticated
from .identity import HttpIdentityResolver, IdentityResolver, Principal
from .notifications import HttpContactLookup, HttpNotificationSender, NotificationDispatcher
from .payments import HttpPaymentGateway, PaymentGateway


def get_correlation_id(request: Request, x_correlation_id: Optional[str] = Header(None)):
    cid = x_correlation_id or str(uuid.uuid4())
    request.state.correlation_id = cid
    return cid


# ----- DB Dependency -----
def get_db():
    s = db.SessionLocal()
    try:
        yield s
    finally:
        s.close()


# ----- Collaborators -----
@lru_cache()
def get_identity_resolver() -> IdentityResolver:
    return HttpIdentityResolver(config.AUTH_SERVICE_URL, timeout=config.HTTP_TIMEOUT_SECONDS)


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    contacts = HttpContactLookup(
        config.AUTH_SERVICE_URL,
        config.RESTAURANT_SERVICE_URL,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )
    sender = HttpNotificationSender(config.NOTIFICATION_SERVICE_URL, timeout=config.HTTP_TIMEOUT_SECONDS)
    return NotificationDispatcher(contacts, sender, max_workers=config.NOTIFICATION_WORKERS)


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway(config.PAYMENT_SERVICE_URL, timeout=config.HTTP_TIMEOUT_SECONDS)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_principal(
    authorization: Optional[str] = Header(None),
    restaurant_id: Optional[str] = Query(None, alias="restaurantId"),
    x_restaurant_id: Optional[str] = Header(None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Principal:
    token = bearer_token(authorization)
    if token is None:
        raise Unauthenticated("No authentication token provided")
    # credential first, then query parameter, then header
    return resolver.resolve(token).with_restaurant(restaurant_id, x_restaurant_id)
