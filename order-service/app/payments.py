import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from . import config
from .errors import UpstreamUnavailable

logger = logging.getLogger("order-service.payments")


def charge_amount_cents(subtotal: float, delivery_fee: float = None, tax_rate: float = None) -> int:
    """Card charge for an order: subtotal plus delivery fee plus tax on the subtotal."""
    delivery_fee = config.DELIVERY_FEE if delivery_fee is None else delivery_fee
    tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
    return round((subtotal + delivery_fee + subtotal * tax_rate) * 100)


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    # header values may carry non-ASCII text; compare as bytes
    return hmac.compare_digest(
        sign_payload(body, secret).encode(), signature.encode("utf-8", "replace")
    )


@dataclass(frozen=True)
class PaymentIntent:
    client_secret: str
    transaction_id: Optional[str] = None


class PaymentGateway(ABC):
    @abstractmethod
    def create_intent(self, order, amount_cents: int, currency: str) -> PaymentIntent:
        """Register a card charge for ``order``."""


class HttpPaymentGateway(PaymentGateway):
    def __init__(self, base_url: str, timeout: float = 5.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def create_intent(self, order, amount_cents: int, currency: str) -> PaymentIntent:
        payload = {
            "order_id": order.order_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "reference": f"ORDER-{order.order_id}",
            "metadata": {"order_id": order.order_id, "customer_id": order.customer_id},
        }
        # idempotency: one intent per order
        headers = {"Idempotency-Key": f"order-{order.order_id}-intent"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(f"{self.base_url}/v1/payments/intents", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Payment service unreachable: {e}")
            raise UpstreamUnavailable("Payment service unavailable")

        if r.status_code not in (200, 201):
            raise UpstreamUnavailable(
                "Payment service rejected the intent", upstream_status=r.status_code
            )
        data = r.json()
        if not data.get("client_secret"):
            raise UpstreamUnavailable("Payment service returned no client secret")
        return PaymentIntent(client_secret=data["client_secret"], transaction_id=data.get("id"))
