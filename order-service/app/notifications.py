"""Best-effort customer and restaurant notifications.

The coordinator hands the dispatcher a detached order snapshot after the
state change has committed. Contact lookup and delivery then run on a worker
pool; any failure is logged and counted, never raised to the caller.
"""
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

import httpx

from .errors import NotificationFailure
from .metrics import NOTIFICATION_FAILURES
from .schemas import OrderRead

logger = logging.getLogger("order-service.notifications")


class NotificationKind(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    RESTAURANT_NEW_ORDER = "restaurant_new_order"
    ORDER_READY = "order_ready"
    PAYMENT_COMPLETED = "payment_completed"


class Audience(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"


# payment receipts go out by email only
SMS_KINDS = frozenset({
    NotificationKind.ORDER_CONFIRMATION,
    NotificationKind.RESTAURANT_NEW_ORDER,
    NotificationKind.ORDER_READY,
})


@dataclass(frozen=True)
class Contact:
    email: str
    phone: Optional[str] = None


def render(kind: NotificationKind, order: OrderRead):
    """One-line subject and body for ``kind``."""
    total = f"${order.order_total:.2f}"
    if kind is NotificationKind.ORDER_CONFIRMATION:
        return (
            f"Order Confirmation #{order.order_id}",
            f"Your order from {order.restaurant_name} has been received. Total: {total}. "
            f"Payment: {order.payment_method.value} ({order.payment_status.value}).",
        )
    if kind is NotificationKind.RESTAURANT_NEW_ORDER:
        count = sum(item.quantity for item in order.items)
        return (
            f"New Order #{order.order_id}",
            f"{count} item(s) ordered, total {total}. Please start preparing.",
        )
    if kind is NotificationKind.ORDER_READY:
        return (
            f"Order #{order.order_id} is ready",
            f"Your order from {order.restaurant_name} is ready and waiting for a courier.",
        )
    return (
        f"Payment Completed for Order #{order.order_id}",
        f"Your payment of {total} for order #{order.order_id} has been processed.",
    )


# ----- Contact lookup -----

class ContactLookup(ABC):
    @abstractmethod
    def get_customer_contact(self, customer_id: str) -> Contact:
        ...

    @abstractmethod
    def get_restaurant_contact(self, restaurant_id: str) -> Contact:
        ...


class HttpContactLookup(ContactLookup):
    def __init__(self, auth_url: str, restaurant_url: str, timeout: float = 5.0, transport=None):
        self.auth_url = auth_url.rstrip("/")
        self.restaurant_url = restaurant_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _get(self, url: str) -> dict:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.get(url, headers={"X-Internal-Service": "true"})
                r.raise_for_status()
                return r.json()
        except httpx.HTTPError as e:
            raise NotificationFailure(f"Contact lookup failed for {url}: {e}") from e

    def get_customer_contact(self, customer_id: str) -> Contact:
        data = self._get(f"{self.auth_url}/api/auth/users/{customer_id}")
        if not data.get("email"):
            raise NotificationFailure(f"No email on file for customer {customer_id}")
        return Contact(email=data["email"], phone=data.get("phone") or None)

    def get_restaurant_contact(self, restaurant_id: str) -> Contact:
        data = self._get(f"{self.restaurant_url}/api/restaurants/internal/{restaurant_id}")
        if not data.get("adminEmail"):
            raise NotificationFailure(f"No admin email on file for restaurant {restaurant_id}")
        return Contact(email=data["adminEmail"], phone=data.get("phoneNumber") or None)


# ----- Delivery -----

class NotificationSender(ABC):
    @abstractmethod
    def send(self, kind: NotificationKind, order: OrderRead, contact: Contact) -> None:
        """Deliver one notification. Raise NotificationFailure on error."""


class HttpNotificationSender(NotificationSender):
    def __init__(self, base_url: str, timeout: float = 5.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def send(self, kind: NotificationKind, order: OrderRead, contact: Contact) -> None:
        subject, message = render(kind, order)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(
                    f"{self.base_url}/v1/notifications/email",
                    json={
                        "event_type": kind.value,
                        "recipient": contact.email,
                        "subject": subject,
                        "message": message,
                        "order_id": order.order_id,
                    },
                )
                r.raise_for_status()
                if contact.phone and kind in SMS_KINDS:
                    r = client.post(
                        f"{self.base_url}/v1/notifications/sms",
                        json={
                            "event_type": kind.value,
                            "recipient": contact.phone,
                            "message": message,
                            "order_id": order.order_id,
                        },
                    )
                    r.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationFailure(f"Failed to send {kind.value} for order {order.order_id}: {e}") from e


class NotificationDispatcher:
    """Runs notification tasks off the request path."""

    def __init__(self, contacts: ContactLookup, sender: NotificationSender,
                 max_workers: int = 4, executor=None):
        self.contacts = contacts
        self.sender = sender
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def dispatch(self, kind: NotificationKind, audience: Audience, order: OrderRead,
                 correlation_id: str = "-") -> Future:
        future = self._executor.submit(self._deliver, kind, audience, order, correlation_id)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, kind, audience, order, correlation_id) -> bool:
        extra = {"correlation_id": correlation_id}
        try:
            if audience is Audience.RESTAURANT:
                contact = self.contacts.get_restaurant_contact(order.restaurant_id)
            else:
                contact = self.contacts.get_customer_contact(order.customer_id)
            self.sender.send(kind, order, contact)
        except Exception as e:
            NOTIFICATION_FAILURES.labels(kind.value).inc()
            logger.warning(
                f"Failed to send {kind.value} notification for order {order.order_id}: {e}",
                extra=extra,
            )
            return False
        logger.info(f"Sent {kind.value} notification for order {order.order_id}", extra=extra)
        return True

    def flush(self, timeout: Optional[float] = None):
        """Block until every scheduled notification has finished."""
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self):
        self._executor.shutdown(wait=True)
