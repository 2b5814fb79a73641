import threading

import pytest

from app import db
from app.cart import CartService
from app.coordinator import OrderCoordinator
from app.identity import Principal
from app.notifications import (
    Contact,
    ContactLookup,
    NotificationDispatcher,
    NotificationFailure,
    NotificationSender,
)

ADDRESS = {
    "street": "12 Galle Road",
    "city": "Colombo",
    "state": "Western",
    "country": "Sri Lanka",
}

MENU = [
    # menu_item_id, name, price, quantity, size
    ("item-kottu", "Chicken Kottu", 4.5, 2, "Large"),
    ("item-hopper", "Egg Hopper", 1.25, 4, "Medium"),
]


class FakeContacts(ContactLookup):
    def get_customer_contact(self, customer_id):
        return Contact(email=f"{customer_id}@customers.test", phone="+94770000000")

    def get_restaurant_contact(self, restaurant_id):
        return Contact(email=f"{restaurant_id}@restaurants.test")


class RecordingSender(NotificationSender):
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, kind, order, contact):
        with self._lock:
            self.sent.append((kind, order.order_id, contact.email))

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


class FailingSender(NotificationSender):
    def __init__(self):
        self.attempts = 0

    def send(self, kind, order, contact):
        self.attempts += 1
        raise NotificationFailure("SMTP relay refused connection")


@pytest.fixture
def engine(tmp_path):
    engine = db.make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    db.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender):
    d = NotificationDispatcher(FakeContacts(), sender, max_workers=2)
    yield d
    d.shutdown()


@pytest.fixture
def coordinator(session, dispatcher):
    return OrderCoordinator(session, dispatcher, admin_override=True)


@pytest.fixture
def carts(session):
    return CartService(session)


@pytest.fixture
def fill_cart(carts):
    def _fill(customer_id, restaurant_id="rest-A", items=MENU):
        for menu_item_id, name, price, quantity, size in items:
            carts.add_item(
                customer_id,
                menu_item_id,
                name,
                price,
                quantity=quantity,
                size=size,
                restaurant_id=restaurant_id,
                restaurant_name="Hela Bojun",
            )
        return carts.get_cart(customer_id)

    return _fill


@pytest.fixture
def place_order(coordinator, fill_cart):
    def _place(customer_id="cust-1", restaurant_id="rest-A", payment_method="cash"):
        fill_cart(customer_id, restaurant_id)
        order, _ = coordinator.create_order(customer_id, dict(ADDRESS), payment_method)
        return order

    return _place


@pytest.fixture
def order_at(coordinator, place_order):
    """Place an order for rest-A and walk it forward to ``status``."""
    owner = Principal("owner-A", "restaurant_admin", "rest-A")
    courier = Principal("courier-X", "delivery_personnel")
    path = [
        ("preparing", owner),
        ("ready", owner),
        ("out_for_delivery", courier),
        ("delivered", courier),
    ]

    def _at(status, customer_id="cust-1"):
        order = place_order(customer_id)
        if status == "cancelled":
            return coordinator.transition(order.order_id, Principal("admin-1", "admin"), "cancelled")
        for next_status, actor in path:
            if order.status == status:
                break
            order = coordinator.transition(order.order_id, actor, next_status)
        return order

    return _at
