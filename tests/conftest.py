from datetime import datetime, timedelta, timezone

import pytest

from db import InMemoryOrderStore
from order import Order, OrderItem, CustomerInfo, OrderType
from order_controller import OrderController
from order_state import OrderStatus
from pricing import MenuItem, Variant, Addon


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now = self.now + timedelta(minutes=minutes)


class RecordingDispatcher:
    """Stands in for NotificationDispatcher; keeps every notification."""

    brand_name = "Dineezy"

    def __init__(self):
        self.notifications = []

    def dispatch(self, notification):
        if notification is None:
            return False
        self.notifications.append(notification)
        return True

    def drain(self, timeout=None):
        return True

    def shutdown(self, wait_for_pending=True):
        pass

    def get_stats(self):
        return {"pending": 0, "sent": len(self.notifications), "failed": 0, "skipped": 0}

    @property
    def types(self):
        return [n.notification_type for n in self.notifications]


class RecordingTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.attempts = 0

    def send(self, to, body):
        self.attempts += 1
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.sent.append((to, body))
        return f"SM{len(self.sent):04d}"


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def pizza():
    return MenuItem(
        id="p1",
        name="Margherita",
        price=200.0,
        variants=(Variant("Regular", 200.0), Variant("Large", 260.0)),
        addons=(Addon("Cheese", 30.0), Addon("Olives", 25.0), Addon("Spicy", 0.0)),
        restaurant_id="r1",
    )


@pytest.fixture
def burger():
    return MenuItem(
        id="b1",
        name="Veg Burger",
        price=150.0,
        addons=(Addon("Cheese", 30.0), Addon("Spicy", 0.0)),
        restaurant_id="r1",
    )


@pytest.fixture
def fries():
    return MenuItem(id="f1", name="Fries", price=90.0, restaurant_id="r1")


@pytest.fixture
def make_order():
    def _make(
        order_id="ORD1",
        status=OrderStatus.PENDING,
        created_at=T0,
        order_type=OrderType.DINE_IN,
        admin_estimated_time=None,
        pre_order_time=None,
        phone="9876543210",
        reservation_id=None,
        restaurant_id="r1",
        user_id="u1",
    ):
        item = OrderItem(
            menu_item_id="f1",
            name="Fries",
            quantity=2,
            unit_price=90.0,
            line_total=180.0,
            fingerprint="f1_default_none",
        )
        return Order(
            order_id=order_id,
            restaurant_id=restaurant_id,
            items=(item,),
            order_type=order_type,
            payment_method="cash",
            customer=CustomerInfo(first_name="Asha", last_name="Rao", phone=phone),
            status=status,
            created_at=created_at,
            subtotal=180.0,
            delivery_fee=0.0,
            tax=0.0,
            discount=0.0,
            total=180.0,
            admin_estimated_time=admin_estimated_time,
            pre_order_time=pre_order_time,
            reservation_id=reservation_id,
            user_id=user_id,
        )

    return _make


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def controller(store, dispatcher, clock):
    return OrderController(store, dispatcher, clock=clock)
