import threading
import time
from datetime import timedelta
from types import SimpleNamespace

import pytest
from twilio.base.exceptions import TwilioRestException

from conftest import T0, RecordingTransport
from notifications import (
    NotificationDeliveryFailed,
    NotificationDispatcher,
    NotificationType,
    TwilioTransport,
    build_notification,
    format_phone_number,
    notification_for_transition,
)
from order import OrderType
from order_state import OrderEvent, OrderStatus


# ============================================================================
# PHONE NUMBERS
# ============================================================================

@pytest.mark.parametrize("raw,expected", [
    ("9876543210", "919876543210"),
    (" 9876543210 ", "919876543210"),
    ("919876543210", "919876543210"),
    ("+91 98765-43210", "919876543210"),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "449876543210", "98765abcde", None])
def test_format_phone_number_rejects_other_shapes(raw):
    with pytest.raises(NotificationDeliveryFailed):
        format_phone_number(raw)


def test_format_phone_number_other_country():
    assert format_phone_number("2025550123", country_code="1") == "12025550123"


# ============================================================================
# TEMPLATES
# ============================================================================

def test_cancel_message_carries_reason(make_order):
    order = make_order(status=OrderStatus.CANCELLED)

    with_reason = build_notification(NotificationType.ORDER_CANCELED, order, reason="no confirmation")
    without_reason = build_notification(NotificationType.ORDER_CANCELED, order)

    assert "Reason: no confirmation" in with_reason.body
    assert "Reason: Not specified" in without_reason.body
    assert "Hi Asha Rao" in with_reason.body


def test_payment_message_carries_amount(make_order):
    notification = build_notification(NotificationType.PAYMENT_SUCCESS, make_order(status=OrderStatus.DELIVERED))

    assert "₹180.00" in notification.body
    assert "#ORD1" in notification.body


def test_received_message_uses_brand_and_restaurant(make_order):
    notification = build_notification(
        NotificationType.ORDER_CONFIRMED,
        make_order(),
        restaurant_name="Spice Route",
        brand_name="Dineezy",
    )

    assert "Dineezy Order Confirmed" in notification.body
    assert "*Spice Route*" in notification.body
    assert "20 mins" in notification.body


def test_eta_message_for_pre_order_shows_clock_time(make_order):
    order = make_order(
        status=OrderStatus.CONFIRMED,
        order_type=OrderType.PRE_ORDER,
        pre_order_time=T0 + timedelta(hours=2, minutes=15),
    )

    notification = build_notification(NotificationType.ORDER_ETA_UPDATED, order)

    assert "is now 14:15" in notification.body
    assert notification.notification_id == "ORD1:order_eta_updated:14:15"


def test_eta_messages_for_different_estimates_are_distinct(make_order):
    first = build_notification(NotificationType.ORDER_ETA_UPDATED, make_order(admin_estimated_time=20))
    second = build_notification(NotificationType.ORDER_ETA_UPDATED, make_order(admin_estimated_time=30))

    assert first.notification_id != second.notification_id


def test_no_phone_means_no_message(make_order):
    assert build_notification(NotificationType.ORDER_READY, make_order(phone=None)) is None


@pytest.mark.parametrize("event,expected", [
    (OrderEvent.ACCEPT, NotificationType.ORDER_ACCEPTED),
    (OrderEvent.START_PREPARING, NotificationType.ORDER_PREPARING),
    (OrderEvent.MARK_READY, NotificationType.ORDER_READY),
    (OrderEvent.COMPLETE, NotificationType.PAYMENT_SUCCESS),
    (OrderEvent.CANCEL, NotificationType.ORDER_CANCELED),
])
def test_transition_messages(make_order, event, expected):
    assert notification_for_transition(event, make_order()).notification_type == expected


def test_confirm_receipt_is_silent(make_order):
    assert notification_for_transition(OrderEvent.CONFIRM_RECEIPT, make_order()) is None


# ============================================================================
# DISPATCHER
# ============================================================================

def test_dispatch_sends_once(make_order):
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(transport)
    notification = build_notification(NotificationType.ORDER_READY, make_order())

    assert dispatcher.dispatch(notification)
    assert not dispatcher.dispatch(notification)
    assert dispatcher.drain(timeout=5)
    dispatcher.shutdown()

    assert transport.sent == [("919876543210", notification.body)]
    assert dispatcher.get_stats()["sent"] == 1
    assert dispatcher.get_stats()["skipped"] == 1


def test_failed_delivery_is_attempted_once_and_swallowed(make_order):
    transport = RecordingTransport(fail=True)
    dispatcher = NotificationDispatcher(transport)

    assert dispatcher.dispatch(build_notification(NotificationType.ORDER_READY, make_order()))
    assert dispatcher.drain(timeout=5)
    dispatcher.shutdown()

    assert transport.attempts == 1
    assert dispatcher.failed_count == 1
    assert dispatcher.sent_count == 0


def test_invalid_phone_fails_without_reaching_transport(make_order):
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(transport)

    dispatcher.dispatch(build_notification(NotificationType.ORDER_READY, make_order(phone="12345")))
    dispatcher.drain(timeout=5)
    dispatcher.shutdown()

    assert transport.attempts == 0
    assert dispatcher.failed_count == 1


def test_slow_delivery_does_not_block_caller(make_order):
    release = threading.Event()

    class SlowTransport:
        def send(self, to, body):
            release.wait(5)
            return "SM-slow"

    dispatcher = NotificationDispatcher(SlowTransport())

    started = time.monotonic()
    dispatcher.dispatch(build_notification(NotificationType.ORDER_READY, make_order()))
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    assert dispatcher.get_stats()["pending"] == 1

    release.set()
    assert dispatcher.drain(timeout=5)
    dispatcher.shutdown()
    assert dispatcher.sent_count == 1


def test_without_transport_nothing_is_sent(make_order):
    dispatcher = NotificationDispatcher(None)

    assert not dispatcher.dispatch(build_notification(NotificationType.ORDER_READY, make_order()))
    assert not dispatcher.dispatch(None)
    dispatcher.shutdown()


# ============================================================================
# TWILIO TRANSPORT
# ============================================================================

class _FakeMessages:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(sid="SM123")


def test_whatsapp_addresses():
    client = SimpleNamespace(messages=_FakeMessages())
    transport = TwilioTransport("AC1", "token", "+14155238886", channel="whatsapp", client=client)

    assert transport.send("919876543210", "hello") == "SM123"
    assert client.messages.calls == [{
        "body": "hello",
        "from_": "whatsapp:+14155238886",
        "to": "whatsapp:+919876543210",
    }]


def test_sms_addresses():
    client = SimpleNamespace(messages=_FakeMessages())
    transport = TwilioTransport("AC1", "token", "+14155238886", channel="sms", client=client)

    transport.send("919876543210", "hello")

    assert client.messages.calls[0]["from_"] == "+14155238886"
    assert client.messages.calls[0]["to"] == "+919876543210"


def test_provider_error_becomes_delivery_failure():
    error = TwilioRestException(400, "https://api.twilio.com/Messages", msg="invalid number", code=21211)
    client = SimpleNamespace(messages=_FakeMessages(error=error))
    transport = TwilioTransport("AC1", "token", "+14155238886", channel="sms", client=client)

    with pytest.raises(NotificationDeliveryFailed):
        transport.send("919876543210", "hello")
