"""
Notifications Module
====================
Customer notifications for order status changes.

Delivery is fire-and-forget on a small worker pool:
- The caller is never blocked and never sees a delivery failure
- Exactly one attempt per notification (no retry queue)
- Repeated notification ids are dropped (one message per transition)
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future, wait
from typing import Dict, Any, Optional, Set
from dataclasses import dataclass
from enum import Enum

from prometheus_client import Counter, Gauge
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from order import Order, OrderType
from order_state import OrderEvent


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_COUNTRY_CODE = "91"
DEFAULT_BRAND_NAME = "Dineezy"
DEFAULT_MAX_WORKERS = 4
SENT_ID_MEMORY = 1000


# ============================================================================
# METRICS
# ============================================================================

notifications_sent = Counter(
    'notifications_total',
    'Notification delivery outcomes',
    ['type', 'outcome']
)
notifications_in_flight = Gauge(
    'notifications_in_flight',
    'Notifications submitted but not finished'
)


class NotificationDeliveryFailed(Exception):
    """A notification could not be delivered. Logged, never propagated."""
    pass


# ============================================================================
# TEMPLATES
# ============================================================================

class NotificationType(str, Enum):
    ORDER_CONFIRMED = "order_confirmed"      # order received at checkout
    ORDER_ACCEPTED = "order_accepted"
    ORDER_PREPARING = "order_preparing"
    ORDER_READY = "order_ready"
    PAYMENT_SUCCESS = "payment_success"
    ORDER_CANCELED = "order_canceled"
    ORDER_ETA_UPDATED = "order_eta_updated"


TEMPLATES: Dict[NotificationType, str] = {
    NotificationType.ORDER_CONFIRMED: (
        "*{brand} Order Confirmed!*\n\n"
        "Hi {name}, your order *#{order_id}* at *{restaurant}* has been received successfully.\n"
        "Estimated Preparation Time: {time} mins\n\n"
        "Once the restaurant confirms your order, we'll notify you.\n\n"
        "Thank you for ordering with {brand}!"
    ),
    NotificationType.ORDER_ACCEPTED: (
        "*Great news, {name}!*\n\n"
        "Your order *#{order_id}* has been accepted by *{restaurant}*.\n"
        "Estimated Time: {time} minutes\n\n"
        "We'll start preparing your food shortly!"
    ),
    NotificationType.ORDER_PREPARING: (
        "*Cooking in Progress!*\n\n"
        "Hi {name}, our chef has started preparing your order *#{order_id}*.\n"
        "Your meal will be ready soon!\n\n"
        "Estimated time: {time} minutes"
    ),
    NotificationType.ORDER_READY: (
        "*Order Ready!*\n\n"
        "Hi {name}, your order *#{order_id}* is ready.\n"
        "Please collect it from the counter or our waiter will serve it shortly."
    ),
    NotificationType.PAYMENT_SUCCESS: (
        "*Payment Successful!*\n\n"
        "We've received ₹{amount} for your order *#{order_id}*.\n"
        "Thank you for dining with us, {name}!"
    ),
    NotificationType.ORDER_CANCELED: (
        "*Order Canceled*\n\n"
        "Hi {name}, your order *#{order_id}* has been canceled.\n"
        "Reason: {reason}\n\n"
        "If payment was made, it will be refunded shortly."
    ),
    NotificationType.ORDER_ETA_UPDATED: (
        "*Updated Time*\n\n"
        "Hi {name}, the estimated time for your order *#{order_id}* "
        "at *{restaurant}* is now {time}."
    ),
}

# Which message a successful transition sends (None: no message)
EVENT_NOTIFICATIONS: Dict[OrderEvent, Optional[NotificationType]] = {
    OrderEvent.ACCEPT: NotificationType.ORDER_ACCEPTED,
    OrderEvent.START_PREPARING: NotificationType.ORDER_PREPARING,
    OrderEvent.MARK_READY: NotificationType.ORDER_READY,
    OrderEvent.COMPLETE: NotificationType.PAYMENT_SUCCESS,
    OrderEvent.CANCEL: NotificationType.ORDER_CANCELED,
    OrderEvent.CONFIRM_RECEIPT: None,
}


@dataclass(frozen=True)
class Notification:
    """A rendered message ready for a transport."""
    notification_id: str
    notification_type: NotificationType
    to: str
    body: str
    order_id: str


def format_phone_number(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a customer phone number to country code + national number.

    10 digits get the country code prefixed; 12 digits already starting with
    the country code are kept. A leading + and spaces/dashes are ignored.

    Raises:
        NotificationDeliveryFailed: any other shape
    """
    if not phone:
        raise NotificationDeliveryFailed("No phone number")

    digits = phone.strip().lstrip("+").replace(" ", "").replace("-", "")
    if not digits.isdigit():
        raise NotificationDeliveryFailed(f"Invalid phone number format: {phone}")

    if len(digits) == 10:
        return f"{country_code}{digits}"
    if len(digits) == 10 + len(country_code) and digits.startswith(country_code):
        return digits

    raise NotificationDeliveryFailed(f"Invalid phone number format: {phone}")


def _eta_text(order: Order, default_minutes: int) -> str:
    if order.order_type == OrderType.PRE_ORDER and order.pre_order_time:
        return order.pre_order_time.strftime("%H:%M")
    return f"{order.estimated_minutes(default_minutes)} minutes"


def build_notification(
    notification_type: NotificationType,
    order: Order,
    restaurant_name: Optional[str] = None,
    brand_name: str = DEFAULT_BRAND_NAME,
    reason: Optional[str] = None,
    default_minutes: int = 20
) -> Optional[Notification]:
    """
    Render a message for an order. Pure.

    Returns None when the order has no contact number.
    """
    if not order.customer.phone:
        return None

    notification_type = NotificationType(notification_type)
    data = {
        "brand": brand_name,
        "name": order.customer.display_name,
        "order_id": order.order_id,
        "restaurant": restaurant_name or order.restaurant_id,
        "time": order.estimated_minutes(default_minutes),
        "amount": f"{order.total:.2f}",
        "reason": reason or order.cancel_reason or "Not specified",
    }

    key = notification_type.value
    if notification_type == NotificationType.ORDER_ETA_UPDATED:
        data["time"] = _eta_text(order, default_minutes)
        key = f"{key}:{data['time']}"

    return Notification(
        notification_id=f"{order.order_id}:{key}",
        notification_type=notification_type,
        to=order.customer.phone,
        body=TEMPLATES[notification_type].format(**data),
        order_id=order.order_id,
    )


def notification_for_transition(
    event: OrderEvent,
    order: Order,
    **kwargs
) -> Optional[Notification]:
    """Message for an order that just went through event (None if silent)."""
    notification_type = EVENT_NOTIFICATIONS[OrderEvent(event)]
    if notification_type is None:
        return None
    return build_notification(notification_type, order, **kwargs)


# ============================================================================
# TRANSPORTS
# ============================================================================

class TwilioTransport:
    """Twilio SMS or WhatsApp sender (blocking; runs on dispatcher workers)."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        channel: str = "whatsapp",
        client: Optional[Client] = None
    ):
        if channel not in ("sms", "whatsapp"):
            raise ValueError(f"Unknown channel: {channel}")

        self.client = client or Client(account_sid, auth_token)
        self.from_number = from_number
        self.channel = channel

        logger.info(f"Twilio transport initialized (channel: {channel}, from: {from_number})")

    def _address(self, number: str) -> str:
        number = number if number.startswith("+") else f"+{number}"
        return f"whatsapp:{number}" if self.channel == "whatsapp" else number

    def send(self, to: str, body: str) -> str:
        """
        Returns:
            Provider message SID

        Raises:
            NotificationDeliveryFailed: provider rejected the message
        """
        try:
            message = self.client.messages.create(
                body=body,
                from_=self._address(self.from_number),
                to=self._address(to)
            )
        except TwilioRestException as e:
            raise NotificationDeliveryFailed(f"Twilio error {e.code}: {e.msg}") from e

        return message.sid


# ============================================================================
# DISPATCHER
# ============================================================================

class NotificationDispatcher:
    """
    Fire-and-forget notification sender.

    dispatch() returns immediately; the send happens on a worker thread and
    its outcome is only logged. Without a transport, notifications are
    logged and dropped.
    """

    def __init__(
        self,
        transport=None,
        country_code: str = DEFAULT_COUNTRY_CODE,
        brand_name: str = DEFAULT_BRAND_NAME,
        max_workers: int = DEFAULT_MAX_WORKERS
    ):
        self.transport = transport
        self.country_code = country_code
        self.brand_name = brand_name

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="notify"
        )
        self._pending: Set[Future] = set()
        self._sent_ids: Set[str] = set()
        self._lock = threading.Lock()

        self.sent_count = 0
        self.failed_count = 0
        self.skipped_count = 0

        logger.info(
            f"NotificationDispatcher initialized "
            f"(transport: {type(transport).__name__ if transport else 'none'})"
        )

    def dispatch(self, notification: Optional[Notification]) -> bool:
        """
        Submit a notification. Never raises, never blocks.

        Returns:
            True if submitted, False if skipped (none, duplicate, no transport)
        """
        if notification is None:
            return False

        with self._lock:
            if notification.notification_id in self._sent_ids:
                logger.debug(f"Duplicate notification ignored: {notification.notification_id}")
                self.skipped_count += 1
                return False

            self._remember(notification.notification_id)

        if self.transport is None:
            logger.info(
                f"Notifications disabled, dropping {notification.notification_type.value} "
                f"for order {notification.order_id}"
            )
            notifications_sent.labels(type=notification.notification_type.value, outcome='disabled').inc()
            self.skipped_count += 1
            return False

        notifications_in_flight.inc()
        try:
            future = self._executor.submit(self._run, notification)
        except RuntimeError as e:
            # Executor already shut down
            notifications_in_flight.dec()
            logger.error(f"Notification not submitted: {str(e)}")
            return False

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return True

    def _remember(self, notification_id: str):
        self._sent_ids.add(notification_id)
        if len(self._sent_ids) > SENT_ID_MEMORY:
            for old_id in list(self._sent_ids)[:SENT_ID_MEMORY // 5]:
                self._sent_ids.discard(old_id)

    def _send(self, notification: Notification) -> str:
        to = format_phone_number(notification.to, self.country_code)
        try:
            return self.transport.send(to, notification.body)
        except NotificationDeliveryFailed:
            raise
        except Exception as e:
            raise NotificationDeliveryFailed(str(e)) from e

    def _run(self, notification: Notification):
        """Worker body: one attempt, outcome logged, nothing raised."""
        kind = notification.notification_type.value
        try:
            sid = self._send(notification)
        except NotificationDeliveryFailed as e:
            with self._lock:
                self.failed_count += 1
            notifications_sent.labels(type=kind, outcome='failed').inc()
            logger.error(f"Notification failed: {kind} for order {notification.order_id}: {str(e)}")
            return
        finally:
            notifications_in_flight.dec()

        with self._lock:
            self.sent_count += 1
        notifications_sent.labels(type=kind, outcome='sent').inc()
        logger.info(f"Notification sent: {kind} for order {notification.order_id} (SID: {sid})")

    def _on_done(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for submitted notifications. Returns True if all finished."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True):
        self._executor.shutdown(wait=wait_for_pending)
        logger.info("NotificationDispatcher shut down")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            pending = len(self._pending)
        return {
            "pending": pending,
            "sent": self.sent_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "transport": type(self.transport).__name__ if self.transport else None,
        }


def create_dispatcher(notification_config) -> NotificationDispatcher:
    """Dispatcher from NotificationConfig (no transport when disabled)."""
    transport = None
    if notification_config.enabled:
        transport = TwilioTransport(
            notification_config.account_sid,
            notification_config.auth_token,
            notification_config.from_number,
            channel=notification_config.channel,
        )

    return NotificationDispatcher(
        transport=transport,
        country_code=notification_config.country_code,
        brand_name=notification_config.brand_name,
        max_workers=notification_config.max_workers,
    )
