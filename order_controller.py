"""
Order Controller
================
Central orchestration for the order lifecycle.

Responsibilities:
- Fetch the order fresh, run the state machine, persist with a status guard
- Send the customer notification after a successful write
- Apply scheduler events, treating rejections as "not yet due"
- Checkout: cart -> pending order

The controller holds no order state of its own; operator requests and the
scheduler may call it concurrently for the same order.
"""

import structlog
from typing import Optional, Dict, List, Callable
from datetime import datetime, timezone

from prometheus_client import Counter

from cart import CartLedger
from db import OrderStore, OrderFilter, StaleSnapshot, OrderNotFound
from notifications import (
    NotificationDispatcher,
    NotificationType,
    build_notification,
    notification_for_transition,
)
from order import (
    Order,
    CustomerInfo,
    OrderType,
    DEFAULT_ESTIMATED_MINUTES,
    build_order,
    apply_estimated_time,
)
from order_state import (
    OrderEvent,
    OrderStatus,
    IllegalTransition,
    ETA_ANNOUNCED_STATUSES,
    apply_event,
)
from scheduler import AUTO_CANCEL_REASON, cancel_stale_pending


# Structured logging
logger = structlog.get_logger(__name__)


MANUAL_CANCEL_REASON = "Order cancelled by restaurant"
ETA_WRITE_ATTEMPTS = 2

SOURCE_MANUAL = "manual"
SOURCE_AUTO = "auto"


order_transitions = Counter(
    'order_transitions_total',
    'Persisted order status transitions',
    ['from_status', 'to_status', 'source']
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderController:
    """
    Order lifecycle orchestration.

    This class:
    - Applies manual and automatic events through the state machine
    - Guards every write with the status it was computed from
    - Fires notifications (never waits for them)

    This class does NOT:
    - Decide when automatic events are due (see scheduler.tick)
    - Price cart lines (see pricing)
    - Talk to a notification provider directly
    """

    def __init__(
        self,
        store: OrderStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
        default_estimated_minutes: int = DEFAULT_ESTIMATED_MINUTES,
        pending_timeout_minutes: int = 30,
        tax_rate: float = 0.0,
        restaurant_names: Optional[Dict[str, str]] = None
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.default_estimated_minutes = default_estimated_minutes
        self.pending_timeout_minutes = pending_timeout_minutes
        self.tax_rate = tax_rate
        self.restaurant_names = restaurant_names or {}

    @classmethod
    def from_config(cls, store, dispatcher, config, **kwargs) -> "OrderController":
        return cls(
            store,
            dispatcher,
            default_estimated_minutes=config.scheduler.default_estimated_minutes,
            pending_timeout_minutes=config.scheduler.pending_timeout_minutes,
            tax_rate=config.cart.tax_rate,
            **kwargs
        )

    # ========================================================================
    # READS
    # ========================================================================

    async def get_order(self, order_id: str) -> Order:
        return await self.store.fetch_order(order_id)

    async def list_orders(self, order_filter: Optional[OrderFilter] = None) -> List[Order]:
        return await self.store.list_orders(order_filter)

    # ========================================================================
    # STATUS EVENTS
    # ========================================================================

    async def apply_event(
        self,
        order_id: str,
        event: OrderEvent,
        reason: Optional[str] = None,
        source: str = SOURCE_MANUAL,
        now: Optional[datetime] = None,
        expected_status: Optional[OrderStatus] = None
    ) -> Order:
        """
        Apply an event to the stored order.

        expected_status is the status the event was decided from; when the
        stored order has moved on, nothing is written.

        Raises:
            OrderNotFound: unknown order id
            StaleSnapshot: stored status differs from expected_status
            IllegalTransition: event not valid from the stored status, or the
                status moved on between read and write
        """
        event = OrderEvent(event)
        now = now or self.clock()

        order = await self.store.fetch_order(order_id)
        if expected_status is not None and order.status != OrderStatus(expected_status):
            raise StaleSnapshot(order_id, expected_status, order.status)

        new_status = apply_event(order, event)

        cancel_reason = None
        if event == OrderEvent.CANCEL:
            cancel_reason = reason or MANUAL_CANCEL_REASON

        try:
            updated = await self.store.update_order_status(
                order_id,
                new_status,
                expected_status=order.status,
                cancel_reason=cancel_reason,
                updated_at=now
            )
        except StaleSnapshot as e:
            logger.warning(
                "order_write_stale",
                order_id=order_id,
                order_event=event.value,
                expected=order.status.value,
                actual=e.actual.value if e.actual else None,
                source=source
            )
            raise IllegalTransition(e.actual or order.status, event, order_id) from e

        if event == OrderEvent.ACCEPT and updated.admin_estimated_time is None:
            updated = await self._set_default_estimate(updated, now)

        order_transitions.labels(
            from_status=order.status.value,
            to_status=new_status.value,
            source=source
        ).inc()

        logger.info(
            "order_transitioned",
            order_id=order_id,
            order_event=event.value,
            from_status=order.status.value,
            to_status=new_status.value,
            source=source,
            reason=cancel_reason
        )

        self._notify(notification_for_transition(
            event,
            updated,
            **self._notification_context(updated, reason=cancel_reason)
        ))

        return updated

    async def _set_default_estimate(self, order: Order, now: datetime) -> Order:
        try:
            return await self.store.set_estimated_time(
                order.order_id,
                self.default_estimated_minutes,
                expected_status=OrderStatus.CONFIRMED,
                updated_at=now
            )
        except StaleSnapshot:
            # Already moved past confirmed; the default estimate still applies on read
            logger.debug("default_estimate_skipped", order_id=order.order_id)
            return order

    async def apply_auto_event(
        self,
        order_id: str,
        event: OrderEvent,
        now: Optional[datetime] = None,
        expected_status: Optional[OrderStatus] = None
    ) -> Optional[Order]:
        """
        Apply a scheduler event. Rejections are skipped, never raised.

        expected_status is the status the rule saw in its snapshot. If the
        order has since moved (say, accepted by the operator) the event is
        dropped even when it would still be legal from the new status.

        Returns:
            Updated order, or None if the event was not applied
        """
        event = OrderEvent(event)
        reason = AUTO_CANCEL_REASON if event == OrderEvent.CANCEL else None

        try:
            return await self.apply_event(
                order_id,
                event,
                reason=reason,
                source=SOURCE_AUTO,
                now=now,
                expected_status=expected_status
            )
        except (IllegalTransition, StaleSnapshot, OrderNotFound) as e:
            logger.debug("auto_event_skipped", order_id=order_id, order_event=event.value, error=str(e))
            return None

    async def cancel_stale_pending(
        self,
        now: Optional[datetime] = None,
        restaurant_id: Optional[str] = None
    ) -> List[Order]:
        """
        Cancel every pending order past the timeout (reservation orders excepted).

        Returns:
            Orders that were cancelled
        """
        now = now or self.clock()
        pending = await self.store.list_orders(
            OrderFilter(restaurant_id=restaurant_id, statuses=frozenset({OrderStatus.PENDING}))
        )

        cancelled = []
        for order_id, event in cancel_stale_pending(now, pending, self.pending_timeout_minutes):
            updated = await self.apply_auto_event(
                order_id, event, now=now, expected_status=OrderStatus.PENDING
            )
            if updated is not None:
                cancelled.append(updated)

        if cancelled:
            logger.info("stale_orders_cancelled", count=len(cancelled), restaurant_id=restaurant_id)

        return cancelled

    # ========================================================================
    # ESTIMATED TIME
    # ========================================================================

    async def set_estimated_time(
        self,
        order_id: str,
        minutes: int,
        now: Optional[datetime] = None
    ) -> Order:
        """
        Update the operator's time estimate (not a status change).

        Announced to the customer only while confirmed or preparing.

        Raises:
            OrderNotFound: unknown order id
            ValueError: invalid minutes
            IllegalTransition: order is ready or terminal
        """
        now = now or self.clock()

        for attempt in range(ETA_WRITE_ATTEMPTS):
            order = await self.store.fetch_order(order_id)
            changed = apply_estimated_time(order, minutes, now)

            try:
                if order.order_type == OrderType.PRE_ORDER:
                    updated = await self.store.set_pre_order_time(
                        order_id,
                        changed.pre_order_time,
                        expected_status=order.status,
                        updated_at=now
                    )
                else:
                    updated = await self.store.set_estimated_time(
                        order_id,
                        minutes,
                        expected_status=order.status,
                        updated_at=now
                    )
                break
            except StaleSnapshot as e:
                logger.warning("estimate_write_stale", order_id=order_id, attempt=attempt + 1)
                if attempt + 1 >= ETA_WRITE_ATTEMPTS:
                    raise IllegalTransition(e.actual or order.status, "set_estimated_time", order_id) from e

        logger.info(
            "order_estimate_updated",
            order_id=order_id,
            minutes=minutes,
            status=updated.status.value,
            pre_order_time=updated.pre_order_time.isoformat() if updated.pre_order_time else None
        )

        if updated.status in ETA_ANNOUNCED_STATUSES:
            self._notify(build_notification(
                NotificationType.ORDER_ETA_UPDATED,
                updated,
                **self._notification_context(updated)
            ))

        return updated

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def checkout(
        self,
        cart: CartLedger,
        customer: CustomerInfo,
        order_type: OrderType,
        payment_method: str,
        delivery_fee: float = 0.0,
        discount: float = 0.0,
        pre_order_time: Optional[datetime] = None,
        special_instructions: str = "",
        user_id: Optional[str] = None,
        guest_session_id: Optional[str] = None,
        reservation_id: Optional[str] = None
    ) -> Order:
        """
        Freeze the cart into a pending order, store it, clear the cart.

        Raises:
            CheckoutError: empty cart or incomplete checkout details
        """
        order = build_order(
            cart.snapshot(),
            customer,
            order_type,
            payment_method,
            now=self.clock(),
            delivery_fee=delivery_fee,
            tax_rate=self.tax_rate,
            discount=discount,
            pre_order_time=pre_order_time,
            special_instructions=special_instructions,
            user_id=user_id,
            guest_session_id=guest_session_id,
            reservation_id=reservation_id,
        )

        await self.store.insert_order(order)
        cart.clear()

        logger.info(
            "order_placed",
            order_id=order.order_id,
            restaurant_id=order.restaurant_id,
            order_type=order.order_type.value,
            total=order.total,
            guest=order.is_guest
        )

        self._notify(build_notification(
            NotificationType.ORDER_CONFIRMED,
            order,
            **self._notification_context(order)
        ))

        return order

    # ========================================================================
    # NOTIFICATIONS
    # ========================================================================

    def _notification_context(self, order: Order, reason: Optional[str] = None) -> dict:
        context = {
            "restaurant_name": self.restaurant_names.get(order.restaurant_id),
            "reason": reason,
            "default_minutes": self.default_estimated_minutes,
        }
        if self.dispatcher is not None:
            context["brand_name"] = self.dispatcher.brand_name
        return context

    def _notify(self, notification):
        if self.dispatcher is None or notification is None:
            return

        try:
            self.dispatcher.dispatch(notification)
        except Exception as e:
            logger.error(
                "notification_dispatch_failed",
                order_id=notification.order_id,
                error=str(e)
            )
