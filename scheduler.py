"""
Auto-Progression Scheduler
==========================
Time-driven advancement of orders without operator input.

tick() is pure: (now, visible orders) -> events to fire. The
AutoProgressionScheduler wraps it in a background loop with an injected
clock and hands each event to the order controller, which re-reads the
order, persists and notifies. A rejected event means "not yet due" and is
skipped silently.
"""

import asyncio
import logging
import math
from typing import Dict, List, Optional, Callable, Iterable, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass

from prometheus_client import Counter, Histogram

from order import Order, DEFAULT_ESTIMATED_MINUTES
from order_state import OrderStatus, OrderEvent


logger = logging.getLogger(__name__)


AUTO_CANCEL_REASON = "no confirmation"
DEFAULT_INTERVAL_SECONDS = 60.0


# ============================================================================
# METRICS
# ============================================================================

scheduler_ticks = Counter(
    'scheduler_ticks_total',
    'Auto-progression ticks'
)
scheduler_events = Counter(
    'scheduler_events_total',
    'Auto-progression events by outcome',
    ['event', 'outcome']
)
tick_duration = Histogram(
    'scheduler_tick_duration_seconds',
    'Time spent applying one tick'
)


@dataclass(frozen=True)
class ProgressionThresholds:
    """Rule thresholds in minutes since order creation."""
    pending_timeout_minutes: int = 30
    confirm_grace_minutes: int = 2
    ready_fraction: float = 0.75
    completion_buffer_minutes: int = 5
    default_estimated_minutes: int = DEFAULT_ESTIMATED_MINUTES

    @classmethod
    def from_config(cls, scheduler_config) -> "ProgressionThresholds":
        return cls(
            pending_timeout_minutes=scheduler_config.pending_timeout_minutes,
            confirm_grace_minutes=scheduler_config.confirm_grace_minutes,
            ready_fraction=scheduler_config.ready_fraction,
            completion_buffer_minutes=scheduler_config.completion_buffer_minutes,
            default_estimated_minutes=scheduler_config.default_estimated_minutes,
        )


DEFAULT_THRESHOLDS = ProgressionThresholds()


# ============================================================================
# RULES (Pure)
# ============================================================================

def due_event(
    order: Order,
    now: datetime,
    thresholds: ProgressionThresholds = DEFAULT_THRESHOLDS
) -> Optional[OrderEvent]:
    """
    First matching rule for one order, or None.

    1. pending   and elapsed >= pending timeout           -> cancel
    2. confirmed and elapsed >= confirm grace             -> start preparing
    3. preparing and elapsed >= floor(fraction * estimate) -> mark ready
    4. ready     and elapsed >= estimate + buffer          -> complete
    """
    elapsed = order.elapsed_minutes(now)
    estimated = order.estimated_minutes(thresholds.default_estimated_minutes)

    if order.status == OrderStatus.PENDING:
        if elapsed >= thresholds.pending_timeout_minutes:
            return OrderEvent.CANCEL

    elif order.status == OrderStatus.CONFIRMED:
        if elapsed >= thresholds.confirm_grace_minutes:
            return OrderEvent.START_PREPARING

    elif order.status == OrderStatus.PREPARING:
        if elapsed >= math.floor(thresholds.ready_fraction * estimated):
            return OrderEvent.MARK_READY

    elif order.status == OrderStatus.READY:
        if elapsed >= estimated + thresholds.completion_buffer_minutes:
            return OrderEvent.COMPLETE

    return None


def tick(
    now: datetime,
    orders: Iterable[Order],
    thresholds: ProgressionThresholds = DEFAULT_THRESHOLDS
) -> List[Tuple[str, OrderEvent]]:
    """
    Events due at `now` for the visible orders, at most one per order.

    No side effects: the caller persists and notifies. Running it twice on
    an unchanged set returns the same list.
    """
    latest: Dict[str, Order] = {}
    for order in orders:
        latest[order.order_id] = order

    fired = []
    for order_id, order in latest.items():
        event = due_event(order, now, thresholds)
        if event is not None:
            fired.append((order_id, event))

    return fired


def cancel_stale_pending(
    now: datetime,
    orders: Iterable[Order],
    timeout_minutes: int = DEFAULT_THRESHOLDS.pending_timeout_minutes
) -> List[Tuple[str, OrderEvent]]:
    """
    Pending orders older than the timeout, as cancel events.

    Orders placed as part of a table reservation are left alone.
    """
    return [
        (order.order_id, OrderEvent.CANCEL)
        for order in orders
        if order.status == OrderStatus.PENDING
        and order.reservation_id is None
        and order.elapsed_minutes(now) >= timeout_minutes
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# BACKGROUND SCHEDULER
# ============================================================================

class AutoProgressionScheduler:
    """
    Periodic driver for tick().

    Holds the latest full snapshot delivered by the store subscription and
    replaces it wholesale on every delivery. The timer is independent of the
    subscription, so a tick may see a snapshot one delivery stale.
    """

    def __init__(
        self,
        controller,
        store,
        order_filter,
        thresholds: ProgressionThresholds = DEFAULT_THRESHOLDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.controller = controller
        self.store = store
        self.order_filter = order_filter
        self.thresholds = thresholds
        self.interval_seconds = interval_seconds
        self.clock = clock

        self._orders: List[Order] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._in_flight = set()

        self._task: Optional[asyncio.Task] = None
        self.is_running = False
        self.tick_count = 0

        logger.info(f"AutoProgressionScheduler initialized (interval: {interval_seconds}s)")

    @classmethod
    def from_config(cls, controller, store, order_filter, scheduler_config, **kwargs) -> "AutoProgressionScheduler":
        return cls(
            controller,
            store,
            order_filter,
            thresholds=ProgressionThresholds.from_config(scheduler_config),
            interval_seconds=scheduler_config.interval_seconds,
            **kwargs
        )

    @property
    def visible_orders(self) -> List[Order]:
        return list(self._orders)

    def _on_snapshot(self, orders: List[Order]):
        self._orders = list(orders)

    def attach(self):
        """Subscribe to the store (idempotent)."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe_orders(self.order_filter, self._on_snapshot)

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def start(self):
        """Subscribe and start the timer loop."""
        if self.is_running:
            return

        self.attach()
        self.is_running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Auto-progression started")

    async def stop(self):
        if not self.is_running:
            return

        self.is_running = False

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self.detach()
        logger.info("Auto-progression stopped")

    async def _loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
        except asyncio.CancelledError:
            pass

    async def run_once(self, now: Optional[datetime] = None) -> List[Tuple[str, OrderEvent]]:
        """
        One tick against the current snapshot.

        Returns the events that were applied. Failures are logged per order
        and never stop the rest of the tick.
        """
        now = now or self.clock()
        scheduler_ticks.inc()
        self.tick_count += 1

        orders = list(self._orders)
        # Status each rule was decided from; the last entry per id wins, as in tick()
        seen_status = {order.order_id: order.status for order in orders}

        applied = []
        with tick_duration.time():
            for order_id, event in tick(now, orders, self.thresholds):
                if order_id in self._in_flight:
                    continue

                self._in_flight.add(order_id)
                try:
                    result = await self.controller.apply_auto_event(
                        order_id,
                        event,
                        now=now,
                        expected_status=seen_status[order_id]
                    )
                except Exception as e:
                    scheduler_events.labels(event=event.value, outcome='error').inc()
                    logger.error(f"Auto-progression failed for {order_id} ({event.value}): {str(e)}")
                    continue
                finally:
                    self._in_flight.discard(order_id)

                if result is None:
                    scheduler_events.labels(event=event.value, outcome='skipped').inc()
                    continue

                scheduler_events.labels(event=event.value, outcome='applied').inc()
                applied.append((order_id, event))

        if applied:
            logger.info(f"Auto-progression tick applied {len(applied)} event(s)")

        return applied
