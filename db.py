"""
Database Module
===============
Order storage behind one async interface.

- InMemoryOrderStore: process-local store (tests, single-node demos)
- SupabaseOrderStore: Supabase table, sync client run in an executor

Every status write may carry the status it expects to overwrite. A write
whose expectation no longer holds raises StaleSnapshot and changes nothing,
so two writers racing on the same order cannot both win.

Subscriptions push the FULL matching order set on every change, never a diff.
"""

import asyncio
import logging
import threading
from typing import Dict, List, Any, Optional, Callable, FrozenSet, Set
from datetime import datetime, date, time, timedelta, timezone
from dataclasses import dataclass, replace

from prometheus_client import Counter, Histogram
from supabase import create_client, Client

from order import Order
from order_state import OrderStatus, TERMINAL_STATUSES
from pricing import MenuItem


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_TIMEOUT = 5.0  # seconds
MAX_RETRIES = 2
RETRY_DELAY = 0.5  # seconds
DEFAULT_POLL_INTERVAL = 5.0  # seconds


# ============================================================================
# METRICS
# ============================================================================

store_operations = Counter(
    'order_store_operations_total',
    'Order store operations',
    ['operation', 'outcome']
)
store_latency = Histogram(
    'order_store_latency_seconds',
    'Order store operation latency',
    ['operation']
)


# ============================================================================
# ERRORS
# ============================================================================

class OrderNotFound(Exception):
    """No order with the given id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class StaleSnapshot(Exception):
    """The stored status no longer matches what the writer expected."""

    def __init__(self, order_id: str, expected: OrderStatus, actual: Optional[OrderStatus] = None):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        found = f", found {OrderStatus(actual).value}" if actual else ""
        if expected is None:
            message = f"Order {order_id} changed during write{found}"
        else:
            message = f"Order {order_id} is no longer {OrderStatus(expected).value}{found}"
        super().__init__(message)


# ============================================================================
# FILTERS
# ============================================================================

@dataclass(frozen=True)
class OrderFilter:
    """Which orders a query or subscription covers. Unset fields match all."""
    restaurant_id: Optional[str] = None
    user_id: Optional[str] = None
    guest_session_id: Optional[str] = None
    day: Optional[date] = None
    statuses: Optional[FrozenSet[OrderStatus]] = None

    @classmethod
    def for_restaurant_day(cls, restaurant_id: str, day: date) -> "OrderFilter":
        return cls(restaurant_id=restaurant_id, day=day)

    @classmethod
    def for_user(cls, user_id: str) -> "OrderFilter":
        return cls(user_id=user_id)

    @classmethod
    def for_guest(cls, guest_session_id: str, restaurant_id: Optional[str] = None) -> "OrderFilter":
        return cls(restaurant_id=restaurant_id, guest_session_id=guest_session_id)

    @classmethod
    def active(cls, restaurant_id: Optional[str] = None) -> "OrderFilter":
        """Every non-terminal order, optionally for one restaurant."""
        return cls(
            restaurant_id=restaurant_id,
            statuses=frozenset(s for s in OrderStatus if s not in TERMINAL_STATUSES),
        )

    def day_bounds(self):
        """[start, end) of the filtered day in UTC."""
        start = datetime.combine(self.day, time.min, tzinfo=timezone.utc)
        return start, start + timedelta(days=1)

    def matches(self, order: Order) -> bool:
        if self.restaurant_id is not None and order.restaurant_id != self.restaurant_id:
            return False
        if self.user_id is not None and order.user_id != self.user_id:
            return False
        if self.guest_session_id is not None and order.guest_session_id != self.guest_session_id:
            return False
        if self.statuses is not None and order.status not in self.statuses:
            return False
        if self.day is not None:
            start, end = self.day_bounds()
            if not start <= order.created_at < end:
                return False
        return True


OrdersCallback = Callable[[List[Order]], None]


# ============================================================================
# STORE INTERFACE
# ============================================================================

class OrderStore:
    """
    Async order storage.

    Subscribers are plain callables receiving the full list of matching
    orders. A failing subscriber is logged and never breaks the writer.
    """

    def __init__(self):
        self._subscriptions: Dict[int, tuple] = {}
        self._next_subscription = 0
        self._sub_lock = threading.Lock()

    async def fetch_order(self, order_id: str) -> Order:
        raise NotImplementedError

    async def insert_order(self, order: Order) -> Order:
        raise NotImplementedError

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        expected_status: Optional[OrderStatus] = None,
        cancel_reason: Optional[str] = None,
        updated_at: Optional[datetime] = None
    ) -> Order:
        raise NotImplementedError

    async def set_estimated_time(
        self,
        order_id: str,
        minutes: int,
        expected_status: Optional[OrderStatus] = None,
        updated_at: Optional[datetime] = None
    ) -> Order:
        raise NotImplementedError

    async def set_pre_order_time(
        self,
        order_id: str,
        pre_order_time: datetime,
        expected_status: Optional[OrderStatus] = None,
        updated_at: Optional[datetime] = None
    ) -> Order:
        raise NotImplementedError

    async def list_orders(self, order_filter: Optional[OrderFilter] = None) -> List[Order]:
        raise NotImplementedError

    async def fetch_menu_item(self, item_id: str) -> Optional[MenuItem]:
        raise NotImplementedError

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe_orders(
        self,
        order_filter: OrderFilter,
        callback: OrdersCallback
    ) -> Callable[[], None]:
        """
        Subscribe to the matching order set. Returns an unsubscribe function.

        The callback receives the current set right away and again after
        every change that touches a matching order.
        """
        with self._sub_lock:
            token = self._next_subscription
            self._next_subscription += 1
            self._subscriptions[token] = (order_filter, callback)

        self._on_subscribe(token, order_filter, callback)

        def unsubscribe():
            with self._sub_lock:
                self._subscriptions.pop(token, None)
            self._on_unsubscribe(token)

        return unsubscribe

    def _on_subscribe(self, token: int, order_filter: OrderFilter, callback: OrdersCallback):
        pass

    def _on_unsubscribe(self, token: int):
        pass

    def _is_subscribed(self, token: int) -> bool:
        with self._sub_lock:
            return token in self._subscriptions

    def _subscribers(self):
        with self._sub_lock:
            return list(self._subscriptions.values())

    def _deliver(self, callback: OrdersCallback, orders: List[Order]):
        try:
            callback(orders)
        except Exception as e:
            logger.error(f"Order subscriber failed: {str(e)}")


def _guard(order: Order, expected_status: Optional[OrderStatus]):
    if expected_status is not None and order.status != OrderStatus(expected_status):
        store_operations.labels(operation='guarded_write', outcome='stale').inc()
        raise StaleSnapshot(order.order_id, expected_status, order.status)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryOrderStore(OrderStore):
    """Process-local order store."""

    def __init__(self, menu_items: Optional[List[MenuItem]] = None):
        super().__init__()
        self._orders: Dict[str, Order] = {}
        self._menu: Dict[str, MenuItem] = {item.id: item for item in menu_items or []}
        self._lock = threading.Lock()

    def add_menu_item(self, item: MenuItem):
        self._menu[item.id] = item

    def _snapshot(self, order_filter: Optional[OrderFilter]) -> List[Order]:
        with self._lock:
            orders = list(self._orders.values())
        if order_filter is not None:
            orders = [o for o in orders if order_filter.matches(o)]
        return sorted(orders, key=lambda o: (o.created_at, o.order_id))

    def _on_subscribe(self, token, order_filter, callback):
        self._deliver(callback, self._snapshot(order_filter))

    def _publish(self, before: Optional[Order], after: Order):
        for order_filter, callback in self._subscribers():
            touched = order_filter.matches(after) or (
                before is not None and order_filter.matches(before)
            )
            if touched:
                self._deliver(callback, self._snapshot(order_filter))

    def _write(self, order_id: str, expected_status: Optional[OrderStatus], **changes) -> Order:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                store_operations.labels(operation='update', outcome='not_found').inc()
                raise OrderNotFound(order_id)

            _guard(current, expected_status)

            updated = replace(current, **changes)
            self._orders[order_id] = updated

        store_operations.labels(operation='update', outcome='ok').inc()
        self._publish(current, updated)
        return updated

    async def fetch_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def insert_order(self, order: Order) -> Order:
        with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order

        store_operations.labels(operation='insert', outcome='ok').inc()
        self._publish(None, order)
        return order

    async def update_order_status(
        self,
        order_id,
        status,
        expected_status=None,
        cancel_reason=None,
        updated_at=None
    ) -> Order:
        changes = {"status": OrderStatus(status), "updated_at": updated_at or _utcnow()}
        if cancel_reason is not None:
            changes["cancel_reason"] = cancel_reason
        return self._write(order_id, expected_status, **changes)

    async def set_estimated_time(self, order_id, minutes, expected_status=None, updated_at=None) -> Order:
        return self._write(
            order_id,
            expected_status,
            admin_estimated_time=minutes,
            updated_at=updated_at or _utcnow(),
        )

    async def set_pre_order_time(self, order_id, pre_order_time, expected_status=None, updated_at=None) -> Order:
        return self._write(
            order_id,
            expected_status,
            pre_order_time=pre_order_time,
            updated_at=updated_at or _utcnow(),
        )

    async def list_orders(self, order_filter=None) -> List[Order]:
        return self._snapshot(order_filter)

    async def fetch_menu_item(self, item_id: str) -> Optional[MenuItem]:
        return self._menu.get(item_id)


# ============================================================================
# SUPABASE STORE
# ============================================================================

class SupabaseOrderStore(OrderStore):
    """
    Supabase-backed order store.

    The supabase client is synchronous; every call runs in the default
    executor with a timeout. Subscriptions are served by a poll loop
    (start/stop) that re-queries each subscribed filter and pushes the set
    when it changed; writes made through this store push immediately.
    """

    def __init__(
        self,
        url: str,
        key: str,
        orders_table: str = "orders",
        menu_table: str = "menu_items",
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        client: Optional[Client] = None
    ):
        super().__init__()
        self.client: Client = client or create_client(url, key)
        self.orders_table = orders_table
        self.menu_table = menu_table
        self.timeout = timeout
        self.poll_interval = poll_interval

        self._last_pushed: Dict[int, List[Order]] = {}
        self._refresh_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self.is_running = False

        logger.info(f"SupabaseOrderStore initialized (table={orders_table})")

    @classmethod
    def from_config(cls, supabase_config) -> "SupabaseOrderStore":
        return cls(
            url=supabase_config.url,
            key=supabase_config.key,
            orders_table=supabase_config.orders_table,
            menu_table=supabase_config.menu_table,
            timeout=supabase_config.timeout,
        )

    async def _execute(self, operation: str, build_query, retries: int = 0):
        """Run a query builder in the executor with timeout and retries."""
        loop = asyncio.get_running_loop()

        for attempt in range(retries + 1):
            try:
                with store_latency.labels(operation=operation).time():
                    result = await asyncio.wait_for(
                        loop.run_in_executor(None, lambda: build_query().execute()),
                        timeout=self.timeout
                    )
                store_operations.labels(operation=operation, outcome='ok').inc()
                return result

            except asyncio.TimeoutError:
                logger.error(f"Supabase {operation} timeout (attempt {attempt + 1})")
                store_operations.labels(operation=operation, outcome='timeout').inc()
                if attempt >= retries:
                    raise
            except Exception as e:
                logger.error(f"Supabase {operation} error (attempt {attempt + 1}): {str(e)}")
                store_operations.labels(operation=operation, outcome='error').inc()
                if attempt >= retries:
                    raise

            await asyncio.sleep(RETRY_DELAY * (attempt + 1))

    def _orders(self):
        return self.client.table(self.orders_table)

    # ========================================================================
    # READS (idempotent, retried)
    # ========================================================================

    async def fetch_order(self, order_id: str) -> Order:
        result = await self._execute(
            'fetch',
            lambda: self._orders().select("*").eq("order_id", order_id).limit(1),
            retries=MAX_RETRIES,
        )
        if not result.data:
            raise OrderNotFound(order_id)
        return Order.from_dict(result.data[0])

    async def list_orders(self, order_filter: Optional[OrderFilter] = None) -> List[Order]:
        def build():
            query = self._orders().select("*")
            if order_filter is not None:
                if order_filter.restaurant_id is not None:
                    query = query.eq("restaurant_id", order_filter.restaurant_id)
                if order_filter.user_id is not None:
                    query = query.eq("user_id", order_filter.user_id)
                if order_filter.guest_session_id is not None:
                    query = query.eq("guest_session_id", order_filter.guest_session_id)
                if order_filter.statuses is not None:
                    query = query.in_("status", sorted(s.value for s in order_filter.statuses))
                if order_filter.day is not None:
                    start, end = order_filter.day_bounds()
                    query = query.gte("created_at", start.isoformat()).lt("created_at", end.isoformat())
            return query.order("created_at")

        result = await self._execute('list', build, retries=MAX_RETRIES)
        return [Order.from_dict(row) for row in result.data or []]

    async def fetch_menu_item(self, item_id: str) -> Optional[MenuItem]:
        result = await self._execute(
            'fetch_menu_item',
            lambda: self.client.table(self.menu_table).select("*").eq("id", item_id).limit(1),
            retries=MAX_RETRIES,
        )
        if not result.data:
            return None
        return MenuItem.from_dict(result.data[0])

    # ========================================================================
    # WRITES (guarded by expected status, not retried)
    # ========================================================================

    async def insert_order(self, order: Order) -> Order:
        await self._execute('insert', lambda: self._orders().insert(order.to_dict()))
        await self._push_changes()
        return order

    async def _guarded_update(
        self,
        order_id: str,
        data: Dict[str, Any],
        expected_status: Optional[OrderStatus]
    ) -> Order:
        def build():
            query = self._orders().update(data).eq("order_id", order_id)
            if expected_status is not None:
                query = query.eq("status", OrderStatus(expected_status).value)
            return query

        result = await self._execute('update', build)

        if not result.data:
            # Nothing matched: either the order is gone or its status moved on
            current = await self.fetch_order(order_id)
            raise StaleSnapshot(order_id, expected_status, current.status)

        updated = Order.from_dict(result.data[0])
        await self._push_changes()
        return updated

    async def update_order_status(
        self,
        order_id,
        status,
        expected_status=None,
        cancel_reason=None,
        updated_at=None
    ) -> Order:
        data = {
            "status": OrderStatus(status).value,
            "updated_at": (updated_at or _utcnow()).isoformat(),
        }
        if cancel_reason is not None:
            data["cancel_reason"] = cancel_reason
        return await self._guarded_update(order_id, data, expected_status)

    async def set_estimated_time(self, order_id, minutes, expected_status=None, updated_at=None) -> Order:
        data = {
            "admin_estimated_time": minutes,
            "updated_at": (updated_at or _utcnow()).isoformat(),
        }
        return await self._guarded_update(order_id, data, expected_status)

    async def set_pre_order_time(self, order_id, pre_order_time, expected_status=None, updated_at=None) -> Order:
        data = {
            "pre_order_time": pre_order_time.isoformat(),
            "updated_at": (updated_at or _utcnow()).isoformat(),
        }
        return await self._guarded_update(order_id, data, expected_status)

    # ========================================================================
    # SUBSCRIPTIONS (poll loop)
    # ========================================================================

    def _on_subscribe(self, token, order_filter, callback):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # First push happens on the next poll
            return
        task = loop.create_task(self._refresh_one(token, order_filter, callback))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    def _on_unsubscribe(self, token):
        self._last_pushed.pop(token, None)

    async def _refresh_one(self, token: int, order_filter: OrderFilter, callback: OrdersCallback):
        try:
            orders = await self.list_orders(order_filter)
        except Exception as e:
            logger.error(f"Subscription refresh failed: {str(e)}")
            return

        # Unsubscribed while the query was in flight
        if not self._is_subscribed(token):
            return

        if self._last_pushed.get(token) == orders:
            return

        self._last_pushed[token] = orders
        self._deliver(callback, orders)

    async def _push_changes(self):
        with self._sub_lock:
            tokens = list(self._subscriptions.items())
        for token, (order_filter, callback) in tokens:
            await self._refresh_one(token, order_filter, callback)

    async def refresh(self):
        """Re-query every subscription now."""
        await self._push_changes()

    async def start(self):
        """Start the subscription poll loop."""
        if self.is_running:
            return

        self.is_running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Order subscription poller started")

    async def stop(self):
        if not self.is_running:
            return

        self.is_running = False

        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass

        for task in list(self._refresh_tasks):
            task.cancel()

        logger.info("Order subscription poller stopped")

    async def _poll_loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(self.poll_interval)
                await self._push_changes()
        except asyncio.CancelledError:
            pass


# ============================================================================
# FACTORY
# ============================================================================

def create_order_store(config=None) -> OrderStore:
    """Supabase store when configured, in-memory otherwise."""
    if config is not None and config.supabase.is_configured:
        return SupabaseOrderStore.from_config(config.supabase)

    logger.warning("Supabase not configured, using in-memory order store")
    return InMemoryOrderStore()
