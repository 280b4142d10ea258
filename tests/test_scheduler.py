import asyncio
from datetime import timedelta

import pytest

from conftest import T0
from db import OrderFilter
from order_state import OrderStatus, OrderEvent
from scheduler import (
    AutoProgressionScheduler,
    ProgressionThresholds,
    cancel_stale_pending,
    due_event,
    tick,
)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


# ============================================================================
# tick()
# ============================================================================

def test_unconfirmed_order_cancelled_after_thirty_minutes(make_order):
    order = make_order(status=OrderStatus.PENDING)

    assert tick(at(29), [order]) == []
    assert tick(at(31), [order]) == [("ORD1", OrderEvent.CANCEL)]


def test_confirmed_order_starts_preparing_after_grace(make_order):
    order = make_order(status=OrderStatus.CONFIRMED)

    assert tick(at(1), [order]) == []
    assert tick(at(2), [order]) == [("ORD1", OrderEvent.START_PREPARING)]


def test_preparing_order_ready_at_three_quarters_of_estimate(make_order):
    order = make_order(status=OrderStatus.PREPARING, admin_estimated_time=20)

    assert tick(at(14), [order]) == []
    assert tick(at(15), [order]) == [("ORD1", OrderEvent.MARK_READY)]
    assert tick(at(16), [order]) == [("ORD1", OrderEvent.MARK_READY)]


def test_ready_threshold_is_floored(make_order):
    order = make_order(status=OrderStatus.PREPARING, admin_estimated_time=25)

    # floor(0.75 * 25) == 18
    assert due_event(order, at(17)) is None
    assert due_event(order, at(18)) == OrderEvent.MARK_READY


def test_ready_order_completed_after_estimate_plus_buffer(make_order):
    order = make_order(status=OrderStatus.READY)

    assert tick(at(24), [order]) == []
    assert tick(at(25), [order]) == [("ORD1", OrderEvent.COMPLETE)]

    slow = make_order(status=OrderStatus.READY, admin_estimated_time=40)
    assert tick(at(44), [slow]) == []
    assert tick(at(45), [slow]) == [("ORD1", OrderEvent.COMPLETE)]


def test_terminal_orders_are_left_alone(make_order):
    orders = [
        make_order(order_id="A", status=OrderStatus.DELIVERED),
        make_order(order_id="B", status=OrderStatus.CANCELLED),
    ]

    assert tick(at(600), orders) == []


def test_one_event_per_order_per_tick(make_order):
    order = make_order(status=OrderStatus.PREPARING)

    # Long overdue for completion too, but only the current rule fires
    assert tick(at(120), [order]) == [("ORD1", OrderEvent.MARK_READY)]


def test_tick_is_idempotent(make_order):
    orders = [
        make_order(order_id="A", status=OrderStatus.PENDING),
        make_order(order_id="B", status=OrderStatus.CONFIRMED),
        make_order(order_id="C", status=OrderStatus.PREPARING),
    ]

    first = tick(at(31), orders)
    second = tick(at(31), orders)

    assert first == second
    assert len(first) == 3


def test_duplicate_order_entries_fire_once(make_order):
    order = make_order(status=OrderStatus.PENDING)

    assert tick(at(40), [order, order]) == [("ORD1", OrderEvent.CANCEL)]


def test_custom_thresholds(make_order):
    thresholds = ProgressionThresholds(pending_timeout_minutes=10)

    assert tick(at(10), [make_order()], thresholds) == [("ORD1", OrderEvent.CANCEL)]


def test_stale_pending_sweep_skips_reservation_orders(make_order):
    orders = [
        make_order(order_id="A"),
        make_order(order_id="B", reservation_id="RES1"),
        make_order(order_id="C", created_at=at(20)),
        make_order(order_id="D", status=OrderStatus.CONFIRMED),
    ]

    assert cancel_stale_pending(at(35), orders) == [("A", OrderEvent.CANCEL)]


# ============================================================================
# AutoProgressionScheduler
# ============================================================================

def _scheduler(controller, store, clock, **kwargs):
    return AutoProgressionScheduler(controller, store, OrderFilter.active("r1"), clock=clock, **kwargs)


def test_scheduler_cancels_unconfirmed_order(controller, store, dispatcher, clock, make_order):
    async def scenario():
        await store.insert_order(make_order())
        scheduler = _scheduler(controller, store, clock)
        scheduler.attach()

        clock.advance(31)
        applied = await scheduler.run_once()

        order = await store.fetch_order("ORD1")
        return applied, order, scheduler

    applied, order, scheduler = asyncio.run(scenario())

    assert applied == [("ORD1", OrderEvent.CANCEL)]
    assert order.status == OrderStatus.CANCELLED
    assert order.cancel_reason == "no confirmation"
    assert scheduler.visible_orders == []
    assert [n.notification_type.value for n in dispatcher.notifications] == ["order_canceled"]
    assert "no confirmation" in dispatcher.notifications[0].body


def test_scheduler_walks_order_through_lifecycle(controller, store, clock, make_order):
    async def scenario():
        await store.insert_order(make_order(status=OrderStatus.CONFIRMED, admin_estimated_time=20))
        scheduler = _scheduler(controller, store, clock)
        scheduler.attach()

        statuses = []
        for minutes in (2, 15, 25):
            clock.now = at(minutes)
            await scheduler.run_once()
            statuses.append((await store.fetch_order("ORD1")).status)
        return statuses

    assert asyncio.run(scenario()) == [
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.DELIVERED,
    ]


def test_duplicate_ticks_transition_once(controller, store, dispatcher, clock, make_order):
    async def scenario():
        order = make_order(status=OrderStatus.PREPARING)
        await store.insert_order(order)
        scheduler = _scheduler(controller, store, clock)

        # Both ticks see the same stale snapshot
        scheduler._on_snapshot([order])
        first = await scheduler.run_once(at(16))
        scheduler._on_snapshot([order])
        second = await scheduler.run_once(at(16))
        return first, second, await store.fetch_order("ORD1")

    first, second, order = asyncio.run(scenario())

    assert first == [("ORD1", OrderEvent.MARK_READY)]
    assert second == []
    assert order.status == OrderStatus.READY
    assert len(dispatcher.notifications) == 1


def test_manual_change_wins_over_stale_snapshot(controller, store, clock, make_order):
    async def scenario():
        order = make_order(status=OrderStatus.PREPARING)
        await store.insert_order(order)
        scheduler = _scheduler(controller, store, clock)
        scheduler._on_snapshot([order])

        await controller.apply_event("ORD1", OrderEvent.CANCEL, reason="out of stock")
        applied = await scheduler.run_once(at(16))
        return applied, await store.fetch_order("ORD1")

    applied, order = asyncio.run(scenario())

    assert applied == []
    assert order.status == OrderStatus.CANCELLED
    assert order.cancel_reason == "out of stock"


def test_operator_accept_beats_stale_pending_snapshot(controller, store, dispatcher, clock, make_order):
    async def scenario():
        order = make_order()
        await store.insert_order(order)
        scheduler = _scheduler(controller, store, clock)
        scheduler._on_snapshot([order])

        clock.advance(31)
        await controller.apply_event("ORD1", OrderEvent.ACCEPT)
        # Cancel is still legal from confirmed, but the rule was decided from pending
        applied = await scheduler.run_once()
        return applied, await store.fetch_order("ORD1")

    applied, order = asyncio.run(scenario())

    assert applied == []
    assert order.status == OrderStatus.CONFIRMED
    assert order.cancel_reason is None
    assert [n.notification_type.value for n in dispatcher.notifications] == ["order_accepted"]


def test_ready_order_never_moves_back(controller, store, clock, make_order):
    async def scenario():
        await store.insert_order(make_order(status=OrderStatus.READY))
        scheduler = _scheduler(controller, store, clock)
        scheduler.attach()

        seen = []
        for minutes in range(0, 60, 7):
            await scheduler.run_once(at(minutes))
            seen.append((await store.fetch_order("ORD1")).status)
        return seen

    seen = asyncio.run(scenario())

    assert set(seen) <= {OrderStatus.READY, OrderStatus.DELIVERED}
    assert seen[-1] == OrderStatus.DELIVERED


class _FlakyController:
    def __init__(self):
        self.calls = []

    async def apply_auto_event(self, order_id, event, now=None, expected_status=None):
        self.calls.append(order_id)
        if order_id == "A":
            raise RuntimeError("storage offline")
        return object()


def test_failure_on_one_order_does_not_stop_the_tick(store, clock, make_order):
    flaky = _FlakyController()
    scheduler = AutoProgressionScheduler(flaky, store, OrderFilter(), clock=clock)
    scheduler._on_snapshot([
        make_order(order_id="A"),
        make_order(order_id="B"),
    ])

    applied = asyncio.run(scheduler.run_once(at(45)))

    assert flaky.calls == ["A", "B"]
    assert applied == [("B", OrderEvent.CANCEL)]


def test_background_loop_start_stop(controller, store, clock, make_order):
    async def scenario():
        await store.insert_order(make_order())
        clock.advance(31)
        scheduler = _scheduler(controller, store, clock, interval_seconds=0.01)

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(100):
            if (await store.fetch_order("ORD1")).status == OrderStatus.CANCELLED:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        return scheduler, await store.fetch_order("ORD1")

    scheduler, order = asyncio.run(scenario())

    assert not scheduler.is_running
    assert scheduler.tick_count >= 1
    assert order.status == OrderStatus.CANCELLED


@pytest.mark.parametrize("minutes,expected", [(31, OrderStatus.CANCELLED), (5, OrderStatus.PENDING)])
def test_snapshot_subscription_feeds_ticks(controller, store, clock, make_order, minutes, expected):
    async def scenario():
        scheduler = _scheduler(controller, store, clock)
        scheduler.attach()
        await store.insert_order(make_order())
        assert len(scheduler.visible_orders) == 1

        await scheduler.run_once(at(minutes))
        scheduler.detach()
        return await store.fetch_order("ORD1")

    assert asyncio.run(scenario()).status == expected
