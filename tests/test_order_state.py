import pytest

from order_state import (
    OrderStatus,
    OrderEvent,
    IllegalTransition,
    TERMINAL_STATUSES,
    apply_event,
    can_transition,
    is_terminal,
    list_statuses,
    next_status,
)


def test_happy_path():
    status = OrderStatus.PENDING
    for event, expected in [
        (OrderEvent.ACCEPT, OrderStatus.CONFIRMED),
        (OrderEvent.START_PREPARING, OrderStatus.PREPARING),
        (OrderEvent.MARK_READY, OrderStatus.READY),
        (OrderEvent.COMPLETE, OrderStatus.DELIVERED),
    ]:
        status = next_status(status, event)
        assert status == expected


def test_customer_confirms_receipt_from_ready():
    assert next_status(OrderStatus.READY, OrderEvent.CONFIRM_RECEIPT) == OrderStatus.DELIVERED


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING])
def test_cancel_allowed_before_ready(status):
    assert next_status(status, OrderEvent.CANCEL) == OrderStatus.CANCELLED


@pytest.mark.parametrize("status", [OrderStatus.READY, OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_cancel_rejected_from_ready_onwards(status):
    with pytest.raises(IllegalTransition):
        next_status(status, OrderEvent.CANCEL)


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
@pytest.mark.parametrize("event", list(OrderEvent))
def test_terminal_statuses_reject_every_event(status, event):
    assert not can_transition(status, event)
    with pytest.raises(IllegalTransition):
        next_status(status, event)


def test_skipping_a_step_is_illegal():
    with pytest.raises(IllegalTransition) as exc_info:
        next_status(OrderStatus.PENDING, OrderEvent.MARK_READY, order_id="ORD1")

    error = exc_info.value
    assert error.status == OrderStatus.PENDING
    assert error.event == OrderEvent.MARK_READY
    assert "ORD1" in str(error)


def test_nothing_moves_back_once_ready():
    early = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING}
    reachable = {OrderStatus.READY}
    frontier = [OrderStatus.READY]

    while frontier:
        status = frontier.pop()
        for event in OrderEvent:
            if can_transition(status, event):
                target = next_status(status, event)
                if target not in reachable:
                    reachable.add(target)
                    frontier.append(target)

    assert reachable.isdisjoint(early)


def test_string_values_are_accepted():
    assert can_transition("pending", "accept")
    assert next_status("confirmed", "start_preparing") == OrderStatus.PREPARING


def test_apply_event_reads_order_record(make_order):
    order = make_order(status=OrderStatus.PREPARING)

    assert apply_event(order, OrderEvent.MARK_READY) == OrderStatus.READY
    assert order.status == OrderStatus.PREPARING

    with pytest.raises(IllegalTransition) as exc_info:
        apply_event(order, OrderEvent.ACCEPT)
    assert exc_info.value.order_id == "ORD1"


def test_list_statuses_in_lifecycle_order():
    assert [s.value for s in list_statuses()] == [
        "pending", "confirmed", "preparing", "ready", "delivered", "cancelled",
    ]


def test_is_terminal():
    assert is_terminal(OrderStatus.DELIVERED)
    assert is_terminal("cancelled")
    assert not is_terminal(OrderStatus.READY)
