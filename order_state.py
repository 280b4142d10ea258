"""
Order State Machine
===================
Formal status transitions for the order lifecycle.

State invariants:
- Transitions are a pure function of (current status, event)
- The machine holds no state of its own; the order record is the state
- delivered and cancelled are terminal
- Nothing moves an order back once it is ready
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from prometheus_client import Counter


logger = logging.getLogger(__name__)


illegal_transitions = Counter(
    'order_illegal_transitions_total',
    'Rejected order events',
    ['event', 'status']
)


class OrderStatus(str, Enum):
    """
    Order lifecycle statuses.

    Status flow:
        PENDING -> CONFIRMED -> PREPARING -> READY -> DELIVERED
        PENDING | CONFIRMED | PREPARING -> CANCELLED
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderEvent(str, Enum):
    """Requests that may move an order between statuses."""
    ACCEPT = "accept"                      # operator accepts
    START_PREPARING = "start_preparing"    # operator starts preparing
    MARK_READY = "mark_ready"              # operator marks ready
    COMPLETE = "complete"                  # operator completes (payment/handover)
    CANCEL = "cancel"                      # operator or customer cancels
    CONFIRM_RECEIPT = "confirm_receipt"    # customer confirms receipt


class IllegalTransition(Exception):
    """Raised when an event is not valid from the order's current status."""

    def __init__(self, status: OrderStatus, event, order_id: Optional[str] = None):
        self.status = OrderStatus(status)
        self.event = event
        self.order_id = order_id
        where = f" for order {order_id}" if order_id else ""
        super().__init__(
            f"Cannot apply '{getattr(event, 'value', event)}' to a "
            f"{self.status.value} order{where}"
        )


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})

# Statuses from which an order may be cancelled
CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})

# Statuses in which the operator's time estimate may be changed
ETA_EDITABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})

# Of those, the ones where a changed estimate is announced to the customer
ETA_ANNOUNCED_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})


# event -> (allowed from, resulting status)
TRANSITIONS: Dict[OrderEvent, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    OrderEvent.ACCEPT: (frozenset({OrderStatus.PENDING}), OrderStatus.CONFIRMED),
    OrderEvent.START_PREPARING: (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PREPARING),
    OrderEvent.MARK_READY: (frozenset({OrderStatus.PREPARING}), OrderStatus.READY),
    OrderEvent.COMPLETE: (frozenset({OrderStatus.READY}), OrderStatus.DELIVERED),
    OrderEvent.CANCEL: (CANCELLABLE_STATUSES, OrderStatus.CANCELLED),
    OrderEvent.CONFIRM_RECEIPT: (frozenset({OrderStatus.READY}), OrderStatus.DELIVERED),
}


def list_statuses() -> List[OrderStatus]:
    """All statuses in lifecycle order."""
    return list(OrderStatus)


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(status: OrderStatus, event: OrderEvent) -> bool:
    """Check whether event is valid from status."""
    allowed_from, _ = TRANSITIONS[OrderEvent(event)]
    return OrderStatus(status) in allowed_from


def next_status(status: OrderStatus, event: OrderEvent, order_id: Optional[str] = None) -> OrderStatus:
    """
    Resolve the status an event leads to.

    Raises:
        IllegalTransition: If event is not valid from status
    """
    status = OrderStatus(status)
    event = OrderEvent(event)
    allowed_from, target = TRANSITIONS[event]

    if status not in allowed_from:
        illegal_transitions.labels(event=event.value, status=status.value).inc()
        logger.debug(
            f"Illegal transition: {event.value} from {status.value}",
            extra={"order_id": order_id, "event": event.value, "status": status.value}
        )
        raise IllegalTransition(status, event, order_id)

    return target


def apply_event(order, event: OrderEvent) -> OrderStatus:
    """
    Apply an event to an order record (anything with .status and .order_id).

    Pure: the order is not modified; the caller persists the result.

    Raises:
        IllegalTransition: If event is not valid from the order's status
    """
    return next_status(order.status, event, getattr(order, "order_id", None))
