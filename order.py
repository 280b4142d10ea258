"""
Order Module
============
Order records frozen at checkout.

- OrderItem is an immutable copy of a cart line (price locked at checkout)
- Order is immutable; every change produces a new record for storage
- Totals invariant: total == subtotal + delivery_fee + tax - discount
- Integrity checksum over items and totals, computed at checkout
"""

import logging
import hashlib
import uuid
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace
from enum import Enum

from prometheus_client import Counter, Histogram

from cart import CartLine, CartSnapshot
from order_state import (
    OrderStatus,
    IllegalTransition,
    ETA_EDITABLE_STATUSES,
)


logger = logging.getLogger(__name__)


DEFAULT_ESTIMATED_MINUTES = 20
MAX_ESTIMATED_MINUTES = 24 * 60


# ============================================================================
# METRICS
# ============================================================================

orders_created = Counter(
    'orders_created_total',
    'Orders created at checkout',
    ['order_type']
)
order_value = Histogram(
    'order_value',
    'Order value distribution'
)


class OrderType(str, Enum):
    DINE_IN = "dine-in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"
    PRE_ORDER = "pre-order"


class CheckoutError(Exception):
    """Cart or checkout details cannot produce a valid order."""
    pass


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class CustomerInfo:
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or "User"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CustomerInfo":
        data = data or {}
        return cls(
            first_name=data.get("first_name") or data.get("firstName") or "",
            last_name=data.get("last_name") or data.get("lastName") or "",
            phone=data.get("phone"),
            email=data.get("email"),
            address=data.get("address"),
        )


@dataclass(frozen=True)
class OrderItem:
    """
    Immutable order item.

    CRITICAL: frozen=True means the checkout price can never change.
    """
    menu_item_id: str
    name: str
    quantity: int
    unit_price: float
    line_total: float
    fingerprint: str
    variant: Optional[str] = None
    addons: Tuple[str, ...] = field(default_factory=tuple)
    image: Optional[str] = None

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderItem":
        return cls(
            menu_item_id=line.menu_item_id,
            name=line.name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
            fingerprint=line.fingerprint,
            variant=line.variant.name if line.variant else None,
            addons=tuple(a.name for a in line.addons),
            image=line.image,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "fingerprint": self.fingerprint,
            "variant": self.variant,
            "addons": list(self.addons),
            "image": self.image,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderItem":
        return cls(
            menu_item_id=str(data["menu_item_id"]),
            name=data["name"],
            quantity=int(data["quantity"]),
            unit_price=float(data["unit_price"]),
            line_total=float(data["line_total"]),
            fingerprint=data.get("fingerprint") or f"{data['menu_item_id']}_default_none",
            variant=data.get("variant"),
            addons=tuple(data.get("addons") or ()),
            image=data.get("image"),
        )


@dataclass(frozen=True)
class OrderTotals:
    subtotal: float
    delivery_fee: float
    tax: float
    discount: float
    total: float


def compute_totals(
    items: Tuple[OrderItem, ...],
    delivery_fee: float = 0.0,
    tax_rate: float = 0.0,
    discount: float = 0.0
) -> OrderTotals:
    """
    Deterministic order totals. Tax applies to subtotal plus delivery fee.

    Raises:
        CheckoutError: negative amounts or a discount larger than the bill
    """
    if delivery_fee < 0 or tax_rate < 0 or discount < 0:
        raise CheckoutError("Fees, tax rate and discount must not be negative")

    subtotal = round(sum(item.line_total for item in items), 2)
    delivery_fee = round(delivery_fee, 2)
    tax = round((subtotal + delivery_fee) * tax_rate, 2)
    discount = round(discount, 2)

    if discount > subtotal + delivery_fee + tax:
        raise CheckoutError(f"Discount {discount:.2f} exceeds order value")

    total = round(subtotal + delivery_fee + tax - discount, 2)
    return OrderTotals(subtotal, delivery_fee, tax, discount, total)


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Order record.

    Changed only through the state machine (status) and the two side
    channels: admin_estimated_time and pre_order_time.
    """
    order_id: str
    restaurant_id: str
    items: Tuple[OrderItem, ...]
    order_type: OrderType
    payment_method: str
    customer: CustomerInfo
    status: OrderStatus
    created_at: datetime
    subtotal: float
    delivery_fee: float
    tax: float
    discount: float
    total: float
    admin_estimated_time: Optional[int] = None
    pre_order_time: Optional[datetime] = None
    special_instructions: str = ""
    user_id: Optional[str] = None
    guest_session_id: Optional[str] = None
    reservation_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    updated_at: Optional[datetime] = None
    checksum: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def estimated_minutes(self, default: int = DEFAULT_ESTIMATED_MINUTES) -> int:
        return self.admin_estimated_time if self.admin_estimated_time is not None else default

    def elapsed_minutes(self, now: datetime) -> int:
        """Whole minutes since creation (floored, never negative)."""
        seconds = (now - self.created_at).total_seconds()
        return max(0, int(seconds // 60))

    # ========================================================================
    # VALIDATION & INTEGRITY
    # ========================================================================

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate totals and item arithmetic.

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        if not self.items:
            errors.append("Order has no items")

        for item in self.items:
            if item.quantity < 1:
                errors.append(f"Invalid quantity for {item.name}: {item.quantity}")

            expected_line = round(item.unit_price * item.quantity, 2)
            if abs(item.line_total - expected_line) > 0.01:
                errors.append(
                    f"Line total mismatch for {item.name}: {item.line_total} != {expected_line}"
                )

        expected_subtotal = round(sum(item.line_total for item in self.items), 2)
        if abs(self.subtotal - expected_subtotal) > 0.01:
            errors.append(f"Subtotal mismatch: {self.subtotal} != {expected_subtotal}")

        expected_total = round(self.subtotal + self.delivery_fee + self.tax - self.discount, 2)
        if abs(self.total - expected_total) > 0.01:
            errors.append(f"Total mismatch: {self.total} != {expected_total}")

        return len(errors) == 0, errors

    def compute_checksum(self) -> str:
        """Deterministic hash of the frozen items and totals."""
        data = {
            "order_id": self.order_id,
            "items": sorted(
                (item.fingerprint, item.quantity, item.unit_price)
                for item in self.items
            ),
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
        }
        return hashlib.sha256(str(data).encode()).hexdigest()

    def verify_integrity(self) -> bool:
        if not self.checksum:
            logger.warning(f"No checksum available for order {self.order_id}")
            return False

        if self.compute_checksum() != self.checksum:
            logger.error(f"Integrity check failed for order {self.order_id}")
            return False

        return True

    # ========================================================================
    # SERIALIZATION
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "restaurant_id": self.restaurant_id,
            "items": [item.to_dict() for item in self.items],
            "order_type": self.order_type.value,
            "payment_method": self.payment_method,
            "customer": self.customer.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
            "admin_estimated_time": self.admin_estimated_time,
            "pre_order_time": self.pre_order_time.isoformat() if self.pre_order_time else None,
            "special_instructions": self.special_instructions,
            "user_id": self.user_id,
            "guest_session_id": self.guest_session_id,
            "is_guest": self.is_guest,
            "reservation_id": self.reservation_id,
            "cancel_reason": self.cancel_reason,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            order_id=data["order_id"],
            restaurant_id=data["restaurant_id"],
            items=tuple(OrderItem.from_dict(i) for i in data.get("items") or []),
            order_type=OrderType(data["order_type"]),
            payment_method=data.get("payment_method") or "",
            customer=CustomerInfo.from_dict(data.get("customer")),
            status=OrderStatus(data["status"]),
            created_at=parse_timestamp(data["created_at"]),
            subtotal=float(data.get("subtotal") or 0.0),
            delivery_fee=float(data.get("delivery_fee") or 0.0),
            tax=float(data.get("tax") or 0.0),
            discount=float(data.get("discount") or 0.0),
            total=float(data.get("total") or 0.0),
            admin_estimated_time=data.get("admin_estimated_time"),
            pre_order_time=parse_timestamp(data.get("pre_order_time")),
            special_instructions=data.get("special_instructions") or "",
            user_id=data.get("user_id"),
            guest_session_id=data.get("guest_session_id"),
            reservation_id=data.get("reservation_id"),
            cancel_reason=data.get("cancel_reason"),
            updated_at=parse_timestamp(data.get("updated_at")),
            checksum=data.get("checksum"),
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# CHECKOUT
# ============================================================================

def generate_order_id(now: datetime) -> str:
    """Readable order id: ORD + yyMMddHHmm + 4 random characters."""
    return f"ORD{now:%y%m%d%H%M}{uuid.uuid4().hex[:4].upper()}"


def build_order(
    cart: CartSnapshot,
    customer: CustomerInfo,
    order_type: OrderType,
    payment_method: str,
    now: datetime,
    delivery_fee: float = 0.0,
    tax_rate: float = 0.0,
    discount: float = 0.0,
    pre_order_time: Optional[datetime] = None,
    special_instructions: str = "",
    user_id: Optional[str] = None,
    guest_session_id: Optional[str] = None,
    reservation_id: Optional[str] = None,
    order_id: Optional[str] = None
) -> Order:
    """
    Freeze a cart snapshot into a new pending order.

    Raises:
        CheckoutError: empty cart, mixed restaurants, missing pre-order time
    """
    order_type = OrderType(order_type)

    if not cart.lines:
        raise CheckoutError("Cannot check out an empty cart")

    restaurants = {line.restaurant_id for line in cart.lines}
    if len(restaurants) != 1:
        raise CheckoutError(f"Cart spans several restaurants: {sorted(restaurants)}")

    if order_type == OrderType.PRE_ORDER and pre_order_time is None:
        raise CheckoutError("Pre-orders require a pre-order time")

    if order_type == OrderType.DELIVERY and not customer.address:
        raise CheckoutError("Delivery orders require an address")

    items = tuple(OrderItem.from_cart_line(line) for line in cart.lines)
    totals = compute_totals(
        items,
        delivery_fee=delivery_fee if order_type == OrderType.DELIVERY else 0.0,
        tax_rate=tax_rate,
        discount=discount,
    )

    order = Order(
        order_id=order_id or generate_order_id(now),
        restaurant_id=restaurants.pop(),
        items=items,
        order_type=order_type,
        payment_method=payment_method,
        customer=customer,
        status=OrderStatus.PENDING,
        created_at=now,
        subtotal=totals.subtotal,
        delivery_fee=totals.delivery_fee,
        tax=totals.tax,
        discount=totals.discount,
        total=totals.total,
        pre_order_time=pre_order_time if order_type == OrderType.PRE_ORDER else None,
        special_instructions=special_instructions,
        user_id=user_id,
        guest_session_id=guest_session_id,
        reservation_id=reservation_id,
        updated_at=now,
    )
    order = replace(order, checksum=order.compute_checksum())

    orders_created.labels(order_type=order_type.value).inc()
    order_value.observe(order.total)

    logger.info(
        f"Order built: {order.order_id} "
        f"({order.item_count} units, total={order.total:.2f}, type={order_type.value})"
    )
    return order


# ============================================================================
# ESTIMATED TIME (not a status transition)
# ============================================================================

def apply_estimated_time(order: Order, minutes: int, now: datetime) -> Order:
    """
    Apply an operator time estimate.

    Pre-orders fold the minutes into a new wall-clock pre_order_time
    (counted from the current pre_order_time, or from now when unset);
    every other order type stores the minutes as admin_estimated_time.

    Raises:
        ValueError: minutes outside 1..MAX_ESTIMATED_MINUTES
        IllegalTransition: order is ready or terminal
    """
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValueError(f"Estimated time must be whole minutes: {minutes!r}")

    if not 0 < minutes <= MAX_ESTIMATED_MINUTES:
        raise ValueError(f"Estimated time out of range: {minutes}")

    if order.status not in ETA_EDITABLE_STATUSES:
        raise IllegalTransition(order.status, "set_estimated_time", order.order_id)

    if order.order_type == OrderType.PRE_ORDER:
        base = order.pre_order_time or now
        return replace(
            order,
            pre_order_time=base + timedelta(minutes=minutes),
            updated_at=now,
        )

    return replace(order, admin_estimated_time=minutes, updated_at=now)
