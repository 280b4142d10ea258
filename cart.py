"""
Cart Module
===========
Cart ledger keyed by customization fingerprint.

Guarantees:
- At most one line per fingerprint (re-adding increments quantity)
- Lines from at most one restaurant at a time
- Total recomputed from lines on every read, never cached
- Every mutation broadcasts a cart-changed snapshot to all observers
- Observers cannot mutate the cart from inside their callback
- Repeated mutation request ids are ignored (double-click protection)
"""

import logging
import threading
from typing import Dict, List, Any, Optional, Callable, Iterable, Tuple
from dataclasses import dataclass, field, replace
from collections import deque

from prometheus_client import Counter

from pricing import (
    MenuItem,
    Variant,
    Addon,
    OptionRef,
    InvalidCustomization,
    ItemUnavailable,
    resolve_variant,
    resolve_addons,
    compute_unit_price,
    line_total,
    fingerprint,
    customization_rejections,
)


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_MAX_QUANTITY = 99
REQUEST_ID_MEMORY = 256

POLICY_REJECT = "reject"
POLICY_REPLACE = "replace"


# ============================================================================
# METRICS
# ============================================================================

cart_mutations = Counter(
    'cart_mutations_total',
    'Cart mutations',
    ['operation']
)
cart_duplicate_requests = Counter(
    'cart_duplicate_requests_total',
    'Ignored repeated cart mutation requests'
)


# ============================================================================
# ERRORS
# ============================================================================

class CartError(Exception):
    """Cart operation cannot be applied."""
    pass


class CartRestaurantConflict(CartError):
    """Cart already holds lines from another restaurant."""

    def __init__(self, current_restaurant_id: str, requested_restaurant_id: str):
        self.current_restaurant_id = current_restaurant_id
        self.requested_restaurant_id = requested_restaurant_id
        super().__init__(
            f"Cart holds items from restaurant {current_restaurant_id}; "
            f"cannot add items from {requested_restaurant_id}"
        )


class CartReentrancyError(CartError):
    """A cart observer tried to mutate the cart from inside its callback."""
    pass


# ============================================================================
# CART LINE (Immutable)
# ============================================================================

@dataclass(frozen=True)
class CartLine:
    """
    Snapshot of a customized menu item in the cart.

    Unit price is locked when the line is created.
    """
    fingerprint: str
    menu_item_id: str
    name: str
    unit_price: float
    quantity: int
    restaurant_id: str
    variant: Optional[Variant] = None
    addons: Tuple[Addon, ...] = field(default_factory=tuple)
    image: Optional[str] = None

    @property
    def line_total(self) -> float:
        return line_total(self.unit_price, self.quantity)

    def with_quantity(self, new_quantity: int) -> "CartLine":
        """The only way to "modify" a line - creates a new object."""
        return replace(self, quantity=new_quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "restaurant_id": self.restaurant_id,
            "variant": self.variant.to_dict() if self.variant else None,
            "addons": [a.to_dict() for a in self.addons],
            "image": self.image,
            "line_total": self.line_total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        variant_data = data.get("variant")
        variant = Variant(variant_data["name"], float(variant_data["price"])) if variant_data else None
        addons = tuple(
            Addon(a["name"], float(a["price"]))
            for a in sorted(data.get("addons") or [], key=lambda a: a["name"])
        )
        item_id = str(data["menu_item_id"])

        return cls(
            # Lines saved before fingerprints existed get the plain-item identity
            fingerprint=data.get("fingerprint") or fingerprint(item_id, variant, addons),
            menu_item_id=item_id,
            name=data["name"],
            unit_price=float(data["unit_price"]),
            quantity=int(data.get("quantity") or 1),
            restaurant_id=data["restaurant_id"],
            variant=variant,
            addons=addons,
            image=data.get("image"),
        )


@dataclass(frozen=True)
class CartSnapshot:
    """Read-only view of the cart delivered to callers and observers."""
    lines: Tuple[CartLine, ...]
    count: int
    total: float
    restaurant_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "count": self.count,
            "total": self.total,
            "restaurant_id": self.restaurant_id,
        }


CartObserver = Callable[[CartSnapshot], None]


# ============================================================================
# CART LEDGER
# ============================================================================

class CartLedger:
    """
    Single customer's cart.

    Observers subscribe for cart-changed broadcasts; any number may exist
    at once and none of them may mutate the cart while being notified.
    """

    def __init__(
        self,
        restaurant_policy: str = POLICY_REJECT,
        max_quantity: int = DEFAULT_MAX_QUANTITY
    ):
        if restaurant_policy not in (POLICY_REJECT, POLICY_REPLACE):
            raise ValueError(f"Unknown restaurant policy: {restaurant_policy}")

        self.restaurant_policy = restaurant_policy
        self.max_quantity = max_quantity

        self._lines: Dict[str, CartLine] = {}  # insertion-ordered
        self._restaurant_id: Optional[str] = None
        self._observers: List[CartObserver] = []

        self._lock = threading.RLock()
        self._publishing = False

        self._recent_requests: deque = deque(maxlen=REQUEST_ID_MEMORY)
        self._recent_request_set = set()

    @classmethod
    def from_config(cls, cart_config) -> "CartLedger":
        """Empty cart using the configured restaurant policy and quantity cap."""
        return cls(
            restaurant_policy=cart_config.restaurant_policy,
            max_quantity=cart_config.max_quantity_per_line,
        )

    # ========================================================================
    # OBSERVERS
    # ========================================================================

    def subscribe(self, observer: CartObserver) -> Callable[[], None]:
        """Register a cart-changed observer. Returns an unsubscribe function."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def _publish(self):
        snapshot = self.snapshot()
        self._publishing = True
        try:
            for observer in list(self._observers):
                try:
                    observer(snapshot)
                except CartReentrancyError:
                    logger.error("Cart observer attempted to mutate the cart; ignored")
                except Exception as e:
                    logger.error(f"Cart observer failed: {str(e)}")
        finally:
            self._publishing = False

    # ========================================================================
    # READS
    # ========================================================================

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines.values())

    @property
    def restaurant_id(self) -> Optional[str]:
        return self._restaurant_id

    @property
    def count(self) -> int:
        """Running count of units across all lines."""
        return sum(line.quantity for line in self._lines.values())

    def cart_total(self) -> float:
        return round(sum(line.line_total for line in self._lines.values()), 2)

    def get_line(self, line_fingerprint: str) -> Optional[CartLine]:
        return self._lines.get(line_fingerprint)

    def is_empty(self) -> bool:
        return not self._lines

    def is_different_restaurant(self, restaurant_id: str) -> bool:
        return self._restaurant_id is not None and self._restaurant_id != restaurant_id

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            lines=self.lines,
            count=self.count,
            total=self.cart_total(),
            restaurant_id=self._restaurant_id,
        )

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def _begin_mutation(self, request_id: Optional[str]) -> bool:
        """Returns False when this request id was already applied."""
        if self._publishing:
            raise CartReentrancyError("Cart cannot be mutated from a cart-changed observer")

        if request_id is None:
            return True

        if request_id in self._recent_request_set:
            cart_duplicate_requests.inc()
            logger.debug(f"Duplicate cart request ignored: {request_id}")
            return False

        return True

    def _commit(self, request_id: Optional[str], operation: str):
        """Record a successful mutation and broadcast it."""
        if request_id is not None:
            if len(self._recent_requests) == self._recent_requests.maxlen:
                self._recent_request_set.discard(self._recent_requests[0])
            self._recent_requests.append(request_id)
            self._recent_request_set.add(request_id)

        cart_mutations.labels(operation=operation).inc()
        self._publish()

    def add_to_cart(
        self,
        item: MenuItem,
        quantity: int = 1,
        restaurant_id: Optional[str] = None,
        variant: Optional[OptionRef] = None,
        addons: Optional[Iterable[OptionRef]] = None,
        replace_cart: bool = False,
        request_id: Optional[str] = None
    ) -> CartSnapshot:
        """
        Add a (customized) menu item.

        Items with variants must have one selected; add-ons are optional.
        Existing fingerprint -> quantity added to that line.

        Raises:
            ValueError: quantity < 1
            ItemUnavailable: item marked unavailable
            InvalidCustomization: variant/add-on not on the item
            CartRestaurantConflict: cart holds another restaurant (reject policy)
            CartError: resulting quantity above the per-line maximum
        """
        if quantity < 1:
            raise ValueError(f"Quantity must be at least 1: {quantity}")

        restaurant_id = restaurant_id or item.restaurant_id
        if not restaurant_id:
            raise ValueError(f"Restaurant id required to add item {item.id}")

        if not item.available:
            raise ItemUnavailable(item.id)

        if item.variants and variant is None:
            customization_rejections.labels(reason='variant_required').inc()
            raise InvalidCustomization(item.id, "a variant must be selected")

        # Validate before touching any state
        resolved_variant = resolve_variant(item, variant)
        resolved_addons = resolve_addons(item, addons)
        unit_price = compute_unit_price(item, resolved_variant, resolved_addons)
        line_fp = fingerprint(item.id, resolved_variant, resolved_addons)

        with self._lock:
            if not self._begin_mutation(request_id):
                return self.snapshot()

            replacing = self.is_different_restaurant(restaurant_id)
            if replacing and not (replace_cart or self.restaurant_policy == POLICY_REPLACE):
                raise CartRestaurantConflict(self._restaurant_id, restaurant_id)

            existing = None if replacing else self._lines.get(line_fp)
            new_quantity = quantity + (existing.quantity if existing else 0)
            if new_quantity > self.max_quantity:
                raise CartError(f"Max quantity per line exceeded: {self.max_quantity}")

            if replacing:
                logger.info(
                    f"Replacing cart from restaurant {self._restaurant_id} "
                    f"with restaurant {restaurant_id}"
                )
                self._lines.clear()

            if existing:
                self._lines[line_fp] = existing.with_quantity(new_quantity)
            else:
                self._lines[line_fp] = CartLine(
                    fingerprint=line_fp,
                    menu_item_id=item.id,
                    name=item.name,
                    unit_price=unit_price,
                    quantity=quantity,
                    restaurant_id=restaurant_id,
                    variant=resolved_variant,
                    addons=resolved_addons,
                    image=item.image,
                )

            self._restaurant_id = restaurant_id

            logger.info(
                f"Added to cart: {item.name} x{quantity} "
                f"(line={line_fp}, unit={unit_price:.2f})"
            )

            self._commit(request_id, 'add')
            return self.snapshot()

    def update_quantity(
        self,
        line_fingerprint: str,
        delta: int,
        request_id: Optional[str] = None
    ) -> CartSnapshot:
        """
        Change a line's quantity by delta. Quantity <= 0 removes the line.

        Raises:
            CartError: unknown fingerprint or quantity above the maximum
        """
        with self._lock:
            if not self._begin_mutation(request_id):
                return self.snapshot()

            line = self._lines.get(line_fingerprint)
            if line is None:
                raise CartError(f"No cart line {line_fingerprint}")

            new_quantity = line.quantity + delta
            if new_quantity > self.max_quantity:
                raise CartError(f"Max quantity per line exceeded: {self.max_quantity}")

            if new_quantity <= 0:
                self._drop_line(line_fingerprint)
                self._commit(request_id, 'remove')
            else:
                self._lines[line_fingerprint] = line.with_quantity(new_quantity)
                self._commit(request_id, 'update')

            return self.snapshot()

    def set_quantity(
        self,
        line_fingerprint: str,
        quantity: int,
        request_id: Optional[str] = None
    ) -> CartSnapshot:
        """Set a line's absolute quantity (<= 0 removes it)."""
        with self._lock:
            if not self._begin_mutation(request_id):
                return self.snapshot()

            line = self._lines.get(line_fingerprint)
            if line is None:
                raise CartError(f"No cart line {line_fingerprint}")
            return self.update_quantity(line_fingerprint, quantity - line.quantity, request_id)

    def remove_line(
        self,
        line_fingerprint: str,
        request_id: Optional[str] = None
    ) -> CartSnapshot:
        """
        Raises:
            CartError: unknown fingerprint
        """
        with self._lock:
            if not self._begin_mutation(request_id):
                return self.snapshot()

            if line_fingerprint not in self._lines:
                raise CartError(f"No cart line {line_fingerprint}")

            self._drop_line(line_fingerprint)
            self._commit(request_id, 'remove')
            return self.snapshot()

    def clear(self) -> CartSnapshot:
        with self._lock:
            self._begin_mutation(None)
            self._lines.clear()
            self._restaurant_id = None
            self._commit(None, 'clear')
            return self.snapshot()

    def _drop_line(self, line_fingerprint: str):
        self._lines.pop(line_fingerprint, None)
        if not self._lines:
            self._restaurant_id = None

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restaurant_id": self._restaurant_id,
            "count": self.count,
            "lines": [line.to_dict() for line in self._lines.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **kwargs) -> "CartLedger":
        """Restore a persisted cart (no broadcast is sent)."""
        ledger = cls(**kwargs)
        for raw in data.get("lines") or []:
            line = CartLine.from_dict(raw)
            existing = ledger._lines.get(line.fingerprint)
            if existing:
                line = existing.with_quantity(existing.quantity + line.quantity)
            ledger._lines[line.fingerprint] = line

        if ledger._lines:
            ledger._restaurant_id = data.get("restaurant_id") or next(
                iter(ledger._lines.values())
            ).restaurant_id

        return ledger


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def add_to_cart(
    cart: CartLedger,
    item: MenuItem,
    quantity: int = 1,
    restaurant_id: Optional[str] = None,
    variant: Optional[OptionRef] = None,
    addons: Optional[Iterable[OptionRef]] = None
) -> Tuple[CartLedger, int]:
    """Add to cart; returns the cart and its running unit count."""
    snapshot = cart.add_to_cart(item, quantity, restaurant_id, variant, addons)
    return cart, snapshot.count


def update_quantity(cart: CartLedger, line_fingerprint: str, delta: int) -> CartLedger:
    cart.update_quantity(line_fingerprint, delta)
    return cart


def remove_line(cart: CartLedger, line_fingerprint: str) -> CartLedger:
    cart.remove_line(line_fingerprint)
    return cart


def cart_total(cart: CartLedger) -> float:
    return cart.cart_total()
