"""
Pricing Module
==============
Menu item shapes and the pure pricing resolver for customized cart lines.

A selected variant REPLACES the item's base price; selected add-ons are
summed on top. Variants and add-ons are closed {name, price} structures that
are always resolved against the owning MenuItem's declared lists, never
trusted as opaque client data.
"""

import logging
from typing import Dict, List, Any, Optional, Iterable, Tuple, Union
from dataclasses import dataclass, field

from prometheus_client import Counter


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MAX_ITEM_NAME_LENGTH = 200
MAX_OPTION_PRICE = 100000.00
DEFAULT_CURRENCY = "INR"

# Fingerprint placeholders for "no variant" / "no add-ons"
NO_VARIANT = "default"
NO_ADDONS = "none"


# ============================================================================
# METRICS
# ============================================================================

customization_rejections = Counter(
    'cart_customization_rejections_total',
    'Rejected variant/add-on selections',
    ['reason']
)


# ============================================================================
# ERRORS
# ============================================================================

class InvalidCustomization(Exception):
    """Variant or add-on not recognized for the given menu item."""

    def __init__(self, item_id: str, message: str):
        self.item_id = item_id
        super().__init__(f"Invalid customization for item {item_id}: {message}")


class ItemUnavailable(Exception):
    """Menu item is currently marked unavailable."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Menu item {item_id} is not available")


# ============================================================================
# MENU SHAPES (Immutable)
# ============================================================================

@dataclass(frozen=True)
class Variant:
    """Mutually exclusive option whose price replaces the base price."""
    name: str
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price}


@dataclass(frozen=True)
class Addon:
    """Additive option; any number may be selected."""
    name: str
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price}


@dataclass(frozen=True)
class MenuItem:
    """
    Menu item as seen by customers.

    frozen=True: customers can never alter menu data.
    """
    id: str
    name: str
    price: float
    currency: str = DEFAULT_CURRENCY
    available: bool = True
    variants: Tuple[Variant, ...] = field(default_factory=tuple)
    addons: Tuple[Addon, ...] = field(default_factory=tuple)
    image: Optional[str] = None
    restaurant_id: Optional[str] = None

    @property
    def is_customizable(self) -> bool:
        """True when a customization must be resolved before adding to cart."""
        return bool(self.variants or self.addons)

    def find_variant(self, name: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None

    def find_addon(self, name: str) -> Optional[Addon]:
        for addon in self.addons:
            if addon.name == name:
                return addon
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "currency": self.currency,
            "available": self.available,
            "variants": [v.to_dict() for v in self.variants],
            "addons": [a.to_dict() for a in self.addons],
            "image": self.image,
            "restaurant_id": self.restaurant_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MenuItem":
        """
        Build a validated MenuItem from a stored document.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Menu item must be a mapping")

        item_id = str(data.get("id", "")).strip()
        name = str(data.get("name", "")).strip()
        if not item_id or not name or len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValueError(f"Menu item requires an id and a valid name: {data!r}")

        price = normalize_price(data.get("price"))
        if price is None:
            raise ValueError(f"Invalid price for menu item {item_id}: {data.get('price')!r}")

        variants = tuple(
            Variant(name=n, price=p)
            for n, p in _parse_options(item_id, data.get("variants") or [], "variant")
        )
        addons = tuple(
            Addon(name=n, price=p)
            for n, p in _parse_options(item_id, data.get("addons") or [], "add-on")
        )

        return cls(
            id=item_id,
            name=name,
            price=price,
            currency=str(data.get("currency") or DEFAULT_CURRENCY),
            available=bool(data.get("available", True)),
            variants=variants,
            addons=addons,
            image=data.get("image"),
            restaurant_id=data.get("restaurant_id") or data.get("adminId"),
        )


def _parse_options(item_id: str, raw: Iterable[Any], kind: str) -> List[Tuple[str, float]]:
    options = []
    seen = set()

    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError(f"Malformed {kind} on item {item_id}: {entry!r}")

        name = str(entry.get("name", "")).strip()
        price = normalize_price(entry.get("price"))
        if not name or price is None:
            raise ValueError(f"Malformed {kind} on item {item_id}: {entry!r}")

        if name in seen:
            raise ValueError(f"Duplicate {kind} '{name}' on item {item_id}")

        seen.add(name)
        options.append((name, price))

    return options


def normalize_price(price: Any) -> Optional[float]:
    """Normalize a price to a rounded, non-negative float (None if invalid)."""
    try:
        if isinstance(price, bool):
            return None
        if isinstance(price, (int, float)):
            price_float = float(price)
        elif isinstance(price, str):
            price_clean = price.replace("₹", "").replace("$", "").replace(",", "").strip()
            price_float = float(price_clean)
        else:
            return None

        if price_float < 0 or price_float > MAX_OPTION_PRICE:
            return None

        return round(price_float, 2)

    except (ValueError, TypeError):
        return None


# ============================================================================
# RESOLUTION (Selection -> declared option)
# ============================================================================

OptionRef = Union[str, Variant, Addon, Dict[str, Any]]


def _option_name(option: OptionRef) -> str:
    if isinstance(option, str):
        return option
    if isinstance(option, dict):
        return str(option.get("name", ""))
    return option.name


def _option_price(option: OptionRef) -> Optional[float]:
    if isinstance(option, str):
        return None
    if isinstance(option, dict):
        return normalize_price(option.get("price")) if "price" in option else None
    return option.price


def resolve_variant(item: MenuItem, variant: Optional[OptionRef]) -> Optional[Variant]:
    """
    Resolve a selected variant against the item's declared variants.

    Raises:
        InvalidCustomization: If the variant is unknown or its price disagrees
    """
    if variant is None:
        return None

    name = _option_name(variant)
    declared = item.find_variant(name)
    if declared is None:
        customization_rejections.labels(reason='unknown_variant').inc()
        raise InvalidCustomization(item.id, f"unknown variant '{name}'")

    claimed = _option_price(variant)
    if claimed is not None and claimed != declared.price:
        customization_rejections.labels(reason='price_mismatch').inc()
        raise InvalidCustomization(
            item.id,
            f"variant '{name}' price {claimed} does not match menu price {declared.price}"
        )

    return declared


def resolve_addons(item: MenuItem, addons: Optional[Iterable[OptionRef]]) -> Tuple[Addon, ...]:
    """
    Resolve selected add-ons against the item's declared add-ons.

    Selection has set semantics: repeats collapse, order is canonicalized by name.

    Raises:
        InvalidCustomization: If an add-on is unknown or its price disagrees
    """
    resolved: Dict[str, Addon] = {}

    for addon in addons or ():
        name = _option_name(addon)
        declared = item.find_addon(name)
        if declared is None:
            customization_rejections.labels(reason='unknown_addon').inc()
            raise InvalidCustomization(item.id, f"unknown add-on '{name}'")

        claimed = _option_price(addon)
        if claimed is not None and claimed != declared.price:
            customization_rejections.labels(reason='price_mismatch').inc()
            raise InvalidCustomization(
                item.id,
                f"add-on '{name}' price {claimed} does not match menu price {declared.price}"
            )

        resolved[name] = declared

    return tuple(resolved[name] for name in sorted(resolved))


# ============================================================================
# PRICING (Pure)
# ============================================================================

def compute_unit_price(
    item: MenuItem,
    variant: Optional[OptionRef] = None,
    addons: Optional[Iterable[OptionRef]] = None
) -> float:
    """
    Unit price = (variant price if selected, else base price) + sum(add-on prices).

    Raises:
        InvalidCustomization: If the selection does not belong to the item
    """
    resolved_variant = resolve_variant(item, variant)
    resolved_addons = resolve_addons(item, addons)

    base = resolved_variant.price if resolved_variant else item.price
    return round(base + sum(a.price for a in resolved_addons), 2)


def line_total(unit_price: float, quantity: int) -> float:
    """Line total for a unit price and quantity."""
    return round(unit_price * quantity, 2)


def fingerprint(
    item_id: str,
    variant: Optional[OptionRef] = None,
    addons: Optional[Iterable[OptionRef]] = None
) -> str:
    """
    Canonical cart-line identity.

    Add-on names are sorted before joining so selection order never matters:
        fingerprint("p1", "Large", ["Spicy", "Cheese"]) == "p1_Large_Cheese,Spicy"

    The format matches fingerprints already stored with persisted carts, so
    it is not escaped. A variant literally named "default", an add-on named
    "none", or names containing "_" or "," can therefore share a fingerprint
    with a different selection. Menus should avoid such option names.
    """
    variant_name = _option_name(variant) if variant is not None else ""
    addon_names = sorted({_option_name(a) for a in (addons or ())})

    return "{}_{}_{}".format(
        item_id,
        variant_name or NO_VARIANT,
        ",".join(addon_names) or NO_ADDONS
    )
