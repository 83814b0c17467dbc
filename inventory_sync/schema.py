"""Canonical inventory item and the normalizer that produces it.

Every record read from or written to a store passes through
:func:`normalize_item`.  Only allow-listed fields survive; anything else a
caller or an older file carries is dropped here, so the on-disk shape never
drifts.  Nothing in this module performs I/O.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import MAX_PRICING_PERCENT, MIN_PRICING_PERCENT
from .utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised for a record that has neither an external id nor a name."""


@dataclass
class InventoryItem:
    name: str = ""
    quantity: int = 0
    external_id: Optional[str] = None
    set_name: Optional[str] = None
    game: Optional[str] = None
    market_price: Optional[float] = None
    your_price: Optional[float] = None
    pricing_percent: Optional[float] = None
    last_updated: Optional[str] = None
    baseline_price: Optional[float] = None
    baseline_at: Optional[str] = None
    image_url: Optional[str] = None
    source_url: Optional[str] = None
    price_error: Optional[str] = None
    last_alerted_at: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return identity_key(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the camelCase store shape, omitting empty optionals."""
        out: Dict[str, Any] = {"name": self.name, "quantity": self.quantity}
        for f in fields(self):
            if f.name in ("name", "quantity"):
                continue
            value = getattr(self, f.name)
            if value is not None:
                out[FIELD_KEYS[f.name]] = value
        return out


# attribute -> JSON key.  This is the schema allow-list.
FIELD_KEYS: Dict[str, str] = {
    "name": "name",
    "quantity": "quantity",
    "external_id": "externalId",
    "set_name": "setName",
    "game": "game",
    "market_price": "marketPrice",
    "your_price": "yourPrice",
    "pricing_percent": "pricingPercent",
    "last_updated": "lastUpdated",
    "baseline_price": "baselinePrice",
    "baseline_at": "baselineAt",
    "image_url": "imageUrl",
    "source_url": "sourceUrl",
    "price_error": "priceError",
    "last_alerted_at": "lastAlertedAt",
}

# Older files and the admin page used the marketplace-specific names.
_LEGACY_KEYS: Dict[str, Tuple[str, ...]] = {
    "externalId": ("tcgPlayerId", "tcgplayerId", "tcgplayer_id"),
    "sourceUrl": ("tcgPlayerUrl",),
}

_GAME_ALIASES = {
    "pokémon": "pokemon",
    "poke": "pokemon",
    "magic: the gathering": "mtg",
}

_CENT = Decimal("0.01")


def _lookup(src: Dict[str, Any], key: str) -> Any:
    value = src.get(key)
    if value is None:
        for alias in _LEGACY_KEYS.get(key, ()):
            value = src.get(alias)
            if value is not None:
                break
    return value


def to_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def to_identifier(value: Any) -> Optional[str]:
    # Marketplace ids are often stored as bare numbers.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return to_str(value)


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_quantity(value: Any) -> int:
    number = _to_number(value)
    if number is None:
        return 0
    return max(0, int(number))


def to_money(value: Any) -> Optional[float]:
    """Round to cents, half away from zero.  Non-numeric input gives None."""
    number = _to_number(value)
    if number is None:
        return None
    try:
        cents = Decimal(repr(number)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return float(cents)


def to_percent(value: Any) -> Optional[float]:
    number = _to_number(value)
    if number is None or not (MIN_PRICING_PERCENT <= number <= MAX_PRICING_PERCENT):
        return None
    return number


def to_timestamp(value: Any) -> Optional[str]:
    parsed = parse_iso(value)
    return to_iso(parsed) if parsed else None


def to_game(value: Any) -> Optional[str]:
    text = to_str(value)
    if not text:
        return None
    game = text.lower()
    return _GAME_ALIASES.get(game, game)


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


def identity_key(item: InventoryItem) -> Optional[str]:
    """External id when present, else the case-folded name.

    The two namespaces are kept apart so an id never matches a name.
    """
    if item.external_id:
        return f"id:{item.external_id}"
    name = normalize_name(item.name)
    if name:
        return f"name:{name}"
    return None


def normalize_item(raw: Any, *, strict: bool = False) -> InventoryItem:
    """Coerce one raw record into an :class:`InventoryItem`.

    With ``strict=True`` a record without identity raises
    :class:`ValidationError`; otherwise it comes back with an empty identity
    and :func:`normalize_collection` filters it out.
    """
    src = raw if isinstance(raw, dict) else {}
    item = InventoryItem(
        name=to_str(_lookup(src, "name")) or "",
        quantity=to_quantity(_lookup(src, "quantity")),
        external_id=to_identifier(_lookup(src, "externalId")),
        set_name=to_str(_lookup(src, "setName")),
        game=to_game(_lookup(src, "game")),
        market_price=to_money(_lookup(src, "marketPrice")),
        your_price=to_money(_lookup(src, "yourPrice")),
        pricing_percent=to_percent(_lookup(src, "pricingPercent")),
        last_updated=to_timestamp(_lookup(src, "lastUpdated")),
        baseline_price=to_money(_lookup(src, "baselinePrice")),
        baseline_at=to_timestamp(_lookup(src, "baselineAt")),
        image_url=to_str(_lookup(src, "imageUrl")),
        source_url=to_str(_lookup(src, "sourceUrl")),
        price_error=to_str(_lookup(src, "priceError")),
        last_alerted_at=to_timestamp(_lookup(src, "lastAlertedAt")),
    )
    if strict and identity_key(item) is None:
        raise ValidationError("record has neither externalId nor name")
    return item


def normalize_collection_counted(items: Iterable[Any]) -> Tuple[List[InventoryItem], int]:
    """Normalise a list of raw records.

    Returns ``(items, dropped)`` where ``dropped`` counts records removed for
    missing identity or for repeating an identity already seen (first one
    wins).
    """
    if not isinstance(items, (list, tuple)):
        raise TypeError(f"expected a list of items, got {type(items).__name__}")

    out: List[InventoryItem] = []
    seen: set[str] = set()
    dropped = 0
    for raw in items:
        if isinstance(raw, InventoryItem):
            raw = raw.to_dict()
        item = normalize_item(raw)
        key = identity_key(item)
        if key is None:
            dropped += 1
            continue
        if key in seen:
            logger.warning("Dropping duplicate record for identity %s", key)
            dropped += 1
            continue
        seen.add(key)
        out.append(item)
    return out, dropped


def normalize_collection(items: Iterable[Any]) -> List[InventoryItem]:
    return normalize_collection_counted(items)[0]


__all__ = [
    "InventoryItem",
    "ValidationError",
    "FIELD_KEYS",
    "normalize_item",
    "normalize_collection",
    "normalize_collection_counted",
    "identity_key",
    "normalize_name",
    "to_money",
    "to_quantity",
    "to_timestamp",
    "to_identifier",
]
