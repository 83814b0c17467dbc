"""Merge fetched prices into the stored collection.

:meth:`ReconciliationEngine.sync` is the single entry point used by the
scheduled refresh job, the on-demand watchlist refresh and the daily
digest.  Callers differ only in the store path, the selection policy and,
for admin saves, an incoming replacement payload.

Ownership of fields on a stored item:

* admin path: ``name``, ``externalId``, ``quantity``, ``pricingPercent``,
  ``setName``, ``game``
* this engine: ``marketPrice``, ``yourPrice``, ``lastUpdated``,
  ``baselinePrice``/``baselineAt``, ``priceError``, ``lastAlertedAt`` and the
  derived links
"""

from __future__ import annotations

import contextlib
import datetime as _dt
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import config
from .pricing import BatchPriceFetcher, PriceQuote
from .report import Delta, calc_delta, fmt_delta, fmt_money
from .schema import InventoryItem, identity_key, normalize_item, normalize_name, to_money
from .store import read_inventory, store_lock, write_inventory
from .utils import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SelectionPolicy = Callable[[InventoryItem], bool]


# ---- Selection policies ------------------------------------------------------

def select_all(item: InventoryItem) -> bool:
    return True


def owned_policy() -> SelectionPolicy:
    """Every item in stock, regardless of when it was last priced."""
    def policy(item: InventoryItem) -> bool:
        return item.quantity > 0
    return policy


def stale_owned_policy(
    max_age_hours: float = config.REFRESH_COOLDOWN_HOURS,
    now: Callable[[], _dt.datetime] = utc_now,
) -> SelectionPolicy:
    """Items in stock whose price is missing or older than ``max_age_hours``."""
    max_age = _dt.timedelta(hours=max_age_hours)

    def policy(item: InventoryItem) -> bool:
        if item.quantity <= 0:
            return False
        last = parse_iso(item.last_updated)
        return last is None or now() - last >= max_age
    return policy


# ---- Report types ------------------------------------------------------------

@dataclass
class RestockEvent:
    identity: str
    name: str
    old_quantity: int
    new_quantity: int

    @property
    def delta(self) -> int:
        return self.new_quantity - self.old_quantity


@dataclass
class NewItemEvent:
    identity: str
    name: str
    quantity: int
    external_id: Optional[str] = None


@dataclass
class PriceChange:
    identity: str
    name: str
    previous: Optional[float]
    current: float
    your_price: Optional[float]
    quantity: int
    since_last: Optional[Delta]
    since_baseline: Optional[Delta]
    alert: bool = False

    def line(self) -> str:
        your = fmt_money(self.your_price) if self.your_price is not None else "N/A"
        return (
            f"• {self.name} → {your} (market {fmt_money(self.current)}) qty:{self.quantity}"
            f" | Δ last {fmt_delta(self.since_last)} | Δ baseline {fmt_delta(self.since_baseline)}"
        )


@dataclass
class SyncReport:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    dropped: int = 0
    total_items: int = 0
    restocks: List[RestockEvent] = field(default_factory=list)
    new_items: List[NewItemEvent] = field(default_factory=list)
    price_changes: List[PriceChange] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
    items: List[InventoryItem] = field(default_factory=list)

    @property
    def alerts(self) -> List[PriceChange]:
        return [c for c in self.price_changes if c.alert]

    def summary(self) -> str:
        return (
            f"processed={self.processed} updated={self.updated} skipped={self.skipped} "
            f"errored={self.errored} dropped={self.dropped} total={self.total_items} "
            f"restocks={len(self.restocks)} new={len(self.new_items)}"
        )


# ---- Merge helpers -----------------------------------------------------------

def build_index(items: Sequence[InventoryItem]) -> Dict[str, InventoryItem]:
    """Identity key -> item over the whole collection."""
    index: Dict[str, InventoryItem] = {}
    for it in items:
        key = identity_key(it)
        if key is not None and key not in index:
            index[key] = it
    return index


def _match(index: Dict[str, InventoryItem], row: InventoryItem) -> Optional[str]:
    if row.external_id and f"id:{row.external_id}" in index:
        return f"id:{row.external_id}"
    name = normalize_name(row.name)
    if name and f"name:{name}" in index:
        return f"name:{name}"
    return None


def merge_admin_payload(
    existing: Sequence[InventoryItem], payload: Any
) -> Tuple[List[InventoryItem], List[NewItemEvent], List[RestockEvent], int]:
    """Apply a full replacement payload from the admin path.

    Returns ``(items, new_items, restocks, dropped)``.  Stored items the
    payload does not mention are removed.  A restock is any matched item
    whose quantity went up, even when the row also changed its identity
    (a name-only item gaining an ``externalId``).
    """
    if not isinstance(payload, list):
        raise TypeError(f"expected a list of items, got {type(payload).__name__}")

    index = build_index(existing)
    merged: List[InventoryItem] = []
    new_items: List[NewItemEvent] = []
    restocks: List[RestockEvent] = []
    seen: set[str] = set()
    dropped = 0

    for raw in payload:
        row = normalize_item(raw)
        row_key = identity_key(row)
        if row_key is None or row_key in seen:
            dropped += 1
            continue

        key = _match(index, row)
        old_quantity: Optional[int] = None
        if key is not None:
            current = index.pop(key)
            old_quantity = current.quantity
            given = raw if isinstance(raw, dict) else {}
            updated = replace(
                current,
                name=row.name or current.name,
                external_id=row.external_id or current.external_id,
                quantity=row.quantity,
                set_name=row.set_name or current.set_name,
                game=row.game or current.game,
                pricing_percent=(
                    row.pricing_percent if "pricingPercent" in given else current.pricing_percent
                ),
            )
        else:
            updated = InventoryItem(
                name=row.name or "Unnamed product",
                quantity=row.quantity,
                external_id=row.external_id,
                set_name=row.set_name,
                game=row.game,
                pricing_percent=row.pricing_percent,
            )
            new_items.append(
                NewItemEvent(
                    identity=identity_key(updated) or row_key,
                    name=updated.name,
                    quantity=updated.quantity,
                    external_id=updated.external_id,
                )
            )

        updated_key = identity_key(updated) or row_key
        if updated_key in seen:
            dropped += 1
            continue
        seen.add(row_key)
        seen.add(updated_key)
        merged.append(updated)
        if old_quantity is not None and updated.quantity > old_quantity:
            restocks.append(RestockEvent(updated_key, updated.name, old_quantity, updated.quantity))

    return merged, new_items, restocks, dropped


# ---- Engine ------------------------------------------------------------------

class ReconciliationEngine:
    """Read, refresh, merge and persist a collection in one pass."""

    def __init__(
        self,
        fetcher: BatchPriceFetcher,
        *,
        default_percent: float = config.DEFAULT_PRICING_PERCENT,
        image_base: Optional[str] = config.TCG_IMAGE_BASE,
        product_base: Optional[str] = config.TCG_PRODUCT_BASE,
        alert_pct: float = config.PRICE_ALERT_PCT,
        alert_cooldown_hours: float = config.ALERT_COOLDOWN_HOURS,
        max_backups: int = config.MAX_BACKUPS,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self.fetcher = fetcher
        self.default_percent = default_percent
        self.image_base = image_base
        self.product_base = product_base
        self.alert_pct = alert_pct
        self.alert_cooldown = _dt.timedelta(hours=alert_cooldown_hours)
        self.max_backups = max_backups
        self.clock = clock

    def derive_your_price(self, market: float, percent: Optional[float]) -> Optional[float]:
        pct = percent if percent is not None else self.default_percent
        return to_money(market * pct / 100)

    def _alert_cooldown_elapsed(self, item: InventoryItem, now_iso: str) -> bool:
        last = parse_iso(item.last_alerted_at)
        now = parse_iso(now_iso)
        return last is None or now is None or now - last >= self.alert_cooldown

    def apply_quote(self, item: InventoryItem, quote: PriceQuote, now_iso: str) -> Optional[PriceChange]:
        """Merge one quote into ``item``.  Returns a change record on success."""
        if not quote.ok:
            # Keep the last known price; only flag the failure.
            item.price_error = quote.reason or "UNKNOWN"
            return None

        price = to_money(quote.price)
        previous = item.market_price
        item.market_price = price
        item.your_price = self.derive_your_price(price, item.pricing_percent)
        item.last_updated = now_iso
        item.price_error = None
        if item.baseline_price is None:
            item.baseline_price = price
            item.baseline_at = now_iso

        if not item.name and quote.name:
            item.name = quote.name
        if not item.set_name and quote.set_name:
            item.set_name = quote.set_name
        if item.external_id:
            if not item.image_url and self.image_base:
                item.image_url = f"{self.image_base}{item.external_id}.jpg"
            if not item.source_url and self.product_base:
                item.source_url = f"{self.product_base}{item.external_id}"

        since_last = calc_delta(price, previous)
        alert = bool(
            self.alert_pct > 0
            and since_last is not None
            and since_last.pct is not None
            and abs(since_last.pct) >= self.alert_pct
            and self._alert_cooldown_elapsed(item, now_iso)
        )
        if alert:
            item.last_alerted_at = now_iso
        return PriceChange(
            identity=identity_key(item) or "",
            name=item.name or quote.name or "(unknown)",
            previous=previous,
            current=price,
            your_price=item.your_price,
            quantity=item.quantity,
            since_last=since_last,
            since_baseline=calc_delta(price, item.baseline_price),
            alert=alert,
        )

    def sync(
        self,
        collection_path,
        selection_policy: Optional[SelectionPolicy] = None,
        *,
        incoming: Any = None,
        lock: bool = config.USE_STORE_LOCK,
    ) -> SyncReport:
        """Refresh prices for the items ``selection_policy`` picks and persist.

        With ``incoming`` set, the admin replacement payload is merged first
        and restock/new-item events are reported.  Store write failures
        propagate; everything per-item or per-batch ends up in the report.
        """
        guard = store_lock(collection_path) if lock else contextlib.nullcontext()
        with guard:
            return self._sync(collection_path, selection_policy, incoming)

    def _sync(self, path, policy: Optional[SelectionPolicy], incoming: Any) -> SyncReport:
        policy = policy or stale_owned_policy(now=self.clock)
        report = SyncReport()

        items = read_inventory(path).items

        if incoming is not None:
            items, report.new_items, report.restocks, report.dropped = merge_admin_payload(
                items, incoming
            )

        index = build_index(items)
        selected = [it for it in items if it.external_id and policy(it)]
        report.skipped = len(items) - len(selected)

        if selected:
            quotes = self.fetcher.fetch_prices([it.external_id for it in selected])
            report.processed = len(quotes)
            now_iso = to_iso(self.clock())
            for ident, quote in quotes.items():
                item = index.get(f"id:{ident}")
                if item is None:
                    logger.debug("No stored item for identifier %s", ident)
                    continue
                change = self.apply_quote(item, quote, now_iso)
                if change is not None:
                    report.updated += 1
                    report.price_changes.append(change)
                else:
                    report.errored += 1
                    report.errors.append((ident, item.price_error or ""))

        payload = write_inventory(path, items, max_backups=self.max_backups)
        report.total_items = payload["totalItems"]
        report.items = items
        logger.info("Sync of %s finished: %s", path, report.summary())
        return report


__all__ = [
    "ReconciliationEngine",
    "SyncReport",
    "RestockEvent",
    "NewItemEvent",
    "PriceChange",
    "SelectionPolicy",
    "select_all",
    "owned_policy",
    "stale_owned_policy",
    "build_index",
    "merge_admin_payload",
]
