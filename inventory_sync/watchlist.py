"""Per-user price watchlists.

Each user gets their own store file under ``WATCHLIST_DIR`` using the same
item schema as the shop inventory: the user's label is kept as ``name`` and
the baseline fields record the first price seen after the item was added.
Every refresh goes through :class:`~inventory_sync.reconcile.ReconciliationEngine`;
this module only adds the watchlist bookkeeping and the text a chat adapter
sends back.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from . import config
from .reconcile import ReconciliationEngine, SyncReport, select_all
from .report import calc_delta, fmt_delta, fmt_money, split_message
from .schema import InventoryItem, to_identifier
from .store import StoreWriteError, load_items, write_inventory

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r'"([^"]*)"|(\S+)')
_USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class CooldownActive(Exception):
    """An on-demand refresh was asked for inside the user's cooldown."""

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = remaining_seconds
        minutes = max(1, int(-(-remaining_seconds // 60)))
        super().__init__(f"Cooldown: try again in ~{minutes} minute(s).")


def parse_add_pairs(text: str) -> List[Tuple[str, str]]:
    """Parse ``543843 "Booster Box" 543844 "Bundle"`` into (id, label) pairs."""
    tokens = [m.group(1) if m.group(1) is not None else m.group(2)
              for m in _TOKEN_RE.finditer(text or "")]
    pairs: List[Tuple[str, str]] = []
    for i in range(0, len(tokens), 2):
        ident = tokens[i].strip()
        label = tokens[i + 1].strip() if i + 1 < len(tokens) else ""
        if ident:
            pairs.append((ident, label))
    return pairs


class Watchlist:
    def __init__(
        self,
        engine: ReconciliationEngine,
        directory: str = config.WATCHLIST_DIR,
        *,
        cooldown_minutes: float = config.ON_DEMAND_COOLDOWN_MINUTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.directory = Path(directory)
        self.cooldown_seconds = cooldown_minutes * 60
        self._clock = clock
        self._last_on_demand: Dict[str, float] = {}

    def path_for(self, user_id: str) -> Path:
        user_id = str(user_id).strip()
        if not _USER_ID_RE.match(user_id):
            raise ValueError(f"invalid user id: {user_id!r}")
        return self.directory / f"{user_id}.json"

    def user_ids(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json") if p.is_file())

    def list_items(self, user_id: str) -> List[InventoryItem]:
        items = load_items(self.path_for(user_id))
        return sorted(items, key=lambda it: it.external_id or "")

    def add_items(self, user_id: str, pairs: Sequence[Tuple[str, str]]) -> List[InventoryItem]:
        """Add or relabel items, keeping any baseline already recorded.

        A price check runs straight away so the baseline is locked as early
        as possible; a failure there is logged and does not undo the add.
        """
        path = self.path_for(user_id)
        items = load_items(path)
        by_id = {it.external_id: it for it in items if it.external_id}
        added: List[str] = []
        for raw_id, label in pairs:
            ident = to_identifier(raw_id)
            if not ident:
                continue
            existing = by_id.get(ident)
            if existing is not None:
                existing.name = label or existing.name
            else:
                item = InventoryItem(name=label, external_id=ident)
                items.append(item)
                by_id[ident] = item
            if ident not in added:
                added.append(ident)
        write_inventory(path, items, max_backups=self.engine.max_backups)

        wanted = set(added)
        try:
            self.engine.sync(path, lambda it: it.external_id in wanted)
        except StoreWriteError:
            logger.exception("Baseline fetch failed on add for user %s", user_id)
        fresh = {it.external_id: it for it in load_items(path)}
        return [fresh[i] for i in added if i in fresh]

    def remove_item(self, user_id: str, external_id: str) -> bool:
        path = self.path_for(user_id)
        items = load_items(path)
        ident = str(external_id).strip()
        kept = [it for it in items if it.external_id != ident]
        if len(kept) == len(items):
            return False
        write_inventory(path, kept, max_backups=self.engine.max_backups)
        return True

    def refresh_now(self, user_id: str, *, is_admin: bool = False) -> SyncReport:
        """On-demand refresh for one user, limited by a per-user cooldown."""
        if not is_admin:
            now = self._clock()
            last = self._last_on_demand.get(user_id)
            if last is not None and now - last < self.cooldown_seconds:
                raise CooldownActive(self.cooldown_seconds - (now - last))
            self._last_on_demand[user_id] = now
        return self.engine.sync(self.path_for(user_id), select_all)

    def refresh_all(self) -> Dict[str, SyncReport]:
        """Scheduled digest: refresh every user's list, one store at a time."""
        reports: Dict[str, SyncReport] = {}
        for user_id in self.user_ids():
            try:
                reports[user_id] = self.engine.sync(self.path_for(user_id), select_all)
            except StoreWriteError:
                logger.exception("Daily refresh failed for user %s", user_id)
        return reports


# ---- Text --------------------------------------------------------------------

def build_list_lines(items: Sequence[InventoryItem]) -> List[str]:
    lines = []
    for it in items:
        base = fmt_money(it.baseline_price) if it.baseline_price is not None else "N/A"
        lines.append(f"• {it.name or '(no label)'} — ID: {it.external_id} — Baseline: {base}")
    return lines


def build_price_lines(report: SyncReport) -> List[str]:
    """One block per watched item with market price and both deltas."""
    changes = {c.identity: c for c in report.price_changes}
    lines = []
    for it in sorted(report.items, key=lambda i: i.external_id or ""):
        change = changes.get(f"id:{it.external_id}")
        set_part = f" [{it.set_name}]" if it.set_name else ""
        label = it.name or "(no label)"
        if change is not None:
            market = fmt_money(change.current)
            since_last = fmt_delta(change.since_last)
            since_added = fmt_delta(change.since_baseline)
        else:
            market = "N/A"
            since_last = since_added = "N/A"
        flag = " 🚨" if change is not None and change.alert else ""
        lines.append(
            f"• {label}{set_part}{flag}\n"
            f"  ID: {it.external_id} – Market: {market}\n"
            f"  Δ since last: {since_last}\n"
            f"  Δ since added: {since_added}"
        )
    return lines


def build_stats(report: SyncReport, as_of: Optional[str] = None) -> str:
    rows = []
    for it in report.items:
        d = calc_delta(it.market_price, it.baseline_price)
        rows.append((it, d))

    priced = [it for it, _ in rows if it.market_price is not None]
    with_base = [(it, d) for it, d in rows if d is not None]
    total_market = sum(it.market_price for it in priced)
    total_base = sum(it.baseline_price for it, _ in with_base)
    total_delta = sum(d.delta for _, d in with_base)

    lines = ["📊 Inventory Stats"]
    if as_of:
        lines.append(f"As of: {as_of}")
    lines += [
        "",
        f"Tracked items: {len(rows)}",
        f"Priced items: {len(priced)}",
        f"Items with baseline: {len(with_base)}",
        "",
        f"Total Market (priced): {fmt_money(total_market)}",
    ]
    if with_base:
        lines.append(f"Total Baseline: {fmt_money(total_base)}")
        lines.append(f"Net Change vs Added: {fmt_delta(calc_delta(total_base + total_delta, total_base))}")
    else:
        lines.append("Net Change vs Added: N/A (no baselines yet)")

    ranked = sorted(
        [(it, d) for it, d in with_base if d.pct is not None],
        key=lambda r: r[1].pct,
        reverse=True,
    )

    def _row(it: InventoryItem, d) -> str:
        set_part = f" [{it.set_name}]" if it.set_name else ""
        return f"• {it.name or '(unknown)'}{set_part} — {fmt_delta(d)}"

    if ranked:
        lines += ["", "🏆 Top Winners (since added)"]
        lines += [_row(it, d) for it, d in ranked[:3]]
        lines += ["", "📉 Top Losers (since added)"]
        lines += [_row(it, d) for it, d in list(reversed(ranked))[:3]]
    return "\n".join(lines)


def render_messages(header: str, lines: Sequence[str]) -> List[str]:
    return split_message(f"{header}\n\n" + "\n\n".join(lines))


__all__ = [
    "Watchlist",
    "CooldownActive",
    "parse_add_pairs",
    "build_list_lines",
    "build_price_lines",
    "build_stats",
    "render_messages",
]
