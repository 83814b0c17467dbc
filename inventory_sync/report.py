"""Price delta math and the text blocks sent to Discord."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .config import DISCORD_MAX_CONTENT


@dataclass(frozen=True)
class Delta:
    delta: float
    pct: Optional[float]  # None when the previous price was zero


def calc_delta(current: Optional[float], previous: Optional[float]) -> Optional[Delta]:
    if current is None or previous is None:
        return None
    diff = float(current) - float(previous)
    pct = None if previous == 0 else diff / float(previous) * 100
    return Delta(delta=diff, pct=pct)


def fmt_money(value: float) -> str:
    return f"${float(value):.2f}"


def fmt_signed_money(value: float) -> str:
    v = round(float(value), 2)
    sign = "+" if v >= 0 else "-"
    return f"{sign}${abs(v):.2f}"


def fmt_signed_pct(value: float) -> str:
    v = round(float(value), 2)
    sign = "+" if v >= 0 else "-"
    return f"{sign}{abs(v):.2f}%"


def fmt_delta(d: Optional[Delta]) -> str:
    """``+$10.00 (+10.00%)``; ``N/A`` when there is nothing to compare."""
    if d is None:
        return "N/A"
    pct = fmt_signed_pct(d.pct) if d.pct is not None else "N/A%"
    return f"{fmt_signed_money(d.delta)} ({pct})"


def truncate(text: str, limit: int = DISCORD_MAX_CONTENT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n… (truncated)"


def split_message(text: str, limit: int = 1900) -> List[str]:
    """Split ``text`` into chunks no longer than ``limit``.

    Prefers paragraph breaks, then line breaks, and only cuts mid-line when
    neither is found in the back half of the window.
    """
    remaining = str(text or "")
    chunks: List[str] = []
    floor = limit // 2
    while len(remaining) > limit:
        idx = remaining.rfind("\n\n", 0, limit)
        if idx < floor:
            idx = remaining.rfind("\n", 0, limit)
        if idx < floor:
            idx = limit
        chunks.append(remaining[:idx])
        remaining = remaining[idx:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def price_summary(lines: Sequence[str], updated: int) -> str:
    header = f"📈 Price update completed.\nUpdated items: {updated}\n\n"
    return header + truncate("\n".join(lines))


def stock_summary(title: str, lines: Iterable[str]) -> str:
    lines = list(lines)
    return f"{title} ({len(lines)} items):\n\n" + truncate("\n".join(lines))


__all__ = [
    "Delta",
    "calc_delta",
    "fmt_money",
    "fmt_signed_money",
    "fmt_signed_pct",
    "fmt_delta",
    "truncate",
    "split_message",
    "price_summary",
    "stock_summary",
]
