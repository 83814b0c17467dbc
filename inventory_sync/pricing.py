"""Batch price lookups against the JustTCG cards endpoint.

Identifiers are de-duplicated and sent in fixed-size chunks, one POST per
chunk, each gated by a :class:`~inventory_sync.ratelimit.RateLimiter`.  A
chunk that fails (network error, non-2xx, unexpected body) is logged and
skipped; its identifiers come back with a failure reason while the other
chunks carry on.  Failed chunks are not retried within the same run.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests

from . import config
from .ratelimit import RateLimiter
from .utils import get_http_session

logger = logging.getLogger(__name__)

# Per-identifier failure reasons.
NO_VARIANTS = "NO_VARIANTS"
INVALID_PRICE = "INVALID_PRICE"
NOT_FOUND = "NOT_FOUND"
NETWORK_ERROR = "NETWORK_ERROR"
DATA_SHAPE_ERROR = "DATA_SHAPE_ERROR"


class PricingRequestError(Exception):
    """A batch request failed at the transport or HTTP level."""


class DataShapeError(Exception):
    """A batch response was not a card list or a ``{"data": [...]}`` envelope."""


@dataclass
class PriceQuote:
    price: Optional[float]
    name: Optional[str] = None
    set_name: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.price is not None


def chunked(values: Sequence[str], size: int) -> List[List[str]]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(values[i:i + size]) for i in range(0, len(values), size)]


def unique_identifiers(identifiers: Iterable[Any]) -> List[str]:
    """Trimmed, non-empty identifiers in first-seen order."""
    seen: Dict[str, None] = {}
    for raw in identifiers:
        if raw is None:
            continue
        ident = str(raw).strip()
        if ident and ident not in seen:
            seen[ident] = None
    return list(seen)


def extract_cards(payload: Any) -> List[dict]:
    if isinstance(payload, list):
        cards = payload
    elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
        cards = payload["data"]
    else:
        keys = sorted(payload.keys()) if isinstance(payload, dict) else type(payload).__name__
        raise DataShapeError(f"expected a list or {{data: [...]}}, got {keys}")
    return [c for c in cards if isinstance(c, dict)]


def card_identifier(card: dict) -> Optional[str]:
    for key in ("tcgplayerId", "tcgplayer_id", "tcgPlayerId"):
        value = card.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def select_variant(variants: Any, target_condition: str) -> Optional[dict]:
    """Pick the variant whose price represents the card.

    An exact ``condition`` match with a price wins; otherwise the first
    variant carrying any price is used, whatever its condition.
    """
    if not isinstance(variants, list):
        return None
    priced = [v for v in variants if isinstance(v, dict) and v.get("price") is not None]
    for v in priced:
        if v.get("condition") == target_condition:
            return v
    return priced[0] if priced else None


def _sane_price(value: Any, max_price: float) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0 or price > max_price:
        return None
    return price


def quote_from_card(card: dict, target_condition: str, max_price: float) -> PriceQuote:
    name = card.get("name") or None
    set_name = card.get("set_name") or card.get("setName") or None
    variant = select_variant(card.get("variants"), target_condition)
    if variant is None:
        return PriceQuote(price=None, name=name, set_name=set_name, reason=NO_VARIANTS)
    price = _sane_price(variant.get("price"), max_price)
    if price is None:
        logger.debug("Rejecting price %r for card %s", variant.get("price"), card_identifier(card))
        return PriceQuote(price=None, name=name, set_name=set_name, reason=INVALID_PRICE)
    return PriceQuote(price=price, name=name, set_name=set_name)


class BatchPriceFetcher:
    """Fetch one price per identifier from the batch cards endpoint."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        limiter: Optional[RateLimiter] = None,
        api_url: str = config.JUSTTCG_API_URL,
        api_key: Optional[str] = config.JUSTTCG_API_KEY,
        batch_size: int = config.PRICE_BATCH_SIZE,
        target_condition: str = config.TARGET_CONDITION,
        max_price: float = config.MAX_PLAUSIBLE_PRICE,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session = session if session is not None else get_http_session(api_key)
        self.limiter = limiter if limiter is not None else RateLimiter()
        self.api_url = api_url
        self.batch_size = batch_size
        self.target_condition = target_condition
        self.max_price = max_price
        self.timeout = timeout

    def _post_batch(self, chunk: List[str]) -> Any:
        lookups = [{"tcgplayerId": ident} for ident in chunk]
        try:
            resp = self.session.post(self.api_url, json=lookups, timeout=self.timeout)
        except requests.RequestException as e:
            raise PricingRequestError(f"request failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            body = (resp.text or "")[:300]
            raise PricingRequestError(f"HTTP {resp.status_code} {resp.reason or ''} {body}".strip())
        try:
            return resp.json()
        except ValueError as e:
            raise DataShapeError(f"response is not JSON: {e}") from e

    def fetch_prices(self, identifiers: Iterable[Any]) -> Dict[str, PriceQuote]:
        """Return a quote for every distinct identifier requested."""
        ids = unique_identifiers(identifiers)
        results: Dict[str, PriceQuote] = {}
        if not ids:
            return results

        chunks = chunked(ids, self.batch_size)
        for n, chunk in enumerate(chunks, start=1):
            logger.info("Batch %d/%d (%d ids)", n, len(chunks), len(chunk))
            self.limiter.acquire()
            try:
                cards = extract_cards(self._post_batch(chunk))
            except PricingRequestError as e:
                logger.warning("Batch %d/%d failed, skipping: %s", n, len(chunks), e)
                for ident in chunk:
                    results[ident] = PriceQuote(price=None, reason=NETWORK_ERROR)
                continue
            except DataShapeError as e:
                logger.warning("Batch %d/%d returned unexpected data, skipping: %s", n, len(chunks), e)
                for ident in chunk:
                    results[ident] = PriceQuote(price=None, reason=DATA_SHAPE_ERROR)
                continue

            wanted = set(chunk)
            for card in cards:
                ident = card_identifier(card)
                if ident is None or ident not in wanted:
                    continue
                results[ident] = quote_from_card(card, self.target_condition, self.max_price)

            for ident in chunk:
                if ident not in results:
                    results[ident] = PriceQuote(price=None, reason=NOT_FOUND)

            logger.debug(
                "Batch %d: requested=%d returned=%d priced=%d",
                n, len(chunk), len(cards),
                sum(1 for ident in chunk if results[ident].ok),
            )
        return results


__all__ = [
    "BatchPriceFetcher",
    "PriceQuote",
    "PricingRequestError",
    "DataShapeError",
    "select_variant",
    "extract_cards",
    "chunked",
    "unique_identifiers",
    "NO_VARIANTS",
    "INVALID_PRICE",
    "NOT_FOUND",
    "NETWORK_ERROR",
    "DATA_SHAPE_ERROR",
]
