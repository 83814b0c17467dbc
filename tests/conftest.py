"""Shared fixtures: fake clocks and a scripted pricing API session."""

import datetime as dt
from unittest.mock import MagicMock

import pytest

from inventory_sync.pricing import BatchPriceFetcher
from inventory_sync.ratelimit import RateLimiter
from inventory_sync.reconcile import ReconciliationEngine


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None):
        self._payload = payload
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self.text = text if text is not None else ""

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class WallClock:
    def __init__(self, start=dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += dt.timedelta(**kwargs)


def card(ident, price, condition="Sealed", name=None, set_name="Base Set"):
    return {
        "tcgplayerId": ident,
        "name": name or f"Product {ident}",
        "set_name": set_name,
        "variants": [{"condition": condition, "price": price}],
    }


def pricing_session(prices, fail_ids=(), envelope=True):
    """MagicMock session answering POSTs from a ``{id: price}`` table.

    A batch containing any id in ``fail_ids`` raises a connection error.
    """
    import requests

    session = MagicMock()

    def post(url, json=None, timeout=None):
        ids = [lookup["tcgplayerId"] for lookup in json]
        if any(i in fail_ids for i in ids):
            raise requests.ConnectionError("connection reset")
        cards = [card(i, prices[i]) for i in ids if i in prices]
        return FakeResponse({"data": cards} if envelope else cards)

    session.post.side_effect = post
    return session


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def make_engine(fake_clock, wall_clock):
    def _make(session, batch_size=100, max_calls=25, **kwargs):
        limiter = RateLimiter(max_calls, clock=fake_clock, sleep=fake_clock.sleep)
        fetcher = BatchPriceFetcher(session, limiter=limiter, batch_size=batch_size, api_url="https://api.test/v1/cards")
        kwargs.setdefault("default_percent", 90)
        kwargs.setdefault("alert_pct", 0)
        return ReconciliationEngine(fetcher, clock=wall_clock, **kwargs)
    return _make
