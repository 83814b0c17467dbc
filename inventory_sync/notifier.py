"""Discord webhook notifier.

Posts plain-text summaries of a sync run: price updates to the price
webhook, new stock and restocks to the stock webhook, and each user's daily
watchlist digest to the watchlist webhook.  Delivery problems
are logged; a notification never fails a sync that already persisted.
"""
from __future__ import annotations

import logging
from typing import Optional

import requests

from .config import DISCORD_PRICE_WEBHOOK, DISCORD_STOCK_WEBHOOK, DISCORD_WATCHLIST_WEBHOOK
from .reconcile import SyncReport
from .report import price_summary, stock_summary
from .utils import HTTPError, get_http_session, retryable_request
from .watchlist import build_price_lines, render_messages

logger = logging.getLogger(__name__)


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def send_message(
    content: str,
    webhook_url: Optional[str],
    session: Optional[requests.Session] = None,
) -> bool:
    if not webhook_url:
        logger.debug("Discord webhook URL is not configured; skipping message.")
        return False
    if not content:
        return False

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        _post(session, webhook_url, json={"content": content}, timeout=20)
        return True
    except (requests.RequestException, HTTPError) as e:
        logger.error("Discord webhook failed: %s", e)
        return False
    finally:
        if close_session:
            session.close()


def send_price_update(
    report: SyncReport,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> bool:
    if report.updated <= 0:
        return False
    if webhook_url is None:
        webhook_url = DISCORD_PRICE_WEBHOOK
    lines = [c.line() for c in report.price_changes]
    logger.info("Sending price update for %d items", report.updated)
    return send_message(price_summary(lines, report.updated), webhook_url, session)


def send_stock_alerts(
    report: SyncReport,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> int:
    """Post new-item and restock messages.  Returns how many were sent."""
    if webhook_url is None:
        webhook_url = DISCORD_STOCK_WEBHOOK
    sent = 0
    if report.new_items:
        lines = []
        for ev in report.new_items:
            id_part = f" [{ev.external_id}]" if ev.external_id else ""
            lines.append(f"• {ev.name}{id_part} x{ev.quantity}")
        if send_message(stock_summary("📦 New stock added", lines), webhook_url, session):
            sent += 1
    if report.restocks:
        lines = [
            f"• {ev.name or ev.identity}: {ev.old_quantity} → {ev.new_quantity} (+{ev.delta})"
            for ev in report.restocks
        ]
        if send_message(stock_summary("🔁 Restocked", lines), webhook_url, session):
            sent += 1
    return sent


def send_watchlist_digest(
    user_id: str,
    report: SyncReport,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> int:
    """Post one user's daily price lines, split to fit Discord's limit."""
    if webhook_url is None:
        webhook_url = DISCORD_WATCHLIST_WEBHOOK
    lines = build_price_lines(report)
    if not lines:
        return 0
    sent = 0
    for chunk in render_messages(f"📅 Daily price update for <@{user_id}>:", lines):
        if send_message(chunk, webhook_url, session):
            sent += 1
    return sent


__all__ = ["send_message", "send_price_update", "send_stock_alerts", "send_watchlist_digest"]
