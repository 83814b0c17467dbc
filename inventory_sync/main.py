from __future__ import annotations

import argparse
import logging
import threading
import time
from typing import List, Optional

from . import config, notifier
from .pricing import BatchPriceFetcher
from .ratelimit import RateLimiter
from .reconcile import ReconciliationEngine, SyncReport, owned_policy
from .store import StoreLockedError, StoreWriteError
from .watchlist import Watchlist


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_engine(
    limiter: Optional[RateLimiter] = None,
    batch_size: int = config.PRICE_BATCH_SIZE,
) -> ReconciliationEngine:
    """Engine wired from config.  Pass a limiter to share one budget."""
    fetcher = BatchPriceFetcher(limiter=limiter or RateLimiter(), batch_size=batch_size)
    return ReconciliationEngine(fetcher)


def refresh_once(
    engine: ReconciliationEngine,
    path: str = config.INVENTORY_PATH,
    *,
    force: bool = False,
) -> SyncReport:
    """One refresh pass over the shop inventory, followed by notifications."""
    logger = logging.getLogger(__name__)
    # engine default is stale_owned_policy on the engine clock
    policy = owned_policy() if force else None
    report = engine.sync(path, policy)
    logger.info("Refresh (force=%s): %s", force, report.summary())
    for ident, reason in report.errors:
        logger.debug("  %s: %s", ident, reason)
    notifier.send_price_update(report)
    notifier.send_stock_alerts(report)
    return report


def refresh_loop(engine: ReconciliationEngine, path: str, interval_minutes: int) -> None:
    logger = logging.getLogger(__name__)
    while True:
        try:
            refresh_once(engine, path)
        except (StoreWriteError, StoreLockedError):
            logger.exception("Refresh of %s failed; store left unchanged.", path)
        except Exception:
            logger.exception("Unexpected error during refresh of %s.", path)
        logger.info("Sleeping for %d minutes before next refresh.", interval_minutes)
        time.sleep(interval_minutes * 60)


def send_watchlist_digests(watchlist: Watchlist) -> int:
    """Refresh every user's watchlist and post each one's digest."""
    logger = logging.getLogger(__name__)
    reports = watchlist.refresh_all()
    sent = 0
    for user_id, report in reports.items():
        sent += notifier.send_watchlist_digest(user_id, report)
    logger.info("Watchlist digest refreshed %d users, sent %d messages.", len(reports), sent)
    return sent


def watchlist_digest_loop(watchlist: Watchlist, interval_minutes: int) -> None:
    logger = logging.getLogger(__name__)
    while True:
        try:
            send_watchlist_digests(watchlist)
        except Exception:
            logger.exception("Error in watchlist digest loop")
        time.sleep(interval_minutes * 60)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh inventory prices from JustTCG.")
    parser.add_argument("--path", default=config.INVENTORY_PATH, help="inventory JSON file")
    parser.add_argument("--force", action="store_true", help="ignore the refresh cooldown")
    parser.add_argument("--loop", action="store_true", help="keep running on an interval")
    parser.add_argument("--watchlists", action="store_true", help="also run the watchlist digest loop")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Initialise and run the refresh job."""
    args = parse_args(argv)
    config.validate()
    setup_logging()
    logger = logging.getLogger(__name__)

    # Both loops draw on the same API plan, so they share one limiter.
    limiter = RateLimiter()
    engine = build_engine(limiter)

    if not args.loop:
        try:
            report = refresh_once(engine, args.path, force=args.force)
        except (StoreWriteError, StoreLockedError):
            logger.exception("Refresh failed.")
            return 1
        print(report.summary())
        return 0

    logger.info(
        "Starting refresh loop for %s every %d minutes.",
        args.path, config.REFRESH_INTERVAL_MINUTES,
    )
    if args.watchlists:
        watchlist = Watchlist(build_engine(limiter, config.WATCHLIST_BATCH_SIZE))
        t_watch = threading.Thread(
            target=watchlist_digest_loop,
            args=(watchlist, 24 * 60),
            name="watchlist-digest",
            daemon=True,
        )
        t_watch.start()
    else:
        logger.info("Watchlist digest disabled.")

    refresh_loop(engine, args.path, config.REFRESH_INTERVAL_MINUTES)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
