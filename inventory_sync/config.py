"""Configuration loader.

Reads environment variables and `.env` to configure the inventory sync.
"""

from __future__ import annotations

import os
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


# ---- Store -------------------------------------------------------------------

# Canonical inventory file shared by the web server, the refresh job and the bot.
INVENTORY_PATH: str = _get_env("INVENTORY_PATH", "inventory.json")

# Per-user watchlist files live here (one JSON store per user id).
WATCHLIST_DIR: str = _get_env("WATCHLIST_DIR", "watchlists")

SCHEMA_VERSION: int = 1

# Backup snapshots kept next to the store under backups/.
MAX_BACKUPS: int = _parse_int(_get_env("MAX_BACKUPS", "30"), 30)

# ---- Pricing API -------------------------------------------------------------

# JustTCG authenticates with the x-api-key header.
JUSTTCG_API_KEY: Optional[str] = _get_env("JUSTTCG_API_KEY")
JUSTTCG_API_URL: str = _get_env("JUSTTCG_API_URL", "https://api.justtcg.com/v1/cards")

MAX_BATCH_CALLS_PER_MIN: int = _parse_int(_get_env("MAX_BATCH_CALLS_PER_MIN", "25"), 25)

# Lookups per POST. Plan limits cap this (100 on paid plans, 20 on free).
PRICE_BATCH_SIZE: int = _parse_int(_get_env("PRICE_BATCH_SIZE", "100"), 100)
WATCHLIST_BATCH_SIZE: int = _parse_int(_get_env("WATCHLIST_BATCH_SIZE", "20"), 20)

REQUEST_TIMEOUT_SECONDS: float = _parse_float(_get_env("REQUEST_TIMEOUT_SECONDS", "30"), 30.0)

# Preferred variant condition; other conditions are only a fallback.
TARGET_CONDITION: str = _get_env("TARGET_CONDITION", "Sealed")

# Prices above this are treated as bad data.
MAX_PLAUSIBLE_PRICE: float = _parse_float(_get_env("MAX_PLAUSIBLE_PRICE", "10000"), 10000.0)

# ---- Pricing policy ----------------------------------------------------------

DEFAULT_PRICING_PERCENT: float = _parse_float(_get_env("DEFAULT_PRICING_PERCENT", "90"), 90.0)
MIN_PRICING_PERCENT: float = 1.0
MAX_PRICING_PERCENT: float = 200.0

# Owned items refreshed within this window are skipped unless forced.
REFRESH_COOLDOWN_HOURS: float = _parse_float(_get_env("REFRESH_COOLDOWN_HOURS", "24"), 24.0)

TCG_IMAGE_BASE: str = _get_env(
    "TCG_IMAGE_BASE", "https://product-images.tcgplayer.com/fit-in/437x437/"
)
TCG_PRODUCT_BASE: str = _get_env("TCG_PRODUCT_BASE", "https://www.tcgplayer.com/product/")

# ---- Scheduling --------------------------------------------------------------

REFRESH_INTERVAL_MINUTES: int = _parse_int(_get_env("REFRESH_INTERVAL_MINUTES", "360"), 360)

ON_DEMAND_COOLDOWN_MINUTES: int = _parse_int(_get_env("ON_DEMAND_COOLDOWN_MINUTES", "120"), 120)

# Flag watchlist moves of at least this many percent since the last check (0 disables).
PRICE_ALERT_PCT: float = _parse_float(_get_env("PRICE_ALERT_PCT", "0"), 0.0)

# An item is flagged at most once per this many hours.
ALERT_COOLDOWN_HOURS: float = _parse_float(_get_env("ALERT_COOLDOWN_HOURS", "12"), 12.0)

# ---- Discord -----------------------------------------------------------------

DISCORD_PRICE_WEBHOOK: Optional[str] = _get_env("DISCORD_PRICE_WEBHOOK")
DISCORD_STOCK_WEBHOOK: Optional[str] = _get_env("DISCORD_STOCK_WEBHOOK")
# Daily watchlist digests; one message per user, mentioning them.
DISCORD_WATCHLIST_WEBHOOK: Optional[str] = _get_env("DISCORD_WATCHLIST_WEBHOOK")

# Discord rejects content over 2000 characters.
DISCORD_MAX_CONTENT: int = 1800

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# Wrap read-merge-write in an exclusive lock file.
USE_STORE_LOCK: bool = _parse_bool(_get_env("USE_STORE_LOCK", "false"), False)

# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    if not JUSTTCG_API_KEY:
        raise RuntimeError(
            "JUSTTCG_API_KEY must be set. See .env.example for details."
        )


__all__ = [
    # Store
    "INVENTORY_PATH",
    "WATCHLIST_DIR",
    "SCHEMA_VERSION",
    "MAX_BACKUPS",
    "USE_STORE_LOCK",
    # Pricing API
    "JUSTTCG_API_KEY",
    "JUSTTCG_API_URL",
    "MAX_BATCH_CALLS_PER_MIN",
    "PRICE_BATCH_SIZE",
    "WATCHLIST_BATCH_SIZE",
    "REQUEST_TIMEOUT_SECONDS",
    "TARGET_CONDITION",
    "MAX_PLAUSIBLE_PRICE",
    # Pricing policy
    "DEFAULT_PRICING_PERCENT",
    "MIN_PRICING_PERCENT",
    "MAX_PRICING_PERCENT",
    "REFRESH_COOLDOWN_HOURS",
    "TCG_IMAGE_BASE",
    "TCG_PRODUCT_BASE",
    # Scheduling
    "REFRESH_INTERVAL_MINUTES",
    "ON_DEMAND_COOLDOWN_MINUTES",
    "PRICE_ALERT_PCT",
    "ALERT_COOLDOWN_HOURS",
    # Discord
    "DISCORD_PRICE_WEBHOOK",
    "DISCORD_STOCK_WEBHOOK",
    "DISCORD_WATCHLIST_WEBHOOK",
    "DISCORD_MAX_CONTENT",
    "LOG_LEVEL",
    # Helpers
    "validate",
]
