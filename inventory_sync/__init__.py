"""
Inventory price sync package.

This package keeps a JSON catalog of sealed product inventory priced from
the JustTCG batch API: schema normalisation, an atomically written and
backed-up file store, rate-limited batch price lookups, and the
reconciliation pass that merges fetched prices into stored records.  Per-user
watchlists and Discord webhook summaries sit on top.
"""

__all__ = [
    "config",
    "schema",
    "store",
    "ratelimit",
    "pricing",
    "reconcile",
    "report",
    "watchlist",
    "notifier",
    "main",
    "utils",
]
