"""
Engine configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import os


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_str(key: str, default: str) -> str:
    return os.environ.get(key, default)


DATABASE_URL = _get_str("DATABASE_URL", "sqlite:///./season_standings.db")

# What a same-season request does while another recalculation is in flight:
# "queue" waits for it and then runs, "reject" raises ConcurrencyConflict.
RECALC_CONFLICT_POLICY = _get_str("RECALC_CONFLICT_POLICY", "queue").lower()
RECALC_LOCK_TIMEOUT_SECONDS = _get_int("RECALC_LOCK_TIMEOUT_SECONDS", 30)

LOG_LEVEL = _get_str("LOG_LEVEL", "INFO").upper()
