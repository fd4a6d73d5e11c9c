"""Timezone-aware clock utilities.

All timestamps in mathlens MUST be UTC-aware.  This module is the
single source of "now" so tests can monkey-patch it trivially.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """RFC 3339 string for the current UTC time, as stored on sessions."""
    return utc_now().isoformat()
