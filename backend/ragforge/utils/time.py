"""Time helpers.

Timestamps are stored as epoch seconds (REAL columns) so that SQL can compare
``next_retry_at`` and retention cut-offs directly.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ts() -> float:
    return time.time()


def to_datetime(ts: float | None) -> datetime | None:
    """Convert an epoch timestamp to an aware UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)
