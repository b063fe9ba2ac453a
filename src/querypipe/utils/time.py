"""Time helpers shared by error records and cache snapshots."""

import time
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    """Timezone-aware current UTC time, used for error timestamps."""
    return datetime.now(UTC)


def epoch_seconds() -> float:
    return time.time()


def seconds_since(timestamp: Any, now: float) -> float | None:
    """Age of an epoch ``timestamp`` at ``now``, clamped at zero.

    Returns None when ``timestamp`` is not a number (booleans included),
    so callers can treat an unreadable timestamp as stale.
    """
    if not isinstance(timestamp, int | float) or isinstance(timestamp, bool):
        return None
    return max(0.0, now - float(timestamp))
