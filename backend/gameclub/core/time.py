from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone


Clock = Callable[[], int]


def utcnow() -> datetime:
    """Return an aware UTC timestamp.

    Use this instead of datetime.utcnow() to avoid tz-naive datetimes and
    upcoming stdlib deprecations.
    """

    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall clock as integer epoch milliseconds.

    Cookie payloads carry every timestamp in this unit so that tokens written
    by earlier deployments keep decoding unchanged.
    """

    return time.time_ns() // 1_000_000
