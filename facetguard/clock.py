"""
Time source.

Services take a Clock so expiry and review windows can be evaluated against
a controlled "now" in tests. All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
