"""Rate limiting data models.

This module contains dataclasses for window policies and decisions.
"""

import math
from dataclasses import dataclass
from typing import Optional


def make_rate_limit_key(action: str, caller_id: str) -> str:
    """Build the composite key "action:caller" that owns one budget."""
    return f"{action}:{caller_id}"


@dataclass(frozen=True)
class WindowPolicy:
    """Sliding window policy for one action: at most `limit` per `window_seconds`."""
    limit: int
    window_seconds: float

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError("limit must not be negative")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[float] = None
    fail_open: bool = False

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Whole seconds for a Retry-After header, rounded up."""
        if self.retry_after is None:
            return None
        return max(1, math.ceil(self.retry_after))


def format_retry_after(retry_after: float, window_seconds: float) -> str:
    """Human-readable wait time.

    Rounded up to whole minutes for windows shorter than an hour and to
    whole hours otherwise.

    >>> format_retry_after(23 * 3600, 24 * 3600)
    '23 hours'
    >>> format_retry_after(30, 300)
    '1 minute'
    """
    if window_seconds < 3600:
        amount, unit = max(1, math.ceil(retry_after / 60)), "minute"
    else:
        amount, unit = max(1, math.ceil(retry_after / 3600)), "hour"
    return f"{amount} {unit}" if amount == 1 else f"{amount} {unit}s"
