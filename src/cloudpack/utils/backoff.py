"""Delay calculation for retried registry calls."""

import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait according to a ``Retry-After`` header, if usable.

    Accepts both forms the header allows: a number of seconds or an HTTP
    date. Returns None for a missing or unparseable value.
    """
    if not value or not value.strip():
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def get_backoff_delay(
    attempt: int,
    base: float = 0.5,
    max_seconds: float = 10.0,
    jitter: float = 0.2,
    retry_after: Optional[float] = None,
) -> float:
    """
    Returns the delay in seconds before retry number ``attempt + 1``.

    Parameters:
    - attempt (int): Zero-based count of failed attempts so far.
    - base (float): Delay after the first failure; doubles on each attempt.
    - max_seconds (float): Upper bound on any delay, server hints included.
    - jitter (float): Random jitter as a fraction (e.g., 0.2 = ±20%).
    - retry_after (float): Server-requested wait, used as a floor.

    Returns:
    - float: The delay in seconds.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    delay = min(base * (2**attempt), max_seconds)
    if jitter:
        delay *= random.uniform(1 - jitter, 1 + jitter)

    if retry_after is not None:
        delay = max(delay, min(retry_after, max_seconds))
    return delay
