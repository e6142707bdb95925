"""Backoff tables for polling queued jobs.

A backoff table maps attempt thresholds to extra delay in milliseconds. The
extra delay is added to the polling interval once the attempt number passes
the threshold, e.g. with an interval of 500ms and ``{10: 2000}`` every attempt
after the 10th waits 2500ms.
"""
import math
from typing import Mapping, Optional

DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_POLL_TIMEOUT_SECONDS = 60 * 60
DEFAULT_SHORT_POLL_INTERVAL_MS = 50
DEFAULT_SHORT_POLL_TIMEOUT_SECONDS = 60 * 10

# About 60 minutes of polling with DEFAULT_POLL_INTERVAL_MS
DEFAULT_BACKOFF_MS = {
    0: DEFAULT_POLL_INTERVAL_MS,
    1: 500,
    10: 2000,
    30: 3000,
    50: 5000,
    300: 10000,
    1000: 20000,
}

# About 10 minutes of polling with DEFAULT_SHORT_POLL_INTERVAL_MS
DEFAULT_SHORT_BACKOFF_MS = {
    0: DEFAULT_SHORT_POLL_INTERVAL_MS,
    1: 50,
    10: 200,
    20: 300,
    40: 500,
    50: 1000,
    100: 3000,
    200: 5000,
}


def delay_for_attempt(attempt: int, table: Optional[Mapping[int, int]] = None) -> int:
    """Extra delay for the largest threshold strictly below ``attempt``"""
    if not table:
        return 0
    for threshold in sorted(table, reverse=True):
        if attempt > threshold:
            return table[threshold] or 0
    return table.get(0) or 0


def compute_max_attempts(
    base_interval_ms: int,
    target_duration_seconds: float,
    table: Optional[Mapping[int, int]] = None,
) -> int:
    """Number of attempts whose accumulated waits cover ``target_duration_seconds``.

    Each attempt waits ``base_interval_ms + delay_for_attempt(attempt)``; the
    count returned is the first one whose cumulative wait reaches the target.
    """
    remaining_ms = target_duration_seconds * 1000
    if not table:
        if base_interval_ms <= 0:
            raise ValueError("base_interval_ms must be positive without a backoff table")
        return max(1, math.floor(remaining_ms / base_interval_ms))

    if base_interval_ms + (table[max(table)] or 0) <= 0:
        raise ValueError("backoff table never advances the polling clock")

    attempt = 0
    while remaining_ms > 0:
        remaining_ms -= base_interval_ms + delay_for_attempt(attempt + 1, table)
        attempt += 1
    return max(1, attempt)
