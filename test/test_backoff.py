import pytest
from pydantic import ValidationError
from scene_job_client.backoff import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_SHORT_BACKOFF_MS,
    DEFAULT_SHORT_POLL_INTERVAL_MS,
    compute_max_attempts,
    delay_for_attempt,
)
from scene_job_client.models import Polling
from scene_job_client.polling import DEFAULT_POLLING, DEFAULT_SHORT_POLLING, polling_delay


def cumulative_wait_ms(attempts: int, interval_ms: int, table) -> int:
    return sum(interval_ms + delay_for_attempt(a, table) for a in range(1, attempts + 1))


def test_no_table_adds_no_delay():
    assert delay_for_attempt(1) == 0
    assert delay_for_attempt(500, {}) == 0


@pytest.mark.parametrize(
    "attempt, expected",
    [(0, 500), (1, 500), (2, 500), (10, 500), (11, 2000), (30, 2000), (31, 3000),
     (51, 5000), (301, 10000), (1000, 10000), (1001, 20000), (50000, 20000)],
)
def test_delay_uses_largest_threshold_below_attempt(attempt, expected):
    assert delay_for_attempt(attempt, DEFAULT_BACKOFF_MS) == expected


@pytest.mark.parametrize("table", [DEFAULT_BACKOFF_MS, DEFAULT_SHORT_BACKOFF_MS, {5: 10, 2: 1}])
def test_delay_is_non_decreasing(table):
    delays = [delay_for_attempt(a, table) for a in range(0, 1500)]
    assert delays == sorted(delays)


def test_max_attempts_without_table():
    assert compute_max_attempts(500, 60) == 120
    assert compute_max_attempts(1000, 0.5) == 1


def test_max_attempts_rejects_zero_interval_without_table():
    with pytest.raises(ValueError):
        compute_max_attempts(0, 60)


@pytest.mark.parametrize(
    "interval_ms, table",
    [(DEFAULT_POLL_INTERVAL_MS, DEFAULT_BACKOFF_MS),
     (DEFAULT_SHORT_POLL_INTERVAL_MS, DEFAULT_SHORT_BACKOFF_MS)],
)
@pytest.mark.parametrize("duration_seconds", [1, 60, 600, 3600])
def test_max_attempts_covers_duration_within_one_step(interval_ms, table, duration_seconds):
    attempts = compute_max_attempts(interval_ms, duration_seconds, table)
    target_ms = duration_seconds * 1000

    assert cumulative_wait_ms(attempts, interval_ms, table) >= target_ms
    assert cumulative_wait_ms(attempts - 1, interval_ms, table) < target_ms


def test_default_polling_profiles_derive_their_budget():
    assert DEFAULT_POLLING.max_attempts == compute_max_attempts(
        DEFAULT_POLL_INTERVAL_MS, 3600, DEFAULT_BACKOFF_MS
    )
    assert DEFAULT_SHORT_POLLING.max_attempts == compute_max_attempts(
        DEFAULT_SHORT_POLL_INTERVAL_MS, 600, DEFAULT_SHORT_BACKOFF_MS
    )


def test_polling_derives_attempts_from_duration():
    polling = Polling(interval_ms=100, max_poll_duration_seconds=1)
    assert polling.max_attempts == 10


def test_polling_refuses_explicit_attempts_with_backoff():
    with pytest.raises(ValidationError):
        Polling(interval_ms=100, max_attempts=3, backoff={0: 10})


def test_polling_delay_adds_backoff_to_interval():
    polling = Polling(interval_ms=100, backoff={0: 0, 2: 400}, max_poll_duration_seconds=10)
    assert polling_delay(1, polling) == pytest.approx(0.1)
    assert polling_delay(3, polling) == pytest.approx(0.5)
