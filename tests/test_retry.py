from __future__ import annotations

from assessor.core.retry import BackoffPolicy, retry_after_seconds


def test_retry_after_seconds_parses_delta_seconds() -> None:
    assert retry_after_seconds("0") == 0.0
    assert retry_after_seconds("  12 ") == 12.0


def test_retry_after_seconds_returns_none_on_invalid() -> None:
    assert retry_after_seconds(None) is None
    assert retry_after_seconds("") is None
    assert retry_after_seconds("nonsense") is None


def test_retry_after_seconds_past_http_date_is_zero() -> None:
    assert retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_backoff_doubles_and_caps() -> None:
    policy = BackoffPolicy(base_s=1.0, max_s=5.0, jitter=False)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_retry_after_raises_floor_within_cap() -> None:
    policy = BackoffPolicy(base_s=1.0, max_s=10.0, jitter=False)
    assert policy.delay(1, retry_after=4.0) == 4.0
    assert policy.delay(3, retry_after=1.0) == 4.0
    assert policy.delay(1, retry_after=90.0) == 10.0


def test_backoff_jitter_is_bounded() -> None:
    policy = BackoffPolicy(base_s=8.0, max_s=60.0)
    for _ in range(50):
        assert 8.0 <= policy.delay(1) <= 9.0
    assert BackoffPolicy(base_s=0.0, max_s=0.0).delay(3) == 0.0
