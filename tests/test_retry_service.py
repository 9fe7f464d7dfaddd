from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from scenariomarket.services.retry import (
    RetryAttempt,
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
)


class _TransientError(Exception):
    pass


def test_parse_retry_after_seconds_supports_http_date() -> None:
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


def test_parse_retry_after_seconds_rejects_garbage() -> None:
    assert parse_retry_after_seconds(None) is None
    assert parse_retry_after_seconds("  ") is None
    assert parse_retry_after_seconds("-3") is None
    assert parse_retry_after_seconds("soon") is None
    assert parse_retry_after_seconds("1.5") == 1.5


def test_retry_with_backoff_honors_max_total_sleep() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _TransientError("x")

    with pytest.raises(_TransientError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(
                max_attempts=5,
                base_delay_ms=100,
                max_delay_ms=1000,
                jitter_seed=1,
                max_total_sleep_seconds=0.15,
            ),
            retry_on=(_TransientError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    attempts: list[RetryAttempt] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _TransientError("429")
        return "ok"

    out = retry_with_backoff(
        _fn,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=5000, jitter_seed=3),
        retry_on=(_TransientError,),
        sleep_fn=slept.append,
        on_retry=attempts.append,
        retry_after_getter=lambda _exc: "2",
    )

    assert out == "ok"
    assert slept == [2.0]
    assert attempts[0].used_retry_after is True
    assert attempts[0].error_type == "_TransientError"


def test_non_retryable_errors_propagate_immediately() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(max_attempts=4, base_delay_ms=1, max_delay_ms=1),
            retry_on=(_TransientError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 1


def test_jitter_is_deterministic_for_a_seed() -> None:
    def _delays() -> list[float]:
        slept: list[float] = []

        def _fn() -> None:
            raise _TransientError("x")

        with pytest.raises(_TransientError):
            retry_with_backoff(
                _fn,
                policy=RetryPolicy(max_attempts=4, base_delay_ms=50, max_delay_ms=400, jitter_seed=7),
                retry_on=(_TransientError,),
                sleep_fn=slept.append,
            )
        return slept

    first = _delays()
    assert first == _delays()
    assert len(first) == 3


def test_retry_policy_validates_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0, base_delay_ms=1, max_delay_ms=1)


def test_policy_delay_stays_within_jitter_band_and_cap() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay_ms=100, max_delay_ms=300)
    prng = random.Random(0)

    delays = [policy.delay_ms(attempt, prng)[0] for attempt in (1, 2, 3, 4)]

    assert 50 <= delays[0] <= 150
    assert 100 <= delays[1] <= 300
    assert all(150 <= delay <= 450 for delay in delays[2:])
    assert policy.delay_ms(1, prng, retry_after_s=60) == (300, True)
