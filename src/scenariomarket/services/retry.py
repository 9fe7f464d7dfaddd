from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with seeded jitter.

    ``max_total_sleep_seconds`` caps the summed delays; once the next delay would
    exceed it the last error is raised instead of sleeping.
    """

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    jitter_seed: int = 0
    max_total_sleep_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")

    def delay_ms(
        self, attempt: int, prng: random.Random, retry_after_s: float | None = None
    ) -> tuple[int, bool]:
        """Delay before retry ``attempt``; a server-sent Retry-After wins but is still capped."""

        if retry_after_s is not None:
            return min(self.max_delay_ms, int(retry_after_s * 1000)), True
        ceiling = min(self.max_delay_ms, self.base_delay_ms << max(0, attempt - 1))
        return int(ceiling * (0.5 + prng.random())), False


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Accept either delta-seconds or an HTTP date, as a webhook receiver may send."""

    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        seconds = float(candidate)
    except ValueError:
        try:
            when = parsedate_to_datetime(candidate)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max(0.0, (when - datetime.now(UTC)).total_seconds())
    return seconds if seconds >= 0 else None


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: Sequence[type[Exception]],
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds, re-raising the last error once attempts run out.

    Only exceptions listed in ``retry_on`` are retried; anything else propagates on
    the first occurrence.
    """

    sleep = sleep_fn or time.sleep
    retryable = tuple(retry_on)
    prng = random.Random(policy.jitter_seed)
    slept_s = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except retryable as exc:
            if attempt >= policy.max_attempts:
                raise
            hint = retry_after_getter(exc) if retry_after_getter is not None else None
            delay_ms, used_retry_after = policy.delay_ms(
                attempt, prng, parse_retry_after_seconds(hint)
            )
            budget = policy.max_total_sleep_seconds
            if budget is not None and slept_s + delay_ms / 1000.0 > budget:
                raise
            slept_s += delay_ms / 1000.0
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=used_retry_after,
                    )
                )
            sleep(delay_ms / 1000.0)
