from __future__ import annotations

import contextvars
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

from scenariomarket.domain.events import MarketEvent, MarketEventType

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, event: MarketEvent) -> None: ...


class NullEventPublisher:
    def publish(self, event: MarketEvent) -> None:
        logger.debug(
            "event_dropped",
            extra={"extra": {"event_type": str(event.event_type), "event_id": event.event_id}},
        )


class InMemoryEventPublisher:
    """Keeps published events in order; used by tests and the CLI dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[MarketEvent] = []

    def publish(self, event: MarketEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[MarketEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: MarketEventType) -> list[MarketEvent]:
        return [event for event in self.events if event.event_type == event_type]


def publish_safely(publisher: EventPublisher, event: MarketEvent) -> None:
    """Deliver ``event`` after commit; a publisher failure never undoes the operation."""

    try:
        publisher.publish(event)
    except Exception:
        logger.exception(
            "event_publish_failed",
            extra={
                "extra": {
                    "event_type": str(event.event_type),
                    "event_id": event.event_id,
                    "scenario_id": event.scenario_id,
                }
            },
        )


class BackgroundEventPublisher:
    """Hands events to ``inner`` on one worker thread so operations never wait on delivery.

    Events keep their publish order. Once ``max_pending`` are waiting, newer ones
    are dropped with a warning. ``close`` drains what is already queued.
    """

    def __init__(self, inner: EventPublisher, *, max_pending: int = 1000) -> None:
        if max_pending <= 0:
            raise ValueError("max_pending must be > 0")
        self.inner = inner
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="market-events")
        self._lock = threading.Lock()
        self._pending = 0

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def publish(self, event: MarketEvent) -> None:
        with self._lock:
            if self._pending >= self.max_pending:
                logger.warning(
                    "event_dropped_queue_full",
                    extra={
                        "extra": {
                            "event_type": str(event.event_type),
                            "event_id": event.event_id,
                            "max_pending": self.max_pending,
                        }
                    },
                )
                return
            self._pending += 1
        context = contextvars.copy_context()
        try:
            future = self._executor.submit(context.run, publish_safely, self.inner, event)
        except RuntimeError:
            with self._lock:
                self._pending -= 1
            raise
        future.add_done_callback(self._finished)

    def _finished(self, _future: Future[None]) -> None:
        with self._lock:
            self._pending -= 1

    def __enter__(self) -> BackgroundEventPublisher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
