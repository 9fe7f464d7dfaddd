from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

import pytest

from scenariomarket.domain.events import MarketEvent, MarketEventType
from scenariomarket.logging_context import get_logging_context, with_operation_context
from scenariomarket.services.events import BackgroundEventPublisher, InMemoryEventPublisher
from scenariomarket.services.transfer_engine import OwnershipTransferEngine


def _event(scenario_id: str) -> MarketEvent:
    return MarketEvent(
        event_type=MarketEventType.SCENARIO_CREATED,
        scenario_id=scenario_id,
        occurred_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


class _GatedPublisher:
    """Blocks every delivery until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()
        self.delivered: list[str] = []
        self.contexts: list[dict[str, str | None]] = []

    def publish(self, event: MarketEvent) -> None:
        self.started.set()
        assert self.release.wait(timeout=5)
        self.contexts.append(get_logging_context())
        self.delivered.append(event.scenario_id)


def test_publish_returns_before_delivery_finishes() -> None:
    inner = _GatedPublisher()

    with BackgroundEventPublisher(inner) as publisher:
        publisher.publish(_event("s1"))
        publisher.publish(_event("s2"))
        assert inner.started.wait(timeout=5)
        assert inner.delivered == []
        assert publisher.pending == 2
        inner.release.set()

    assert inner.delivered == ["s1", "s2"]
    assert publisher.pending == 0


def test_events_beyond_the_queue_limit_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    inner = _GatedPublisher()
    caplog.set_level(logging.WARNING)

    with BackgroundEventPublisher(inner, max_pending=1) as publisher:
        publisher.publish(_event("s1"))
        publisher.publish(_event("s2"))
        inner.release.set()

    assert inner.delivered == ["s1"]
    assert "event_dropped_queue_full" in caplog.text


def test_delivery_keeps_the_request_context() -> None:
    inner = _GatedPublisher()
    inner.release.set()

    with BackgroundEventPublisher(inner) as publisher:
        with with_operation_context("steal", scenario_id="s1", user_id="bob"):
            publisher.publish(_event("s1"))

    assert inner.contexts == [{"operation": "steal", "scenario_id": "s1", "user_id": "bob"}]


def test_inner_failures_are_logged_by_the_worker(caplog: pytest.LogCaptureFixture) -> None:
    class _Broken:
        def publish(self, event: MarketEvent) -> None:
            raise RuntimeError("receiver down")

    caplog.set_level(logging.ERROR)
    with BackgroundEventPublisher(_Broken()) as publisher:
        publisher.publish(_event("s1"))

    assert "event_publish_failed" in caplog.text


def test_engine_publishes_through_the_background_worker(factory, clock, tally, funded) -> None:
    sink = InMemoryEventPublisher()
    funded("alice", "bob")
    with BackgroundEventPublisher(sink) as publisher:
        engine = OwnershipTransferEngine(
            factory, tally=tally, publisher=publisher, now_provider=clock
        )
        created = engine.create_scenario("alice", "Will the night ferry run on Sundays?")
        engine.steal(created.scenario.scenario_id, "bob")

    assert [str(event.event_type) for event in sink.events] == [
        "scenario_created",
        "transfer_completed",
    ]


def test_max_pending_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BackgroundEventPublisher(InMemoryEventPublisher(), max_pending=0)
