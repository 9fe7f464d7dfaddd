from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from scenariomarket.config import Settings
from scenariomarket.persistence.uow import UnitOfWorkFactory
from scenariomarket.services.events import InMemoryEventPublisher
from scenariomarket.services.ledger_service import BalanceLedger
from scenariomarket.services.prediction_tally import StaticPredictionTally
from scenariomarket.services.transfer_engine import OwnershipTransferEngine


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys = {
        field.alias for field in Settings.model_fields.values() if isinstance(field.alias, str)
    }
    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "default-state.sqlite"))


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "market.sqlite")


@pytest.fixture
def factory(db_path: str) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(db_path)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def tally() -> StaticPredictionTally:
    return StaticPredictionTally()


@pytest.fixture
def ledger(factory: UnitOfWorkFactory, clock: FakeClock) -> BalanceLedger:
    return BalanceLedger(factory, now_provider=clock)


@pytest.fixture
def engine(
    factory: UnitOfWorkFactory,
    clock: FakeClock,
    publisher: InMemoryEventPublisher,
    tally: StaticPredictionTally,
) -> OwnershipTransferEngine:
    return OwnershipTransferEngine(factory, tally=tally, publisher=publisher, now_provider=clock)


@pytest.fixture
def funded(ledger: BalanceLedger):
    def _fund(*users: str, amount: int = 100) -> None:
        for user_id in users:
            ledger.grant(user_id, amount)

    return _fund
