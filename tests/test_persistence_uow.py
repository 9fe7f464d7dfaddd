from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

import pytest

from scenariomarket.domain.errors import Busy
from scenariomarket.domain.models import AcquisitionType, LedgerReason, Scenario, ScenarioStatus
from scenariomarket.persistence.sqlite.sqlite_connection import create_sqlite_connection
from scenariomarket.persistence.uow import UnitOfWorkFactory

TS = datetime(2026, 1, 1, tzinfo=UTC)


def _scenario(scenario_id: str = "s1") -> Scenario:
    return Scenario(
        scenario_id=scenario_id,
        creator_id="alice",
        title="Will the metro open before summer?",
        description="",
        category="city",
        content_hash="h-" + scenario_id,
        status=ScenarioStatus.ACTIVE,
        current_holder_id="alice",
        current_price=10,
        steal_count=0,
        is_protected=False,
        protected_until=None,
        lock_until=None,
        duplicate_of=None,
        created_at=TS,
        updated_at=TS,
    )


def test_uow_commit_and_rollback(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        uow.ledger.append(user_id="a", amount=5, reason=LedgerReason.GRANT, reference="g1", created_at=TS)

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.ledger.append(
                user_id="a", amount=7, reason=LedgerReason.GRANT, reference="g2", created_at=TS
            )
            raise RuntimeError("boom")

    with sqlite3.connect(db) as conn:
        refs = [row[0] for row in conn.execute("SELECT reference FROM balance_ledger")]
    assert refs == ["g1"]


def test_reader_unit_refuses_writes(factory: UnitOfWorkFactory) -> None:
    with factory.reader() as uow:
        with pytest.raises(PermissionError):
            uow.scenarios.insert(_scenario())


def test_ledger_rows_cannot_be_updated_or_deleted(factory: UnitOfWorkFactory, db_path: str) -> None:
    with factory() as uow:
        uow.ledger.append(user_id="a", amount=5, reason=LedgerReason.GRANT, reference="g1", created_at=TS)

    conn = create_sqlite_connection(db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE balance_ledger SET amount = 500")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("DELETE FROM balance_ledger")
    finally:
        conn.close()


def test_only_one_active_holding_per_scenario(factory: UnitOfWorkFactory) -> None:
    with factory() as uow:
        uow.scenarios.insert(_scenario())
        uow.scenarios.open_holding(
            scenario_id="s1",
            holder_id="alice",
            acquisition_type=AcquisitionType.CREATION,
            price_paid=10,
            acquired_at=TS,
        )

    with pytest.raises(sqlite3.IntegrityError):
        with factory() as uow:
            uow.scenarios.open_holding(
                scenario_id="s1",
                holder_id="bob",
                acquisition_type=AcquisitionType.STEAL,
                price_paid=11,
                acquired_at=TS,
            )

    with factory.reader() as uow:
        assert uow.scenarios.count_active_holdings("s1") == 1


def test_compare_and_swap_rejects_stale_expectations(factory: UnitOfWorkFactory) -> None:
    with factory() as uow:
        uow.scenarios.insert(_scenario())

    with factory() as uow:
        stale = uow.scenarios.compare_and_swap_transfer(
            scenario_id="s1",
            expected_steal_count=3,
            expected_holder_id="alice",
            new_holder_id="bob",
            new_price=11,
            lock_until=TS,
            clear_shield=False,
            updated_at=TS,
        )
        fresh = uow.scenarios.compare_and_swap_transfer(
            scenario_id="s1",
            expected_steal_count=0,
            expected_holder_id="alice",
            new_holder_id="bob",
            new_price=11,
            lock_until=TS,
            clear_shield=False,
            updated_at=TS,
        )

    assert (stale, fresh) == (False, True)
    with factory.reader() as uow:
        scenario = uow.scenarios.get("s1")
    assert scenario is not None
    assert (scenario.current_holder_id, scenario.steal_count, scenario.current_price) == ("bob", 1, 11)


def test_writer_reports_busy_when_lock_is_held(db_path: str) -> None:
    factory = UnitOfWorkFactory(db_path, busy_timeout_ms=50)
    blocker = create_sqlite_connection(db_path)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(Busy) as excinfo:
            with factory():
                pass
        assert excinfo.value.retryable is True
    finally:
        blocker.rollback()
        blocker.close()


def test_pool_settles_only_once(factory: UnitOfWorkFactory) -> None:
    with factory() as uow:
        uow.scenarios.insert(_scenario())
        uow.pools.create("s1", created_at=TS)

    with factory() as uow:
        first = uow.pools.settle("s1", refunded=False, winner_id=None, payout_amount=0, updated_at=TS)
        second = uow.pools.settle("s1", refunded=True, winner_id=None, payout_amount=0, updated_at=TS)

    assert (first, second) == (True, False)
