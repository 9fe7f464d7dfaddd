from __future__ import annotations

from datetime import timedelta

import pytest

from scenariomarket.domain.errors import (
    AlreadyResolved,
    InsufficientFunds,
    InvalidOutcome,
    InvalidShieldPreset,
    InvalidTransition,
    NotActive,
    NotClosed,
    NotHolder,
    PriceChanged,
    Protected,
    ScenarioNotFound,
    SelfSteal,
)
from scenariomarket.domain.events import MarketEvent, MarketEventType
from scenariomarket.domain.models import (
    PLATFORM_ACCOUNT_ID,
    AcquisitionType,
    LedgerReason,
    Outcome,
    ScenarioStatus,
)
from scenariomarket.domain.pricing import PricingPolicy
from scenariomarket.services import transfer_engine as transfer_engine_module
from scenariomarket.services.transfer_engine import OwnershipTransferEngine

TITLE = "Will the night trains run during the festival?"


def _total_coins(factory) -> int:
    with factory.reader() as uow:
        balances = sum(uow.ledger.balance_of(user_id) for user_id in uow.ledger.user_ids())
        pools = uow._conn.execute("SELECT COALESCE(SUM(total_pool), 0) FROM scenario_pools").fetchone()[0]
    return balances + int(pools)


def _create(engine: OwnershipTransferEngine, creator: str = "alice", **kwargs) -> str:
    return engine.create_scenario(creator, TITLE, **kwargs).scenario.scenario_id


def test_create_charges_fee_into_pool_and_opens_creation_holding(engine, ledger, factory, funded, publisher) -> None:
    funded("alice")

    created = engine.create_scenario("alice", TITLE, "Late service every night", category="transport")

    scenario = created.scenario
    assert scenario.status == ScenarioStatus.ACTIVE
    assert scenario.current_holder_id == "alice"
    assert scenario.current_price == 10
    assert created.pool_total == 10
    assert ledger.balance("alice") == 90
    with factory.reader() as uow:
        [holding] = uow.scenarios.holdings(scenario.scenario_id)
        [contribution] = uow.pools.contributions(scenario.scenario_id)
    assert holding.acquisition_type == AcquisitionType.CREATION
    assert holding.is_active
    assert contribution.reference == f"creation:{scenario.scenario_id}"
    assert [event.event_type for event in publisher.events] == [MarketEventType.SCENARIO_CREATED]


def test_create_requires_funds_for_fee(engine, factory) -> None:
    with pytest.raises(InsufficientFunds):
        engine.create_scenario("pauper", TITLE)

    with factory.reader() as uow:
        assert uow.scenarios.list_by_holder("pauper", status=ScenarioStatus.ACTIVE) == []


def test_platform_seed_is_debited_from_platform(factory, clock, ledger, funded) -> None:
    engine = OwnershipTransferEngine(factory, platform_pool_seed=50, now_provider=clock)
    funded("alice")

    created = engine.create_scenario("alice", TITLE)

    assert created.pool_total == 60
    assert ledger.balance(PLATFORM_ACCOUNT_ID) == -50


def test_steal_moves_funds_holder_and_history(engine, ledger, factory, funded, publisher) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine)

    result = engine.steal(scenario_id, "bob", expected_price=11)

    assert result.steal_number == 1
    assert result.price_paid == 11
    assert (result.split.victim_payout, result.split.pool_contribution, result.split.platform_contribution) == (5, 4, 2)
    assert result.next_price == 12
    assert result.pool_total == 14
    assert ledger.balance("bob") == 89
    assert ledger.balance("alice") == 95
    assert ledger.balance(PLATFORM_ACCOUNT_ID) == 2

    with factory.reader() as uow:
        scenario = uow.scenarios.get(scenario_id)
        holdings = uow.scenarios.holdings(scenario_id)
        [entry] = uow.history.for_scenario(scenario_id)
        references = {item.reason for item in uow.ledger.entries_for_reference(f"steal:{scenario_id}:1")}
    assert scenario is not None
    assert (scenario.current_holder_id, scenario.steal_count, scenario.current_price) == ("bob", 1, 11)
    assert [holding.is_active for holding in holdings] == [False, True]
    assert holdings[0].released_at is not None
    assert holdings[1].acquisition_type == AcquisitionType.STEAL
    assert entry.is_conserved() and entry.victim_id == "alice" and entry.thief_id == "bob"
    assert references == {LedgerReason.STEAL_DEBIT, LedgerReason.STEAL_PAYOUT, LedgerReason.PLATFORM_CUT}

    [event] = publisher.of_type(MarketEventType.TRANSFER_COMPLETED)
    assert event.data["thief_id"] == "bob"
    assert event.data["price_paid"] == 11


def test_steal_rearms_lock_window(engine, funded, clock) -> None:
    funded("alice", "bob", "carol")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")

    with pytest.raises(Protected) as excinfo:
        engine.steal(scenario_id, "carol")
    assert excinfo.value.reason == "lock"
    assert excinfo.value.until == clock() + timedelta(seconds=600)

    clock.advance(seconds=600)
    result = engine.steal(scenario_id, "carol")
    assert result.lock_until == clock() + timedelta(seconds=600)
    assert engine.scenario_state(scenario_id).lock_until == clock() + timedelta(seconds=600)


def test_prices_increase_with_every_steal(engine, funded, clock) -> None:
    funded("alice", "bob", "carol")
    scenario_id = _create(engine)
    prices = []
    for thief in ["bob", "carol", "bob", "carol", "bob"]:
        prices.append(engine.steal(scenario_id, thief).price_paid)
        clock.advance(seconds=601)

    assert prices == [11, 12, 13, 14, 15]


def test_lowering_the_curve_never_lowers_the_price(engine, factory, clock, funded) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")
    cheap = OwnershipTransferEngine(factory, pricing=PricingPolicy(base_price=1, step=0), now_provider=clock)

    state = cheap.scenario_state(scenario_id)

    assert state.next_price == 11
    assert state.current_price == 11


def test_failed_steals_change_nothing(engine, ledger, factory, funded, publisher) -> None:
    funded("alice", "bob")
    funded("dave", amount=5)
    scenario_id = _create(engine)

    with pytest.raises(SelfSteal):
        engine.steal(scenario_id, "alice")
    with pytest.raises(InsufficientFunds):
        engine.steal(scenario_id, "dave")
    with pytest.raises(PriceChanged) as excinfo:
        engine.steal(scenario_id, "bob", expected_price=10)
    assert excinfo.value.current_price == 11
    assert excinfo.value.retryable
    with pytest.raises(ScenarioNotFound):
        engine.steal("missing", "bob")

    state = engine.scenario_state(scenario_id)
    assert (state.current_holder_id, state.steal_count, state.total_pool) == ("alice", 0, 10)
    assert ledger.balance("dave") == 5
    assert ledger.balance("bob") == 100
    assert publisher.of_type(MarketEventType.TRANSFER_COMPLETED) == []


def test_draft_and_closed_scenarios_cannot_be_stolen(engine, funded) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine, draft=True)

    with pytest.raises(NotActive):
        engine.steal(scenario_id, "bob")

    engine.activate(scenario_id)
    engine.steal(scenario_id, "bob")
    engine.close(scenario_id)

    with pytest.raises(NotActive) as excinfo:
        engine.steal(scenario_id, "alice")
    assert excinfo.value.status == "closed"
    with pytest.raises(InvalidTransition):
        engine.activate(scenario_id)


def test_shield_blocks_steals_until_it_expires(engine, ledger, factory, funded, clock) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine)

    shield = engine.purchase_shield(scenario_id, "alice", "basic")

    assert shield.shield.protection_until == clock() + timedelta(hours=6)
    assert ledger.balance("alice") == 75
    assert ledger.balance(PLATFORM_ACCOUNT_ID) == 15
    with pytest.raises(Protected) as excinfo:
        engine.steal(scenario_id, "bob")
    assert excinfo.value.reason == "shield"
    assert engine.scenario_state(scenario_id).is_protected

    clock.advance(hours=6)
    engine.steal(scenario_id, "bob")

    state = engine.scenario_state(scenario_id)
    assert not state.is_protected
    with factory.reader() as uow:
        assert uow.shields.active(scenario_id) is None


def test_new_shield_replaces_active_one(engine, factory, funded, clock) -> None:
    funded("alice", amount=200)
    scenario_id = _create(engine)
    engine.purchase_shield(scenario_id, "alice", "basic")

    result = engine.purchase_shield(scenario_id, "alice", "premium")

    assert result.replaced_active_shield
    with factory.reader() as uow:
        history = uow.shields.history(scenario_id)
        active = uow.shields.active(scenario_id)
    assert [item.is_active for item in history] == [False, True]
    assert active is not None and active.preset == "premium"
    assert engine.scenario_state(scenario_id).protected_until == clock() + timedelta(hours=24)


def test_shield_requires_holder_and_known_preset(engine, funded) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine)

    with pytest.raises(NotHolder):
        engine.purchase_shield(scenario_id, "bob", "basic")
    with pytest.raises(InvalidShieldPreset):
        engine.purchase_shield(scenario_id, "alice", "forever")


def test_resolve_reimburses_creator_then_pays_winners(engine, ledger, factory, funded, clock, tally) -> None:
    funded("alice", "bob", "carol")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")
    clock.advance(seconds=601)
    engine.steal(scenario_id, "carol")
    engine.close(scenario_id)
    tally.record(scenario_id, Outcome.YES, "dave", 3)
    tally.record(scenario_id, Outcome.YES, "erin", 1)
    tally.record(scenario_id, Outcome.NO, "frank", 9)

    result = engine.resolve(scenario_id, "yes")

    assert result.creator_reimbursement == 10
    assert result.payouts == {"dave": 6, "erin": 2}
    assert ledger.balance("alice") == 105
    assert ledger.balance("frank") == 0
    with factory.reader() as uow:
        pool = uow.pools.get(scenario_id)
        scenario = uow.scenarios.get(scenario_id)
    assert pool is not None and pool.paid_out and pool.creator_reimbursed
    assert pool.total_pool == 0 and pool.winner_id == "dave"
    assert scenario is not None and scenario.status == ScenarioStatus.RESOLVED
    assert _total_coins(factory) == 300
    assert ledger.verify().ok


def test_resolve_is_idempotent(engine, ledger, funded, publisher) -> None:
    funded("alice")
    scenario_id = _create(engine)
    engine.close(scenario_id)
    engine.resolve(scenario_id, Outcome.NO)
    before = [entry.entry_id for entry in ledger.entries()]

    with pytest.raises(AlreadyResolved):
        engine.resolve(scenario_id, Outcome.NO)

    assert [entry.entry_id for entry in ledger.entries()] == before
    assert len(publisher.of_type(MarketEventType.SCENARIO_RESOLVED)) == 1


def test_resolve_without_winners_sends_pool_to_platform(factory, clock, ledger, funded) -> None:
    engine = OwnershipTransferEngine(factory, reimburse_creator_on_resolve=False, now_provider=clock)
    funded("alice", "bob")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")
    engine.close(scenario_id)

    result = engine.resolve(scenario_id, Outcome.YES)

    assert result.payouts == {}
    assert result.unclaimed == 14
    assert ledger.balance(PLATFORM_ACCOUNT_ID) == 2 + 14


def test_resolve_requires_closed_scenario(engine, funded) -> None:
    funded("alice")
    scenario_id = _create(engine)

    with pytest.raises(NotClosed):
        engine.resolve(scenario_id, Outcome.YES)


def test_cancel_refunds_contributors(engine, ledger, factory, funded) -> None:
    funded("alice", "bob")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")

    result = engine.cancel(scenario_id)

    assert result.refunds == {"alice": 10, "bob": 4}
    assert ledger.balance("alice") == 100 - 10 + 5 + 10
    assert ledger.balance("bob") == 100 - 11 + 4
    with factory.reader() as uow:
        pool = uow.pools.get(scenario_id)
        assert uow.scenarios.count_active_holdings(scenario_id) == 0
    assert pool is not None and pool.refunded and not pool.paid_out
    with pytest.raises(NotActive):
        engine.cancel(scenario_id)
    assert _total_coins(factory) == 200


def test_cancel_accepts_custom_refund_policy(engine, ledger, funded) -> None:
    class _EverythingToCreator:
        def allocate(self, pool, contributions):
            return {"alice": pool.total_pool}

    funded("alice", "bob")
    scenario_id = _create(engine)
    engine.steal(scenario_id, "bob")

    result = engine.cancel(scenario_id, refund_policy=_EverythingToCreator())

    assert result.refunds == {"alice": 14}


def test_resolved_scenarios_cannot_be_cancelled(engine, funded) -> None:
    funded("alice")
    scenario_id = _create(engine)
    engine.close(scenario_id)
    engine.resolve(scenario_id, Outcome.YES)

    with pytest.raises(AlreadyResolved):
        engine.cancel(scenario_id)


def test_mark_duplicate_links_and_cancels(engine, factory, funded) -> None:
    funded("alice", "bob")
    original = _create(engine)
    copy = engine.create_scenario("bob", "Something else entirely about ferries", "Ferry timetable")
    copy_id = copy.scenario.scenario_id

    result = engine.mark_duplicate(copy_id, original)

    assert result.duplicate_of == original
    with factory.reader() as uow:
        scenario = uow.scenarios.get(copy_id)
    assert scenario is not None
    assert scenario.status == ScenarioStatus.CANCELLED
    assert scenario.duplicate_of == original


def test_publisher_failure_does_not_undo_the_steal(factory, clock, ledger, funded, caplog) -> None:
    class _Exploding:
        def publish(self, event: MarketEvent) -> None:
            raise RuntimeError("receiver down")

    engine = OwnershipTransferEngine(factory, publisher=_Exploding(), now_provider=clock)
    funded("alice", "bob")
    scenario_id = _create(engine)

    result = engine.steal(scenario_id, "bob")

    assert result.new_holder_id == "bob"
    assert engine.scenario_state(scenario_id).current_holder_id == "bob"
    assert "event_publish_failed" in caplog.text


def test_funds_are_conserved_across_a_busy_market(engine, factory, ledger, funded, clock) -> None:
    funded("alice", "bob", "carol", "dave")
    first = _create(engine)
    second = engine.create_scenario(
        "dave", "Will the river flood the old town in spring?", "Spring flood gauges"
    ).scenario.scenario_id
    for thief in ["bob", "carol", "alice"]:
        engine.steal(first, thief)
        engine.steal(second, thief)
        clock.advance(seconds=601)
    engine.purchase_shield(first, "alice", "basic")
    engine.close(second)
    engine.resolve(second, Outcome.YES)

    assert _total_coins(factory) == 400
    assert ledger.verify().ok
    with factory.reader() as uow:
        assert uow.scenarios.count_active_holdings(first) == 1
        assert [entry.steal_number for entry in uow.history.for_scenario(first)] == [3, 2, 1]


def test_unknown_outcome_leaves_the_scenario_closed(engine, funded) -> None:
    funded("alice")
    scenario_id = _create(engine)
    engine.close(scenario_id)

    with pytest.raises(InvalidOutcome):
        engine.resolve(scenario_id, "maybe")

    assert engine.scenario_state(scenario_id).status == ScenarioStatus.CLOSED


class _RecordingInstrumentation:
    def __init__(self) -> None:
        self.counters: list[tuple[str, int, dict[str, object] | None]] = []
        self.histograms: list[tuple[str, float]] = []

    def counter(self, name: str, value: int = 1, *, attrs=None) -> None:  # type: ignore[no-untyped-def]
        self.counters.append((name, value, attrs))

    def histogram(self, name: str, value: float, *, attrs=None) -> None:  # type: ignore[no-untyped-def]
        del attrs
        self.histograms.append((name, value))


def test_steal_outcomes_are_counted(engine, funded, monkeypatch) -> None:
    fake = _RecordingInstrumentation()
    monkeypatch.setattr(transfer_engine_module, "get_instrumentation", lambda: fake)
    funded("alice", "bob")
    scenario_id = _create(engine)

    engine.steal(scenario_id, "bob")
    with pytest.raises(SelfSteal):
        engine.steal(scenario_id, "bob")

    assert fake.counters == [
        ("steal_completed_total", 1, None),
        ("steal_rejected_total", 1, {"code": "SelfSteal", "retryable": False}),
    ]
    assert fake.histograms == [("steal_price_paid", 11)]
