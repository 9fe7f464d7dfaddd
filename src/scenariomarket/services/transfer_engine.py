from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from scenariomarket.config import Settings
from scenariomarket.domain.errors import (
    AlreadyResolved,
    DuplicateScenario,
    InvalidShieldPreset,
    InvalidTransition,
    MarketError,
    NotActive,
    NotClosed,
    NotHolder,
    PriceChanged,
    Protected,
    ScenarioNotFound,
    SelfSteal,
)
from scenariomarket.domain.events import MarketEvent, MarketEventType, transfer_completed
from scenariomarket.domain.models import (
    PLATFORM_ACCOUNT_ID,
    TERMINAL_STATUSES,
    AcquisitionType,
    LedgerReason,
    Outcome,
    PoolSource,
    Scenario,
    ScenarioState,
    ScenarioStatus,
    Shield,
    StealHistoryEntry,
    parse_outcome,
)
from scenariomarket.domain.money_policy import (
    StealSplit,
    StealSplitPolicy,
    allocate_pro_rata,
    split_steal_price,
)
from scenariomarket.domain.pricing import PricingPolicy, creation_price, next_price
from scenariomarket.domain.protection import (
    SHIELD_PRESETS,
    blocking_reason,
    rearm_lock,
    shield_active,
    shield_expired,
)
from scenariomarket.domain.similarity import content_hash
from scenariomarket.logging_context import with_operation_context
from scenariomarket.observability import get_instrumentation
from scenariomarket.persistence.uow import UnitOfWork, UnitOfWorkFactory
from scenariomarket.services.duplicate_gate import DuplicateGate, GateDecision, GateDecisionKind
from scenariomarket.services.events import EventPublisher, NullEventPublisher, publish_safely
from scenariomarket.services.ledger_service import BalanceLedger
from scenariomarket.services.pool_service import (
    CREATION_REFERENCE_PREFIX,
    PayoutKind,
    PoolAccounting,
    ProRataRefundPolicy,
    RefundPolicy,
    creation_fee_paid,
)
from scenariomarket.services.prediction_tally import PredictionTally, StaticPredictionTally

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DURATION = timedelta(seconds=600)


@dataclass(frozen=True)
class CreatedScenario:
    scenario: Scenario
    gate: GateDecision
    pool_total: int


@dataclass(frozen=True)
class StealResult:
    scenario_id: str
    steal_number: int
    new_holder_id: str
    victim_id: str
    split: StealSplit
    next_price: int
    lock_until: datetime
    pool_total: int

    @property
    def price_paid(self) -> int:
        return self.split.price


@dataclass(frozen=True)
class ShieldResult:
    scenario_id: str
    shield: Shield
    replaced_active_shield: bool


@dataclass(frozen=True)
class ResolutionResult:
    scenario_id: str
    outcome: Outcome
    payouts: dict[str, int]
    creator_reimbursement: int
    unclaimed: int


@dataclass(frozen=True)
class CancellationResult:
    scenario_id: str
    refunds: dict[str, int] = field(default_factory=dict)
    duplicate_of: str | None = None


class OwnershipTransferEngine:
    """Every state change of a scenario, each in exactly one write transaction.

    Reads that decide an outcome (status, holder, protection, price, balance) are
    repeated inside the transaction; events are published only after it commits.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        pricing: PricingPolicy | None = None,
        split: StealSplitPolicy | None = None,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
        creation_fee: int = 10,
        platform_pool_seed: int = 0,
        reimburse_creator_on_resolve: bool = True,
        gate: DuplicateGate | None = None,
        tally: PredictionTally | None = None,
        publisher: EventPublisher | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if creation_fee < 0 or platform_pool_seed < 0:
            raise ValueError("creation fee and pool seed must be >= 0")
        self.uow_factory = uow_factory
        self.pricing = pricing or PricingPolicy()
        self.split = split or StealSplitPolicy()
        self.lock_duration = lock_duration
        self.creation_fee = creation_fee
        self.platform_pool_seed = platform_pool_seed
        self.reimburse_creator_on_resolve = reimburse_creator_on_resolve
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self.gate = gate or DuplicateGate(uow_factory, now_provider=self.now_provider)
        self.tally = tally or StaticPredictionTally()
        self.publisher = publisher or NullEventPublisher()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        uow_factory: UnitOfWorkFactory | None = None,
        tally: PredictionTally | None = None,
        publisher: EventPublisher | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> OwnershipTransferEngine:
        factory = uow_factory or UnitOfWorkFactory(
            settings.state_db_path, busy_timeout_ms=settings.db_busy_timeout_ms
        )
        gate = DuplicateGate(factory, settings.gate_config(), now_provider=now_provider)
        return cls(
            factory,
            pricing=settings.pricing_policy(),
            split=settings.split_policy(),
            lock_duration=settings.lock_duration(),
            creation_fee=settings.scenario_creation_fee,
            platform_pool_seed=settings.platform_pool_seed,
            reimburse_creator_on_resolve=settings.reimburse_creator_on_resolve,
            gate=gate,
            tally=tally,
            publisher=publisher,
            now_provider=now_provider,
        )

    def create_scenario(
        self,
        creator_id: str,
        title: str,
        description: str = "",
        *,
        category: str | None = None,
        draft: bool = False,
        scenario_id: str | None = None,
    ) -> CreatedScenario:
        scenario_id = scenario_id or uuid4().hex
        with with_operation_context("create_scenario", scenario_id=scenario_id, user_id=creator_id):
            decision = self.gate.evaluate(title, description, category=category)
            if decision.decision == GateDecisionKind.BLOCK and decision.target is not None:
                logger.info(
                    "scenario_create_blocked",
                    extra={
                        "extra": {
                            "target_scenario_id": decision.target.scenario_id,
                            "similarity": decision.target.similarity_score,
                        }
                    },
                )
                raise DuplicateScenario(
                    decision.target.scenario_id, decision.target.similarity_score
                )

            now = self.now_provider()
            status = ScenarioStatus.DRAFT if draft else ScenarioStatus.ACTIVE
            price = creation_price(self.pricing)
            scenario = Scenario(
                scenario_id=scenario_id,
                creator_id=creator_id,
                title=title.strip(),
                description=description.strip(),
                category=category,
                content_hash=content_hash(title, description),
                status=status,
                current_holder_id=creator_id,
                current_price=price,
                steal_count=0,
                is_protected=False,
                protected_until=None,
                lock_until=None,
                duplicate_of=None,
                created_at=now,
                updated_at=now,
            )
            reference = f"{CREATION_REFERENCE_PREFIX}{scenario_id}"
            with self.uow_factory() as uow:
                if self.creation_fee > 0:
                    BalanceLedger.debit(
                        uow.ledger,
                        user_id=creator_id,
                        amount=self.creation_fee,
                        reason=LedgerReason.CREATION_FEE,
                        reference=reference,
                        now=now,
                    )
                uow.scenarios.insert(scenario)
                uow.pools.create(scenario_id, created_at=now)
                PoolAccounting.contribute(
                    uow,
                    scenario_id=scenario_id,
                    amount=self.creation_fee,
                    source=PoolSource.USER,
                    contributor_id=creator_id,
                    reference=reference,
                    now=now,
                )
                PoolAccounting.contribute(
                    uow,
                    scenario_id=scenario_id,
                    amount=self.platform_pool_seed,
                    source=PoolSource.PLATFORM,
                    contributor_id=PLATFORM_ACCOUNT_ID,
                    reference=f"seed:{scenario_id}",
                    now=now,
                )
                uow.scenarios.open_holding(
                    scenario_id=scenario_id,
                    holder_id=creator_id,
                    acquisition_type=AcquisitionType.CREATION,
                    price_paid=price,
                    acquired_at=now,
                )
                pool = uow.pools.get(scenario_id)
            assert pool is not None

            logger.info(
                "scenario_created",
                extra={
                    "extra": {
                        "status": str(status),
                        "gate_decision": str(decision.decision),
                        "gate_degraded": decision.degraded,
                        "pool_total": pool.total_pool,
                    }
                },
            )
            publish_safely(
                self.publisher,
                MarketEvent(
                    event_type=MarketEventType.SCENARIO_CREATED,
                    scenario_id=scenario_id,
                    occurred_at=now,
                    data={"creator_id": creator_id, "status": str(status), "price": price},
                ),
            )
            return CreatedScenario(scenario=scenario, gate=decision, pool_total=pool.total_pool)

    def activate(self, scenario_id: str) -> Scenario:
        return self._transition(scenario_id, ScenarioStatus.DRAFT, ScenarioStatus.ACTIVE)

    def close(self, scenario_id: str) -> Scenario:
        return self._transition(scenario_id, ScenarioStatus.ACTIVE, ScenarioStatus.CLOSED)

    def _transition(
        self, scenario_id: str, expected: ScenarioStatus, target: ScenarioStatus
    ) -> Scenario:
        now = self.now_provider()
        with self.uow_factory() as uow:
            scenario = self._load(uow, scenario_id)
            if scenario.status != expected:
                raise InvalidTransition(scenario_id, str(scenario.status), str(target))
            uow.scenarios.set_status(
                scenario_id, status=target, expected_status=expected, updated_at=now
            )
            updated = uow.scenarios.get(scenario_id)
        assert updated is not None
        logger.info(
            "scenario_status_changed",
            extra={
                "extra": {"scenario_id": scenario_id, "from": str(expected), "to": str(target)}
            },
        )
        return updated

    def steal(
        self, scenario_id: str, buyer_id: str, expected_price: int | None = None
    ) -> StealResult:
        with with_operation_context("steal", scenario_id=scenario_id, user_id=buyer_id):
            try:
                result = self._steal(scenario_id, buyer_id, expected_price)
            except MarketError as exc:
                logger.info(
                    "steal_rejected",
                    extra={"extra": {"error": exc.code, "retryable": exc.retryable}},
                )
                get_instrumentation().counter(
                    "steal_rejected_total", attrs={"code": exc.code, "retryable": exc.retryable}
                )
                raise
            logger.info(
                "steal_completed",
                extra={
                    "extra": {
                        "steal_number": result.steal_number,
                        "victim_id": result.victim_id,
                        "price_paid": result.price_paid,
                        "next_price": result.next_price,
                        "pool_total": result.pool_total,
                    }
                },
            )
            instrumentation = get_instrumentation()
            instrumentation.counter("steal_completed_total")
            instrumentation.histogram("steal_price_paid", result.price_paid)
            publish_safely(
                self.publisher,
                transfer_completed(
                    scenario_id=scenario_id,
                    occurred_at=self.now_provider(),
                    steal_number=result.steal_number,
                    thief_id=buyer_id,
                    victim_id=result.victim_id,
                    price_paid=result.price_paid,
                    next_price=result.next_price,
                    pool_total=result.pool_total,
                ),
            )
            return result

    def _steal(self, scenario_id: str, buyer_id: str, expected_price: int | None) -> StealResult:
        now = self.now_provider()
        with self.uow_factory() as uow:
            scenario = self._load(uow, scenario_id)
            if scenario.status != ScenarioStatus.ACTIVE:
                raise NotActive(scenario_id, str(scenario.status))
            if scenario.current_holder_id == buyer_id:
                raise SelfSteal("you already hold this scenario", scenario_id=scenario_id)
            block = blocking_reason(scenario, now)
            if block is not None:
                raise Protected(scenario_id, str(block.reason), block.until)
            price = next_price(scenario, self.pricing)
            if expected_price is not None and expected_price != price:
                raise PriceChanged(scenario_id, current_price=price)

            victim_id = scenario.current_holder_id
            assert victim_id is not None
            steal_number = scenario.steal_count + 1
            reference = f"steal:{scenario_id}:{steal_number}"

            BalanceLedger.debit(
                uow.ledger,
                user_id=buyer_id,
                amount=price,
                reason=LedgerReason.STEAL_DEBIT,
                reference=reference,
                now=now,
            )
            split = split_steal_price(price, self.split)
            BalanceLedger.credit(
                uow.ledger,
                user_id=victim_id,
                amount=split.victim_payout,
                reason=LedgerReason.STEAL_PAYOUT,
                reference=reference,
                now=now,
            )
            BalanceLedger.credit(
                uow.ledger,
                user_id=PLATFORM_ACCOUNT_ID,
                amount=split.platform_contribution,
                reason=LedgerReason.PLATFORM_CUT,
                reference=reference,
                now=now,
            )
            PoolAccounting.contribute(
                uow,
                scenario_id=scenario_id,
                amount=split.pool_contribution,
                source=PoolSource.USER,
                contributor_id=buyer_id,
                reference=reference,
                now=now,
            )

            uow.scenarios.close_active_holding(scenario_id, released_at=now)
            uow.scenarios.open_holding(
                scenario_id=scenario_id,
                holder_id=buyer_id,
                acquisition_type=AcquisitionType.STEAL,
                price_paid=price,
                acquired_at=now,
            )
            uow.history.append(
                StealHistoryEntry(
                    scenario_id=scenario_id,
                    steal_number=steal_number,
                    thief_id=buyer_id,
                    victim_id=victim_id,
                    price_paid=price,
                    victim_payout=split.victim_payout,
                    pool_contribution=split.pool_contribution,
                    platform_contribution=split.platform_contribution,
                    stolen_at=now,
                )
            )

            lock_until = rearm_lock(now, self.lock_duration)
            clear_shield = shield_expired(scenario, now)
            swapped = uow.scenarios.compare_and_swap_transfer(
                scenario_id=scenario_id,
                expected_steal_count=scenario.steal_count,
                expected_holder_id=victim_id,
                new_holder_id=buyer_id,
                new_price=price,
                lock_until=lock_until,
                clear_shield=clear_shield,
                updated_at=now,
            )
            if not swapped:
                current = uow.scenarios.get(scenario_id)
                raise PriceChanged(
                    scenario_id,
                    current_price=next_price(current, self.pricing) if current else None,
                )
            if clear_shield:
                uow.shields.deactivate_active(scenario_id)

            updated = uow.scenarios.get(scenario_id)
            pool = uow.pools.get(scenario_id)
        assert updated is not None and pool is not None
        return StealResult(
            scenario_id=scenario_id,
            steal_number=steal_number,
            new_holder_id=buyer_id,
            victim_id=victim_id,
            split=split,
            next_price=next_price(updated, self.pricing),
            lock_until=lock_until,
            pool_total=pool.total_pool,
        )

    def purchase_shield(self, scenario_id: str, user_id: str, preset: str) -> ShieldResult:
        shield_preset = SHIELD_PRESETS.get(str(preset).strip().lower())
        if shield_preset is None:
            raise InvalidShieldPreset(f"unknown shield preset {preset!r}", scenario_id=scenario_id)
        with with_operation_context("purchase_shield", scenario_id=scenario_id, user_id=user_id):
            now = self.now_provider()
            reference = f"shield:{scenario_id}:{uuid4().hex}"
            with self.uow_factory() as uow:
                scenario = self._load(uow, scenario_id)
                if scenario.status != ScenarioStatus.ACTIVE:
                    raise NotActive(scenario_id, str(scenario.status))
                if scenario.current_holder_id != user_id:
                    raise NotHolder("only the current holder can shield", scenario_id=scenario_id)
                BalanceLedger.debit(
                    uow.ledger,
                    user_id=user_id,
                    amount=shield_preset.price,
                    reason=LedgerReason.SHIELD_PURCHASE,
                    reference=reference,
                    now=now,
                )
                BalanceLedger.credit(
                    uow.ledger,
                    user_id=PLATFORM_ACCOUNT_ID,
                    amount=shield_preset.price,
                    reason=LedgerReason.SHIELD_PURCHASE,
                    reference=reference,
                    now=now,
                )
                replaced = uow.shields.deactivate_active(scenario_id) > 0
                shield = uow.shields.insert(
                    scenario_id=scenario_id,
                    beneficiary_id=user_id,
                    preset=shield_preset.preset_id,
                    protection_until=now + shield_preset.duration,
                    price_paid=shield_preset.price,
                    created_at=now,
                )
                uow.scenarios.set_protection(
                    scenario_id, protected_until=shield.protection_until, updated_at=now
                )
            logger.info(
                "shield_purchased",
                extra={
                    "extra": {
                        "preset": shield_preset.preset_id,
                        "price": shield_preset.price,
                        "protection_until": shield.protection_until.isoformat(),
                        "replaced": replaced,
                    }
                },
            )
            publish_safely(
                self.publisher,
                MarketEvent(
                    event_type=MarketEventType.SHIELD_PURCHASED,
                    scenario_id=scenario_id,
                    occurred_at=now,
                    data={
                        "user_id": user_id,
                        "preset": shield_preset.preset_id,
                        "protection_until": shield.protection_until.isoformat(),
                    },
                ),
            )
            return ShieldResult(scenario_id=scenario_id, shield=shield, replaced_active_shield=replaced)

    def resolve(self, scenario_id: str, outcome: Outcome | str) -> ResolutionResult:
        resolved_outcome = parse_outcome(outcome, scenario_id=scenario_id)
        with with_operation_context("resolve", scenario_id=scenario_id):
            # Read the external tally before taking the write lock.
            stakes: Mapping[str, int] = self.tally.winning_stakes(scenario_id, resolved_outcome)
            now = self.now_provider()
            with self.uow_factory() as uow:
                scenario = self._load(uow, scenario_id)
                if scenario.status == ScenarioStatus.RESOLVED:
                    raise AlreadyResolved("scenario is already resolved", scenario_id=scenario_id)
                if scenario.status != ScenarioStatus.CLOSED:
                    raise NotClosed(scenario_id, str(scenario.status))
                pool = uow.pools.get(scenario_id)
                assert pool is not None
                if pool.is_settled:
                    raise AlreadyResolved("pool was already paid out", scenario_id=scenario_id)

                remaining = pool.total_pool
                reimbursement = 0
                if self.reimburse_creator_on_resolve and not pool.creator_reimbursed:
                    fee = creation_fee_paid(uow.pools.contributions(scenario_id), scenario.creator_id)
                    reimbursement = PoolAccounting.reimburse_creator(
                        uow,
                        scenario_id=scenario_id,
                        creator_id=scenario.creator_id,
                        amount=min(fee, remaining),
                        now=now,
                    )
                    remaining -= reimbursement

                allocations = allocate_pro_rata(remaining, stakes)
                kind = PayoutKind.WINNER
                unclaimed = 0
                if not allocations and remaining > 0:
                    allocations = {PLATFORM_ACCOUNT_ID: remaining}
                    kind = PayoutKind.UNCLAIMED
                    unclaimed = remaining
                PoolAccounting.payout(
                    uow,
                    scenario_id=scenario_id,
                    allocations=allocations,
                    kind=kind,
                    reason=LedgerReason.RESOLUTION_PAYOUT,
                    refunded=False,
                    now=now,
                )
                uow.scenarios.set_status(
                    scenario_id,
                    status=ScenarioStatus.RESOLVED,
                    expected_status=ScenarioStatus.CLOSED,
                    updated_at=now,
                )
            payouts = {} if kind == PayoutKind.UNCLAIMED else dict(allocations)
            logger.info(
                "scenario_resolved",
                extra={
                    "extra": {
                        "outcome": str(resolved_outcome),
                        "winners": len(payouts),
                        "paid": sum(payouts.values()),
                        "creator_reimbursement": reimbursement,
                        "unclaimed": unclaimed,
                    }
                },
            )
            publish_safely(
                self.publisher,
                MarketEvent(
                    event_type=MarketEventType.SCENARIO_RESOLVED,
                    scenario_id=scenario_id,
                    occurred_at=now,
                    data={
                        "outcome": str(resolved_outcome),
                        "payouts": payouts,
                        "creator_reimbursement": reimbursement,
                        "unclaimed": unclaimed,
                    },
                ),
            )
            return ResolutionResult(
                scenario_id=scenario_id,
                outcome=resolved_outcome,
                payouts=payouts,
                creator_reimbursement=reimbursement,
                unclaimed=unclaimed,
            )

    def cancel(
        self, scenario_id: str, refund_policy: RefundPolicy | None = None
    ) -> CancellationResult:
        with with_operation_context("cancel", scenario_id=scenario_id):
            return self._cancel(scenario_id, refund_policy or ProRataRefundPolicy(), None)

    def mark_duplicate(
        self,
        scenario_id: str,
        original_id: str,
        refund_policy: RefundPolicy | None = None,
    ) -> CancellationResult:
        if scenario_id == original_id:
            raise ValueError("a scenario cannot duplicate itself")
        with with_operation_context("mark_duplicate", scenario_id=scenario_id):
            return self._cancel(scenario_id, refund_policy or ProRataRefundPolicy(), original_id)

    def _cancel(
        self, scenario_id: str, policy: RefundPolicy, duplicate_of: str | None
    ) -> CancellationResult:
        now = self.now_provider()
        with self.uow_factory() as uow:
            scenario = self._load(uow, scenario_id)
            if scenario.status == ScenarioStatus.RESOLVED:
                raise AlreadyResolved("resolved scenarios cannot be cancelled", scenario_id=scenario_id)
            if scenario.status in TERMINAL_STATUSES:
                raise NotActive(scenario_id, str(scenario.status))
            if duplicate_of is not None:
                self._load(uow, duplicate_of)
            pool = uow.pools.get(scenario_id)
            assert pool is not None
            refunds = policy.allocate(pool, uow.pools.contributions(scenario_id))
            if sum(refunds.values()) != pool.total_pool:
                raise ValueError("refund policy must allocate the whole pool")
            PoolAccounting.refund(uow, scenario_id=scenario_id, allocations=refunds, now=now)
            if duplicate_of is not None:
                uow.scenarios.mark_duplicate(scenario_id, original_id=duplicate_of, updated_at=now)
            else:
                uow.scenarios.set_status(
                    scenario_id,
                    status=ScenarioStatus.CANCELLED,
                    expected_status=scenario.status,
                    updated_at=now,
                )
            uow.scenarios.close_active_holding(scenario_id, released_at=now)
            uow.shields.deactivate_active(scenario_id)
            uow.scenarios.set_protection(scenario_id, protected_until=None, updated_at=now)
        logger.info(
            "scenario_cancelled",
            extra={
                "extra": {
                    "refunded": sum(refunds.values()),
                    "recipients": len(refunds),
                    "duplicate_of": duplicate_of,
                }
            },
        )
        publish_safely(
            self.publisher,
            MarketEvent(
                event_type=MarketEventType.SCENARIO_CANCELLED,
                scenario_id=scenario_id,
                occurred_at=now,
                data={"refunds": dict(refunds), "duplicate_of": duplicate_of},
            ),
        )
        return CancellationResult(scenario_id=scenario_id, refunds=dict(refunds), duplicate_of=duplicate_of)

    def scenario_state(self, scenario_id: str) -> ScenarioState:
        now = self.now_provider()
        with self.uow_factory.reader() as uow:
            scenario = self._load(uow, scenario_id)
            pool = uow.pools.get(scenario_id)
        protected = shield_active(scenario, now)
        return ScenarioState(
            scenario_id=scenario_id,
            status=scenario.status,
            current_holder_id=scenario.current_holder_id,
            current_price=scenario.current_price,
            next_price=next_price(scenario, self.pricing),
            steal_count=scenario.steal_count,
            is_protected=protected,
            protected_until=scenario.protected_until if protected else None,
            lock_until=scenario.lock_until,
            total_pool=pool.total_pool if pool is not None else 0,
        )

    @staticmethod
    def _load(uow: UnitOfWork, scenario_id: str) -> Scenario:
        scenario = uow.scenarios.get(scenario_id)
        if scenario is None:
            raise ScenarioNotFound(f"unknown scenario {scenario_id}", scenario_id=scenario_id)
        return scenario
