from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4

from scenariomarket.domain.errors import AlreadyResolved, NotActive, ScenarioNotFound
from scenariomarket.domain.models import (
    PLATFORM_ACCOUNT_ID,
    LedgerReason,
    Pool,
    PoolContribution,
    PoolSource,
    ScenarioStatus,
)
from scenariomarket.domain.money_policy import allocate_pro_rata
from scenariomarket.persistence.uow import UnitOfWork, UnitOfWorkFactory
from scenariomarket.services.ledger_service import BalanceLedger

logger = logging.getLogger(__name__)

CREATION_REFERENCE_PREFIX = "creation:"


class PayoutKind:
    WINNER = "winner"
    CREATOR_REIMBURSEMENT = "creator_reimbursement"
    UNCLAIMED = "unclaimed"
    REFUND = "refund"


@dataclass(frozen=True)
class PoolPayout:
    scenario_id: str
    allocations: dict[str, int]
    creator_reimbursement: int
    winner_id: str | None
    total_paid: int


class RefundPolicy(Protocol):
    def allocate(self, pool: Pool, contributions: list[PoolContribution]) -> dict[str, int]: ...


class ProRataRefundPolicy:
    """Return the pool to whoever put coins in, in proportion to what they put in."""

    def allocate(self, pool: Pool, contributions: list[PoolContribution]) -> dict[str, int]:
        weights: dict[str, int] = {}
        for contribution in contributions:
            account = (
                PLATFORM_ACCOUNT_ID
                if contribution.source == PoolSource.PLATFORM
                else contribution.contributor_id
            )
            weights[account] = weights.get(account, 0) + contribution.amount
        return allocate_pro_rata(pool.total_pool, weights)


def creation_fee_paid(contributions: list[PoolContribution], creator_id: str) -> int:
    return sum(
        item.amount
        for item in contributions
        if item.source == PoolSource.USER
        and item.contributor_id == creator_id
        and item.reference.startswith(CREATION_REFERENCE_PREFIX)
    )


class PoolAccounting:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    @staticmethod
    def contribute(
        uow: UnitOfWork,
        *,
        scenario_id: str,
        amount: int,
        source: PoolSource,
        contributor_id: str,
        reference: str,
        now: datetime,
    ) -> None:
        if amount < 0:
            raise ValueError("pool contributions cannot be negative")
        if amount == 0:
            return
        if source == PoolSource.PLATFORM:
            BalanceLedger.debit(
                uow.ledger,
                user_id=PLATFORM_ACCOUNT_ID,
                amount=amount,
                reason=LedgerReason.POOL_TOPUP,
                reference=reference,
                now=now,
            )
        uow.pools.add_contribution(
            scenario_id=scenario_id,
            source=source,
            contributor_id=contributor_id,
            amount=amount,
            reference=reference,
            created_at=now,
        )

    @staticmethod
    def reimburse_creator(
        uow: UnitOfWork,
        *,
        scenario_id: str,
        creator_id: str,
        amount: int,
        now: datetime,
    ) -> int:
        if amount <= 0:
            return 0
        BalanceLedger.credit(
            uow.ledger,
            user_id=creator_id,
            amount=amount,
            reason=LedgerReason.CREATOR_REIMBURSEMENT,
            reference=f"reimburse:{scenario_id}",
            now=now,
        )
        uow.pools.record_payout(
            scenario_id=scenario_id,
            user_id=creator_id,
            amount=amount,
            kind=PayoutKind.CREATOR_REIMBURSEMENT,
            created_at=now,
        )
        uow.pools.mark_creator_reimbursed(scenario_id, updated_at=now)
        return amount

    @staticmethod
    def payout(
        uow: UnitOfWork,
        *,
        scenario_id: str,
        allocations: Mapping[str, int],
        kind: str,
        reason: LedgerReason,
        refunded: bool,
        now: datetime,
    ) -> int:
        """Distribute ``allocations`` and close the pool; fails if it was already closed."""

        total = sum(allocations.values())
        winner_id = None
        if allocations and kind == PayoutKind.WINNER:
            winner_id = max(sorted(allocations), key=lambda user_id: allocations[user_id])
        if not uow.pools.settle(
            scenario_id,
            refunded=refunded,
            winner_id=winner_id,
            payout_amount=total,
            updated_at=now,
        ):
            raise AlreadyResolved("pool was already paid out", scenario_id=scenario_id)
        for user_id in sorted(allocations):
            amount = allocations[user_id]
            if amount <= 0:
                continue
            BalanceLedger.credit(
                uow.ledger,
                user_id=user_id,
                amount=amount,
                reason=reason,
                reference=f"{kind}:{scenario_id}",
                now=now,
            )
            uow.pools.record_payout(
                scenario_id=scenario_id,
                user_id=user_id,
                amount=amount,
                kind=kind,
                created_at=now,
            )
        return total

    @staticmethod
    def refund(
        uow: UnitOfWork,
        *,
        scenario_id: str,
        allocations: Mapping[str, int],
        now: datetime,
    ) -> int:
        return PoolAccounting.payout(
            uow,
            scenario_id=scenario_id,
            allocations=allocations,
            kind=PayoutKind.REFUND,
            reason=LedgerReason.CANCELLATION_REFUND,
            refunded=True,
            now=now,
        )

    def top_up(self, scenario_id: str, amount: int) -> Pool:
        """Platform-funded increase of an open scenario's pool."""

        if amount <= 0:
            raise ValueError("top-up amount must be > 0")
        now = self.now_provider()
        with self.uow_factory() as uow:
            scenario = uow.scenarios.get(scenario_id)
            if scenario is None:
                raise ScenarioNotFound(f"unknown scenario {scenario_id}", scenario_id=scenario_id)
            if scenario.status not in {ScenarioStatus.DRAFT, ScenarioStatus.ACTIVE, ScenarioStatus.CLOSED}:
                raise NotActive(scenario_id, str(scenario.status))
            self.contribute(
                uow,
                scenario_id=scenario_id,
                amount=amount,
                source=PoolSource.PLATFORM,
                contributor_id=PLATFORM_ACCOUNT_ID,
                reference=f"topup:{scenario_id}:{uuid4().hex}",
                now=now,
            )
            pool = uow.pools.get(scenario_id)
        assert pool is not None
        logger.info(
            "pool_topup",
            extra={"extra": {"scenario_id": scenario_id, "amount": amount, "total_pool": pool.total_pool}},
        )
        return pool

    def get(self, scenario_id: str) -> Pool | None:
        with self.uow_factory.reader() as uow:
            return uow.pools.get(scenario_id)

    def contributions(self, scenario_id: str) -> list[PoolContribution]:
        with self.uow_factory.reader() as uow:
            return uow.pools.contributions(scenario_id)
