from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from scenariomarket.domain.errors import InvalidOutcome

PLATFORM_ACCOUNT_ID = "platform"


class ScenarioStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ScenarioStatus.RESOLVED, ScenarioStatus.CANCELLED})


class AcquisitionType(StrEnum):
    CREATION = "creation"
    STEAL = "steal"
    # Reserved: no operation opens a recovery holding yet.
    RECOVERY = "recovery"


class PoolSource(StrEnum):
    USER = "user"
    PLATFORM = "platform"


class LedgerReason(StrEnum):
    GRANT = "grant"
    CREATION_FEE = "creation_fee"
    STEAL_DEBIT = "steal_debit"
    STEAL_PAYOUT = "steal_payout"
    PLATFORM_CUT = "platform_cut"
    SHIELD_PURCHASE = "shield_purchase"
    POOL_TOPUP = "pool_topup"
    RESOLUTION_PAYOUT = "resolution_payout"
    CREATOR_REIMBURSEMENT = "creator_reimbursement"
    CANCELLATION_REFUND = "cancellation_refund"


class Outcome(StrEnum):
    YES = "yes"
    NO = "no"


def parse_outcome(value: str | Outcome, *, scenario_id: str | None = None) -> Outcome:
    if isinstance(value, Outcome):
        return value
    try:
        return Outcome(str(value).strip().lower())
    except ValueError:
        raise InvalidOutcome(
            f"outcome must be one of {[str(item) for item in Outcome]}, got {value!r}",
            scenario_id=scenario_id,
        ) from None


@dataclass(frozen=True)
class Scenario:
    scenario_id: str
    creator_id: str
    title: str
    description: str
    category: str | None
    content_hash: str
    status: ScenarioStatus
    current_holder_id: str | None
    current_price: int
    steal_count: int
    is_protected: bool
    protected_until: datetime | None
    lock_until: datetime | None
    duplicate_of: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Holding:
    holding_id: int
    scenario_id: str
    holder_id: str
    acquisition_type: AcquisitionType
    price_paid: int
    acquired_at: datetime
    released_at: datetime | None
    is_active: bool


@dataclass(frozen=True)
class StealHistoryEntry:
    scenario_id: str
    steal_number: int
    thief_id: str
    victim_id: str
    price_paid: int
    victim_payout: int
    pool_contribution: int
    platform_contribution: int
    stolen_at: datetime

    def is_conserved(self) -> bool:
        return self.price_paid == (
            self.victim_payout + self.pool_contribution + self.platform_contribution
        )


@dataclass(frozen=True)
class Pool:
    scenario_id: str
    total_pool: int
    user_contributions: int
    platform_contributions: int
    creator_reimbursed: bool
    winner_id: str | None
    payout_amount: int
    paid_out: bool
    refunded: bool

    @property
    def is_settled(self) -> bool:
        return self.paid_out or self.refunded


@dataclass(frozen=True)
class PoolContribution:
    scenario_id: str
    source: PoolSource
    contributor_id: str
    amount: int
    reference: str
    created_at: datetime


@dataclass(frozen=True)
class Shield:
    shield_id: int
    scenario_id: str
    beneficiary_id: str
    preset: str
    protection_until: datetime
    price_paid: int
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class BalanceLedgerEntry:
    entry_id: int
    user_id: str
    amount: int
    balance_after: int
    reason: LedgerReason
    reference: str
    created_at: datetime


@dataclass(frozen=True)
class ScenarioState:
    """Advisory snapshot for display; may be stale by the time a steal is submitted."""

    scenario_id: str
    status: ScenarioStatus
    current_holder_id: str | None
    current_price: int
    next_price: int
    steal_count: int
    is_protected: bool
    protected_until: datetime | None
    lock_until: datetime | None
    total_pool: int


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(str(value)))


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()
