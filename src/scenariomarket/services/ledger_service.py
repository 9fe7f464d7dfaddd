from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

from scenariomarket.domain.errors import InsufficientFunds
from scenariomarket.domain.ledger import LedgerDiscrepancy, find_discrepancies, replay_balances
from scenariomarket.domain.models import PLATFORM_ACCOUNT_ID, BalanceLedgerEntry, LedgerReason
from scenariomarket.persistence.interfaces import LedgerRepoProtocol
from scenariomarket.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerVerification:
    users_checked: int
    entries_checked: int
    discrepancies: list[LedgerDiscrepancy]
    mismatched_users: list[str]

    @property
    def ok(self) -> bool:
        return not self.discrepancies and not self.mismatched_users


class BalanceLedger:
    """Append-only balance book; the only place that decides whether a user can pay.

    ``debit``/``credit`` run inside the caller's unit of work so balance changes
    commit or roll back together with the operation that caused them.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    @staticmethod
    def debit(
        repo: LedgerRepoProtocol,
        *,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        reference: str,
        now: datetime,
    ) -> BalanceLedgerEntry:
        if amount <= 0:
            raise ValueError("debit amount must be > 0")
        # The platform account funds top-ups and may run negative.
        if user_id != PLATFORM_ACCOUNT_ID:
            available = repo.balance_of(user_id)
            if available < amount:
                raise InsufficientFunds(user_id, required=amount, available=available)
        return repo.append(
            user_id=user_id,
            amount=-amount,
            reason=reason,
            reference=reference,
            created_at=now,
        )

    @staticmethod
    def credit(
        repo: LedgerRepoProtocol,
        *,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        reference: str,
        now: datetime,
    ) -> BalanceLedgerEntry | None:
        if amount < 0:
            raise ValueError("credit amount must be >= 0")
        if amount == 0:
            return None
        return repo.append(
            user_id=user_id,
            amount=amount,
            reason=reason,
            reference=reference,
            created_at=now,
        )

    def grant(self, user_id: str, amount: int, *, reference: str | None = None) -> BalanceLedgerEntry:
        """Credit coins from outside the engine (sign-up bonus, purchase, admin grant)."""

        if amount <= 0:
            raise ValueError("grant amount must be > 0")
        ref = reference or f"grant:{uuid4().hex}"
        with self.uow_factory() as uow:
            entry = uow.ledger.append(
                user_id=user_id,
                amount=amount,
                reason=LedgerReason.GRANT,
                reference=ref,
                created_at=self.now_provider(),
            )
        logger.info(
            "ledger_grant",
            extra={"extra": {"user_id": user_id, "amount": amount, "reference": ref}},
        )
        return entry

    def balance(self, user_id: str) -> int:
        with self.uow_factory.reader() as uow:
            return uow.ledger.balance_of(user_id)

    def entries(self, user_id: str | None = None) -> list[BalanceLedgerEntry]:
        with self.uow_factory.reader() as uow:
            return uow.ledger.entries(user_id)

    def verify(self) -> LedgerVerification:
        """Replay every entry and compare against the recorded running balances."""

        with self.uow_factory.reader() as uow:
            entries = uow.ledger.entries()
            recorded = {user_id: uow.ledger.balance_of(user_id) for user_id in uow.ledger.user_ids()}
        replayed = replay_balances(entries)
        discrepancies = find_discrepancies(entries)
        mismatched = sorted(
            user_id for user_id, balance in recorded.items() if replayed.get(user_id, 0) != balance
        )
        if discrepancies or mismatched:
            logger.error(
                "ledger_replay_mismatch",
                extra={
                    "extra": {
                        "discrepancies": len(discrepancies),
                        "mismatched_users": mismatched,
                    }
                },
            )
        return LedgerVerification(
            users_checked=len(recorded),
            entries_checked=len(entries),
            discrepancies=discrepancies,
            mismatched_users=mismatched,
        )
