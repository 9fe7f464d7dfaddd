from __future__ import annotations

from datetime import datetime
from typing import Protocol

from scenariomarket.domain.models import BalanceLedgerEntry, LedgerReason


class LedgerRepoProtocol(Protocol):
    def balance_of(self, user_id: str) -> int: ...

    def append(
        self,
        *,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        reference: str,
        created_at: datetime,
    ) -> BalanceLedgerEntry: ...

    def entries(self, user_id: str | None = None) -> list[BalanceLedgerEntry]: ...

    def user_ids(self) -> list[str]: ...
