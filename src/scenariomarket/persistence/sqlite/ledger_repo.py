from __future__ import annotations

import sqlite3
from datetime import datetime

from scenariomarket.domain.models import BalanceLedgerEntry, LedgerReason, format_ts, parse_ts
from scenariomarket.persistence.sqlite._base import SqliteRepoBase


def _row_to_entry(row: sqlite3.Row) -> BalanceLedgerEntry:
    created_at = parse_ts(row["created_at"])
    assert created_at is not None
    return BalanceLedgerEntry(
        entry_id=int(row["entry_id"]),
        user_id=str(row["user_id"]),
        amount=int(row["amount"]),
        balance_after=int(row["balance_after"]),
        reason=LedgerReason(str(row["reason"])),
        reference=str(row["reference"]),
        created_at=created_at,
    )


class SqliteLedgerRepo(SqliteRepoBase):
    repo_name = "ledger"

    def balance_of(self, user_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT balance_after FROM balance_ledger
            WHERE user_id = ?
            ORDER BY entry_id DESC
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()
        return int(row["balance_after"]) if row is not None else 0

    def append(
        self,
        *,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        reference: str,
        created_at: datetime,
    ) -> BalanceLedgerEntry:
        self._ensure_writable()
        balance_after = self.balance_of(user_id) + int(amount)
        cursor = self._conn.execute(
            """
            INSERT INTO balance_ledger(user_id, amount, balance_after, reason, reference, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, int(amount), balance_after, str(reason), reference, format_ts(created_at)),
        )
        entry_id = cursor.lastrowid
        assert entry_id is not None
        return BalanceLedgerEntry(
            entry_id=int(entry_id),
            user_id=user_id,
            amount=int(amount),
            balance_after=balance_after,
            reason=reason,
            reference=reference,
            created_at=created_at,
        )

    def entries(self, user_id: str | None = None) -> list[BalanceLedgerEntry]:
        if user_id is None:
            rows = self._conn.execute("SELECT * FROM balance_ledger ORDER BY entry_id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM balance_ledger WHERE user_id = ? ORDER BY entry_id",
                (user_id,),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def entries_for_reference(self, reference: str) -> list[BalanceLedgerEntry]:
        rows = self._conn.execute(
            "SELECT * FROM balance_ledger WHERE reference = ? ORDER BY entry_id",
            (reference,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def user_ids(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT user_id FROM balance_ledger ORDER BY user_id"
        ).fetchall()
        return [str(row["user_id"]) for row in rows]
