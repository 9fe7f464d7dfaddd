from __future__ import annotations

import sqlite3
from datetime import datetime

from scenariomarket.domain.models import Pool, PoolContribution, PoolSource, format_ts, parse_ts
from scenariomarket.persistence.sqlite._base import SqliteRepoBase


def _row_to_pool(row: sqlite3.Row) -> Pool:
    return Pool(
        scenario_id=str(row["scenario_id"]),
        total_pool=int(row["total_pool"]),
        user_contributions=int(row["user_contributions"]),
        platform_contributions=int(row["platform_contributions"]),
        creator_reimbursed=bool(row["creator_reimbursed"]),
        winner_id=str(row["winner_id"]) if row["winner_id"] is not None else None,
        payout_amount=int(row["payout_amount"]),
        paid_out=bool(row["paid_out"]),
        refunded=bool(row["refunded"]),
    )


class SqlitePoolsRepo(SqliteRepoBase):
    repo_name = "pools"

    def create(self, scenario_id: str, *, created_at: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO scenario_pools(scenario_id, updated_at) VALUES (?, ?)
            ON CONFLICT(scenario_id) DO NOTHING
            """,
            (scenario_id, format_ts(created_at)),
        )

    def get(self, scenario_id: str) -> Pool | None:
        row = self._conn.execute(
            "SELECT * FROM scenario_pools WHERE scenario_id = ?", (scenario_id,)
        ).fetchone()
        return _row_to_pool(row) if row is not None else None

    def add_contribution(
        self,
        *,
        scenario_id: str,
        source: PoolSource,
        contributor_id: str,
        amount: int,
        reference: str,
        created_at: datetime,
    ) -> None:
        self._ensure_writable()
        user_delta = amount if source == PoolSource.USER else 0
        platform_delta = amount if source == PoolSource.PLATFORM else 0
        cursor = self._conn.execute(
            """
            UPDATE scenario_pools SET
                total_pool = total_pool + ?,
                user_contributions = user_contributions + ?,
                platform_contributions = platform_contributions + ?,
                updated_at = ?
            WHERE scenario_id = ? AND paid_out = 0 AND refunded = 0
            """,
            (amount, user_delta, platform_delta, format_ts(created_at), scenario_id),
        )
        if cursor.rowcount != 1:
            raise ValueError(f"pool_not_open scenario_id={scenario_id}")
        self._conn.execute(
            """
            INSERT INTO pool_contributions(
                scenario_id, source, contributor_id, amount, reference, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (scenario_id, str(source), contributor_id, amount, reference, format_ts(created_at)),
        )

    def contributions(self, scenario_id: str) -> list[PoolContribution]:
        rows = self._conn.execute(
            "SELECT * FROM pool_contributions WHERE scenario_id = ? ORDER BY id",
            (scenario_id,),
        ).fetchall()
        result: list[PoolContribution] = []
        for row in rows:
            created_at = parse_ts(row["created_at"])
            assert created_at is not None
            result.append(
                PoolContribution(
                    scenario_id=str(row["scenario_id"]),
                    source=PoolSource(str(row["source"])),
                    contributor_id=str(row["contributor_id"]),
                    amount=int(row["amount"]),
                    reference=str(row["reference"]),
                    created_at=created_at,
                )
            )
        return result

    def mark_creator_reimbursed(self, scenario_id: str, *, updated_at: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE scenario_pools SET creator_reimbursed = 1, updated_at = ? WHERE scenario_id = ?",
            (format_ts(updated_at), scenario_id),
        )

    def settle(
        self,
        scenario_id: str,
        *,
        refunded: bool,
        winner_id: str | None,
        payout_amount: int,
        updated_at: datetime,
    ) -> bool:
        """Flip the pool to its terminal state exactly once."""

        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE scenario_pools SET
                paid_out = ?,
                refunded = ?,
                winner_id = ?,
                payout_amount = ?,
                total_pool = 0,
                updated_at = ?
            WHERE scenario_id = ? AND paid_out = 0 AND refunded = 0
            """,
            (
                int(not refunded),
                int(refunded),
                winner_id,
                payout_amount,
                format_ts(updated_at),
                scenario_id,
            ),
        )
        return cursor.rowcount == 1

    def record_payout(
        self,
        *,
        scenario_id: str,
        user_id: str,
        amount: int,
        kind: str,
        created_at: datetime,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO pool_payouts(scenario_id, user_id, amount, kind, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (scenario_id, user_id, amount, kind, format_ts(created_at)),
        )

    def total_won(self, user_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS won FROM pool_payouts
            WHERE user_id = ? AND kind = 'winner'
            """,
            (user_id,),
        ).fetchone()
        return int(row["won"])
