from __future__ import annotations

import sqlite3

from scenariomarket.domain.models import StealHistoryEntry, format_ts, parse_ts
from scenariomarket.persistence.sqlite._base import SqliteRepoBase


def _row_to_entry(row: sqlite3.Row) -> StealHistoryEntry:
    stolen_at = parse_ts(row["stolen_at"])
    assert stolen_at is not None
    return StealHistoryEntry(
        scenario_id=str(row["scenario_id"]),
        steal_number=int(row["steal_number"]),
        thief_id=str(row["thief_id"]),
        victim_id=str(row["victim_id"]),
        price_paid=int(row["price_paid"]),
        victim_payout=int(row["victim_payout"]),
        pool_contribution=int(row["pool_contribution"]),
        platform_contribution=int(row["platform_contribution"]),
        stolen_at=stolen_at,
    )


class SqliteStealHistoryRepo(SqliteRepoBase):
    repo_name = "steal_history"

    def append(self, entry: StealHistoryEntry) -> None:
        self._ensure_writable()
        if not entry.is_conserved():
            raise ValueError(
                "steal_split_conservation_violation "
                f"scenario_id={entry.scenario_id} steal_number={entry.steal_number}"
            )
        self._conn.execute(
            """
            INSERT INTO scenario_steal_history(
                scenario_id, steal_number, thief_id, victim_id, price_paid, victim_payout,
                pool_contribution, platform_contribution, stolen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.scenario_id,
                entry.steal_number,
                entry.thief_id,
                entry.victim_id,
                entry.price_paid,
                entry.victim_payout,
                entry.pool_contribution,
                entry.platform_contribution,
                format_ts(entry.stolen_at),
            ),
        )

    def last_steal_number(self, scenario_id: str) -> int:
        row = self._conn.execute(
            "SELECT MAX(steal_number) AS n FROM scenario_steal_history WHERE scenario_id = ?",
            (scenario_id,),
        ).fetchone()
        return int(row["n"]) if row is not None and row["n"] is not None else 0

    def for_scenario(self, scenario_id: str, *, limit: int | None = None) -> list[StealHistoryEntry]:
        sql = "SELECT * FROM scenario_steal_history WHERE scenario_id = ? ORDER BY steal_number DESC"
        params: list[object] = [scenario_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def all_entries(self) -> list[StealHistoryEntry]:
        rows = self._conn.execute(
            "SELECT * FROM scenario_steal_history ORDER BY scenario_id, steal_number"
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def thief_totals(self, user_id: str) -> tuple[int, int]:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS n, COALESCE(SUM(price_paid), 0) AS spent
            FROM scenario_steal_history WHERE thief_id = ?
            """,
            (user_id,),
        ).fetchone()
        return int(row["n"]), int(row["spent"])

    def victim_totals(self, user_id: str) -> tuple[int, int]:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS n, COALESCE(SUM(victim_payout), 0) AS received
            FROM scenario_steal_history WHERE victim_id = ?
            """,
            (user_id,),
        ).fetchone()
        return int(row["n"]), int(row["received"])

    def top_thieves(self, *, limit: int) -> list[tuple[str, int]]:
        rows = self._conn.execute(
            """
            SELECT thief_id, COUNT(*) AS n FROM scenario_steal_history
            GROUP BY thief_id
            ORDER BY n DESC, thief_id
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [(str(row["thief_id"]), int(row["n"])) for row in rows]

    def pool_contributions_by_thief(self, scenario_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            """
            SELECT thief_id, SUM(pool_contribution) AS amount FROM scenario_steal_history
            WHERE scenario_id = ? GROUP BY thief_id
            """,
            (scenario_id,),
        ).fetchall()
        return {str(row["thief_id"]): int(row["amount"]) for row in rows}
