from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from datetime import datetime

from scenariomarket.domain.models import (
    AcquisitionType,
    Holding,
    Scenario,
    ScenarioStatus,
    format_ts,
    parse_ts,
)
from scenariomarket.persistence.sqlite._base import SqliteRepoBase


def _required_ts(value: str | None) -> datetime:
    parsed = parse_ts(value)
    if parsed is None:
        raise ValueError("timestamp column unexpectedly NULL")
    return parsed


def _row_to_scenario(row: sqlite3.Row) -> Scenario:
    return Scenario(
        scenario_id=str(row["scenario_id"]),
        creator_id=str(row["creator_id"]),
        title=str(row["title"]),
        description=str(row["description"] or ""),
        category=str(row["category"]) if row["category"] is not None else None,
        content_hash=str(row["content_hash"]),
        status=ScenarioStatus(str(row["status"])),
        current_holder_id=(
            str(row["current_holder_id"]) if row["current_holder_id"] is not None else None
        ),
        current_price=int(row["current_price"]),
        steal_count=int(row["steal_count"]),
        is_protected=bool(row["is_protected"]),
        protected_until=parse_ts(row["protected_until"]),
        lock_until=parse_ts(row["lock_until"]),
        duplicate_of=str(row["duplicate_of"]) if row["duplicate_of"] is not None else None,
        created_at=_required_ts(row["created_at"]),
        updated_at=_required_ts(row["updated_at"]),
    )


def _row_to_holding(row: sqlite3.Row) -> Holding:
    return Holding(
        holding_id=int(row["holding_id"]),
        scenario_id=str(row["scenario_id"]),
        holder_id=str(row["holder_id"]),
        acquisition_type=AcquisitionType(str(row["acquisition_type"])),
        price_paid=int(row["price_paid"]),
        acquired_at=_required_ts(row["acquired_at"]),
        released_at=parse_ts(row["released_at"]),
        is_active=bool(row["is_active"]),
    )


class SqliteScenariosRepo(SqliteRepoBase):
    repo_name = "scenarios"

    def insert(self, scenario: Scenario) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO scenarios(
                scenario_id, creator_id, title, description, category, content_hash, status,
                current_holder_id, current_price, steal_count, is_protected, protected_until,
                lock_until, duplicate_of, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                scenario.scenario_id,
                scenario.creator_id,
                scenario.title,
                scenario.description,
                scenario.category,
                scenario.content_hash,
                str(scenario.status),
                scenario.current_holder_id,
                scenario.current_price,
                scenario.steal_count,
                int(scenario.is_protected),
                format_ts(scenario.protected_until),
                format_ts(scenario.lock_until),
                scenario.duplicate_of,
                format_ts(scenario.created_at),
                format_ts(scenario.updated_at),
            ),
        )

    def get(self, scenario_id: str) -> Scenario | None:
        row = self._conn.execute(
            "SELECT * FROM scenarios WHERE scenario_id = ?", (scenario_id,)
        ).fetchone()
        return _row_to_scenario(row) if row is not None else None

    def find_by_content_hash(
        self,
        content_hash: str,
        *,
        statuses: Sequence[ScenarioStatus],
        category: str | None = None,
        created_after: datetime | None = None,
        exclude_id: str | None = None,
    ) -> list[Scenario]:
        placeholders = ", ".join("?" for _ in statuses)
        sql = (
            f"SELECT * FROM scenarios WHERE content_hash = ? AND status IN ({placeholders})"
            " AND scenario_id IS NOT ?"
        )
        params: list[object] = [content_hash, *(str(status) for status in statuses), exclude_id]
        if category is not None:
            sql += " AND category = ?"
            params.append(category)
        if created_after is not None:
            sql += " AND created_at >= ?"
            params.append(format_ts(created_after))
        sql += " ORDER BY created_at"
        rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_scenario(row) for row in rows]

    def list_duplicate_candidates(
        self,
        *,
        statuses: Sequence[ScenarioStatus],
        category: str | None,
        created_after: datetime | None,
        exclude_id: str | None,
        limit: int,
    ) -> list[Scenario]:
        placeholders = ", ".join("?" for _ in statuses)
        sql = f"SELECT * FROM scenarios WHERE status IN ({placeholders}) AND scenario_id IS NOT ?"
        params: list[object] = [str(status) for status in statuses]
        params.append(exclude_id)
        if category is not None:
            sql += " AND category = ?"
            params.append(category)
        if created_after is not None:
            sql += " AND created_at >= ?"
            params.append(format_ts(created_after))
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_scenario(row) for row in rows]

    def list_by_holder(self, holder_id: str, *, status: ScenarioStatus) -> list[Scenario]:
        rows = self._conn.execute(
            """
            SELECT s.* FROM scenarios s
            LEFT JOIN scenario_pools p ON p.scenario_id = s.scenario_id
            WHERE s.current_holder_id = ? AND s.status = ?
            ORDER BY COALESCE(p.total_pool, 0) DESC, s.created_at
            """,
            (holder_id, str(status)),
        ).fetchall()
        return [_row_to_scenario(row) for row in rows]

    def list_stealable(self, user_id: str, *, now: datetime, limit: int) -> list[Scenario]:
        now_text = format_ts(now)
        rows = self._conn.execute(
            """
            SELECT s.* FROM scenarios s
            LEFT JOIN scenario_pools p ON p.scenario_id = s.scenario_id
            WHERE s.status = 'active'
              AND s.current_holder_id != ?
              AND (s.is_protected = 0 OR s.protected_until IS NULL OR s.protected_until <= ?)
              AND (s.lock_until IS NULL OR s.lock_until <= ?)
            ORDER BY COALESCE(p.total_pool, 0) DESC, s.created_at
            LIMIT ?
            """,
            (user_id, now_text, now_text, int(limit)),
        ).fetchall()
        return [_row_to_scenario(row) for row in rows]

    def compare_and_swap_transfer(
        self,
        *,
        scenario_id: str,
        expected_steal_count: int,
        expected_holder_id: str | None,
        new_holder_id: str,
        new_price: int,
        lock_until: datetime,
        clear_shield: bool,
        updated_at: datetime,
    ) -> bool:
        """Reassign the holder only if nobody else transferred the scenario first."""

        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE scenarios SET
                current_holder_id = ?,
                current_price = ?,
                steal_count = steal_count + 1,
                lock_until = ?,
                is_protected = CASE WHEN ? THEN 0 ELSE is_protected END,
                protected_until = CASE WHEN ? THEN NULL ELSE protected_until END,
                updated_at = ?
            WHERE scenario_id = ?
              AND status = 'active'
              AND steal_count = ?
              AND current_holder_id IS ?
              AND current_price <= ?
            """,
            (
                new_holder_id,
                new_price,
                format_ts(lock_until),
                int(clear_shield),
                int(clear_shield),
                format_ts(updated_at),
                scenario_id,
                expected_steal_count,
                expected_holder_id,
                new_price,
            ),
        )
        return cursor.rowcount == 1

    def set_status(
        self,
        scenario_id: str,
        *,
        status: ScenarioStatus,
        expected_status: ScenarioStatus,
        updated_at: datetime,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE scenarios SET status = ?, updated_at = ?
            WHERE scenario_id = ? AND status = ?
            """,
            (str(status), format_ts(updated_at), scenario_id, str(expected_status)),
        )
        return cursor.rowcount == 1

    def mark_duplicate(self, scenario_id: str, *, original_id: str, updated_at: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE scenarios SET duplicate_of = ?, status = 'cancelled', updated_at = ?
            WHERE scenario_id = ?
            """,
            (original_id, format_ts(updated_at), scenario_id),
        )

    def set_protection(
        self,
        scenario_id: str,
        *,
        protected_until: datetime | None,
        updated_at: datetime,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE scenarios SET is_protected = ?, protected_until = ?, updated_at = ?
            WHERE scenario_id = ?
            """,
            (
                int(protected_until is not None),
                format_ts(protected_until),
                format_ts(updated_at),
                scenario_id,
            ),
        )

    def open_holding(
        self,
        *,
        scenario_id: str,
        holder_id: str,
        acquisition_type: AcquisitionType,
        price_paid: int,
        acquired_at: datetime,
    ) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO scenario_holdings(
                scenario_id, holder_id, acquisition_type, price_paid, acquired_at, is_active
            ) VALUES (?, ?, ?, ?, ?, 1)
            """,
            (scenario_id, holder_id, str(acquisition_type), price_paid, format_ts(acquired_at)),
        )
        holding_id = cursor.lastrowid
        assert holding_id is not None
        return int(holding_id)

    def close_active_holding(self, scenario_id: str, *, released_at: datetime) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE scenario_holdings SET is_active = 0, released_at = ?
            WHERE scenario_id = ? AND is_active = 1
            """,
            (format_ts(released_at), scenario_id),
        )
        return cursor.rowcount

    def active_holding(self, scenario_id: str) -> Holding | None:
        row = self._conn.execute(
            "SELECT * FROM scenario_holdings WHERE scenario_id = ? AND is_active = 1",
            (scenario_id,),
        ).fetchone()
        return _row_to_holding(row) if row is not None else None

    def holdings(self, scenario_id: str) -> list[Holding]:
        rows = self._conn.execute(
            "SELECT * FROM scenario_holdings WHERE scenario_id = ? ORDER BY holding_id",
            (scenario_id,),
        ).fetchall()
        return [_row_to_holding(row) for row in rows]

    def holdings_for_user(self, holder_id: str) -> list[Holding]:
        rows = self._conn.execute(
            "SELECT * FROM scenario_holdings WHERE holder_id = ? ORDER BY holding_id",
            (holder_id,),
        ).fetchall()
        return [_row_to_holding(row) for row in rows]

    def count_active_holdings(self, scenario_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM scenario_holdings WHERE scenario_id = ? AND is_active = 1",
            (scenario_id,),
        ).fetchone()
        return int(row["n"])
