from __future__ import annotations

import sqlite3
from datetime import datetime

from scenariomarket.domain.models import Shield, format_ts, parse_ts
from scenariomarket.persistence.sqlite._base import SqliteRepoBase


def _row_to_shield(row: sqlite3.Row) -> Shield:
    protection_until = parse_ts(row["protection_until"])
    created_at = parse_ts(row["created_at"])
    assert protection_until is not None and created_at is not None
    return Shield(
        shield_id=int(row["shield_id"]),
        scenario_id=str(row["scenario_id"]),
        beneficiary_id=str(row["beneficiary_id"]),
        preset=str(row["preset"]),
        protection_until=protection_until,
        price_paid=int(row["price_paid"]),
        is_active=bool(row["is_active"]),
        created_at=created_at,
    )


class SqliteShieldsRepo(SqliteRepoBase):
    repo_name = "shields"

    def active(self, scenario_id: str) -> Shield | None:
        row = self._conn.execute(
            "SELECT * FROM scenario_shields WHERE scenario_id = ? AND is_active = 1",
            (scenario_id,),
        ).fetchone()
        return _row_to_shield(row) if row is not None else None

    def deactivate_active(self, scenario_id: str) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            "UPDATE scenario_shields SET is_active = 0 WHERE scenario_id = ? AND is_active = 1",
            (scenario_id,),
        )
        return cursor.rowcount

    def insert(
        self,
        *,
        scenario_id: str,
        beneficiary_id: str,
        preset: str,
        protection_until: datetime,
        price_paid: int,
        created_at: datetime,
    ) -> Shield:
        self._ensure_writable()
        if protection_until <= created_at:
            raise ValueError("shield protection_until must be in the future")
        cursor = self._conn.execute(
            """
            INSERT INTO scenario_shields(
                scenario_id, beneficiary_id, preset, protection_until, price_paid, is_active,
                created_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?)
            """,
            (
                scenario_id,
                beneficiary_id,
                preset,
                format_ts(protection_until),
                price_paid,
                format_ts(created_at),
            ),
        )
        shield_id = cursor.lastrowid
        assert shield_id is not None
        return Shield(
            shield_id=int(shield_id),
            scenario_id=scenario_id,
            beneficiary_id=beneficiary_id,
            preset=preset,
            protection_until=protection_until,
            price_paid=price_paid,
            is_active=True,
            created_at=created_at,
        )

    def history(self, scenario_id: str) -> list[Shield]:
        rows = self._conn.execute(
            "SELECT * FROM scenario_shields WHERE scenario_id = ? ORDER BY shield_id",
            (scenario_id,),
        ).fetchall()
        return [_row_to_shield(row) for row in rows]
