from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from scenariomarket.domain.errors import Busy
from scenariomarket.persistence.sqlite.history_repo import SqliteStealHistoryRepo
from scenariomarket.persistence.sqlite.ledger_repo import SqliteLedgerRepo
from scenariomarket.persistence.sqlite.pools_repo import SqlitePoolsRepo
from scenariomarket.persistence.sqlite.scenarios_repo import SqliteScenariosRepo
from scenariomarket.persistence.sqlite.shields_repo import SqliteShieldsRepo
from scenariomarket.persistence.sqlite.sqlite_connection import (
    DEFAULT_BUSY_TIMEOUT_MS,
    create_sqlite_connection,
    initialize_database,
    is_lock_error,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One SQLite transaction spanning every repository.

    Writers take the database write lock up front (``BEGIN IMMEDIATE``), so every
    read inside the block sees the state it is about to modify. Readers use a
    deferred transaction and cannot write.
    """

    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self.scenarios: SqliteScenariosRepo
        self.history: SqliteStealHistoryRepo
        self.pools: SqlitePoolsRepo
        self.shields: SqliteShieldsRepo
        self.ledger: SqliteLedgerRepo

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path, busy_timeout_ms=self.busy_timeout_ms)
        try:
            conn.execute("BEGIN" if self.read_only else "BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            conn.close()
            if is_lock_error(exc):
                logger.warning(
                    "uow_lock_timeout",
                    extra={"extra": {"busy_timeout_ms": self.busy_timeout_ms}},
                )
                raise Busy("could not acquire the scenario write lock in time") from exc
            raise
        self._conn = conn
        self.scenarios = SqliteScenariosRepo(conn, read_only=self.read_only)
        self.history = SqliteStealHistoryRepo(conn, read_only=self.read_only)
        self.pools = SqlitePoolsRepo(conn, read_only=self.read_only)
        self.shields = SqliteShieldsRepo(conn, read_only=self.read_only)
        self.ledger = SqliteLedgerRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                try:
                    self._conn.commit()
                except sqlite3.OperationalError as commit_exc:
                    self._conn.rollback()
                    if is_lock_error(commit_exc):
                        raise Busy("commit could not acquire the database lock") from commit_exc
                    raise
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    def __post_init__(self) -> None:
        if not self.read_only:
            initialize_database(self.db_path, busy_timeout_ms=self.busy_timeout_ms)

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only, busy_timeout_ms=self.busy_timeout_ms)

    def reader(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=True, busy_timeout_ms=self.busy_timeout_ms)
