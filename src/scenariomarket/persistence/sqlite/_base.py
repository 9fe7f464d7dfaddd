from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)


class SqliteRepoBase:
    repo_name = "base"

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": self.repo_name}})
            raise PermissionError(f"UnitOfWork is read-only; {self.repo_name} writes are blocked")
