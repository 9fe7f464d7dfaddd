from __future__ import annotations

import sqlite3

DEFAULT_BUSY_TIMEOUT_MS = 5000


def create_sqlite_connection(
    db_path: str, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> sqlite3.Connection:
    # Transactions are opened explicitly by the unit of work.
    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def is_lock_error(exc: sqlite3.Error) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


def ensure_market_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scenarios (
            scenario_id TEXT PRIMARY KEY,
            creator_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category TEXT,
            content_hash TEXT NOT NULL,
            status TEXT NOT NULL,
            current_holder_id TEXT,
            current_price INTEGER NOT NULL,
            steal_count INTEGER NOT NULL DEFAULT 0,
            is_protected INTEGER NOT NULL DEFAULT 0,
            protected_until TEXT,
            lock_until TEXT,
            duplicate_of TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (status != 'active' OR current_holder_id IS NOT NULL),
            CHECK (steal_count >= 0),
            CHECK (current_price >= 0)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_scenarios_content_hash ON scenarios(content_hash)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_scenarios_status ON scenarios(status)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_scenarios_holder ON scenarios(current_holder_id, status)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scenario_holdings (
            holding_id INTEGER PRIMARY KEY AUTOINCREMENT,
            scenario_id TEXT NOT NULL REFERENCES scenarios(scenario_id),
            holder_id TEXT NOT NULL,
            acquisition_type TEXT NOT NULL
                CHECK (acquisition_type IN ('creation', 'steal', 'recovery')),
            price_paid INTEGER NOT NULL,
            acquired_at TEXT NOT NULL,
            released_at TEXT,
            is_active INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_scenario_holdings_one_active
        ON scenario_holdings(scenario_id)
        WHERE is_active = 1
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scenario_steal_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scenario_id TEXT NOT NULL REFERENCES scenarios(scenario_id),
            steal_number INTEGER NOT NULL CHECK (steal_number >= 1),
            thief_id TEXT NOT NULL,
            victim_id TEXT NOT NULL,
            price_paid INTEGER NOT NULL,
            victim_payout INTEGER NOT NULL,
            pool_contribution INTEGER NOT NULL,
            platform_contribution INTEGER NOT NULL,
            stolen_at TEXT NOT NULL,
            CHECK (price_paid = victim_payout + pool_contribution + platform_contribution),
            UNIQUE (scenario_id, steal_number)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_steal_history_thief ON scenario_steal_history(thief_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_steal_history_victim ON scenario_steal_history(victim_id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scenario_pools (
            scenario_id TEXT PRIMARY KEY REFERENCES scenarios(scenario_id),
            total_pool INTEGER NOT NULL DEFAULT 0,
            user_contributions INTEGER NOT NULL DEFAULT 0,
            platform_contributions INTEGER NOT NULL DEFAULT 0,
            creator_reimbursed INTEGER NOT NULL DEFAULT 0,
            winner_id TEXT,
            payout_amount INTEGER NOT NULL DEFAULT 0,
            paid_out INTEGER NOT NULL DEFAULT 0,
            refunded INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pool_contributions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scenario_id TEXT NOT NULL REFERENCES scenarios(scenario_id),
            source TEXT NOT NULL CHECK (source IN ('user', 'platform')),
            contributor_id TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK (amount > 0),
            reference TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_pool_contributions_scenario ON pool_contributions(scenario_id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pool_payouts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scenario_id TEXT NOT NULL REFERENCES scenarios(scenario_id),
            user_id TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK (amount > 0),
            kind TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scenario_shields (
            shield_id INTEGER PRIMARY KEY AUTOINCREMENT,
            scenario_id TEXT NOT NULL REFERENCES scenarios(scenario_id),
            beneficiary_id TEXT NOT NULL,
            preset TEXT NOT NULL,
            protection_until TEXT NOT NULL,
            price_paid INTEGER NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_scenario_shields_one_active
        ON scenario_shields(scenario_id)
        WHERE is_active = 1
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS balance_ledger (
            entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            balance_after INTEGER NOT NULL,
            reason TEXT NOT NULL,
            reference TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_balance_ledger_user ON balance_ledger(user_id, entry_id)"
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS trg_balance_ledger_no_update
        BEFORE UPDATE ON balance_ledger
        BEGIN
            SELECT RAISE(ABORT, 'balance_ledger is append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS trg_balance_ledger_no_delete
        BEFORE DELETE ON balance_ledger
        BEGIN
            SELECT RAISE(ABORT, 'balance_ledger is append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS trg_steal_history_no_update
        BEFORE UPDATE ON scenario_steal_history
        BEGIN
            SELECT RAISE(ABORT, 'scenario_steal_history is append-only');
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS trg_pool_creator_reimbursed_sticky
        BEFORE UPDATE OF creator_reimbursed ON scenario_pools
        WHEN OLD.creator_reimbursed = 1 AND NEW.creator_reimbursed = 0
        BEGIN
            SELECT RAISE(ABORT, 'creator_reimbursed cannot be cleared');
        END
        """
    )


def initialize_database(db_path: str, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    conn = create_sqlite_connection(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        conn.execute("BEGIN IMMEDIATE")
        ensure_market_schema(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
