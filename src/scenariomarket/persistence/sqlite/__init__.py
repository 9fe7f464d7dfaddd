from scenariomarket.persistence.sqlite.history_repo import SqliteStealHistoryRepo
from scenariomarket.persistence.sqlite.ledger_repo import SqliteLedgerRepo
from scenariomarket.persistence.sqlite.pools_repo import SqlitePoolsRepo
from scenariomarket.persistence.sqlite.scenarios_repo import SqliteScenariosRepo
from scenariomarket.persistence.sqlite.shields_repo import SqliteShieldsRepo

__all__ = [
    "SqliteLedgerRepo",
    "SqlitePoolsRepo",
    "SqliteScenariosRepo",
    "SqliteShieldsRepo",
    "SqliteStealHistoryRepo",
]
