from scenariomarket.persistence.interfaces.ledger_repo import LedgerRepoProtocol

__all__ = ["LedgerRepoProtocol"]
