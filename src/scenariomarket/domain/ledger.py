from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from scenariomarket.domain.models import BalanceLedgerEntry


@dataclass(frozen=True)
class LedgerState:
    balances: dict[str, int] = field(default_factory=dict)
    entry_count: int = 0
    last_entry_id: int | None = None


@dataclass(frozen=True)
class LedgerDiscrepancy:
    entry_id: int
    user_id: str
    expected_balance: int
    recorded_balance: int


def _sort_entries(entries: Iterable[BalanceLedgerEntry]) -> list[BalanceLedgerEntry]:
    return sorted(entries, key=lambda entry: entry.entry_id)


def apply_entries(state: LedgerState, entries: Iterable[BalanceLedgerEntry]) -> LedgerState:
    balances = dict(state.balances)
    count = state.entry_count
    last_entry_id = state.last_entry_id
    for entry in _sort_entries(entries):
        if last_entry_id is not None and entry.entry_id <= last_entry_id:
            raise ValueError(
                f"ledger_order_violation entry_id={entry.entry_id} last_entry_id={last_entry_id}"
            )
        balances[entry.user_id] = balances.get(entry.user_id, 0) + entry.amount
        count += 1
        last_entry_id = entry.entry_id
    return LedgerState(balances=balances, entry_count=count, last_entry_id=last_entry_id)


def replay_balances(entries: Iterable[BalanceLedgerEntry]) -> dict[str, int]:
    return apply_entries(LedgerState(), entries).balances


def find_discrepancies(entries: Iterable[BalanceLedgerEntry]) -> list[LedgerDiscrepancy]:
    """Entries whose recorded ``balance_after`` disagrees with the running sum."""

    running: dict[str, int] = {}
    discrepancies: list[LedgerDiscrepancy] = []
    for entry in _sort_entries(entries):
        expected = running.get(entry.user_id, 0) + entry.amount
        running[entry.user_id] = expected
        if expected != entry.balance_after:
            discrepancies.append(
                LedgerDiscrepancy(
                    entry_id=entry.entry_id,
                    user_id=entry.user_id,
                    expected_balance=expected,
                    recorded_balance=entry.balance_after,
                )
            )
    return discrepancies


def net_flow(entries: Iterable[BalanceLedgerEntry]) -> int:
    return sum(entry.amount for entry in entries)
