from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from scenariomarket.domain.models import (
    AcquisitionType,
    Holding,
    Scenario,
    ScenarioStatus,
    StealHistoryEntry,
)
from scenariomarket.persistence.uow import UnitOfWorkFactory


@dataclass(frozen=True)
class UserStealStats:
    user_id: str
    steals_made: int
    coins_spent: int
    times_stolen_from: int
    coins_received: int
    scenarios_created: int
    scenarios_stolen: int
    scenarios_recovered: int
    currently_holding: int
    pool_winnings: int


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    steals: int


def count_acquisitions(holdings: list[Holding]) -> dict[AcquisitionType, int]:
    counts = {acquisition: 0 for acquisition in AcquisitionType}
    for holding in holdings:
        if holding.acquisition_type == AcquisitionType.CREATION:
            counts[AcquisitionType.CREATION] += 1
        elif holding.acquisition_type == AcquisitionType.STEAL:
            counts[AcquisitionType.STEAL] += 1
        elif holding.acquisition_type == AcquisitionType.RECOVERY:
            counts[AcquisitionType.RECOVERY] += 1
        else:
            raise ValueError(f"unhandled acquisition type: {holding.acquisition_type}")
    return counts


class StealStatsService:
    """Read models over steal history and holdings; never writes."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def user_stats(self, user_id: str) -> UserStealStats:
        with self.uow_factory.reader() as uow:
            steals_made, spent = uow.history.thief_totals(user_id)
            stolen_from, received = uow.history.victim_totals(user_id)
            holdings = uow.scenarios.holdings_for_user(user_id)
            won = uow.pools.total_won(user_id)
        counts = count_acquisitions(holdings)
        return UserStealStats(
            user_id=user_id,
            steals_made=steals_made,
            coins_spent=spent,
            times_stolen_from=stolen_from,
            coins_received=received,
            scenarios_created=counts[AcquisitionType.CREATION],
            scenarios_stolen=counts[AcquisitionType.STEAL],
            scenarios_recovered=counts[AcquisitionType.RECOVERY],
            currently_holding=sum(1 for holding in holdings if holding.is_active),
            pool_winnings=won,
        )

    def top_thieves(self, limit: int = 10) -> list[LeaderboardEntry]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        with self.uow_factory.reader() as uow:
            rows = uow.history.top_thieves(limit=limit)
        return [
            LeaderboardEntry(rank=index, user_id=user_id, steals=steals)
            for index, (user_id, steals) in enumerate(rows, start=1)
        ]

    def stealable_scenarios(self, user_id: str, limit: int = 20) -> list[Scenario]:
        """Active scenarios held by someone else with no running shield or lock."""

        with self.uow_factory.reader() as uow:
            return uow.scenarios.list_stealable(user_id, now=self.now_provider(), limit=limit)

    def holder_scenarios(self, user_id: str) -> list[Scenario]:
        with self.uow_factory.reader() as uow:
            return uow.scenarios.list_by_holder(user_id, status=ScenarioStatus.ACTIVE)

    def steal_history(self, scenario_id: str, limit: int | None = 20) -> list[StealHistoryEntry]:
        with self.uow_factory.reader() as uow:
            return uow.history.for_scenario(scenario_id, limit=limit)
