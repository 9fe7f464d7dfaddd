from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from scenariomarket.domain.models import Outcome


class PredictionTally(Protocol):
    """Voting results owned by the prediction service; read at resolution time."""

    def winning_stakes(self, scenario_id: str, outcome: Outcome) -> Mapping[str, int]: ...


class StaticPredictionTally:
    def __init__(
        self, stakes: Mapping[str, Mapping[Outcome, Mapping[str, int]]] | None = None
    ) -> None:
        self._stakes: dict[str, dict[Outcome, dict[str, int]]] = {}
        for scenario_id, by_outcome in (stakes or {}).items():
            for outcome, users in by_outcome.items():
                for user_id, stake in users.items():
                    self.record(scenario_id, outcome, user_id, stake)

    def record(self, scenario_id: str, outcome: Outcome, user_id: str, stake: int) -> None:
        if stake <= 0:
            raise ValueError("stake must be > 0")
        by_user = self._stakes.setdefault(scenario_id, {}).setdefault(Outcome(outcome), {})
        by_user[user_id] = by_user.get(user_id, 0) + stake

    def winning_stakes(self, scenario_id: str, outcome: Outcome) -> Mapping[str, int]:
        return dict(self._stakes.get(scenario_id, {}).get(Outcome(outcome), {}))
