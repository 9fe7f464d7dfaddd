from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from scenariomarket.domain.models import Scenario, ScenarioStatus
from scenariomarket.domain.similarity import (
    DuplicateGateConfig,
    content_hash,
    levenshtein_similarity,
    similarity_score,
)
from scenariomarket.observability import get_instrumentation
from scenariomarket.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

CANDIDATE_STATUSES = (ScenarioStatus.DRAFT, ScenarioStatus.ACTIVE, ScenarioStatus.CLOSED)
EXACT_MATCH_SCORE = 100


class GateDecisionKind(StrEnum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True)
class DuplicateMatch:
    scenario_id: str
    title: str
    similarity_score: int
    holder_id: str | None
    holder_username: str | None
    current_price: int
    status: ScenarioStatus


@dataclass(frozen=True)
class GateDecision:
    decision: GateDecisionKind
    content_hash: str
    matches: list[DuplicateMatch] = field(default_factory=list)
    exact_match: bool = False
    degraded: bool = False

    @property
    def target(self) -> DuplicateMatch | None:
        """Scenario the caller should steal instead of creating a new one."""

        if self.decision != GateDecisionKind.BLOCK or not self.matches:
            return None
        return self.matches[0]


UsernameResolver = Callable[[str], str | None]


class DuplicateGate:
    """Read-only similarity check run before a scenario is persisted."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        config: DuplicateGateConfig | None = None,
        *,
        username_resolver: UsernameResolver | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.config = config or DuplicateGateConfig()
        self.username_resolver = username_resolver
        self.now_provider = now_provider or (lambda: datetime.now(UTC))

    def evaluate(
        self,
        title: str,
        description: str = "",
        *,
        category: str | None = None,
        exclude_id: str | None = None,
    ) -> GateDecision:
        fingerprint = content_hash(title, description)
        if len(title.strip()) < self.config.min_title_length:
            return GateDecision(decision=GateDecisionKind.ALLOW, content_hash=fingerprint)
        try:
            result = self._evaluate(title, description, fingerprint, category, exclude_id)
        except sqlite3.Error:
            logger.warning(
                "duplicate_gate_lookup_failed",
                exc_info=True,
                extra={"extra": {"category": category, "decision": "allow"}},
            )
            result = GateDecision(
                decision=GateDecisionKind.ALLOW, content_hash=fingerprint, degraded=True
            )
        get_instrumentation().counter(
            "duplicate_gate_decisions_total",
            attrs={
                "decision": str(result.decision),
                "exact_match": result.exact_match,
                "degraded": result.degraded,
            },
        )
        return result

    def _evaluate(
        self,
        title: str,
        description: str,
        fingerprint: str,
        category: str | None,
        exclude_id: str | None,
    ) -> GateDecision:
        created_after = None
        if self.config.lookback is not None:
            created_after = self.now_provider() - self.config.lookback
        with self.uow_factory.reader() as uow:
            exact = uow.scenarios.find_by_content_hash(
                fingerprint,
                statuses=CANDIDATE_STATUSES,
                category=category,
                created_after=created_after,
                exclude_id=exclude_id,
            )
            candidates: list[Scenario] = []
            if not exact:
                candidates = uow.scenarios.list_duplicate_candidates(
                    statuses=CANDIDATE_STATUSES,
                    category=category,
                    created_after=created_after,
                    exclude_id=exclude_id,
                    limit=self.config.candidate_limit,
                )

        if exact:
            matches = [self._match(scenario, EXACT_MATCH_SCORE) for scenario in exact]
            logger.info(
                "duplicate_gate_exact_match",
                extra={"extra": {"target_scenario_id": exact[0].scenario_id}},
            )
            return GateDecision(
                decision=GateDecisionKind.BLOCK,
                content_hash=fingerprint,
                matches=matches[: self.config.max_matches],
                exact_match=True,
            )

        scored: list[DuplicateMatch] = []
        for scenario in candidates:
            score = similarity_score(title, description, scenario.title, scenario.description)
            if score > self.config.display_threshold:
                scored.append(self._match(scenario, score))
        scored.sort(key=lambda match: (-match.similarity_score, match.scenario_id))
        matches = scored[: self.config.max_matches]

        best = matches[0].similarity_score if matches else 0
        if best >= self.config.block_threshold:
            decision = GateDecisionKind.BLOCK
        elif best >= self.config.warn_threshold:
            decision = GateDecisionKind.WARN
        else:
            decision = GateDecisionKind.ALLOW
        logger.debug(
            "duplicate_gate_evaluated",
            extra={
                "extra": {
                    "decision": str(decision),
                    "best_score": best,
                    "candidates": len(candidates),
                }
            },
        )
        return GateDecision(decision=decision, content_hash=fingerprint, matches=matches)

    def suggest(self, partial_title: str) -> list[DuplicateMatch]:
        """Typing-time hints; cheaper than ``evaluate`` and title-only."""

        if len(partial_title.strip()) < self.config.suggestion_min_length:
            return []
        try:
            with self.uow_factory.reader() as uow:
                candidates = uow.scenarios.list_duplicate_candidates(
                    statuses=CANDIDATE_STATUSES,
                    category=None,
                    created_after=None,
                    exclude_id=None,
                    limit=self.config.candidate_limit,
                )
        except sqlite3.Error:
            logger.warning("duplicate_gate_suggest_failed", exc_info=True)
            return []
        suggestions: list[DuplicateMatch] = []
        for scenario in candidates:
            score = round(levenshtein_similarity(partial_title, scenario.title) * 100)
            if score > self.config.suggestion_threshold:
                suggestions.append(self._match(scenario, score))
        suggestions.sort(key=lambda match: (-match.similarity_score, match.scenario_id))
        return suggestions[: self.config.max_matches]

    def _match(self, scenario: Scenario, score: int) -> DuplicateMatch:
        holder_username = None
        if scenario.current_holder_id is not None:
            holder_username = (
                self.username_resolver(scenario.current_holder_id)
                if self.username_resolver is not None
                else scenario.current_holder_id
            )
        return DuplicateMatch(
            scenario_id=scenario.scenario_id,
            title=scenario.title,
            similarity_score=score,
            holder_id=scenario.current_holder_id,
            holder_username=holder_username,
            current_price=scenario.current_price,
            status=scenario.status,
        )
