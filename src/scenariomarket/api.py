from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from scenariomarket.config import Settings
from scenariomarket.domain.errors import Busy, MarketError
from scenariomarket.domain.models import Scenario, format_ts
from scenariomarket.domain.protection import SHIELD_PRESETS
from scenariomarket.logging_context import with_logging_context
from scenariomarket.observability import get_instrumentation
from scenariomarket.services.duplicate_gate import DuplicateGate, DuplicateMatch, GateDecisionKind
from scenariomarket.services.events import EventPublisher
from scenariomarket.services.prediction_tally import PredictionTally
from scenariomarket.services.retry import RetryAttempt, RetryPolicy, retry_with_backoff
from scenariomarket.services.stats_service import StealStatsService
from scenariomarket.services.transfer_engine import OwnershipTransferEngine

logger = logging.getLogger(__name__)

Payload = dict[str, object]


def _match_payload(match: DuplicateMatch) -> Payload:
    return {
        "scenarioId": match.scenario_id,
        "title": match.title,
        "similarityScore": match.similarity_score,
        "holderUsername": match.holder_username,
        "currentPrice": match.current_price,
        "status": str(match.status),
    }


def _scenario_payload(scenario: Scenario) -> Payload:
    return {
        "scenarioId": scenario.scenario_id,
        "title": scenario.title,
        "category": scenario.category,
        "status": str(scenario.status),
        "currentHolder": scenario.current_holder_id,
        "currentPrice": scenario.current_price,
        "stealCount": scenario.steal_count,
    }


class MarketApi:
    """Transport-neutral request handlers returning JSON-ready dicts.

    Domain failures become ``{"success": False, "error": ...}`` payloads; any
    other exception propagates to the transport.
    """

    def __init__(
        self,
        engine: OwnershipTransferEngine,
        *,
        stats: StealStatsService | None = None,
        gate: DuplicateGate | None = None,
        busy_retry: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.engine = engine
        self.stats = stats or StealStatsService(engine.uow_factory, now_provider=engine.now_provider)
        self.gate = gate or engine.gate
        self.busy_retry = busy_retry or RetryPolicy(max_attempts=3, base_delay_ms=50, max_delay_ms=500)
        self._sleep_fn = sleep_fn

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        tally: PredictionTally | None = None,
        publisher: EventPublisher | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> MarketApi:
        engine = OwnershipTransferEngine.from_settings(
            settings, tally=tally, publisher=publisher, now_provider=now_provider
        )
        return cls(
            engine,
            busy_retry=RetryPolicy(
                max_attempts=settings.steal_busy_max_attempts,
                base_delay_ms=settings.steal_busy_base_delay_ms,
                max_delay_ms=settings.steal_busy_max_delay_ms,
            ),
        )

    def _handle(self, operation: str, fn: Callable[[], Payload]) -> Payload:
        with with_logging_context(request_id=uuid4().hex, operation=operation):
            try:
                return fn()
            except MarketError as exc:
                logger.info(
                    "request_failed",
                    extra={"extra": {"error": exc.code, "retryable": exc.retryable}},
                )
                return exc.to_payload()

    def steal(self, scenario_id: str, buyer_id: str, expected_price: int | None = None) -> Payload:
        def _on_busy(attempt: RetryAttempt) -> None:
            logger.warning(
                "steal_busy_retry",
                extra={"extra": {"attempt": attempt.attempt, "delay_ms": attempt.delay_ms}},
            )
            get_instrumentation().counter(
                "steal_busy_retries_total", attrs={"attempt": attempt.attempt}
            )

        def _run() -> Payload:
            result = retry_with_backoff(
                lambda: self.engine.steal(scenario_id, buyer_id, expected_price),
                policy=self.busy_retry,
                retry_on=(Busy,),
                sleep_fn=self._sleep_fn,
                on_retry=_on_busy,
            )
            return {
                "success": True,
                "newPrice": result.price_paid,
                "newHolderId": result.new_holder_id,
                "stealNumber": result.steal_number,
                "nextPrice": result.next_price,
                "poolTotal": result.pool_total,
                "lockUntil": format_ts(result.lock_until),
            }

        return self._handle("steal", _run)

    def purchase_shield(self, scenario_id: str, user_id: str, duration_preset: str) -> Payload:
        def _run() -> Payload:
            result = self.engine.purchase_shield(scenario_id, user_id, duration_preset)
            return {
                "success": True,
                "protectedUntil": format_ts(result.shield.protection_until),
                "shieldType": result.shield.preset,
            }

        return self._handle("purchase_shield", _run)

    def resolve(self, scenario_id: str, outcome: str) -> Payload:
        def _run() -> Payload:
            result = self.engine.resolve(scenario_id, outcome)
            return {
                "success": True,
                "outcome": str(result.outcome),
                "payouts": result.payouts,
                "creatorReimbursement": result.creator_reimbursement,
                "unclaimed": result.unclaimed,
            }

        return self._handle("resolve", _run)

    def close(self, scenario_id: str) -> Payload:
        def _run() -> Payload:
            scenario = self.engine.close(scenario_id)
            return {"success": True, "scenarioId": scenario.scenario_id, "status": str(scenario.status)}

        return self._handle("close", _run)

    def cancel(self, scenario_id: str) -> Payload:
        def _run() -> Payload:
            result = self.engine.cancel(scenario_id)
            return {"success": True, "scenarioId": result.scenario_id, "refunds": result.refunds}

        return self._handle("cancel", _run)

    def scenario_state(self, scenario_id: str) -> Payload:
        def _run() -> Payload:
            state = self.engine.scenario_state(scenario_id)
            return {
                "success": True,
                "status": str(state.status),
                "currentHolder": state.current_holder_id,
                "currentPrice": state.current_price,
                "nextPrice": state.next_price,
                "stealCount": state.steal_count,
                "isProtected": state.is_protected,
                "protectedUntil": format_ts(state.protected_until),
                "lockUntil": format_ts(state.lock_until),
                "totalPool": state.total_pool,
            }

        return self._handle("scenario_state", _run)

    def check_duplicate(
        self, title: str, description: str = "", category: str | None = None
    ) -> Payload:
        def _run() -> Payload:
            decision = self.gate.evaluate(title, description, category=category)
            return {
                "success": True,
                "decision": str(decision.decision),
                "matches": [_match_payload(match) for match in decision.matches],
                "contentHash": decision.content_hash,
                "degraded": decision.degraded,
            }

        return self._handle("check_duplicate", _run)

    def suggest(self, partial_title: str) -> Payload:
        return self._handle(
            "suggest",
            lambda: {
                "success": True,
                "suggestions": [_match_payload(match) for match in self.gate.suggest(partial_title)],
            },
        )

    def create_scenario(
        self,
        creator_id: str,
        title: str,
        description: str = "",
        category: str | None = None,
        draft: bool = False,
    ) -> Payload:
        def _run() -> Payload:
            created = self.engine.create_scenario(
                creator_id, title, description, category=category, draft=draft
            )
            payload = _scenario_payload(created.scenario)
            payload.update(
                {
                    "success": True,
                    "poolTotal": created.pool_total,
                    "duplicateWarning": created.gate.decision == GateDecisionKind.WARN,
                    "matches": [_match_payload(match) for match in created.gate.matches],
                }
            )
            return payload

        return self._handle("create_scenario", _run)

    def user_stats(self, user_id: str) -> Payload:
        def _run() -> Payload:
            stats = self.stats.user_stats(user_id)
            return {
                "success": True,
                "userId": stats.user_id,
                "stealsMade": stats.steals_made,
                "coinsSpent": stats.coins_spent,
                "timesStolenFrom": stats.times_stolen_from,
                "coinsReceived": stats.coins_received,
                "scenariosCreated": stats.scenarios_created,
                "scenariosStolen": stats.scenarios_stolen,
                "scenariosRecovered": stats.scenarios_recovered,
                "currentlyHolding": stats.currently_holding,
                "poolWinnings": stats.pool_winnings,
            }

        return self._handle("user_stats", _run)

    def stealable(self, user_id: str, limit: int = 20) -> Payload:
        return self._handle(
            "stealable",
            lambda: {
                "success": True,
                "scenarios": [
                    _scenario_payload(item) for item in self.stats.stealable_scenarios(user_id, limit)
                ],
            },
        )

    def leaderboard(self, limit: int = 10) -> Payload:
        return self._handle(
            "leaderboard",
            lambda: {
                "success": True,
                "leaders": [
                    {"rank": entry.rank, "userId": entry.user_id, "steals": entry.steals}
                    for entry in self.stats.top_thieves(limit)
                ],
            },
        )

    def shield_presets(self) -> Payload:
        return {
            "success": True,
            "presets": [
                {
                    "id": preset.preset_id,
                    "name": preset.name,
                    "durationHours": int(preset.duration.total_seconds() // 3600),
                    "price": preset.price,
                }
                for preset in SHIELD_PRESETS.values()
            ],
        }
