from __future__ import annotations

from datetime import datetime
from enum import StrEnum


class ErrorCategory(StrEnum):
    PRECONDITION = "precondition"
    CONTENTION = "contention"
    RESOURCE = "resource"


class MarketError(RuntimeError):
    """Base for every typed failure the engine reports to callers."""

    code = "MarketError"
    category = ErrorCategory.PRECONDITION

    def __init__(self, message: str, *, scenario_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.scenario_id = scenario_id

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.CONTENTION

    def to_payload(self) -> dict[str, object]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ScenarioNotFound(MarketError):
    code = "ScenarioNotFound"


class NotActive(MarketError):
    code = "NotActive"

    def __init__(self, scenario_id: str, status: str) -> None:
        super().__init__(f"scenario is {status}, not active", scenario_id=scenario_id)
        self.status = status


class SelfSteal(MarketError):
    code = "SelfSteal"


class NotHolder(MarketError):
    code = "NotHolder"


class NotClosed(MarketError):
    code = "NotClosed"

    def __init__(self, scenario_id: str, status: str) -> None:
        super().__init__(f"scenario is {status}, not closed", scenario_id=scenario_id)
        self.status = status


class AlreadyResolved(MarketError):
    code = "AlreadyResolved"


class InvalidShieldPreset(MarketError):
    code = "InvalidShieldPreset"


class DuplicateScenario(MarketError):
    code = "DuplicateScenario"

    def __init__(self, target_scenario_id: str, similarity: int) -> None:
        super().__init__(
            f"scenario duplicates {target_scenario_id} (similarity={similarity})",
            scenario_id=target_scenario_id,
        )
        self.target_scenario_id = target_scenario_id
        self.similarity = similarity

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["targetScenarioId"] = self.target_scenario_id
        payload["similarity"] = self.similarity
        return payload


class Protected(MarketError):
    code = "Protected"

    def __init__(self, scenario_id: str, reason: str, until: datetime) -> None:
        super().__init__(f"steal blocked by {reason} until {until.isoformat()}", scenario_id=scenario_id)
        self.reason = reason
        self.until = until

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["reason"] = self.reason
        payload["until"] = self.until.isoformat()
        return payload


class PriceChanged(MarketError):
    code = "PriceChanged"
    category = ErrorCategory.CONTENTION

    def __init__(self, scenario_id: str, current_price: int | None = None) -> None:
        super().__init__("scenario changed since it was read; refetch the price", scenario_id=scenario_id)
        self.current_price = current_price

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        if self.current_price is not None:
            payload["currentPrice"] = self.current_price
        return payload


class Busy(MarketError):
    code = "Busy"
    category = ErrorCategory.CONTENTION


class InsufficientFunds(MarketError):
    code = "InsufficientFunds"
    category = ErrorCategory.RESOURCE

    def __init__(self, user_id: str, required: int, available: int) -> None:
        super().__init__(f"balance {available} is below required {required}")
        self.user_id = user_id
        self.required = required
        self.available = available

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["required"] = self.required
        payload["available"] = self.available
        return payload


class InvalidTransition(MarketError):
    code = "InvalidTransition"

    def __init__(self, scenario_id: str, status: str, target: str) -> None:
        super().__init__(f"cannot move scenario from {status} to {target}", scenario_id=scenario_id)
        self.status = status
        self.target = target


class InvalidOutcome(MarketError):
    code = "InvalidOutcome"
