from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from scenariomarket.domain.models import Scenario, ensure_utc


class BlockReason(StrEnum):
    SHIELD = "shield"
    LOCK = "lock"


@dataclass(frozen=True)
class ShieldPreset:
    preset_id: str
    name: str
    duration: timedelta
    price: int


SHIELD_PRESETS: dict[str, ShieldPreset] = {
    "basic": ShieldPreset("basic", "Basic shield", timedelta(hours=6), 15),
    "premium": ShieldPreset("premium", "Premium shield", timedelta(hours=24), 40),
    "ultimate": ShieldPreset("ultimate", "Ultimate shield", timedelta(hours=72), 100),
}


@dataclass(frozen=True)
class StealBlock:
    reason: BlockReason
    until: datetime


def shield_active(scenario: Scenario, now: datetime) -> bool:
    return (
        scenario.is_protected
        and scenario.protected_until is not None
        and ensure_utc(now) < ensure_utc(scenario.protected_until)
    )


def lock_active(scenario: Scenario, now: datetime) -> bool:
    return scenario.lock_until is not None and ensure_utc(now) < ensure_utc(scenario.lock_until)


def blocking_reason(scenario: Scenario, now: datetime) -> StealBlock | None:
    """Return whichever window blocks a steal at ``now``; the later expiry wins."""

    blocks: list[StealBlock] = []
    if shield_active(scenario, now):
        assert scenario.protected_until is not None
        blocks.append(StealBlock(BlockReason.SHIELD, ensure_utc(scenario.protected_until)))
    if lock_active(scenario, now):
        assert scenario.lock_until is not None
        blocks.append(StealBlock(BlockReason.LOCK, ensure_utc(scenario.lock_until)))
    if not blocks:
        return None
    return max(blocks, key=lambda block: block.until)


def is_steal_blocked(scenario: Scenario, now: datetime) -> bool:
    return blocking_reason(scenario, now) is not None


def shield_expired(scenario: Scenario, now: datetime) -> bool:
    return scenario.is_protected and not shield_active(scenario, now)


def rearm_lock(now: datetime, lock_duration: timedelta) -> datetime:
    return ensure_utc(now) + lock_duration
