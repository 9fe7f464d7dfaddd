from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, Overflow, localcontext
from enum import StrEnum

from scenariomarket.domain.models import Scenario
from scenariomarket.domain.money_policy import ceil_to_coins, to_decimal


class PricingCurve(StrEnum):
    LINEAR = "linear"
    MULTIPLICATIVE = "multiplicative"


@dataclass(frozen=True)
class PricingPolicy:
    curve: PricingCurve = PricingCurve.LINEAR
    base_price: int = 10
    step: int = 1
    growth: Decimal = Decimal("1.10")
    floor: int = 1
    ceiling: int = 1_000_000

    def __post_init__(self) -> None:
        if self.floor < 1:
            raise ValueError("price floor must be >= 1")
        if self.ceiling < self.floor:
            raise ValueError("price ceiling must be >= floor")
        if self.base_price < 0:
            raise ValueError("base price must be >= 0")
        if self.step < 0:
            raise ValueError("price step must be >= 0")
        if to_decimal(self.growth) < 1:
            raise ValueError("growth factor must be >= 1")


def curve_price(steal_number: int, policy: PricingPolicy) -> int:
    """Raw curve value for the ``steal_number``-th steal, clamped to floor/ceiling."""

    if steal_number < 0:
        raise ValueError("steal_number must be >= 0")
    if policy.curve == PricingCurve.LINEAR:
        raw = policy.base_price + policy.step * steal_number
    else:
        # An overflowing power becomes Infinity and is clamped to the ceiling.
        with localcontext() as ctx:
            ctx.traps[Overflow] = False
            value = Decimal(policy.base_price) * to_decimal(policy.growth) ** steal_number
        raw = policy.ceiling if value >= policy.ceiling else ceil_to_coins(value)
    return max(policy.floor, min(policy.ceiling, raw))


def creation_price(policy: PricingPolicy) -> int:
    return curve_price(0, policy)


def next_price(scenario: Scenario, policy: PricingPolicy) -> int:
    """Price the next steal of ``scenario`` will cost.

    Never below the scenario's current price, so displayed prices cannot go down
    even when the configured curve is lowered.
    """

    return max(scenario.current_price, curve_price(scenario.steal_count + 1, policy))
