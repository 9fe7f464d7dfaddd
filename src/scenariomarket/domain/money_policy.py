from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_DOWN, Decimal

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class StealSplitPolicy:
    """How a steal price is divided between the victim, the pool and the platform.

    Victim and pool shares round down; the platform absorbs the remainder, so the
    three parts always add up to the price that was paid.
    """

    victim_bps: int = 5000
    pool_bps: int = 4000
    platform_bps: int = 1000

    def __post_init__(self) -> None:
        for name in ("victim_bps", "pool_bps", "platform_bps"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.victim_bps + self.pool_bps + self.platform_bps != BPS_DENOMINATOR:
            raise ValueError("steal split bps must sum to 10000")


@dataclass(frozen=True)
class StealSplit:
    price: int
    victim_payout: int
    pool_contribution: int
    platform_contribution: int


def split_steal_price(price: int, policy: StealSplitPolicy) -> StealSplit:
    if price < 0:
        raise ValueError("price must be >= 0")
    victim = (price * policy.victim_bps) // BPS_DENOMINATOR
    pool = (price * policy.pool_bps) // BPS_DENOMINATOR
    platform = price - victim - pool
    return StealSplit(
        price=price,
        victim_payout=victim,
        pool_contribution=pool,
        platform_contribution=platform,
    )


def allocate_pro_rata(total: int, weights: Mapping[str, int]) -> dict[str, int]:
    """Split ``total`` proportionally to ``weights`` using largest remainders.

    Ties on the remainder go to the lexicographically smaller key so the result is
    deterministic. The allocations always sum to ``total``.
    """

    if total < 0:
        raise ValueError("total must be >= 0")
    positive = {key: int(weight) for key, weight in weights.items() if int(weight) > 0}
    if total == 0 or not positive:
        return {}
    weight_sum = sum(positive.values())
    allocations: dict[str, int] = {}
    remainders: list[tuple[int, str]] = []
    for key in sorted(positive):
        share, remainder = divmod(total * positive[key], weight_sum)
        allocations[key] = share
        remainders.append((remainder, key))
    leftover = total - sum(allocations.values())
    for _, key in sorted(remainders, key=lambda item: (-item[0], item[1]))[:leftover]:
        allocations[key] += 1
    return {key: amount for key, amount in allocations.items() if amount > 0}


def to_decimal(value: object) -> Decimal:
    """Convert supported numeric inputs to Decimal without allowing implicit float coercion."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return Decimal(value)
    if isinstance(value, float):
        raise TypeError("float values are not accepted; pass string/int/Decimal explicitly")
    raise TypeError(f"unsupported decimal conversion type: {type(value).__name__}")


def ceil_to_coins(value: Decimal) -> int:
    return int(to_decimal(value).to_integral_value(rounding=ROUND_CEILING))


def floor_to_coins(value: Decimal) -> int:
    return int(to_decimal(value).to_integral_value(rounding=ROUND_DOWN))
