from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import uuid4

from scenariomarket.domain.models import ensure_utc


class MarketEventType(StrEnum):
    SCENARIO_CREATED = "scenario_created"
    TRANSFER_COMPLETED = "transfer_completed"
    SHIELD_PURCHASED = "shield_purchased"
    SCENARIO_RESOLVED = "scenario_resolved"
    SCENARIO_CANCELLED = "scenario_cancelled"


@dataclass(frozen=True)
class MarketEvent:
    event_type: MarketEventType
    scenario_id: str
    occurred_at: datetime
    data: dict[str, object] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)

    def to_payload(self) -> dict[str, object]:
        payload = asdict(self)
        payload["event_type"] = str(self.event_type)
        payload["occurred_at"] = ensure_utc(self.occurred_at).isoformat()
        return payload


def transfer_completed(
    *,
    scenario_id: str,
    occurred_at: datetime,
    steal_number: int,
    thief_id: str,
    victim_id: str,
    price_paid: int,
    next_price: int,
    pool_total: int,
) -> MarketEvent:
    return MarketEvent(
        event_type=MarketEventType.TRANSFER_COMPLETED,
        scenario_id=scenario_id,
        occurred_at=occurred_at,
        data={
            "steal_number": steal_number,
            "thief_id": thief_id,
            "victim_id": victim_id,
            "price_paid": price_paid,
            "next_price": next_price,
            "pool_total": pool_total,
        },
    )
