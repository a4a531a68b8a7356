"""
Data models for storage layer.

Defines the per-account usage record and the append-only charge events.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

from enhance_guard.core.types import CostClass, Tier


@dataclass(frozen=True)
class UsageRecord:
    """Credit consumption of one account for the current period.

    Owned exclusively by the usage ledger; everything else gets copies.
    """
    tier: Tier
    budget_consumed: int
    premium_consumed: int
    period_start: datetime

    def __post_init__(self):
        if self.budget_consumed < 0 or self.premium_consumed < 0:
            raise ValueError("consumed counters cannot be negative")

    def consumed(self, cost_class: CostClass) -> int:
        if cost_class is CostClass.BUDGET:
            return self.budget_consumed
        if cost_class is CostClass.PREMIUM:
            return self.premium_consumed
        return 0

    def incremented(self, cost_class: CostClass) -> "UsageRecord":
        """Copy with one more credit of ``cost_class`` consumed."""
        if cost_class is CostClass.BUDGET:
            return replace(self, budget_consumed=self.budget_consumed + 1)
        if cost_class is CostClass.PREMIUM:
            return replace(self, premium_consumed=self.premium_consumed + 1)
        return self

    def reset_to(self, period_start: datetime) -> "UsageRecord":
        """Copy with both counters zeroed for a new period."""
        return replace(self, budget_consumed=0, premium_consumed=0, period_start=period_start)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "budget_consumed": self.budget_consumed,
            "premium_consumed": self.premium_consumed,
            "period_start": self.period_start.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            tier=Tier(data["tier"]),
            budget_consumed=int(data["budget_consumed"]),
            premium_consumed=int(data["premium_consumed"]),
            period_start=datetime.fromisoformat(data["period_start"]),
        )


@dataclass(frozen=True)
class CreditChargeEvent:
    """Immutable record of one committed credit charge.

    Append-only events that create an auditable trail of credit use.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    account_id: str
    tier: Tier
    cost_class: CostClass
    provider: Optional[str] = None
    task: Optional[str] = None
