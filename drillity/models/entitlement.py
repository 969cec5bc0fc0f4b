"""
drillity/models/entitlement.py

Entitlement results returned to callers.

Limits and usage are keyed by counter key (applications, ai_matches, ...),
already translated from the plan's limit keys.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from drillity.models.actor import ActorType
from drillity.models.plan import UNLIMITED
from drillity.models.usage_event import UsageEvent


class EntitlementSnapshot(BaseModel):
    """Resolved plan, limits, features and live usage for one actor."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    actor_type: ActorType
    subscribed: bool
    subscription_id: Optional[int] = None
    status: Optional[str] = None
    plan_id: str
    plan_name: str
    is_trial: bool = False
    limits: Dict[str, int]
    features: Dict[str, bool]
    usage: Dict[str, int]
    period_started_at: datetime
    period_reset_date: datetime
    end_date: Optional[datetime] = None

    def limit_for(self, counter_key: str) -> int:
        """Missing limits deny (0)."""
        return self.limits.get(counter_key, 0)

    def used(self, counter_key: str) -> int:
        return self.usage.get(counter_key, 0)


class ConsumeResult(BaseModel):
    """Outcome of check_and_consume. A denial is a normal result, not an error."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    counter_key: str
    used: int
    limit: int
    plan_name: str
    usage_event: Optional[UsageEvent] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def upgrade_required(self) -> bool:
        return not self.allowed


class UsageStatus(BaseModel):
    """Progress of one counter against its limit."""
    model_config = ConfigDict(frozen=True)

    counter_key: str
    status: str  # ok | approaching_limit | at_limit | unlimited
    used: int
    limit: int
    remaining: Optional[int] = None  # None when unlimited
    percentage: float = 0.0
