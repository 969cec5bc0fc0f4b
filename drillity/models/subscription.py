"""
drillity/models/subscription.py

Subscription models.

An actor is either on an explicit subscription record or, when no active
record exists, on the implicit FREE plan of their audience. Both shapes
carry a ledger_key identifying who owns the period usage counters.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict

from drillity.models.actor import ActorType


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"
    SUPERSEDED = "superseded"  # replaced by a later plan change


class ExplicitSubscription(BaseModel):
    """A stored subscription record."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["explicit"] = "explicit"
    id: int
    actor_id: str
    actor_type: ActorType
    plan_id: str
    status: SubscriptionStatus
    is_active: bool
    start_date: datetime
    end_date: Optional[datetime] = None
    period_started_at: datetime
    period_reset_date: datetime
    period_anchor: datetime
    is_trial: bool = False
    trial_end_date: Optional[datetime] = None
    ai_matching_enabled: bool = False
    external_ref: Optional[str] = None

    @property
    def ledger_key(self) -> str:
        return f"sub:{self.id}"

    def has_ended(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date <= now

    def in_trial(self, now: datetime) -> bool:
        return self.is_trial and self.trial_end_date is not None and self.trial_end_date > now


class ImplicitFreeSubscription(BaseModel):
    """No active record: the actor is on their audience's default plan.

    Periods follow calendar months (UTC) so no stored state is needed.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["implicit"] = "implicit"
    actor_id: str
    actor_type: ActorType
    plan_id: str
    period_started_at: datetime
    period_reset_date: datetime

    @property
    def ledger_key(self) -> str:
        return f"free:{self.actor_id}"


Subscription = Union[ExplicitSubscription, ImplicitFreeSubscription]
