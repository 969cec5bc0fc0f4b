"""
drillity/models/plan.py

Plan model: an immutable subscription tier.

Plans are seeded catalog data. Limits are integers (-1 = unlimited),
features are booleans.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from drillity.models.actor import ActorType


UNLIMITED = -1


class Plan(BaseModel):
    """
    Plan represents a subscription tier for one audience.

    Examples:
    - talent: FREE (default), BASIC, PRO, PREMIUM
    - company: FREE (default), STARTER, GROWTH, SCALE, ENTERPRISE

    Limit keys: application_limit, skill_limit, certification_limit,
    cv_upload_limit, profile_highlights_limit, job_limit, ai_match_limit.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    audience: ActorType
    is_default: bool = False
    price_cents: int = 0
    stripe_price_id: Optional[str] = None
    limits: Dict[str, int] = {}
    features: Dict[str, bool] = {}
    created_at: Optional[datetime] = None

    @property
    def price_eur(self) -> float:
        return self.price_cents / 100

    def has_feature(self, feature_key: str) -> bool:
        return bool(self.features.get(feature_key, False))
