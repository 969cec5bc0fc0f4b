"""
drillity/models/usage_event.py

UsageEvent model: one consumption of a metered resource.

Used for reporting and ROI display. Never mutated after creation.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent records a metered consumption.

    Counter keys:
    - ai_matches: company ran AI talent matching for a job
    - applications: talent submitted an application

    Metadata can include:
    - job_id: Related job
    - matches_found: Candidates matched above threshold
    - candidates_analyzed: Candidates sent to the model
    """
    model_config = ConfigDict(frozen=True)

    actor_id: str
    counter_key: str
    amount: int = 1
    occurred_at: datetime
    cost_estimate: float = 0.0
    was_free: bool = False
    subscription_id: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
