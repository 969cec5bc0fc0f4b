from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class AIUsageReport(BaseModel):
    """Monthly AI matching usage with the time-saved heuristic applied."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    period_start: datetime
    runs: int
    total_matches: int
    total_cost_eur: float
    free_runs: int
    paid_runs: int
    time_saved_hours: float
    labor_value_eur: float
    net_savings_eur: float
    roi_percent: Optional[int] = None  # None when nothing was spent
