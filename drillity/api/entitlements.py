"""
Entitlement API routes.

- GET  /api/entitlements: resolved plan, limits, features and usage
- POST /api/entitlements/consume: check and consume one metered action
- GET  /api/entitlements/features/{feature_key}: feature flag check
- GET  /api/entitlements/usage/{counter_key}: usage progress for one counter
- GET  /api/entitlements/ai-usage: AI matching usage / ROI report

A denied consumption is HTTP 200 with allowed=false.
"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from drillity.core.auth import get_current_actor
from drillity.features.entitlements.service import (
    check_and_consume,
    get_usage_status,
    has_feature,
    resolve_entitlement,
)
from drillity.features.usage.report import summarize_ai_usage
from drillity.models.actor import Actor
from drillity.models.entitlement import EntitlementSnapshot, UsageStatus
from drillity.models.report import AIUsageReport
from drillity.models.usage_event import UsageEvent


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class ConsumeRequest(BaseModel):
    """Request to consume a metered action."""
    counter_key: str
    amount: int = Field(1, description="Units to consume (>= 1)")
    cost_units: Optional[int] = Field(None, description="Units billed, e.g. candidates analyzed")
    metadata: Optional[Dict[str, Any]] = None


class ConsumeResponse(BaseModel):
    allowed: bool
    counter_key: str
    used: int
    limit: int
    plan_name: str
    unlimited: bool
    upgrade_required: bool
    usage_event: Optional[UsageEvent] = None


class FeatureResponse(BaseModel):
    feature_key: str
    enabled: bool


@router.get("", response_model=EntitlementSnapshot)
def get_entitlements(actor: Actor = Depends(get_current_actor)):
    """Resolve the caller's current entitlements."""
    return resolve_entitlement(actor.actor_id, actor_type=actor.actor_type)


@router.post("/consume", response_model=ConsumeResponse)
def consume(request: ConsumeRequest, actor: Actor = Depends(get_current_actor)):
    """
    Check and consume.

    Errors:
        400: Unknown counter or amount < 1
        503: Store unavailable
    """
    result = check_and_consume(
        actor.actor_id,
        request.counter_key,
        request.amount,
        actor_type=actor.actor_type,
        cost_units=request.cost_units,
        metadata=request.metadata,
    )
    return ConsumeResponse(
        allowed=result.allowed,
        counter_key=result.counter_key,
        used=result.used,
        limit=result.limit,
        plan_name=result.plan_name,
        unlimited=result.unlimited,
        upgrade_required=result.upgrade_required,
        usage_event=result.usage_event,
    )


@router.get("/features/{feature_key}", response_model=FeatureResponse)
def get_feature(feature_key: str, actor: Actor = Depends(get_current_actor)):
    enabled = has_feature(actor.actor_id, feature_key, actor_type=actor.actor_type)
    return FeatureResponse(feature_key=feature_key, enabled=enabled)


@router.get("/usage/{counter_key}", response_model=UsageStatus)
def get_usage(counter_key: str, actor: Actor = Depends(get_current_actor)):
    return get_usage_status(actor.actor_id, counter_key, actor_type=actor.actor_type)


@router.get("/ai-usage", response_model=AIUsageReport)
def get_ai_usage(actor: Actor = Depends(get_current_actor)):
    """Current month's AI matching runs, cost and estimated time saved."""
    return summarize_ai_usage(actor.actor_id)
