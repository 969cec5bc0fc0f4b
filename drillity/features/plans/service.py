"""
drillity/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (talent and company tiers)
- Plan lookup and the default (implicit FREE) plan per audience
- Counter key -> limit key mapping
"""

import logging
import os
from typing import Dict, List, Optional, Union
from sqlalchemy import select, insert

from drillity.core.clock import utc_now
from drillity.core.database import get_db_session, plans, plan_entitlements
from drillity.core.errors import PlanNotFoundError, ValidationError
from drillity.models.actor import ActorType
from drillity.models.plan import Plan


logger = logging.getLogger(__name__)

# Metered counters and the plan limit that governs each one
COUNTER_LIMIT_KEYS: Dict[str, str] = {
    "applications": "application_limit",
    "skills": "skill_limit",
    "certifications": "certification_limit",
    "cv_uploads": "cv_upload_limit",
    "profile_highlights": "profile_highlights_limit",
    "jobs": "job_limit",
    "ai_matches": "ai_match_limit",
}

_TALENT_FEATURES_OFF = {
    "profile_views_enabled": False,
    "featured_profile": False,
    "verified_badge": False,
    "analytics_dashboard": False,
    "ai_profile_autofill": False,
    "ai_job_matching": False,
}

# Default plan configurations
DEFAULT_PLANS = {
    "talent_free": {
        "name": "FREE",
        "audience": ActorType.TALENT,
        "is_default": True,
        "price_cents": 0,
        "entitlements": {
            "application_limit": 3,
            "skill_limit": 5,
            "certification_limit": 2,
            "cv_upload_limit": 1,
            "profile_highlights_limit": 0,
            **_TALENT_FEATURES_OFF,
        },
    },
    "talent_basic": {
        "name": "BASIC",
        "audience": ActorType.TALENT,
        "is_default": False,
        "price_cents": 990,
        "entitlements": {
            "application_limit": 10,
            "skill_limit": 15,
            "certification_limit": 5,
            "cv_upload_limit": 3,
            "profile_highlights_limit": 1,
            **_TALENT_FEATURES_OFF,
            "profile_views_enabled": True,
        },
    },
    "talent_pro": {
        "name": "PRO",
        "audience": ActorType.TALENT,
        "is_default": False,
        "price_cents": 1990,
        "entitlements": {
            "application_limit": 30,
            "skill_limit": 30,
            "certification_limit": 15,
            "cv_upload_limit": 10,
            "profile_highlights_limit": 3,
            "profile_views_enabled": True,
            "featured_profile": True,
            "verified_badge": True,
            "analytics_dashboard": True,
            "ai_profile_autofill": True,
            "ai_job_matching": False,
        },
    },
    "talent_premium": {
        "name": "PREMIUM",
        "audience": ActorType.TALENT,
        "is_default": False,
        "price_cents": 3990,
        "entitlements": {
            "application_limit": -1,  # unlimited
            "skill_limit": -1,
            "certification_limit": -1,
            "cv_upload_limit": -1,
            "profile_highlights_limit": 10,
            "profile_views_enabled": True,
            "featured_profile": True,
            "verified_badge": True,
            "analytics_dashboard": True,
            "ai_profile_autofill": True,
            "ai_job_matching": True,
        },
    },
    "company_free": {
        "name": "FREE",
        "audience": ActorType.COMPANY,
        "is_default": True,
        "price_cents": 0,
        "entitlements": {
            "job_limit": 1,
            "ai_match_limit": 1,
            "ai_matching_unlimited": False,
            "analytics_dashboard": False,
            "featured_jobs": False,
        },
    },
    "company_starter": {
        "name": "STARTER",
        "audience": ActorType.COMPANY,
        "is_default": False,
        "price_cents": 9900,
        "entitlements": {
            "job_limit": 10,
            "ai_match_limit": 1,
            "ai_matching_unlimited": False,
            "analytics_dashboard": False,
            "featured_jobs": False,
        },
    },
    "company_growth": {
        "name": "GROWTH",
        "audience": ActorType.COMPANY,
        "is_default": False,
        "price_cents": 17900,
        "entitlements": {
            "job_limit": 20,
            "ai_match_limit": 1,
            "ai_matching_unlimited": False,
            "analytics_dashboard": True,
            "featured_jobs": False,
        },
    },
    "company_scale": {
        "name": "SCALE",
        "audience": ActorType.COMPANY,
        "is_default": False,
        "price_cents": 24900,
        "entitlements": {
            "job_limit": 30,
            "ai_match_limit": 1,
            "ai_matching_unlimited": False,
            "analytics_dashboard": True,
            "featured_jobs": True,
        },
    },
    "company_enterprise": {
        "name": "ENTERPRISE",
        "audience": ActorType.COMPANY,
        "is_default": False,
        "price_cents": 39900,
        "entitlements": {
            "job_limit": 50,
            "ai_match_limit": 1,
            "ai_matching_unlimited": False,
            "analytics_dashboard": True,
            "featured_jobs": True,
        },
    },
}


def limit_key_for(counter_key: str) -> str:
    """Resolve the plan limit key that governs a counter.

    Raises:
        ValidationError: If counter_key is not a metered counter
    """
    try:
        return COUNTER_LIMIT_KEYS[counter_key]
    except KeyError:
        raise ValidationError(f"Unknown counter: {counter_key}", code="unknown_counter") from None


def stripe_price_from_env(plan_id: str) -> Optional[str]:
    """Stripe price IDs are configured per plan, e.g. STRIPE_PRICE_TALENT_BASIC."""
    return os.getenv(f"STRIPE_PRICE_{plan_id.upper()}")


def seed_plans() -> None:
    """
    Seed default plans into database (idempotent).

    Safe to call multiple times; existing plans are left untouched.
    """
    now = utc_now()

    with get_db_session() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
            ).first()

            if existing:
                continue

            session.execute(
                insert(plans).values(
                    plan_id=plan_id,
                    name=config["name"],
                    audience=config["audience"].value,
                    is_default=config["is_default"],
                    price_cents=config["price_cents"],
                    stripe_price_id=stripe_price_from_env(plan_id),
                    created_at=now,
                )
            )

            for key, value in config["entitlements"].items():
                session.execute(
                    insert(plan_entitlements).values(
                        plan_id=plan_id,
                        entitlement_key=key,
                        value=value,
                        created_at=now,
                    )
                )

    logger.info("[plans] seeded", extra={"plan_count": len(DEFAULT_PLANS)})


def _split_entitlements(values: Dict[str, Union[int, bool]]):
    limits: Dict[str, int] = {}
    features: Dict[str, bool] = {}
    for key, value in values.items():
        # bool is an int subclass, so check it first
        if isinstance(value, bool):
            features[key] = value
        elif isinstance(value, int):
            limits[key] = value
        else:
            logger.warning(
                "[plans] ignoring unsupported entitlement value",
                extra={"entitlement_key": key, "value_type": type(value).__name__},
            )
    return limits, features


def _load_plans(session, where_clause) -> List[Plan]:
    rows = session.execute(select(plans).where(where_clause).order_by(plans.c.price_cents)).all()
    if not rows:
        return []

    ids = [row.plan_id for row in rows]
    entitlement_rows = session.execute(
        select(plan_entitlements).where(plan_entitlements.c.plan_id.in_(ids))
    ).all()
    by_plan: Dict[str, Dict[str, Union[int, bool]]] = {plan_id: {} for plan_id in ids}
    for ent in entitlement_rows:
        by_plan[ent.plan_id][ent.entitlement_key] = ent.value

    result = []
    for row in rows:
        limits, features = _split_entitlements(by_plan[row.plan_id])
        result.append(
            Plan(
                plan_id=row.plan_id,
                name=row.name,
                audience=ActorType(row.audience),
                is_default=row.is_default,
                price_cents=row.price_cents,
                stripe_price_id=row.stripe_price_id,
                limits=limits,
                features=features,
                created_at=row.created_at,
            )
        )
    return result


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID."""
    with get_db_session() as session:
        found = _load_plans(session, plans.c.plan_id == plan_id)
    return found[0] if found else None


def require_plan(plan_id: str) -> Plan:
    """Get plan by ID or raise PlanNotFoundError."""
    plan = get_plan(plan_id)
    if plan is None:
        raise PlanNotFoundError(f"Plan {plan_id} not found")
    return plan


def get_default_plan(actor_type: ActorType = ActorType.TALENT) -> Plan:
    """Get the implicit FREE plan for an audience."""
    with get_db_session() as session:
        found = _load_plans(
            session,
            (plans.c.audience == ActorType(actor_type).value) & (plans.c.is_default == True),  # noqa: E712
        )
    if not found:
        raise PlanNotFoundError(
            f"No default plan configured for {ActorType(actor_type).value}. Run seed_plans() first."
        )
    return found[0]


def list_plans(actor_type: Optional[ActorType] = None) -> List[Plan]:
    """List the catalog, cheapest first."""
    with get_db_session() as session:
        if actor_type is None:
            return _load_plans(session, plans.c.plan_id.isnot(None))
        return _load_plans(session, plans.c.audience == ActorType(actor_type).value)
