"""
drillity/features/entitlements/service.py

Entitlement engine.

Handles:
- Resolving an actor's plan, limits, features and live period usage
- Atomic check-and-consume against period counters
- Feature flag lookup
- Usage progress (ok / approaching_limit / at_limit / unlimited)

A denied consumption is a normal result, never an exception.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple
import logging

from drillity.core.clock import normalize_now
from drillity.core.config import settings
from drillity.core.errors import SubscriptionChangedError, ValidationError
from drillity.features.plans.service import COUNTER_LIMIT_KEYS, limit_key_for, require_plan
from drillity.features.subscriptions.service import (  # noqa: F401  re-exported engine operations
    change_plan,
    end_subscription,
    get_current_subscription,
)
from drillity.features.usage.service import (
    emit_usage_event,
    get_metering_policy,
    get_period_usage,
    increment_counter,
    price_consumption,
)
from drillity.models.actor import ActorType
from drillity.models.entitlement import ConsumeResult, EntitlementSnapshot, UsageStatus
from drillity.models.plan import UNLIMITED, Plan
from drillity.models.subscription import ExplicitSubscription, Subscription


logger = logging.getLogger(__name__)

AI_MATCH_COUNTER = "ai_matches"
AI_UNLIMITED_FEATURE = "ai_matching_unlimited"

# Snapshots re-read when a plan change races a charge
RESOLVE_ATTEMPTS = 3


def _has_unlimited_ai(sub: Subscription, now: datetime) -> bool:
    # Company trial and the AI matching add-on both lift the monthly quota
    if not isinstance(sub, ExplicitSubscription):
        return False
    return sub.ai_matching_enabled or sub.in_trial(now)


def _effective_limits(plan: Plan, sub: Subscription, now: datetime) -> Dict[str, int]:
    """Plan limits translated to counter keys, with subscription overrides applied."""
    limits = {
        counter_key: plan.limits[limit_key]
        for counter_key, limit_key in COUNTER_LIMIT_KEYS.items()
        if limit_key in plan.limits
    }
    if AI_MATCH_COUNTER in limits and _has_unlimited_ai(sub, now):
        limits[AI_MATCH_COUNTER] = UNLIMITED
    return limits


def _effective_features(plan: Plan, sub: Subscription, now: datetime) -> Dict[str, bool]:
    features = dict(plan.features)
    if AI_UNLIMITED_FEATURE in features and _has_unlimited_ai(sub, now):
        features[AI_UNLIMITED_FEATURE] = True
    return features


def _resolve(
    actor_id: str,
    actor_type: ActorType,
    now: datetime,
) -> Tuple[Subscription, EntitlementSnapshot]:
    sub = get_current_subscription(actor_id, actor_type, now)
    plan = require_plan(sub.plan_id)
    usage = get_period_usage(sub.ledger_key, sub.period_started_at)
    explicit = isinstance(sub, ExplicitSubscription)

    snapshot = EntitlementSnapshot(
        actor_id=actor_id,
        actor_type=sub.actor_type,
        subscribed=explicit,
        subscription_id=sub.id if explicit else None,
        status=sub.status.value if explicit else None,
        plan_id=plan.plan_id,
        plan_name=plan.name,
        is_trial=sub.in_trial(now) if explicit else False,
        limits=_effective_limits(plan, sub, now),
        features=_effective_features(plan, sub, now),
        usage=usage,
        period_started_at=sub.period_started_at,
        period_reset_date=sub.period_reset_date,
        end_date=sub.end_date if explicit else None,
    )
    return sub, snapshot


def resolve_entitlement(
    actor_id: str,
    *,
    actor_type: ActorType = ActorType.TALENT,
    now: Optional[datetime] = None,
) -> EntitlementSnapshot:
    """
    Resolve the actor's current entitlements.

    Actors without an active subscription get their audience's implicit FREE
    plan with zero usage, and nothing is written. For explicit subscriptions
    the only writes are lazy expiry and the once-per-boundary period advance.

    Raises:
        StoreUnavailableError: If the store cannot be reached
    """
    _, snapshot = _resolve(actor_id, ActorType(actor_type), normalize_now(now))
    return snapshot


def check_and_consume(
    actor_id: str,
    counter_key: str,
    amount: int = 1,
    *,
    actor_type: ActorType = ActorType.TALENT,
    cost_units: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ConsumeResult:
    """
    Allow and record an action if the actor's plan permits it.

    The check and the increment are one conditional update, so concurrent
    callers can never push a counter past its limit. Denials mutate nothing.

    Args:
        actor_id: Acting talent or company
        counter_key: Metered counter (applications, ai_matches, ...)
        amount: Units to consume (>= 1)
        cost_units: Units billed by the metering policy (defaults to amount)
        metadata: Attached to the usage event, when one is emitted

    Raises:
        ValidationError: If amount < 1 or counter_key is unknown
        SubscriptionChangedError: If the subscription keeps changing under the call
        StoreUnavailableError: If the store cannot be reached
    """
    if amount < 1:
        raise ValidationError("amount must be >= 1", code="invalid_amount")
    limit_key_for(counter_key)

    now = normalize_now(now)
    for _ in range(RESOLVE_ATTEMPTS):
        sub, snapshot = _resolve(actor_id, ActorType(actor_type), now)
        limit = snapshot.limit_for(counter_key)
        try:
            allowed, used = increment_counter(
                sub.ledger_key,
                actor_id,
                counter_key,
                sub.period_started_at,
                amount,
                limit,
                verify_ledger=True,
            )
            break
        except SubscriptionChangedError:
            # A plan change or period advance committed after the snapshot
            logger.info(
                "[entitlement] subscription changed, re-resolving",
                extra={"actor_id": actor_id, "counter_key": counter_key},
            )
    else:
        raise SubscriptionChangedError("Subscription changed concurrently, please retry")

    log_extra = {
        "actor_id": actor_id,
        "counter_key": counter_key,
        "plan_id": snapshot.plan_id,
        "amount": amount,
        "used": used,
        "limit": limit,
    }

    if not allowed:
        logger.warning("[entitlement] DENIED", extra=log_extra)
        return ConsumeResult(
            allowed=False,
            counter_key=counter_key,
            used=used,
            limit=limit,
            plan_name=snapshot.plan_name,
        )

    logger.info("[entitlement] ALLOWED", extra=log_extra)

    usage_event = None
    policy = get_metering_policy(counter_key)
    if policy is not None:
        cost, was_free = price_consumption(policy, used - amount, amount, limit, cost_units)
        usage_event = emit_usage_event(
            actor_id,
            counter_key,
            amount,
            cost_estimate=cost,
            was_free=was_free,
            subscription_id=snapshot.subscription_id,
            occurred_at=now,
            metadata=metadata,
        )

    return ConsumeResult(
        allowed=True,
        counter_key=counter_key,
        used=used,
        limit=limit,
        plan_name=snapshot.plan_name,
        usage_event=usage_event,
    )


def has_feature(
    actor_id: str,
    feature_key: str,
    *,
    actor_type: ActorType = ActorType.TALENT,
    now: Optional[datetime] = None,
) -> bool:
    """Unknown features are False."""
    snapshot = resolve_entitlement(actor_id, actor_type=actor_type, now=now)
    return snapshot.features.get(feature_key, False)


def usage_status_for(snapshot: EntitlementSnapshot, counter_key: str) -> UsageStatus:
    """Progress of one counter within an already resolved snapshot."""
    limit_key_for(counter_key)
    used = snapshot.used(counter_key)
    limit = snapshot.limit_for(counter_key)

    if limit == UNLIMITED:
        return UsageStatus(counter_key=counter_key, status="unlimited", used=used, limit=limit)

    percentage = 100.0 if limit <= 0 else round(min(used / limit, 1.0) * 100, 1)
    if used >= limit:
        status = "at_limit"
    elif used >= limit * settings.USAGE_WARNING_RATIO:
        status = "approaching_limit"
    else:
        status = "ok"

    return UsageStatus(
        counter_key=counter_key,
        status=status,
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        percentage=percentage,
    )


def get_usage_status(
    actor_id: str,
    counter_key: str,
    *,
    actor_type: ActorType = ActorType.TALENT,
    now: Optional[datetime] = None,
) -> UsageStatus:
    """Usage progress for one counter in the current period."""
    limit_key_for(counter_key)
    snapshot = resolve_entitlement(actor_id, actor_type=actor_type, now=now)
    return usage_status_for(snapshot, counter_key)
