"""
drillity/features/subscriptions/service.py

Subscription lifecycle service.

Handles:
- Active subscription lookup (explicit record or implicit FREE)
- Plan changes driven by confirmed payment events
- Cancellation and lazy expiry
- Lazy billing-period advance (conditional update, once per boundary)

State machine: NONE (implicit FREE) -> ACTIVE -> {EXPIRED, CANCELED} -> NONE
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from drillity.core.clock import as_utc, month_bounds, normalize_now
from drillity.core.config import settings
from drillity.core.database import get_db_session, subscriptions
from drillity.core.errors import ConflictError, ValidationError
from drillity.features.plans.service import get_default_plan, require_plan
from drillity.models.actor import ActorType
from drillity.models.subscription import (
    ExplicitSubscription,
    ImplicitFreeSubscription,
    Subscription,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)


def period_length() -> timedelta:
    return timedelta(days=settings.USAGE_PERIOD_DAYS)


def _row_to_subscription(row) -> ExplicitSubscription:
    return ExplicitSubscription(
        id=row.id,
        actor_id=row.actor_id,
        actor_type=ActorType(row.actor_type),
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        is_active=row.is_active,
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        period_started_at=as_utc(row.period_started_at),
        period_reset_date=as_utc(row.period_reset_date),
        period_anchor=as_utc(row.period_anchor),
        is_trial=row.is_trial,
        trial_end_date=as_utc(row.trial_end_date),
        ai_matching_enabled=row.ai_matching_enabled,
        external_ref=row.external_ref,
    )


def _fetch_active(session, actor_id: str) -> Optional[ExplicitSubscription]:
    row = session.execute(
        select(subscriptions).where(
            (subscriptions.c.actor_id == actor_id) & (subscriptions.c.is_active == True)  # noqa: E712
        )
    ).first()
    return _row_to_subscription(row) if row else None


def _fetch_by_id(session, subscription_id: int) -> Optional[ExplicitSubscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.id == subscription_id)
    ).first()
    return _row_to_subscription(row) if row else None


def get_active_subscription(actor_id: str) -> Optional[ExplicitSubscription]:
    """Return the actor's active subscription record, if any. Pure read."""
    with get_db_session() as session:
        return _fetch_active(session, actor_id)


def get_subscription(subscription_id: int) -> Optional[ExplicitSubscription]:
    with get_db_session() as session:
        return _fetch_by_id(session, subscription_id)


def get_subscription_history(actor_id: str) -> List[ExplicitSubscription]:
    """All records for an actor, newest first. History is never deleted."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.actor_id == actor_id)
            .order_by(subscriptions.c.id.desc())
        ).all()
    return [_row_to_subscription(row) for row in rows]


def implicit_free(
    actor_id: str,
    actor_type: ActorType = ActorType.TALENT,
    now: Optional[datetime] = None,
) -> ImplicitFreeSubscription:
    """Synthesize the implicit FREE subscription. Periods are calendar months (UTC)."""
    now = normalize_now(now)
    plan = get_default_plan(actor_type)
    start, reset = month_bounds(now)
    return ImplicitFreeSubscription(
        actor_id=actor_id,
        actor_type=ActorType(actor_type),
        plan_id=plan.plan_id,
        period_started_at=start,
        period_reset_date=reset,
    )


def next_period_bounds(sub: ExplicitSubscription, now: datetime):
    """
    Period containing `now`, stepping forward from the stored boundary.

    Periods are half-open: [period_started_at, period_reset_date).
    Skips whole periods when the actor was idle for longer than one.
    """
    start = sub.period_started_at
    reset = sub.period_reset_date
    step = period_length()
    while reset <= now:
        start = reset
        reset = start + step
    return start, reset


def advance_period_if_due(
    sub: ExplicitSubscription,
    now: Optional[datetime] = None,
) -> ExplicitSubscription:
    """
    Lazily roll the billing period forward.

    Conditional on the observed period_reset_date, so under concurrent
    reads exactly one writer advances; the rest re-read the new period.
    Counter rows are keyed by period start, so the new period reads zero.
    """
    now = normalize_now(now)
    if sub.period_reset_date > now:
        return sub

    new_start, new_reset = next_period_bounds(sub, now)

    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(
                (subscriptions.c.id == sub.id)
                & (subscriptions.c.period_reset_date == sub.period_reset_date)
                & (subscriptions.c.is_active == True)  # noqa: E712
            )
            .values(
                period_started_at=new_start,
                period_reset_date=new_reset,
                updated_at=now,
            )
        )
        advanced = result.rowcount == 1
        current = _fetch_by_id(session, sub.id)

    if advanced:
        logger.info(
            "[subscription] period advanced",
            extra={
                "actor_id": sub.actor_id,
                "subscription_id": sub.id,
                "period_start": new_start.isoformat(),
                "period_reset_date": new_reset.isoformat(),
            },
        )
    return current


def expire_if_ended(
    sub: ExplicitSubscription,
    now: Optional[datetime] = None,
) -> bool:
    """
    Mark a subscription EXPIRED once its end_date has passed.

    Returns True when the subscription is no longer active (whoever expired it).
    """
    now = normalize_now(now)
    if not sub.has_ended(now):
        return False

    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(
                (subscriptions.c.id == sub.id)
                & (subscriptions.c.is_active == True)  # noqa: E712
            )
            .values(
                status=SubscriptionStatus.EXPIRED.value,
                is_active=False,
                updated_at=now,
            )
        )

    if result.rowcount == 1:
        logger.info(
            "[subscription] expired",
            extra={"actor_id": sub.actor_id, "subscription_id": sub.id},
        )
    return True


def get_current_subscription(
    actor_id: str,
    actor_type: ActorType = ActorType.TALENT,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Resolve which subscription governs the actor right now.

    Applies lazy expiry and lazy period advance. Falls back to implicit FREE.
    """
    now = normalize_now(now)
    sub = get_active_subscription(actor_id)

    if sub is not None and expire_if_ended(sub, now):
        sub = None

    if sub is None:
        return implicit_free(actor_id, actor_type, now)

    sub = advance_period_if_due(sub, now)
    if sub is None or not sub.is_active:
        # Ended or replaced between our read and the advance
        return get_current_subscription(actor_id, actor_type, now)
    return sub


def _is_same_subscription(
    sub: ExplicitSubscription,
    plan_id: str,
    period_start: datetime,
    external_ref: Optional[str],
) -> bool:
    """
    Whether a confirmation replays the live record.

    The provider reference identifies a payment across lazy period resets
    and trial conversion. Without one, the confirmed first period start does.
    """
    if sub.plan_id != plan_id or sub.external_ref != external_ref:
        return False
    return external_ref is not None or sub.period_anchor == period_start


def change_plan(
    actor_id: str,
    new_plan_ref: str,
    effective_period: Optional[datetime] = None,
    *,
    actor_type: Optional[ActorType] = None,
    end_date: Optional[datetime] = None,
    is_trial: bool = False,
    trial_end_date: Optional[datetime] = None,
    ai_matching_enabled: bool = False,
    external_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExplicitSubscription:
    """
    Move an actor onto a new plan. Only called for confirmed payment events.

    Deactivates the current subscription and inserts the new one in a single
    transaction, so readers never observe zero or two active records.
    Replaying the same confirmation (same plan and external_ref, or the same
    first period start when there is no external_ref) returns the existing
    subscription unchanged, even after its period has advanced.

    Args:
        actor_id: Actor to move
        new_plan_ref: Target plan ID
        effective_period: Start of the first billing period (defaults to now)

    Returns:
        The active ExplicitSubscription

    Raises:
        PlanNotFoundError: If new_plan_ref does not exist
        ValidationError: If the plan belongs to a different audience
        ConflictError: If a concurrent change won with a different plan
    """
    now = normalize_now(now)
    plan = require_plan(new_plan_ref)

    if actor_type is None:
        actor_type = plan.audience
    actor_type = ActorType(actor_type)
    if plan.audience != actor_type:
        raise ValidationError(
            f"Plan {new_plan_ref} is not available to {actor_type.value} accounts",
            code="plan_audience_mismatch",
        )

    period_start = as_utc(effective_period) if effective_period is not None else now
    period_reset = period_start + period_length()

    try:
        with get_db_session() as session:
            current = _fetch_active(session, actor_id)

            if current is not None and _is_same_subscription(
                current, plan.plan_id, period_start, external_ref
            ):
                logger.info(
                    "[subscription] change replayed",
                    extra={"actor_id": actor_id, "subscription_id": current.id, "plan_id": plan.plan_id},
                )
                return current

            if current is not None:
                session.execute(
                    update(subscriptions)
                    .where(
                        (subscriptions.c.id == current.id)
                        & (subscriptions.c.is_active == True)  # noqa: E712
                    )
                    .values(
                        status=SubscriptionStatus.SUPERSEDED.value,
                        is_active=False,
                        updated_at=now,
                    )
                )

            result = session.execute(
                insert(subscriptions).values(
                    actor_id=actor_id,
                    actor_type=actor_type.value,
                    plan_id=plan.plan_id,
                    status=SubscriptionStatus.ACTIVE.value,
                    is_active=True,
                    start_date=now,
                    end_date=as_utc(end_date),
                    period_started_at=period_start,
                    period_reset_date=period_reset,
                    period_anchor=period_start,
                    is_trial=is_trial,
                    trial_end_date=as_utc(trial_end_date),
                    ai_matching_enabled=ai_matching_enabled,
                    external_ref=external_ref,
                    created_at=now,
                    updated_at=now,
                )
            )
            new_id = result.inserted_primary_key[0]
            created = _fetch_by_id(session, new_id)
    except IntegrityError as exc:
        # Another writer activated a subscription between our read and insert
        existing = get_active_subscription(actor_id)
        if existing is not None and _is_same_subscription(
            existing, plan.plan_id, period_start, external_ref
        ):
            return existing
        logger.warning(
            "[subscription] concurrent plan change",
            extra={"actor_id": actor_id, "plan_id": plan.plan_id},
        )
        raise ConflictError("Subscription changed concurrently, please retry") from exc

    logger.info(
        "[subscription] plan changed",
        extra={
            "actor_id": actor_id,
            "subscription_id": created.id,
            "plan_id": plan.plan_id,
            "previous_plan_id": current.plan_id if current else None,
            "is_trial": is_trial,
        },
    )
    return created


def end_subscription(
    actor_id: str,
    status: SubscriptionStatus = SubscriptionStatus.CANCELED,
    *,
    external_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[ExplicitSubscription]:
    """
    End the actor's active subscription (ACTIVE -> CANCELED | EXPIRED).

    When external_ref is given, only a subscription carrying that reference
    is ended, so a late event cannot cancel a newer subscription.
    No-op (returns None) when nothing matching is active.
    """
    now = normalize_now(now)
    status = SubscriptionStatus(status)
    if status not in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
        raise ValidationError(f"Cannot end a subscription with status {status.value}")

    with get_db_session() as session:
        current = _fetch_active(session, actor_id)
        if current is None:
            return None
        if external_ref is not None and current.external_ref != external_ref:
            logger.info(
                "[subscription] end ignored, reference mismatch",
                extra={"actor_id": actor_id, "subscription_id": current.id},
            )
            return None

        end_date = current.end_date if current.end_date is not None and current.end_date <= now else now
        result = session.execute(
            update(subscriptions)
            .where(
                (subscriptions.c.id == current.id)
                & (subscriptions.c.is_active == True)  # noqa: E712
            )
            .values(status=status.value, is_active=False, end_date=end_date, updated_at=now)
        )
        if result.rowcount != 1:
            return None
        ended = _fetch_by_id(session, current.id)

    logger.info(
        "[subscription] ended",
        extra={"actor_id": actor_id, "subscription_id": ended.id, "status": status.value},
    )
    return ended
