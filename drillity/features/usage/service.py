"""
drillity/features/usage/service.py

Usage accounting service.

Handles:
- Per-period usage counters (conditional atomic increment)
- Metering policy (free allotment per period, then per-unit rate)
- Usage event emission and queries
- Usage counting (reducer)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict
from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from drillity.core.clock import as_utc, normalize_now
from drillity.core.config import settings
from drillity.core.database import get_db_session, subscriptions, usage_counters, usage_events
from drillity.core.errors import SubscriptionChangedError, ValidationError
from drillity.models.plan import UNLIMITED
from drillity.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)


class MeteringPolicy(BaseModel):
    """First `free_per_period` units of a period are free, the rest cost `unit_cost_eur`."""
    model_config = ConfigDict(frozen=True)

    counter_key: str
    free_per_period: int
    unit_cost_eur: float


def get_metering_policy(counter_key: str) -> Optional[MeteringPolicy]:
    """Counters that emit usage events. Others are counted but not metered."""
    if counter_key == "ai_matches":
        return MeteringPolicy(
            counter_key=counter_key,
            free_per_period=settings.AI_MATCH_FREE_PER_PERIOD,
            unit_cost_eur=settings.AI_MATCH_UNIT_COST_EUR,
        )
    return None


def price_consumption(
    policy: MeteringPolicy,
    used_before: int,
    amount: int,
    limit: int,
    cost_units: Optional[int] = None,
) -> Tuple[float, bool]:
    """
    Compute (cost_estimate, was_free) for one consumption.

    Unlimited access is a paid add-on, so it never counts as free usage.
    cost_units is what the model actually processed (e.g. candidates
    analyzed); it defaults to amount.
    """
    units = amount if cost_units is None else cost_units
    if units < 0:
        raise ValidationError("cost_units must be >= 0")
    cost = round(units * policy.unit_cost_eur, 6)
    was_free = limit != UNLIMITED and used_before + amount <= policy.free_per_period
    return cost, was_free


def _counter_where(ledger_key: str, counter_key: str, period_start: datetime):
    return and_(
        usage_counters.c.ledger_key == ledger_key,
        usage_counters.c.counter_key == counter_key,
        usage_counters.c.period_start == period_start,
    )


def _read_counter(session, ledger_key: str, counter_key: str, period_start: datetime) -> Optional[int]:
    row = session.execute(
        select(usage_counters.c.used).where(_counter_where(ledger_key, counter_key, period_start))
    ).first()
    return row.used if row else None


def _conditional_increment(
    session,
    ledger_key: str,
    counter_key: str,
    period_start: datetime,
    amount: int,
    limit: int,
) -> Optional[int]:
    # Single statement: check and increment cannot interleave with another writer
    condition = _counter_where(ledger_key, counter_key, period_start)
    if limit != UNLIMITED:
        condition = and_(condition, usage_counters.c.used + amount <= limit)

    row = session.execute(
        update(usage_counters)
        .where(condition)
        .values(used=usage_counters.c.used + amount)
        .returning(usage_counters.c.used)
    ).first()
    return row.used if row else None


def _ledger_is_current(session, ledger_key: str, actor_id: str, period_start: datetime) -> bool:
    """
    Whether the ledger still governs the actor for this period.

    `sub:<id>` ledgers lock their subscription row, so a plan change or
    period advance cannot commit until the charge does. `free:<actor_id>`
    ledgers only count while the actor has no active record.
    """
    kind, _, owner = ledger_key.partition(":")
    if kind == "sub":
        row = session.execute(
            select(subscriptions.c.is_active, subscriptions.c.period_started_at)
            .where(subscriptions.c.id == int(owner))
            .with_for_update()
        ).first()
        return bool(row and row.is_active and as_utc(row.period_started_at) == period_start)

    active = session.execute(
        select(subscriptions.c.id).where(
            (subscriptions.c.actor_id == actor_id) & (subscriptions.c.is_active == True)  # noqa: E712
        )
    ).first()
    return active is None


def increment_counter(
    ledger_key: str,
    actor_id: str,
    counter_key: str,
    period_start: datetime,
    amount: int,
    limit: int,
    *,
    verify_ledger: bool = False,
) -> Tuple[bool, int]:
    """
    Atomically add `amount` to a period counter unless it would exceed `limit`.

    The counter row is created on first use. A denial writes nothing.

    Args:
        verify_ledger: Re-check in the same transaction that the ledger still
            belongs to the actor's current subscription and period

    Returns:
        (allowed, used) where used is the counter value after the call

    Raises:
        SubscriptionChangedError: If verify_ledger is set and the ledger is stale
    """
    if amount < 1:
        raise ValidationError("amount must be >= 1")
    period_start = as_utc(period_start)

    with get_db_session() as session:
        if verify_ledger and not _ledger_is_current(session, ledger_key, actor_id, period_start):
            raise SubscriptionChangedError("Subscription changed, please retry")

        used = _conditional_increment(session, ledger_key, counter_key, period_start, amount, limit)
        if used is not None:
            return True, used

        current = _read_counter(session, ledger_key, counter_key, period_start)
        if current is None and (limit == UNLIMITED or amount <= limit):
            try:
                with session.begin_nested():
                    session.execute(
                        insert(usage_counters).values(
                            ledger_key=ledger_key,
                            actor_id=actor_id,
                            counter_key=counter_key,
                            period_start=period_start,
                            used=amount,
                        )
                    )
                return True, amount
            except IntegrityError:
                # Lost the race to create the row; it exists now
                used = _conditional_increment(session, ledger_key, counter_key, period_start, amount, limit)
                if used is not None:
                    return True, used
                current = _read_counter(session, ledger_key, counter_key, period_start)

        return False, current or 0


def get_counter(ledger_key: str, counter_key: str, period_start: datetime) -> int:
    """Current value of one counter (0 when it was never used this period)."""
    with get_db_session() as session:
        return _read_counter(session, ledger_key, counter_key, as_utc(period_start)) or 0


def get_period_usage(ledger_key: str, period_start: datetime) -> Dict[str, int]:
    """All counters of one ledger for one period. Pure read."""
    with get_db_session() as session:
        rows = session.execute(
            select(usage_counters.c.counter_key, usage_counters.c.used).where(
                (usage_counters.c.ledger_key == ledger_key)
                & (usage_counters.c.period_start == as_utc(period_start))
            )
        ).all()
    return {row.counter_key: row.used for row in rows}


def _row_to_event(row) -> UsageEvent:
    data = row._mapping
    return UsageEvent(
        actor_id=data["actor_id"],
        counter_key=data["counter_key"],
        amount=data["amount"],
        occurred_at=as_utc(data["occurred_at"]),
        cost_estimate=data["cost_estimate"],
        was_free=data["was_free"],
        subscription_id=data["subscription_id"],
        metadata=data["metadata"],
    )


def emit_usage_event(
    actor_id: str,
    counter_key: str,
    amount: int = 1,
    *,
    cost_estimate: float = 0.0,
    was_free: bool = False,
    subscription_id: Optional[int] = None,
    occurred_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> UsageEvent:
    """
    Record a usage event. Events are append-only.

    Args:
        actor_id: Actor that consumed
        counter_key: Counter consumed (ai_matches, applications, ...)
        amount: Units consumed
        occurred_at: Timestamp of usage (defaults to now)
        metadata: Optional metadata (job_id, matches_found, ...)

    Returns:
        UsageEvent instance
    """
    occurred_at = normalize_now(occurred_at)

    with get_db_session() as session:
        session.execute(
            insert(usage_events).values(
                actor_id=actor_id,
                subscription_id=subscription_id,
                counter_key=counter_key,
                amount=amount,
                occurred_at=occurred_at,
                cost_estimate=cost_estimate,
                was_free=was_free,
                metadata=metadata,
            )
        )

    return UsageEvent(
        actor_id=actor_id,
        counter_key=counter_key,
        amount=amount,
        occurred_at=occurred_at,
        cost_estimate=cost_estimate,
        was_free=was_free,
        subscription_id=subscription_id,
        metadata=metadata,
    )


def get_usage_events(
    actor_id: str,
    counter_key: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> List[UsageEvent]:
    """
    Get usage events for an actor, oldest first.

    Args:
        actor_id: Actor to query
        counter_key: Optional filter by counter key
        start_time: Optional start of time window (inclusive)
        end_time: Optional end of time window (exclusive)
    """
    with get_db_session() as session:
        query = select(usage_events).where(usage_events.c.actor_id == actor_id)

        if counter_key:
            query = query.where(usage_events.c.counter_key == counter_key)
        if start_time:
            query = query.where(usage_events.c.occurred_at >= as_utc(start_time))
        if end_time:
            query = query.where(usage_events.c.occurred_at < as_utc(end_time))

        rows = session.execute(
            query.order_by(usage_events.c.occurred_at, usage_events.c.id)
        ).all()

    return [_row_to_event(row) for row in rows]


def reduce_usage(
    actor_id: str,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> Dict[str, int]:
    """
    Sum event amounts per counter key.

    Args:
        actor_id: Actor to reduce
        now: Upper bound (defaults to now)
        window_days: Optional trailing window; all history when None

    Returns:
        Dict mapping counter_key -> total amount
    """
    now = normalize_now(now)
    start = now - timedelta(days=window_days) if window_days is not None else None

    totals: Dict[str, int] = {}
    for event in get_usage_events(actor_id, start_time=start, end_time=now + timedelta(microseconds=1)):
        totals[event.counter_key] = totals.get(event.counter_key, 0) + event.amount
    return totals
