"""
Entitlement engine behaviour.

Resolution, check-and-consume, feature checks and usage status against a
seeded SQLite database.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from drillity.core.database import get_db_session, subscriptions, usage_counters, usage_events
from drillity.core.errors import ValidationError
from drillity.features.entitlements.service import (
    change_plan,
    check_and_consume,
    get_usage_status,
    has_feature,
    resolve_entitlement,
)
from drillity.models.actor import ActorType


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


def test_no_subscription_resolves_to_free_without_writes(db):
    snapshot = resolve_entitlement("talent-1", now=NOW)

    assert snapshot.plan_name == "FREE"
    assert snapshot.subscribed is False
    assert snapshot.subscription_id is None
    assert snapshot.usage == {}
    assert snapshot.limit_for("applications") == 3
    assert snapshot.period_started_at == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert snapshot.period_reset_date == datetime(2025, 4, 1, tzinfo=timezone.utc)

    assert _count(subscriptions) == 0
    assert _count(usage_counters) == 0


def test_company_without_subscription_gets_company_free(db):
    snapshot = resolve_entitlement("company-1", actor_type=ActorType.COMPANY, now=NOW)

    assert snapshot.plan_id == "company_free"
    assert snapshot.limit_for("jobs") == 1
    assert snapshot.limit_for("ai_matches") == 1
    assert snapshot.features["ai_matching_unlimited"] is False


def test_basic_plan_allows_tenth_application_then_denies(db):
    change_plan("talent-1", "talent_basic", NOW, now=NOW)
    first = check_and_consume("talent-1", "applications", 9, now=NOW)
    assert first.allowed is True
    assert first.used == 9

    tenth = check_and_consume("talent-1", "applications", now=NOW)
    assert tenth.allowed is True
    assert (tenth.used, tenth.limit) == (10, 10)

    eleventh = check_and_consume("talent-1", "applications", now=NOW)
    assert eleventh.allowed is False
    assert eleventh.upgrade_required is True
    assert (eleventh.used, eleventh.limit) == (10, 10)
    assert eleventh.plan_name == "BASIC"

    assert resolve_entitlement("talent-1", now=NOW).used("applications") == 10


def test_free_plan_limit_is_enforced_per_calendar_month(db):
    for _ in range(3):
        assert check_and_consume("talent-2", "applications", now=NOW).allowed

    denied = check_and_consume("talent-2", "applications", now=NOW)
    assert denied.allowed is False
    assert denied.used == 3

    next_month = datetime(2025, 4, 2, tzinfo=timezone.utc)
    assert check_and_consume("talent-2", "applications", now=next_month).used == 1
    # Old month stays intact
    assert resolve_entitlement("talent-2", now=NOW).used("applications") == 3


def test_denied_consumption_writes_nothing(db):
    result = check_and_consume("talent-3", "profile_highlights", now=NOW)

    assert result.allowed is False
    assert (result.used, result.limit) == (0, 0)
    assert _count(usage_counters) == 0


def test_amount_larger_than_remaining_is_denied_whole(db):
    change_plan("talent-4", "talent_basic", NOW, now=NOW)
    check_and_consume("talent-4", "applications", 8, now=NOW)

    result = check_and_consume("talent-4", "applications", 3, now=NOW)

    assert result.allowed is False
    assert result.used == 8


def test_unlimited_never_denies_but_still_counts(db):
    change_plan("talent-5", "talent_premium", NOW, now=NOW)

    for _ in range(25):
        result = check_and_consume("talent-5", "applications", now=NOW)
        assert result.allowed is True
        assert result.unlimited is True

    assert result.limit == -1
    assert result.used == 25


def test_invalid_amount_rejected(db):
    with pytest.raises(ValidationError):
        check_and_consume("talent-1", "applications", 0, now=NOW)


def test_unknown_counter_rejected(db):
    with pytest.raises(ValidationError) as exc:
        check_and_consume("talent-1", "teleports", now=NOW)
    assert exc.value.code == "unknown_counter"


def test_counter_missing_from_plan_denies(db):
    # Talent plans carry no job_limit
    result = check_and_consume("talent-6", "jobs", now=NOW)
    assert result.allowed is False
    assert result.limit == 0


def test_has_feature_without_subscription_is_false(db):
    assert has_feature("talent-7", "ai_job_matching", now=NOW) is False
    assert has_feature("talent-7", "no_such_feature", now=NOW) is False


def test_has_feature_follows_plan(db):
    change_plan("talent-8", "talent_premium", NOW, now=NOW)
    assert has_feature("talent-8", "ai_job_matching", now=NOW) is True
    assert has_feature("talent-8", "verified_badge", now=NOW) is True


def test_company_trial_unlocks_unlimited_ai_matching(db):
    change_plan(
        "company-2",
        "company_starter",
        NOW,
        is_trial=True,
        trial_end_date=NOW + timedelta(days=14),
        now=NOW,
    )
    snapshot = resolve_entitlement("company-2", actor_type=ActorType.COMPANY, now=NOW)
    assert snapshot.is_trial is True
    assert snapshot.limit_for("ai_matches") == -1
    assert snapshot.features["ai_matching_unlimited"] is True

    for _ in range(3):
        result = check_and_consume("company-2", "ai_matches", actor_type=ActorType.COMPANY, now=NOW)
        assert result.allowed is True
        assert result.usage_event.was_free is False

    after_trial = NOW + timedelta(days=15)
    snapshot = resolve_entitlement("company-2", actor_type=ActorType.COMPANY, now=after_trial)
    assert snapshot.is_trial is False
    assert snapshot.limit_for("ai_matches") == 1


def test_ai_matching_addon_unlocks_unlimited_ai_matching(db):
    change_plan("company-3", "company_growth", NOW, ai_matching_enabled=True, now=NOW)

    assert has_feature("company-3", "ai_matching_unlimited", actor_type=ActorType.COMPANY, now=NOW)
    status = get_usage_status("company-3", "ai_matches", actor_type=ActorType.COMPANY, now=NOW)
    assert status.status == "unlimited"
    assert status.remaining is None


def test_first_ai_match_is_free_then_quota_reached(db):
    first = check_and_consume(
        "company-4",
        "ai_matches",
        actor_type=ActorType.COMPANY,
        cost_units=20,
        metadata={"job_id": "job-1", "matches_found": 4},
        now=NOW,
    )
    assert first.allowed is True
    assert first.usage_event.was_free is True
    assert first.usage_event.cost_estimate == pytest.approx(0.1)
    assert first.usage_event.metadata["job_id"] == "job-1"

    second = check_and_consume("company-4", "ai_matches", actor_type=ActorType.COMPANY, now=NOW)
    assert second.allowed is False
    assert second.usage_event is None
    assert _count(usage_events) == 1


def test_only_metered_counters_emit_events(db):
    check_and_consume("talent-9", "applications", now=NOW)
    assert _count(usage_events) == 0


@pytest.mark.parametrize(
    "used,expected",
    [(0, "ok"), (7, "ok"), (8, "approaching_limit"), (10, "at_limit")],
)
def test_usage_status_thresholds(db, used, expected):
    change_plan("talent-10", "talent_basic", NOW, now=NOW)
    if used:
        check_and_consume("talent-10", "applications", used, now=NOW)

    status = get_usage_status("talent-10", "applications", now=NOW)

    assert status.status == expected
    assert status.used == used
    assert status.remaining == 10 - used
    assert status.percentage == used * 10.0


def test_usage_status_for_zero_limit_is_at_limit(db):
    status = get_usage_status("talent-11", "profile_highlights", now=NOW)
    assert status.status == "at_limit"
    assert status.remaining == 0
