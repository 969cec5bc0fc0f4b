"""Plan catalog seeding and lookup."""
import pytest

from drillity.core.errors import PlanNotFoundError, ValidationError
from drillity.features.plans.service import (
    COUNTER_LIMIT_KEYS,
    DEFAULT_PLANS,
    get_default_plan,
    get_plan,
    limit_key_for,
    list_plans,
    require_plan,
    seed_plans,
)
from drillity.models.actor import ActorType


def test_seed_is_idempotent(db):
    seed_plans()
    seed_plans()
    assert len(list_plans()) == len(DEFAULT_PLANS)


def test_default_plan_per_audience(db):
    assert get_default_plan(ActorType.TALENT).plan_id == "talent_free"
    assert get_default_plan(ActorType.COMPANY).plan_id == "company_free"


def test_limits_and_features_are_split(db):
    plan = require_plan("talent_basic")
    assert plan.limits["application_limit"] == 10
    assert plan.features["profile_views_enabled"] is True
    assert "profile_views_enabled" not in plan.limits
    assert plan.has_feature("ai_job_matching") is False
    assert plan.price_eur == 9.9


def test_premium_limits_are_unlimited(db):
    plan = require_plan("talent_premium")
    assert plan.limits["application_limit"] == -1
    assert plan.limits["cv_upload_limit"] == -1


def test_list_plans_filters_by_audience_cheapest_first(db):
    company = list_plans(ActorType.COMPANY)
    assert [p.name for p in company] == ["FREE", "STARTER", "GROWTH", "SCALE", "ENTERPRISE"]
    assert all(p.audience == ActorType.COMPANY for p in company)


def test_unknown_plan(db):
    assert get_plan("nope") is None
    with pytest.raises(PlanNotFoundError):
        require_plan("nope")


def test_default_plan_missing_before_seed(tmp_path):
    from drillity.core.database import init_engine, create_all_tables

    init_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    create_all_tables()
    with pytest.raises(PlanNotFoundError):
        get_default_plan(ActorType.TALENT)


def test_counter_limit_mapping():
    assert limit_key_for("applications") == "application_limit"
    assert limit_key_for("ai_matches") == "ai_match_limit"
    assert set(COUNTER_LIMIT_KEYS) >= {"skills", "certifications", "cv_uploads", "profile_highlights", "jobs"}
    with pytest.raises(ValidationError):
        limit_key_for("bananas")


def test_stripe_price_is_read_from_env_at_seed(tmp_path, monkeypatch):
    from drillity.core.database import init_engine, create_all_tables

    monkeypatch.setenv("STRIPE_PRICE_TALENT_PRO", "price_pro_123")
    init_engine(f"sqlite:///{tmp_path / 'prices.db'}")
    create_all_tables()
    seed_plans()

    assert require_plan("talent_pro").stripe_price_id == "price_pro_123"
    assert require_plan("talent_basic").stripe_price_id is None
