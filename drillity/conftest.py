# drillity/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Repo root on PYTHONPATH so `drillity.*` imports resolve without install
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture
def db(tmp_path):
    """
    Fresh SQLite file database with tables created and plans seeded.

    A file (not :memory:) so concurrent tests exercise real locking
    across pooled connections.
    """
    from drillity.core.database import init_engine, create_all_tables, get_engine
    from drillity.features.plans.service import seed_plans

    url = f"sqlite:///{tmp_path / 'drillity_test.db'}"
    init_engine(url)
    create_all_tables()
    seed_plans()
    yield url
    get_engine().dispose()


@pytest.fixture
def client(db):
    """TestClient bound to the per-test database (lifespan not run)."""
    from fastapi.testclient import TestClient
    from drillity.main import app

    return TestClient(app)


@pytest.fixture
def billing_env(monkeypatch):
    """Enable billing with dummy Stripe configuration."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
    monkeypatch.setenv("STRIPE_PRICE_TALENT_BASIC", "price_talent_basic")
    monkeypatch.setenv("STRIPE_PRICE_COMPANY_STARTER", "price_company_starter")
    monkeypatch.setenv("STRIPE_PRICE_COMPANY_GROWTH", "price_company_growth")
