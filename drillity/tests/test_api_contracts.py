"""HTTP contracts for the entitlement and billing routes."""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import jwt
import pytest

from drillity.core.config import settings
from drillity.core.errors import StoreUnavailableError
from drillity.features.billing.provider import BillingInterval, CheckoutConfirmation, InvoiceSummary
from drillity.features.subscriptions.service import change_plan


TALENT = {"X-Actor-Id": "talent-a1"}
COMPANY = {"X-Actor-Id": "company-a1", "X-Actor-Type": "company"}


def test_snapshot_for_new_talent(client):
    resp = client.get("/api/entitlements", headers=TALENT)

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_name"] == "FREE"
    assert body["subscribed"] is False
    assert body["limits"]["applications"] == 3
    assert body["usage"] == {}


def test_snapshot_for_company(client):
    body = client.get("/api/entitlements", headers=COMPANY).json()

    assert body["actor_type"] == "company"
    assert body["plan_id"] == "company_free"


def test_consume_until_denied(client):
    for expected in (1, 2, 3):
        resp = client.post("/api/entitlements/consume", headers=TALENT, json={"counter_key": "applications"})
        assert resp.status_code == 200
        assert resp.json()["used"] == expected

    denied = client.post("/api/entitlements/consume", headers=TALENT, json={"counter_key": "applications"})

    assert denied.status_code == 200
    body = denied.json()
    assert body["allowed"] is False
    assert body["upgrade_required"] is True
    assert body["counter_key"] == "applications"
    assert (body["used"], body["limit"]) == (3, 3)


def test_consume_ai_match_returns_usage_event(client):
    resp = client.post(
        "/api/entitlements/consume",
        headers=COMPANY,
        json={"counter_key": "ai_matches", "cost_units": 10, "metadata": {"job_id": "j1", "matches_found": 2}},
    )

    body = resp.json()
    assert body["allowed"] is True
    assert body["usage_event"]["was_free"] is True
    assert body["usage_event"]["cost_estimate"] == pytest.approx(0.05)

    report = client.get("/api/entitlements/ai-usage", headers=COMPANY).json()
    assert report["runs"] == 1
    assert report["total_matches"] == 2
    assert report["time_saved_hours"] == 4


def test_feature_check(client):
    change_plan("talent-a2", "talent_premium")

    resp = client.get("/api/entitlements/features/ai_job_matching", headers={"X-Actor-Id": "talent-a2"})
    assert resp.json() == {"feature_key": "ai_job_matching", "enabled": True}

    resp = client.get("/api/entitlements/features/ai_job_matching", headers=TALENT)
    assert resp.json()["enabled"] is False


def test_usage_status(client):
    resp = client.get("/api/entitlements/usage/skills", headers=TALENT)

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["remaining"] == 5


def test_unknown_counter_is_400(client):
    resp = client.post("/api/entitlements/consume", headers=TALENT, json={"counter_key": "rockets"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "unknown_counter"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]


def test_invalid_amount_is_400(client):
    resp = client.post("/api/entitlements/consume", headers=TALENT, json={"counter_key": "skills", "amount": 0})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_amount"


def test_missing_identity_is_401(client):
    resp = client.get("/api/entitlements")

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "not_authenticated"
    assert resp.headers.get("x-request-id")


def test_header_auth_can_be_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)

    resp = client.get("/api/entitlements", headers=TALENT)

    assert resp.status_code == 401


def test_bearer_token_identifies_actor(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
    token = jwt.encode(
        {
            "sub": "company-jwt",
            "actor_type": "company",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        "test-secret",
        algorithm="HS256",
    )

    resp = client.get("/api/entitlements", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 200
    assert resp.json()["actor_id"] == "company-jwt"
    assert resp.json()["actor_type"] == "company"


def test_invalid_bearer_token_does_not_fall_back_to_header(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
    token = jwt.encode({"sub": "x", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}, "wrong", algorithm="HS256")

    resp = client.get("/api/entitlements", headers={"Authorization": f"Bearer {token}", **TALENT})

    assert resp.status_code == 401


def test_store_unavailable_is_generic_503(client):
    with patch("drillity.api.entitlements.resolve_entitlement", side_effect=StoreUnavailableError()):
        resp = client.get("/api/entitlements", headers=TALENT)

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "store_unavailable"
    assert body["error"]["message"] == "Service temporarily unavailable, please try again"


def test_request_id_is_echoed(client):
    resp = client.get("/api/entitlements", headers={**TALENT, "x-request-id": "rid-123"})

    assert resp.headers["x-request-id"] == "rid-123"


def test_plan_catalog_is_public(client):
    resp = client.get("/api/billing/plans", params={"actor_type": "company"})

    assert resp.status_code == 200
    plans = resp.json()
    assert [p["name"] for p in plans] == ["FREE", "STARTER", "GROWTH", "SCALE", "ENTERPRISE"]
    assert plans[0]["ai_matching_addon_eur"] is None
    assert plans[1]["ai_matching_addon_eur"] == 10


def test_checkout_without_billing_is_503(client, monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    resp = client.post("/api/billing/checkout", headers=TALENT, json={"plan_id": "talent_basic"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_checkout_and_verify(client, billing_env):
    provider = Mock()
    provider.ensure_customer.return_value = "cus_9"
    provider.create_checkout_session.return_value = "https://checkout.stripe.com/c/pay/cs_9"
    provider.retrieve_checkout_session.return_value = CheckoutConfirmation(
        session_id="cs_9",
        payment_status="paid",
        actor_id="talent-a1",
        actor_type="talent",
        plan_id="talent_basic",
        customer_id="cus_9",
        external_ref="sub_9",
        period_start=datetime.now(timezone.utc).replace(microsecond=0),
        period_end=None,
        trial_end=None,
    )

    with patch("drillity.features.billing.service.get_provider", return_value=provider):
        checkout = client.post("/api/billing/checkout", headers=TALENT, json={"plan_id": "talent_basic"})
        verify = client.post("/api/billing/verify", headers=TALENT, json={"session_id": "cs_9"})

    assert checkout.status_code == 200
    assert checkout.json()["url"].endswith("cs_9")
    assert verify.status_code == 200
    assert verify.json()["plan_id"] == "talent_basic"
    assert client.get("/api/entitlements", headers=TALENT).json()["plan_name"] == "BASIC"


def test_verify_unpaid_is_402(client, billing_env):
    provider = Mock()
    provider.retrieve_checkout_session.return_value = CheckoutConfirmation(
        session_id="cs_u",
        payment_status="unpaid",
        actor_id="talent-a1",
        actor_type="talent",
        plan_id="talent_basic",
        customer_id=None,
        external_ref=None,
        period_start=None,
        period_end=None,
        trial_end=None,
    )

    with patch("drillity.features.billing.service.get_provider", return_value=provider):
        resp = client.post("/api/billing/verify", headers=TALENT, json={"session_id": "cs_u"})

    assert resp.status_code == 402
    assert resp.json()["error"]["code"] == "payment_not_confirmed"


def test_company_invoice_and_verify(client, billing_env):
    paid_at = datetime.now(timezone.utc).replace(microsecond=0)
    provider = Mock()
    provider.ensure_customer.return_value = "cus_c1"
    provider.create_invoice.return_value = InvoiceSummary(
        invoice_id="in_c1",
        hosted_invoice_url="https://invoice.stripe.com/i/in_c1",
        invoice_pdf=None,
        amount_due_cents=12 * 9900,
        currency="eur",
        due_date=paid_at + timedelta(days=30),
    )
    provider.retrieve_invoice.return_value = CheckoutConfirmation(
        session_id="in_c1",
        payment_status="paid",
        actor_id="company-a1",
        actor_type="company",
        plan_id="company_starter",
        customer_id="cus_c1",
        external_ref="in_c1",
        period_start=paid_at,
        period_end=None,
        trial_end=None,
        billing_interval=BillingInterval.YEAR,
    )

    with patch("drillity.features.billing.service.get_provider", return_value=provider):
        invoice = client.post(
            "/api/billing/invoice",
            headers=COMPANY,
            json={"plan_id": "company_starter", "billing_interval": "year", "po_number": "PO-1"},
        )
        verify = client.post("/api/billing/invoice/verify", headers=COMPANY, json={"invoice_id": "in_c1"})

    assert invoice.status_code == 200
    assert invoice.json()["amount_due_eur"] == 1188.0
    assert invoice.json()["invoice_url"].endswith("in_c1")
    assert verify.status_code == 200
    assert verify.json()["plan_id"] == "company_starter"
    assert verify.json()["end_date"] is not None


def test_invoice_for_talent_is_400(client, billing_env):
    with patch("drillity.features.billing.service.get_provider", return_value=Mock()):
        resp = client.post("/api/billing/invoice", headers=TALENT, json={"plan_id": "talent_basic"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_webhook_with_bad_signature_is_400(client, billing_env):
    resp = client.post(
        "/api/billing/webhook",
        content=b'{"id": "evt_1", "type": "invoice.paid"}',
        headers={"stripe-signature": "t=1,v1=bogus"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
