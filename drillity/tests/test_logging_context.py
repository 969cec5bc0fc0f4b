"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from drillity.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    log_event,
    request_id_ctx_var,
)
from drillity.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    return app


def test_generates_request_id_when_missing():
    resp = TestClient(_make_app()).get("/")

    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    assert rid_header
    assert rid_header == resp.json().get("request_id")


def test_echoes_provided_request_id():
    resp = TestClient(_make_app()).get("/", headers={"X-Request-Id": "test-rid-123"})

    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json().get("request_id") == "test-rid-123"


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="drillity"):
        response = client.get("/healthz")

    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert records[-1].getMessage() == "request.complete"
    assert records[-1].path == "/healthz"
    assert records[-1].duration_ms >= 0


def test_request_id_is_cleared_after_request(client):
    client.get("/healthz")
    assert request_id_ctx_var.get() is None


def test_json_formatter_merges_extras():
    record = logging.LogRecord("drillity", logging.INFO, __file__, 1, "consumed %s", ("skills",), None)
    record.request_id = "rid-1"
    record.actor_id = "talent-1"
    record.counter_key = "skills"
    record.unused = None

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "consumed skills"
    assert payload["request_id"] == "rid-1"
    assert payload["actor_id"] == "talent-1"
    assert payload["counter_key"] == "skills"
    assert "unused" not in payload
    assert payload["timestamp"].endswith("Z")


def test_log_event_truncates_extra(caplog):
    with caplog.at_level(logging.INFO, logger="drillity"):
        log_event(
            "warning",
            "[billing] webhook failed",
            actor_id="company-1",
            event_type="checkout.session.completed",
            error_code="plan_not_found",
            extra={"error": "x" * 800},
        )

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.actor_id == "company-1"
    assert record.event_type == "checkout.session.completed"
    assert record.error_code == "plan_not_found"
    assert record.error.endswith("...<truncated>")
    assert len(record.error) == 500 + len("...<truncated>")


def test_pretty_formatter_appends_fields():
    record = logging.LogRecord("drillity", logging.WARNING, __file__, 1, "[entitlement] DENIED", (), None)
    record.request_id = "rid-2"
    record.counter_key = "applications"
    record.used = 3

    line = PrettyFormatter().format(record)

    assert "WARNING [drillity] [rid=rid-2] [entitlement] DENIED" in line
    assert line.endswith("counter_key=applications used=3")
