"""
Health endpoints.

Liveness and readiness checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from drillity.core.database import get_engine, metadata

logger = logging.getLogger("drillity")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    required_tables = sorted(metadata.tables)

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in required_tables if not inspector.has_table(t)]
    except Exception as e:
        logger.error("[readyz] readiness check failed", extra={"error_type": type(e).__name__})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] %s", detail)
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
