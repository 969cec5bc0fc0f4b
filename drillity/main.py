import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from drillity.core.config import settings, validate_config
from drillity.core.database import create_all_tables, get_database_url, init_engine
from drillity.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from drillity.core.logging import configure_logging
from drillity.core.middleware.request_id import RequestIdMiddleware
from drillity.core.validation import validate_env
from drillity.api import billing, entitlements, health
from drillity.features.plans.service import seed_plans

configure_logging(settings.ENV)
validate_env()
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("drillity")
    logger.info("Starting Drillity entitlements service...")
    if get_database_url():
        init_engine()
        create_all_tables()
        seed_plans()
    else:
        logger.warning("DATABASE_URL not set; skipping database bootstrap")
    try:
        yield
    finally:
        logger.info("Stopping Drillity entitlements service...")


app = FastAPI(title="Drillity - Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(entitlements.router)
app.include_router(billing.router)
app.include_router(health.root_router)
