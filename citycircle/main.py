"""
CityCircle Loops check-in API.

Run with: uvicorn citycircle.main:app
"""
import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file before settings are read
load_dotenv()

import sentry_sdk
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .core.config import settings, validate_config
from .core.env import get_env_name, is_local_env
from .exception_handlers import register_exception_handlers
from .middleware.logging import LoggingMiddleware
from .middleware.request_id import RequestIDLogFilter, RequestIDMiddleware
from .routers import checkin, stores
from .run_migrations import run_migrations

APP_VERSION = "1.0.0"

_log_handler = logging.StreamHandler(sys.stdout)
_log_handler.addFilter(RequestIDLogFilter())

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
    handlers=[_log_handler]
)

# Use a consistent logger name for all app logs
logger = logging.getLogger("citycircle")

env = get_env_name()
if settings.SENTRY_DSN and not is_local_env():
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=0.1,
        environment=env,
        send_default_pii=False,
    )
    logger.info(f"Sentry error tracking initialized for environment: {env}")
elif settings.SENTRY_DSN:
    logger.info("Sentry DSN configured but not initializing in local environment")


@asynccontextmanager
async def lifespan(app):
    """Validate configuration and optionally migrate before serving."""
    logger.info(f"Starting CityCircle Loops API {APP_VERSION} (ENV={env})")
    validate_config()
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        run_migrations()
    yield
    logger.info("CityCircle Loops API shutting down")


app = FastAPI(title="CityCircle Loops API", version=APP_VERSION, lifespan=lifespan)


@app.get("/healthz")
async def healthz():
    """Liveness probe. No database access so it answers during startup."""
    return {
        "ok": True,
        "service": "citycircle-loops",
        "version": APP_VERSION,
        "status": "healthy"
    }


# Last added runs first: request id is assigned before the access log reads it
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

register_exception_handlers(app)

app.include_router(checkin.router)
app.include_router(stores.router)
