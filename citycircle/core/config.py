from pydantic import BaseModel
import os
import logging
from datetime import timedelta


class Settings(BaseModel):
    # JWT secret used to decode bearer credentials issued by the identity service
    JWT_SECRET: str = os.getenv("JWT_SECRET", os.getenv("CITYCIRCLE_SECRET_KEY", "dev-secret-change-me"))
    ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "citycircle-api")
    JWT_ISSUER: str = os.getenv("JWT_ISSUER", "citycircle")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./citycircle.db")

    # Environment and observability
    ENV: str = os.getenv("ENV", "dev")  # dev, staging, prod
    SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
    RUN_MIGRATIONS_ON_STARTUP: bool = os.getenv("RUN_MIGRATIONS_ON_STARTUP", "false").lower() == "true"

    # Check-in sessions
    CHECKIN_SESSION_TTL_MINUTES: int = int(os.getenv("CHECKIN_SESSION_TTL_MINUTES", "30"))
    STORE_GEOFENCE_RADIUS_M: float = float(os.getenv("STORE_GEOFENCE_RADIUS_M", "50"))
    MAX_CLIENT_CLOCK_SKEW_SECONDS: int = int(os.getenv("MAX_CLIENT_CLOCK_SKEW_SECONDS", "300"))

    # Pending points (deferred validation settlement)
    PENDING_POINTS_TTL_DAYS: int = int(os.getenv("PENDING_POINTS_TTL_DAYS", "7"))
    CIV_ADJUST_PENDING_LOOPS: bool = os.getenv("CIV_ADJUST_PENDING_LOOPS", "true").lower() == "true"

    # Settlement rules
    RETURN_VISIT_COOLDOWN_MINUTES: int = int(os.getenv("RETURN_VISIT_COOLDOWN_MINUTES", "60"))
    MANUAL_CHECK_MIN_CIV: float = float(os.getenv("MANUAL_CHECK_MIN_CIV", "0.6"))
    TIME_ELAPSED_GRACE_HOURS: int = int(os.getenv("TIME_ELAPSED_GRACE_HOURS", "72"))
    TIME_ELAPSED_MIN_CIV: float = float(os.getenv("TIME_ELAPSED_MIN_CIV", "0.35"))

    # Remote collaborators (empty URL = use the local database implementation)
    BALANCE_SERVICE_URL: str = os.getenv("BALANCE_SERVICE_URL", "")
    TRANSACTION_LOG_URL: str = os.getenv("TRANSACTION_LOG_URL", "")
    COLLABORATOR_API_TOKEN: str = os.getenv("COLLABORATOR_API_TOKEN", "")
    COLLABORATOR_TIMEOUT_SECONDS: float = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "5"))
    COLLABORATOR_MAX_ATTEMPTS: int = int(os.getenv("COLLABORATOR_MAX_ATTEMPTS", "3"))

    # Sweep job
    SETTLEMENT_SWEEP_BATCH_SIZE: int = int(os.getenv("SETTLEMENT_SWEEP_BATCH_SIZE", "500"))

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL

    @property
    def checkin_session_ttl(self) -> timedelta:
        return timedelta(minutes=self.CHECKIN_SESSION_TTL_MINUTES)

    @property
    def pending_points_ttl(self) -> timedelta:
        return timedelta(days=self.PENDING_POINTS_TTL_DAYS)


settings = Settings()


def validate_config():
    """Validate configuration at startup. Raises ValueError if invalid."""
    from .env import is_production_env
    logger = logging.getLogger(__name__)

    if settings.MANUAL_CHECK_MIN_CIV < 0 or settings.MANUAL_CHECK_MIN_CIV > 1:
        error_msg = f"MANUAL_CHECK_MIN_CIV must be within [0, 1], got {settings.MANUAL_CHECK_MIN_CIV}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if settings.TIME_ELAPSED_MIN_CIV < 0 or settings.TIME_ELAPSED_MIN_CIV > 1:
        error_msg = f"TIME_ELAPSED_MIN_CIV must be within [0, 1], got {settings.TIME_ELAPSED_MIN_CIV}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    # The grace period is a fallback before expiry; it is useless if entries expire first
    if timedelta(hours=settings.TIME_ELAPSED_GRACE_HOURS) >= settings.pending_points_ttl:
        error_msg = (
            f"TIME_ELAPSED_GRACE_HOURS ({settings.TIME_ELAPSED_GRACE_HOURS}h) must be shorter than "
            f"PENDING_POINTS_TTL_DAYS ({settings.PENDING_POINTS_TTL_DAYS}d)"
        )
        logger.error(error_msg)
        raise ValueError(error_msg)

    if settings.COLLABORATOR_TIMEOUT_SECONDS <= 0:
        error_msg = "COLLABORATOR_TIMEOUT_SECONDS must be positive"
        logger.error(error_msg)
        raise ValueError(error_msg)

    # Production safety gates
    if is_production_env():
        if not settings.JWT_SECRET or settings.JWT_SECRET == "dev-secret-change-me":
            error_msg = (
                "CRITICAL SECURITY ERROR: JWT_SECRET must be set and not use default value in production. "
                "Set JWT_SECRET or CITYCIRCLE_SECRET_KEY environment variable to a secure random value."
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

        if settings.database_url.startswith("sqlite"):
            error_msg = "CRITICAL: SQLite database is not supported in production. Please use PostgreSQL."
            logger.error(error_msg)
            raise ValueError(error_msg)

        if (settings.BALANCE_SERVICE_URL or settings.TRANSACTION_LOG_URL) and not settings.COLLABORATOR_API_TOKEN:
            error_msg = "Remote collaborators configured in production but COLLABORATOR_API_TOKEN is missing"
            logger.error(error_msg)
            raise ValueError(error_msg)

        logger.info("Production safety gates validated")

    logger.info("Configuration validation complete")
    logger.info(f"Environment: {settings.ENV}")
    logger.info(
        f"Balance ledger: {'remote' if settings.BALANCE_SERVICE_URL else 'local'}, "
        f"transaction log: {'remote' if settings.TRANSACTION_LOG_URL else 'local'}"
    )
