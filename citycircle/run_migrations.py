"""
Run Alembic migrations programmatically.

Called from the app lifespan when RUN_MIGRATIONS_ON_STARTUP is set, or
directly with `python -m citycircle.run_migrations`. Alembic is a no-op when
the schema is already at head.
"""
from pathlib import Path
import logging

from alembic import command
from alembic.config import Config

from .core.config import settings

logger = logging.getLogger(__name__)


def _safe_url(database_url: str) -> str:
    return database_url.split('@')[-1] if '@' in database_url else database_url


def build_alembic_config(database_url: str = None) -> Config:
    # alembic.ini lives at the project root, one level above the package
    project_root = Path(__file__).resolve().parents[1]
    alembic_ini = project_root / "alembic.ini"

    if not alembic_ini.exists():
        logger.error(f"Alembic config not found at {alembic_ini}")
        raise FileNotFoundError(f"Alembic config not found at {alembic_ini}")

    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(project_root / "alembic"))
    # Runtime DATABASE_URL overrides the alembic.ini default
    cfg.set_main_option("sqlalchemy.url", database_url or settings.database_url)
    return cfg


def run_migrations(database_url: str = None) -> None:
    """Run Alembic migrations up to head."""
    cfg = build_alembic_config(database_url)
    url = cfg.get_main_option("sqlalchemy.url")

    logger.info(f"Running Alembic migrations to head on {_safe_url(url)}")
    try:
        command.upgrade(cfg, "head")
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        raise
    logger.info("Alembic migrations complete.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    run_migrations()
