"""
Environment detection helpers.

Everything keys off settings.ENV only. Production safety gates (config
validation, the database engine, error detail in 500 responses) all ask these
helpers so they agree on what "production" means.
"""
from .config import settings

LOCAL_ENVS = {"local", "dev", "test"}
PRODUCTION_ENVS = {"prod", "production"}


def get_env_name() -> str:
    """Current environment name, lowercased. Defaults to 'dev'."""
    return (settings.ENV or "dev").lower()


def is_local_env() -> bool:
    return get_env_name() in LOCAL_ENVS


def is_production_env() -> bool:
    """True for 'prod' and 'production'. Staging runs without the production gates."""
    return get_env_name() in PRODUCTION_ENVS
