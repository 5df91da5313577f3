from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def get_metadata():
    from citycircle.db import Base
    from citycircle import models  # noqa: F401 (registers tables on Base)

    return Base.metadata


def get_url() -> str:
    # run_migrations sets sqlalchemy.url from DATABASE_URL; the CLI falls back to settings
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    from citycircle.core.config import settings

    return settings.database_url


def run_migrations_offline():
    """Run migrations in 'offline' mode."""
    context.configure(url=get_url(), target_metadata=get_metadata(), literal_binds=True)

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=get_metadata(),
            # SQLite cannot ALTER constraints in place
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
