import os
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context

from clinic_outreach.database import Base
from clinic_outreach.models import *  # noqa: F401,F403 - Import all models for autogenerate

config = context.config

database_url = os.getenv("DATABASE_URL_SYNC")
if not database_url:
    # Fall back: convert async DATABASE_URL to sync format for Alembic
    async_url = os.getenv("DATABASE_URL", "")
    if async_url:
        database_url = async_url.replace("+asyncpg", "+psycopg2")
        if database_url.startswith("postgresql://"):
            database_url = database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
if not database_url:
    from clinic_outreach.config import get_settings
    database_url = get_settings().DATABASE_URL_SYNC
config.set_main_option("sqlalchemy.url", database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
