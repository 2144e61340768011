from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# importing the model registry makes every table visible to autogenerate
from pricehub.db.base import Base
from pricehub.core.config import settings

config = context.config


def _alembic_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url") or settings.database_url
    # Alembic runs synchronously; swap the async driver for psycopg2
    return url.replace("+asyncpg", "+psycopg2")


config.set_main_option("sqlalchemy.url", _alembic_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
