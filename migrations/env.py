"""Alembic environment for the billing tables."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine.url import make_url
from sqlmodel import SQLModel

from shipfree.config import settings
from shipfree.core.database import coerce_sync_database_url
from shipfree.models import billing  # noqa: F401 - registers the billing tables

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("shipfree.migrations")
target_metadata = SQLModel.metadata


def billing_database_url() -> tuple[str, dict[str, Any]]:
    """DATABASE_URL wins over alembic.ini, which wins over app settings."""
    for source, value in (
        ("env", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("settings", settings.database_url),
    ):
        if value:
            url, connect_args, _ = coerce_sync_database_url(make_url(value))
            logger.info(
                "migrations.database_url",
                extra={
                    "source": source,
                    "url": make_url(url).render_as_string(hide_password=True),
                },
            )
            return url, connect_args
    raise RuntimeError("DATABASE_URL must be set to run billing migrations.")


def run_migrations_offline() -> None:
    url, _ = billing_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url, connect_args = billing_database_url()
    engine = create_engine(url, poolclass=pool.NullPool, connect_args=connect_args)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection, target_metadata=target_metadata, compare_type=True
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
