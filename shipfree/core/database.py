from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

logger = logging.getLogger(__name__)


def create_database_engine(
    database_url: str,
    *,
    pool_min_size: int = 1,
    pool_max_size: int = 5,
    echo: bool = False,
    auto_create_schema: bool = False,
) -> Engine:
    """Build a synchronous SQLAlchemy engine for the billing tables."""
    if not database_url:
        raise ValueError("DATABASE_URL is required to create a database engine.")

    parsed_url = make_url(database_url)
    sync_url, connect_args, drivername = coerce_sync_database_url(parsed_url)
    pool_min = max(pool_min_size, 1)
    pool_max = max(pool_max_size, pool_min)
    is_sqlite = drivername.startswith("sqlite")
    engine_kwargs: dict[str, Any] = {
        "echo": echo,
        "connect_args": connect_args,
        "pool_pre_ping": not is_sqlite,
    }
    if is_sqlite and parsed_url.database in (None, "", ":memory:"):
        engine_kwargs["poolclass"] = StaticPool
    elif not is_sqlite:
        engine_kwargs["pool_size"] = pool_min
        engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)
        engine_kwargs["pool_recycle"] = 300

    engine = create_engine(sync_url, **engine_kwargs)
    if auto_create_schema:
        # Registers the billing tables on SQLModel.metadata.
        import shipfree.models.billing  # noqa: F401

        SQLModel.metadata.create_all(engine)
    logger.info("database.engine.created", extra={"driver": drivername})
    return engine


def coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql"):
        if "sslmode" not in query and (removed_ssl or "supabase.co" in host):
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def check_database_health(engine: Engine | None) -> bool:
    """Check if database is accessible."""
    if engine is None:
        return True  # No database configured, consider healthy

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.error("database.health.failed", extra={"error": str(exc)})
        return False
