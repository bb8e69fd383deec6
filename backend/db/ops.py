"""Database lifecycle helpers for the CLI and API startup."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

import psycopg
from psycopg import sql
from psycopg.errors import InvalidCatalogName

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url

from backend.db import models

LOGGER = logging.getLogger(__name__)

# Serializes "alembic upgrade" between API startup and CLI runs on Postgres.
_ADVISORY_LOCK_ID = 582113

# Tables whose presence means the schema was built by ensure_schema() rather than Alembic.
CATALOG_CORE_TABLES = ("products", "plants", "offers", "ingestion_sources", "ingestion_entities")


def _resolve_database_url(database_url: Optional[str] = None) -> str:
    return database_url or os.getenv("DATABASE_URL") or models.DEFAULT_DATABASE_URL


def _is_postgres(database_url: str) -> bool:
    return make_url(database_url).get_backend_name().startswith("postgresql")


def _make_alembic_config(database_url: Optional[str] = None) -> Config:
    base_dir = Path(__file__).resolve().parent.parent.parent
    cfg = Config(str(base_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parent / "migrations"))

    url = _resolve_database_url(database_url)
    cfg.set_main_option("sqlalchemy.url", url)
    cfg.attributes["database_url"] = url
    cfg.attributes["configure_logger"] = False
    return cfg


def _driverless_dsn(database_url: str, database: Optional[str] = None) -> str:
    url = make_url(database_url).set(drivername="postgresql")
    if database is not None:
        url = url.set(database=database)
    return url.render_as_string(hide_password=False)


@contextmanager
def migration_lock(database_url: str) -> Iterator[None]:
    """Hold a Postgres advisory lock for the duration of the block; no-op elsewhere."""
    if not _is_postgres(database_url):
        yield
        return

    conn = psycopg.connect(_driverless_dsn(database_url), autocommit=True)
    try:
        conn.execute("SELECT pg_advisory_lock(%s)", (_ADVISORY_LOCK_ID,))
        LOGGER.info("Acquired migration advisory lock (%s)", _ADVISORY_LOCK_ID)
        yield
    finally:
        try:
            conn.close()
            LOGGER.info("Released migration advisory lock (%s)", _ADVISORY_LOCK_ID)
        except psycopg.Error as exc:
            LOGGER.warning("Failed to release migration advisory lock: %s", exc)


def ensure_database(database_url: Optional[str] = None) -> None:
    """Create the Postgres database named in the URL if it does not exist yet."""
    url = _resolve_database_url(database_url)
    if not _is_postgres(url):
        # SQLite creates the file on first connect.
        models.get_engine(url)
        return

    try:
        with psycopg.connect(_driverless_dsn(url), autocommit=True) as conn:
            conn.execute("SELECT 1")
            return
    except InvalidCatalogName:
        target_db = make_url(url).database
        if not target_db:
            raise RuntimeError("DATABASE_URL must include a database name for Postgres")
        LOGGER.info("Database %s missing; creating it", target_db)
        with psycopg.connect(_driverless_dsn(url, database="postgres"), autocommit=True) as conn:
            conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(target_db)))
    except psycopg.OperationalError as exc:
        raise RuntimeError(f"Unable to connect to Postgres server: {exc}") from exc


def sync_database(database_url: Optional[str] = None) -> str:
    """Bring the schema to the latest migration.

    A database created by ``ensure_schema`` (core tables present but no
    ``alembic_version``) is stamped instead of upgraded.
    """
    url = _resolve_database_url(database_url)
    ensure_database(url)

    inspector = inspect(models.get_engine(url))
    has_version = inspector.has_table("alembic_version")
    has_core_tables = any(inspector.has_table(name) for name in CATALOG_CORE_TABLES)
    cfg = _make_alembic_config(url)

    with migration_lock(url):
        if not has_version and has_core_tables:
            LOGGER.info("Catalog tables exist without alembic_version; stamping head")
            command.stamp(cfg, "head")
            return "stamped"

        LOGGER.info("Running Alembic upgrade to head")
        command.upgrade(cfg, "head")
        return "upgraded"


def database_status(database_url: Optional[str] = None) -> Dict[str, object]:
    url = _resolve_database_url(database_url)
    head = ScriptDirectory.from_config(_make_alembic_config(url)).get_current_head()
    with models.get_engine(url).connect() as connection:
        current = MigrationContext.configure(connection).get_current_revision()
    return {
        "backend": make_url(url).get_backend_name(),
        "current": current,
        "head": head,
        "up_to_date": current == head,
    }


def stamp_head(database_url: Optional[str] = None) -> None:
    url = _resolve_database_url(database_url)
    command.stamp(_make_alembic_config(url), "head")


def reset_schema(database_url: Optional[str] = None) -> None:
    url = _resolve_database_url(database_url)
    engine = models.get_engine(url)

    if _is_postgres(url):
        LOGGER.warning("Dropping and recreating public schema for %s", make_url(url).database)
        with engine.connect() as connection:
            connection.execution_options(isolation_level="AUTOCOMMIT")
            connection.execute(text("DROP SCHEMA IF EXISTS public CASCADE"))
            connection.execute(text("CREATE SCHEMA public"))
    else:
        LOGGER.warning("Dropping all catalog tables for %s", url)
        models.Base.metadata.drop_all(engine)
        with engine.begin() as connection:
            connection.execute(text("DROP TABLE IF EXISTS alembic_version"))

    sync_database(url)


__all__ = [
    "CATALOG_CORE_TABLES",
    "migration_lock",
    "ensure_database",
    "sync_database",
    "database_status",
    "stamp_head",
    "reset_schema",
]
