"""
Engine and session holder plus the Alembic schema gate.

The service refuses to run against a schema that is not at the Alembic head
unless AUTO_MIGRATE_ON_STARTUP allows it to upgrade in place.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

import prime_memory.config as config

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str):
    """Create an engine; sqlite connections get cross-thread access and FK enforcement."""
    is_sqlite = url.lower().startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def bind_engine(engine) -> None:
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def alembic_config(connection=None):
    """Alembic config for this project; a passed connection is reused by env.py."""
    from alembic.config import Config

    cfg = Config(os.path.join(_PROJECT_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(_PROJECT_ROOT, "alembic"))
    if config.DATABASE_URL:
        cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    # keep the service logging configuration when migrating in-process
    cfg.attributes["skip_logging_config"] = True
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """(current revision stamped in the database, head revision on disk)."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def migrate_to_head(engine) -> None:
    from alembic import command

    with engine.begin() as conn:
        command.upgrade(alembic_config(conn), "head")


def ensure_schema(engine) -> None:
    current, head = schema_revisions(engine)
    if current == head:
        return

    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema out of date (current={current}, expected={head}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    config.logger.info("schema_upgrade", extra={"from_revision": current, "to_revision": head})
    migrate_to_head(engine)
    if schema_revisions(engine)[0] != head:
        raise RuntimeError("Database migration did not reach expected revision")


def init_db() -> None:
    """Validate configuration, bind the engine and bring the schema to head."""
    config.validate_and_prepare_config()

    config.logger.info("database_connecting", extra={"backend": config.DB_BACKEND_EFFECTIVE})
    bind_engine(create_db_engine(config.DATABASE_URL))
    ensure_schema(DB.engine)

    config.logger.info("database_ready")
