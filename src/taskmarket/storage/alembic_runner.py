"""Programmatic access to the marketplace Alembic migrations."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path`` regardless of the working directory."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str:
    script = ScriptDirectory.from_config(migration_config(Path(":memory:")))
    head = script.get_current_head()
    if head is None:
        raise RuntimeError("No Alembic revisions found.")
    return head


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``, ``None`` for a fresh database."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> str:
    """Apply pending migrations to ``db_path``; returns the head revision."""

    head = head_revision()
    current = current_revision(db_path)
    if current == head:
        return head
    logger.info("Migrating %s from %s to %s", db_path, current or "empty", head)
    command.upgrade(migration_config(db_path), "head")
    return head
