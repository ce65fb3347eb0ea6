"""Database handle and unit-of-work boundary shared by all engines."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlmodel import Session

from taskmarket.storage.alembic_runner import upgrade_head
from taskmarket.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One database transaction plus callbacks to run once it is committed."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._after_commit: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Register a side effect that must only happen if the unit commits."""

        self._after_commit.append(callback)

    def run_after_commit_hooks(self) -> None:
        hooks, self._after_commit = self._after_commit, []
        for hook in hooks:
            try:
                hook()
            except Exception:  # noqa: BLE001
                logger.exception("After-commit hook failed")


class Database:
    """SQLite database with the marketplace transaction policy."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.read_engine = self.engine.execution_options(sqlite_begin="DEFERRED")

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    @contextmanager
    def unit_of_work(self, uow: UnitOfWork | None = None) -> Iterator[UnitOfWork]:
        """Join ``uow`` when given, otherwise open, commit and close a new unit.

        A joined unit is committed or rolled back by whoever opened it. An owned
        unit rolls back on any exception and runs its after-commit hooks only
        after a successful commit.
        """

        if uow is not None:
            yield uow
            return

        with Session(self.engine, expire_on_commit=False) as session:
            unit = UnitOfWork(session)
            try:
                yield unit
                session.commit()
            except Exception:
                session.rollback()
                raise
        unit.run_after_commit_hooks()

    @contextmanager
    def read_session(self) -> Iterator[Session]:
        """Session for read-only queries; its transaction takes no write lock."""

        with Session(self.read_engine, expire_on_commit=False) as session:
            yield session
