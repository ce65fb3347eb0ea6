"""Storage layer: SQLite engine policy, ORM tables, migrations and units of work."""

from taskmarket.storage.database import Database, UnitOfWork

__all__ = ["Database", "UnitOfWork"]
