"""
Dialect-compatible SQL helpers: PostgreSQL in production, SQLite in tests.
"""
from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_ignore_conflict(db: AsyncSession, table: Table, index_elements: list[str], values: dict):
    """
    Build ``INSERT ... ON CONFLICT (index_elements) DO NOTHING`` for the session's dialect.

    The executed statement's rowcount is 1 when the row was inserted and 0
    when a concurrent writer got there first.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table)
    else:
        raise NotImplementedError(f"insert_ignore_conflict is not supported on {dialect}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=index_elements)
