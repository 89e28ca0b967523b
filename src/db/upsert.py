"""Dialect-aware INSERT ... ON CONFLICT helpers.

Every write that can race (entity mappings, natural-key upserts of local
records, breaker state, webhook dedup) goes through these helpers so the
database resolves the race atomically instead of a read-then-write.
"""

from typing import Any

from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(session: AsyncSession, table: Table) -> Any:
    """Return the dialect-specific insert() construct for a table.

    Args:
        session: Session whose bind decides the dialect.
        table: Target table.

    Returns:
        An Insert supporting on_conflict_do_update/on_conflict_do_nothing.

    Raises:
        NotImplementedError: If the dialect has no ON CONFLICT support.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table)
    raise NotImplementedError(f"Atomic upsert not supported for dialect '{dialect}'")


async def upsert(
    session: AsyncSession,
    table: Table,
    values: dict[str, Any],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> Any:
    """Insert a row or update it in place when the unique key already exists.

    Args:
        session: Active session; the caller owns the transaction.
        table: Target table.
        values: Column values for the insert.
        conflict_columns: Columns of the unique constraint to resolve on.
        update_columns: Columns overwritten on conflict. Defaults to every
            inserted column except the conflict columns and ``id``/``created_at``.

    Returns:
        The primary key ``id`` of the inserted or updated row.
    """
    if update_columns is None:
        update_columns = [
            key for key in values
            if key not in conflict_columns and key not in ("id", "created_at")
        ]
    stmt = dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={col: stmt.excluded[col] for col in update_columns},
    ).returning(table.c.id)
    result = await session.execute(stmt)
    return result.scalar_one()


async def insert_ignore(
    session: AsyncSession,
    table: Table,
    values: dict[str, Any],
    conflict_columns: list[str],
) -> Any | None:
    """Insert a row unless the unique key already exists.

    Args:
        session: Active session; the caller owns the transaction.
        table: Target table.
        values: Column values for the insert.
        conflict_columns: Columns of the unique constraint to resolve on.

    Returns:
        The new row's ``id``, or None when an existing row won.
    """
    stmt = (
        dialect_insert(session, table)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns)
        .returning(table.c.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
