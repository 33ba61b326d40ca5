"""Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL runs in production and SQLite in tests. Both support
``on_conflict_do_update``/``on_conflict_do_nothing`` with the same signature,
so callers only name the conflict target and the columns to overwrite.
"""

from collections.abc import Callable, Iterable, Sequence
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models.base import utcnow


def dialect_insert(session: AsyncSession, model: type) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert is not supported on {dialect}")


def _touch_columns(model: type) -> dict[str, Any]:
    columns = model.__table__.columns
    # MergeRequest.updated_at is GitHub's timestamp, not the row's
    if "row_updated_at" in columns:
        return {"row_updated_at": utcnow()}
    if "updated_at" in columns:
        return {"updated_at": utcnow()}
    return {}


async def upsert(
    session: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Iterable[str] | None = None,
    where: Callable[[Any], Any] | None = None,
) -> int:
    """Insert a row or update it on a unique key conflict. Returns the row id.

    ``where`` receives the ``excluded`` row and returns a guard for the update
    (e.g. only newer payloads win). When the guard rejects the update the
    existing row id is still returned.
    """
    if update_columns is None:
        update_columns = [c for c in values if c not in conflict_columns]

    stmt = dialect_insert(session, model).values(**values)
    set_ = {column: stmt.excluded[column] for column in update_columns}
    if set_:
        set_.update(_touch_columns(model))
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_=set_,
            where=where(stmt.excluded) if where is not None else None,
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))

    result = await session.execute(stmt.returning(model.id))
    row_id = result.scalar_one_or_none()
    if row_id is not None:
        return row_id

    lookup = await session.execute(
        select(model.id).where(
            and_(*(getattr(model, column) == values[column] for column in conflict_columns))
        )
    )
    return lookup.scalar_one()


async def insert_ignore(
    session: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> bool:
    """Insert a row unless the unique key already exists. Returns True if inserted."""
    stmt = (
        dialect_insert(session, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)
