"""
Dialect-aware upsert helpers.

``INSERT .. ON CONFLICT (natural key) DO UPDATE`` for PostgreSQL and SQLite.
The surrogate key is never part of the update set, so an existing row keeps
its identity while every listed attribute is overwritten.
"""

from typing import Any, Dict, Iterable, List, Sequence, Set, Type

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_warehouse.database.models import Base

logger = structlog.get_logger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    """Yield consecutive slices of at most ``size`` items"""
    for i in range(0, len(items), size):
        yield items[i:i + size]


def dialect_insert(session: AsyncSession, model: Type[Base]):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect"""
    dialect = session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Upsert is not supported for dialect '{dialect}'")
    return insert(model)


async def upsert_rows(
    session: AsyncSession,
    model: Type[Base],
    records: List[Dict[str, Any]],
    conflict_column: str,
    update_columns: Sequence[str],
    batch_size: int = 500,
) -> None:
    """
    Insert new rows and refresh existing ones, keyed by ``conflict_column``.

    Args:
        session: Session of the running cycle
        model: Target table model
        records: Rows to write, unique on ``conflict_column``
        conflict_column: Unique natural-key column
        update_columns: Columns overwritten when the key already exists
        batch_size: Rows per statement
    """
    for chunk in chunked(records, batch_size):
        stmt = dialect_insert(session, model).values(list(chunk))
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=[conflict_column],
                set_={col: stmt.excluded[col] for col in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[conflict_column])
        await session.execute(stmt)

    logger.debug("Upserted rows", table=model.__tablename__, rows=len(records))


async def fetch_key_map(
    session: AsyncSession,
    natural_column,
    surrogate_column,
    keys: Iterable[Any],
    batch_size: int = 500,
) -> Dict[Any, int]:
    """Map natural keys to surrogate keys for the given keys that exist"""
    wanted = list(dict.fromkeys(keys))
    mapping: Dict[Any, int] = {}
    for chunk in chunked(wanted, batch_size):
        result = await session.execute(
            select(natural_column, surrogate_column).where(natural_column.in_(chunk))
        )
        mapping.update({nk: sk for nk, sk in result.all()})
    return mapping


async def existing_keys(
    session: AsyncSession,
    natural_column,
    keys: Iterable[Any],
    batch_size: int = 500,
) -> Set[Any]:
    """Subset of ``keys`` already present in ``natural_column``"""
    wanted = list(dict.fromkeys(keys))
    found: Set[Any] = set()
    for chunk in chunked(wanted, batch_size):
        result = await session.execute(select(natural_column).where(natural_column.in_(chunk)))
        found.update(result.scalars().all())
    return found
