from typing import Any, Sequence
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.exceptions import CostLensException


def insert_ignoring_conflicts(
    db: AsyncSession,
    model: Any,
    values: Sequence[dict[str, Any]] | dict[str, Any],
    index_elements: Sequence[str],
):
    """
    Build an ``INSERT ... ON CONFLICT DO NOTHING`` for the session's dialect.
    Conflicting rows are skipped by the database, the rest are inserted atomically.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise CostLensException(
            f"Unsupported database dialect for idempotent inserts: {dialect}",
            code="unsupported_dialect",
        )
    return stmt.values(values).on_conflict_do_nothing(index_elements=list(index_elements))
