from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy import Table
from sqlalchemy.sql.expression import Executable

from src.bookkeeping.errors import ConfigError


def upsert_statement(
    table: Table,
    values: Mapping[str, Any],
    *,
    key: Sequence[str],
    update: Sequence[str],
    dialect_name: str,
) -> Executable:
    """
    INSERT that overwrites only `update` columns when the natural `key` already exists.

    The store's unique index decides the conflict, so two concurrent callers cannot
    both insert the same key.
    """
    if dialect_name in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert as mysql_insert

        stmt = mysql_insert(table).values(**values)
        if not update:
            return stmt.prefix_with("IGNORE")
        return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in update})

    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        raise ConfigError(f"Upsert is not supported for dialect {dialect_name!r}")

    stmt = dialect_insert(table).values(**values)
    if not update:
        return stmt.on_conflict_do_nothing(index_elements=list(key))
    return stmt.on_conflict_do_update(index_elements=list(key), set_={c: stmt.excluded[c] for c in update})
