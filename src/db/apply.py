from __future__ import annotations

import datetime as dt
import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from sqlalchemy import inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import CompileError, SQLAlchemyError
from sqlalchemy.sql.expression import Executable

from src.bookkeeping.config import SeedConfig
from src.bookkeeping.errors import ApplyError, LedgerError
from src.db.migrations import MIGRATIONS, Migration, Statement, migration_log_statement, record_migration_statement
from src.db.models import SchemaMigration
from src.db.seed import seed_statements

log = logging.getLogger(__name__)

Progress = Callable[[str], None]


@dataclass
class ApplyResult:
    migrations_applied: list[int] = field(default_factory=list)
    statements_executed: int = 0
    statements_skipped: int = 0
    seed_rows: int = 0


def _render(clause: Optional[Executable], engine: Engine) -> str:
    if clause is None:
        return ""
    try:
        return str(clause.compile(dialect=engine.dialect, compile_kwargs={"literal_binds": True}))
    except (CompileError, NotImplementedError):
        return str(clause.compile(dialect=engine.dialect))


def _execute(engine: Engine, index: int, stmt: Statement, result: ApplyResult, emit: Progress) -> bool:
    """Run one statement in its own transaction. Returns False when it was already in effect."""
    clause: Optional[Executable] = None
    try:
        with engine.begin() as conn:
            clause = stmt.build(conn)
            if clause is None:
                result.statements_skipped += 1
                log.debug("Statement #%s (%s) already in effect", index, stmt.label)
                emit(f"  [{index}] {stmt.label}: already in place")
                return False
            conn.execute(clause)
    except (SQLAlchemyError, LedgerError) as e:
        log.error("Statement #%s (%s) failed: %s", index, stmt.label, e)
        raise ApplyError(index=index, label=stmt.label, sql=_render(clause, engine), cause=e) from e
    result.statements_executed += 1
    emit(f"  [{index}] {stmt.label}")
    return True


def applied_versions(engine: Engine) -> list[tuple[int, str, dt.datetime]]:
    if not inspect(engine).has_table(SchemaMigration.__tablename__):
        return []
    t = SchemaMigration.__table__
    with engine.connect() as conn:
        rows = conn.execute(select(t.c.version, t.c.name, t.c.applied_at).order_by(t.c.version)).fetchall()
    return [(int(r[0]), str(r[1]), r[2]) for r in rows]


def pending_migrations(engine: Engine) -> list[Migration]:
    done = {v for v, _, _ in applied_versions(engine)}
    return [m for m in MIGRATIONS if m.version not in done]


def apply_schema(
    engine: Engine,
    *,
    seed: Optional[SeedConfig] = None,
    progress: Optional[Progress] = None,
) -> ApplyResult:
    """
    Bring the store up to the current schema version and upsert reference rows.

    Safe to call any number of times:
    - each statement checks whether its effect is already present and runs in its own transaction;
    - a migration version is logged only after all of its statements succeed;
    - seed rows are upserts keyed on natural keys.

    The first failing statement raises ApplyError; statements before it stay applied.
    """
    emit: Progress = progress or (lambda line: None)
    result = ApplyResult()
    counter: Iterator[int] = itertools.count(1)

    emit("Creating tables (idempotent)...")
    _execute(engine, next(counter), migration_log_statement(), result, emit)
    for migration in pending_migrations(engine):
        emit(f"Applying migration {migration.version} ({migration.name})...")
        log.info("Applying migration %s (%s)", migration.version, migration.name)
        for stmt in migration.statements():
            _execute(engine, next(counter), stmt, result, emit)
        _execute(engine, next(counter), record_migration_statement(migration), result, emit)
        result.migrations_applied.append(migration.version)

    statements = seed_statements(seed)
    if statements:
        emit("Seeding reference data (idempotent)...")
        for stmt in statements:
            if _execute(engine, next(counter), stmt, result, emit):
                result.seed_rows += 1

    log.info(
        "Schema apply finished: migrations=%s executed=%s skipped=%s seed_rows=%s",
        result.migrations_applied,
        result.statements_executed,
        result.statements_skipped,
        result.seed_rows,
    )
    emit("Done.")
    return result
