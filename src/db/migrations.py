from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import Index, Table, inspect, select, text
from sqlalchemy.engine import Connection
from sqlalchemy.schema import CreateColumn, CreateIndex, CreateTable
from sqlalchemy.sql.expression import Executable

from src.db.models import Base, SchemaMigration
from src.db.upsert import upsert_statement
from src.utils.time import utcnow

# A builder returns the statement to run, or None when its effect is already in place.
Builder = Callable[[Connection], Optional[Executable]]


@dataclass(frozen=True)
class Statement:
    label: str
    build: Builder


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: Callable[[], list[Statement]]


def _table_names(conn: Connection) -> set[str]:
    return set(inspect(conn).get_table_names())


def _table_columns(conn: Connection, table: str) -> set[str]:
    return {str(c["name"]) for c in inspect(conn).get_columns(table)}


def _index_names(conn: Connection, table: str) -> set[str]:
    insp = inspect(conn)
    names = {str(ix["name"]) for ix in insp.get_indexes(table) if ix.get("name")}
    names |= {str(uc["name"]) for uc in insp.get_unique_constraints(table) if uc.get("name")}
    return names


def create_table(table: Table) -> Statement:
    def build(conn: Connection) -> Optional[Executable]:
        if table.name in _table_names(conn):
            return None
        return CreateTable(table, if_not_exists=True)

    return Statement(label=f"create table {table.name}", build=build)


def create_index(index: Index) -> Statement:
    table = index.table
    assert table is not None

    def build(conn: Connection) -> Optional[Executable]:
        if index.name in _index_names(conn, table.name):
            return None
        return CreateIndex(index)

    return Statement(label=f"create index {index.name}", build=build)


def add_column(table: Table, column_name: str) -> Statement:
    column = table.c[column_name]

    def build(conn: Connection) -> Optional[Executable]:
        if column_name in _table_columns(conn, table.name):
            return None
        ddl = CreateColumn(column).compile(dialect=conn.dialect)
        return text(f"ALTER TABLE {table.name} ADD COLUMN {ddl}")

    return Statement(label=f"add column {table.name}.{column_name}", build=build)


def foreign_key_ddl(table: Table, column_name: str) -> Executable:
    fk = next(iter(table.c[column_name].foreign_keys))
    ref = fk.column
    sql = (
        f"ALTER TABLE {table.name} ADD CONSTRAINT {fk.constraint.name} "
        f"FOREIGN KEY ({column_name}) REFERENCES {ref.table.name} ({ref.name})"
    )
    if fk.ondelete:
        sql += f" ON DELETE {fk.ondelete}"
    return text(sql)


def add_foreign_key(table: Table, column_name: str) -> Statement:
    name = next(iter(table.c[column_name].foreign_keys)).constraint.name

    def build(conn: Connection) -> Optional[Executable]:
        # SQLite cannot add a constraint to an existing table; the column stays unconstrained there.
        if conn.dialect.name == "sqlite":
            return None
        existing = {str(fk["name"]) for fk in inspect(conn).get_foreign_keys(table.name) if fk.get("name")}
        if name in existing:
            return None
        return foreign_key_ddl(table, column_name)

    return Statement(label=f"add foreign key {name}", build=build)


def create_unique_index(table: Table, name: str, *columns: str) -> Statement:
    def build(conn: Connection) -> Optional[Executable]:
        if name in _index_names(conn, table.name):
            return None
        return text(f"CREATE UNIQUE INDEX {name} ON {table.name} ({', '.join(columns)})")

    return Statement(label=f"create unique index {name}", build=build)


def migration_log_statement() -> Statement:
    return create_table(SchemaMigration.__table__)


def record_migration_statement(migration: Migration) -> Statement:
    log = SchemaMigration.__table__

    def build(conn: Connection) -> Optional[Executable]:
        exists = conn.execute(select(log.c.version).where(log.c.version == migration.version)).first()
        if exists is not None:
            return None
        return upsert_statement(
            log,
            {"version": migration.version, "name": migration.name, "applied_at": utcnow()},
            key=["version"],
            update=[],
            dialect_name=conn.dialect.name,
        )

    return Statement(label=f"record migration {migration.version}", build=build)


# --- Versions ---


def _initial_ledger_schema() -> list[Statement]:
    out: list[Statement] = []
    tables = [t for t in Base.metadata.sorted_tables if t.name != SchemaMigration.__tablename__]
    for table in tables:
        out.append(create_table(table))
    for table in tables:
        for index in sorted(table.indexes, key=lambda ix: str(ix.name)):
            out.append(create_index(index))
    return out


def _merged_revision_columns() -> list[Statement]:
    # Stores created by the legacy shell applicator predate these columns.
    md = Base.metadata.tables
    transactions = md["transactions"]
    categories = md["thai_accounting_categories"]
    return [
        add_column(transactions, "account"),
        add_column(transactions, "memo"),
        add_column(transactions, "description_norm"),
        add_column(transactions, "counterparty_norm"),
        add_column(transactions, "account_norm"),
        add_column(transactions, "memo_norm"),
        add_column(md["classifications"], "source"),
        add_column(categories, "parent_id"),
        add_foreign_key(categories, "parent_id"),
        create_unique_index(categories, "uniq_thai_categories_parent_name", "parent_id", "name_th"),
        create_unique_index(md["reports"], "uniq_reports_type_period", "report_type", "period_start", "period_end"),
    ]


MIGRATIONS: list[Migration] = [
    Migration(version=1, name="initial_ledger_schema", statements=_initial_ledger_schema),
    Migration(version=2, name="merged_revision_columns", statements=_merged_revision_columns),
]
