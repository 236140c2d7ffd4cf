from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from src.bookkeeping.errors import ConfigError

DEFAULT_DATABASE_URL = "sqlite:///./data/ledger.db"


def read_connection_file(path: Path) -> str:
    """First non-blank, non-comment line of the file is an SQLAlchemy URL."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ConfigError(f"Could not read connection file {path}: {e}") from e
    for line in lines:
        s = line.strip()
        if s and not s.startswith("#"):
            return s
    raise ConfigError(f"Connection file {path} is empty")


def get_database_url(
    *,
    override: Optional[str] = None,
    connection_file: Optional[Path] = None,
    config_url: Optional[str] = None,
) -> str:
    if override:
        return override
    env = os.environ.get("DATABASE_URL", "").strip()
    if env:
        return env
    if connection_file is not None and connection_file.exists():
        return read_connection_file(connection_file)
    return config_url or DEFAULT_DATABASE_URL


def _sqlite_connect(dbapi_conn, connection_record) -> None:
    # Let SQLAlchemy own BEGIN so SAVEPOINTs and transactional DDL behave.
    dbapi_conn.isolation_level = None
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA foreign_keys = ON")
    finally:
        cur.close()


def _sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def create_ledger_engine(url: str, *, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, future=True, echo=echo, connect_args=connect_args)
    if engine.url.get_backend_name() == "sqlite":
        # ON DELETE CASCADE / SET NULL are inert in SQLite without the pragma.
        event.listen(engine, "connect", _sqlite_connect)
        event.listen(engine, "begin", _sqlite_begin)
    return engine


def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)
