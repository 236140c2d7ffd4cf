from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.db.models import Base
from src.db.session import create_ledger_engine, session_factory


@pytest.fixture()
def session() -> Session:
    engine = create_ledger_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    SessionLocal = session_factory(engine)
    with SessionLocal() as s:
        yield s
    engine.dispose()


@pytest.fixture()
def statement_upload(session):
    from src.bookkeeping.ledger import create_upload

    return create_upload(
        session,
        upload_type="bank_statement",
        original_filename="kbank_2025_01.pdf",
        statement_period_start=dt.date(2025, 1, 1),
        statement_period_end=dt.date(2025, 1, 31),
    )
