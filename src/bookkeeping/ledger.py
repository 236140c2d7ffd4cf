from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.bookkeeping.errors import (
    DomainError,
    ReferentialIntegrityError,
    UniquenessViolation,
    translate_integrity_error,
)
from src.bookkeeping.normalize import (
    normalize_account,
    normalize_counterparty,
    normalize_description,
    normalize_memo,
)
from src.db.models import (
    CATEGORY_TYPES,
    RUN_FINISHED,
    USER_ROLES,
    Base,
    Category,
    Classification,
    ReconciliationResult,
    ReconciliationRun,
    Report,
    Transaction,
    Upload,
    User,
    Vendor,
    check_email,
    check_enum,
    check_text,
)
from src.db.upsert import upsert_statement
from src.utils.time import utcnow

log = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)

_UNSET: Any = object()


def _add(session: Session, obj: M, *, context: str) -> M:
    # Savepoint per write keeps the outer transaction usable after a constraint failure.
    try:
        with session.begin_nested():
            session.add(obj)
            session.flush()
    except IntegrityError as e:
        raise translate_integrity_error(e, context=context) from e
    return obj


def _flush(session: Session, *, context: str) -> None:
    try:
        with session.begin_nested():
            session.flush()
    except IntegrityError as e:
        raise translate_integrity_error(e, context=context) from e


def _require(session: Session, model: type[M], ident: Optional[int], *, label: str) -> M:
    row = session.get(model, ident) if ident is not None else None
    if row is None:
        raise ReferentialIntegrityError(f"{label} {ident} does not exist")
    return row


def _optional(session: Session, model: type[M], ident: Optional[int], *, label: str) -> Optional[M]:
    if ident is None:
        return None
    return _require(session, model, ident, label=label)


def _upsert(session: Session, model: type[M], values: dict[str, Any], *, key: str, update: list[str]) -> M:
    table = model.__table__
    stmt = upsert_statement(table, values, key=[key], update=update, dialect_name=session.get_bind().dialect.name)
    session.flush()
    try:
        with session.begin_nested():
            session.execute(stmt)
    except IntegrityError as e:
        raise translate_integrity_error(e, context=f"upsert {table.name}") from e
    q = select(model).where(getattr(model, key) == values[key]).execution_options(populate_existing=True)
    return session.execute(q).scalar_one()


def _delete(session: Session, model: type[M], ident: int) -> int:
    """Delete by id and let the store apply ON DELETE rules; in-session state is expired."""
    session.flush()
    res = session.execute(delete(model).where(model.id == int(ident)))
    session.expire_all()
    return int(getattr(res, "rowcount", 0) or 0)


# --- Users ---
def create_user(session: Session, *, email: str, full_name: Optional[str] = None, role: str = "user") -> User:
    return _add(session, User(email=email, full_name=full_name, role=role, is_active=True), context="create user")


def upsert_user(
    session: Session,
    *,
    email: str,
    full_name: Optional[str] = None,
    role: str = "user",
    is_active: bool = True,
) -> User:
    values = {
        "email": check_email("email", email),
        "full_name": check_text("full_name", full_name, max_len=255, required=False),
        "role": check_enum("role", role, USER_ROLES),
        "is_active": bool(is_active),
        "updated_at": utcnow(),
    }
    return _upsert(session, User, values, key="email", update=["full_name", "role", "is_active", "updated_at"])


def deactivate_user(session: Session, *, user_id: int) -> User:
    # Users are soft-disabled; rows referencing them keep their history.
    user = _require(session, User, user_id, label="user")
    user.is_active = False
    _flush(session, context="deactivate user")
    return user


# --- Categories ---
def _check_root_name(session: Session, name_th: str, *, exclude_code: Optional[str] = None) -> None:
    # The (parent_id, name_th) index does not constrain NULL parents.
    q = session.query(Category.id).filter(Category.parent_id.is_(None), Category.name_th == name_th)
    if exclude_code is not None:
        q = q.filter(Category.code != exclude_code)
    if q.first() is not None:
        raise UniquenessViolation(f"root category named {name_th!r} already exists")


def get_category_by_code(session: Session, code: str) -> Optional[Category]:
    return session.query(Category).filter(Category.code == (code or "").strip()).one_or_none()


def create_category(
    session: Session,
    *,
    code: str,
    name_th: str,
    name_en: Optional[str] = None,
    type: str = "expense",
    parent_id: Optional[int] = None,
) -> Category:
    _optional(session, Category, parent_id, label="parent category")
    row = Category(code=code, name_th=name_th, name_en=name_en, type=type, parent_id=parent_id)
    if parent_id is None:
        _check_root_name(session, row.name_th)
    return _add(session, row, context="create category")


def upsert_category(
    session: Session,
    *,
    code: str,
    name_th: str,
    name_en: Optional[str] = None,
    type: str = "expense",
) -> Category:
    values = {
        "code": check_text("code", code, max_len=32),
        "name_th": check_text("name_th", name_th, max_len=255),
        "name_en": check_text("name_en", name_en, max_len=255, required=False),
        "type": check_enum("type", type, CATEGORY_TYPES),
    }
    existing = get_category_by_code(session, values["code"])
    if existing is None or existing.parent_id is None:
        _check_root_name(session, values["name_th"], exclude_code=values["code"])
    return _upsert(session, Category, values, key="code", update=["name_th", "name_en", "type"])


def delete_category(session: Session, *, category_id: int) -> int:
    return _delete(session, Category, category_id)


# --- Vendors ---
def get_vendor_by_name(session: Session, name: str) -> Optional[Vendor]:
    return session.query(Vendor).filter(Vendor.name == (name or "").strip()).one_or_none()


def create_vendor(
    session: Session,
    *,
    name: str,
    name_th: Optional[str] = None,
    name_en: Optional[str] = None,
    tax_id: Optional[str] = None,
    default_category_id: Optional[int] = None,
) -> Vendor:
    _optional(session, Category, default_category_id, label="category")
    row = Vendor(name=name, name_th=name_th, name_en=name_en, tax_id=tax_id, default_category_id=default_category_id)
    return _add(session, row, context="create vendor")


def upsert_vendor(
    session: Session,
    *,
    name: str,
    name_th: Optional[str] = None,
    name_en: Optional[str] = None,
    default_category_code: Optional[str] = None,
) -> Vendor:
    category_id = None
    if default_category_code:
        category = get_category_by_code(session, default_category_code)
        if category is None:
            raise ReferentialIntegrityError(f"category {default_category_code!r} does not exist")
        category_id = category.id
    values = {
        "name": check_text("name", name, max_len=255),
        "name_th": check_text("name_th", name_th, max_len=255, required=False),
        "name_en": check_text("name_en", name_en, max_len=255, required=False),
        "default_category_id": category_id,
    }
    return _upsert(session, Vendor, values, key="name", update=["name_th", "name_en", "default_category_id"])


def delete_vendor(session: Session, *, vendor_id: int) -> int:
    return _delete(session, Vendor, vendor_id)


# --- Uploads ---
def create_upload(
    session: Session,
    *,
    upload_type: str,
    original_filename: str,
    stored_filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    file_size_bytes: Optional[int] = None,
    sha256: Optional[str] = None,
    source_system: Optional[str] = None,
    statement_period_start: Optional[dt.date] = None,
    statement_period_end: Optional[dt.date] = None,
    uploaded_by_user_id: Optional[int] = None,
) -> Upload:
    _optional(session, User, uploaded_by_user_id, label="user")
    row = Upload(
        upload_type=upload_type,
        original_filename=original_filename,
        stored_filename=stored_filename,
        mime_type=mime_type,
        file_size_bytes=file_size_bytes,
        sha256=sha256,
        source_system=source_system,
        statement_period_start=statement_period_start,
        statement_period_end=statement_period_end,
        uploaded_by_user_id=uploaded_by_user_id,
        status="uploaded",
    )
    return _add(session, row, context="create upload")


def set_upload_status(
    session: Session,
    *,
    upload_id: int,
    status: str,
    error_message: Optional[str] = None,
) -> Upload:
    upload = _require(session, Upload, upload_id, label="upload")
    upload.status = status
    upload.error_message = error_message if status == "failed" else None
    _flush(session, context="set upload status")
    return upload


def delete_upload(session: Session, *, upload_id: int) -> dict[str, int]:
    """
    Delete an upload and, through the store's cascades, its transactions and their
    classifications and reconciliation results.
    """
    session.flush()
    tx_ids = select(Transaction.id).where(Transaction.source_upload_id == int(upload_id))
    tx_count = session.execute(select(func.count()).select_from(tx_ids.subquery())).scalar_one()
    cls_count = session.execute(
        select(func.count(Classification.id)).where(Classification.transaction_id.in_(tx_ids))
    ).scalar_one()
    deleted = _delete(session, Upload, upload_id)
    log.info("Deleted upload %s (transactions=%s classifications=%s)", upload_id, tx_count, cls_count)
    return {
        "uploads_deleted": deleted,
        "transactions_deleted": int(tx_count) if deleted else 0,
        "classifications_deleted": int(cls_count) if deleted else 0,
    }


# --- Transactions ---
def add_transaction(
    session: Session,
    *,
    upload_id: int,
    txn_date: dt.date,
    amount: Decimal | int | str,
    description: str,
    currency: str = "THB",
    posted_at: Optional[dt.datetime] = None,
    counterparty: Optional[str] = None,
    account: Optional[str] = None,
    reference_no: Optional[str] = None,
    memo: Optional[str] = None,
    raw_text: Optional[str] = None,
) -> Transaction:
    _require(session, Upload, upload_id, label="upload")
    row = Transaction(
        source_upload_id=upload_id,
        txn_date=txn_date,
        posted_at=posted_at,
        amount=amount,
        currency=currency,
        description=description,
        counterparty=counterparty,
        account=account,
        reference_no=reference_no,
        memo=memo,
        raw_text=raw_text,
        description_norm=normalize_description(description),
        counterparty_norm=normalize_counterparty(counterparty),
        account_norm=normalize_account(account),
        memo_norm=normalize_memo(memo),
    )
    return _add(session, row, context="add transaction")


def list_transactions(
    session: Session,
    *,
    upload_id: Optional[int] = None,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    currency: Optional[str] = None,
) -> list[Transaction]:
    q = session.query(Transaction)
    if upload_id is not None:
        q = q.filter(Transaction.source_upload_id == int(upload_id))
    if start is not None:
        q = q.filter(Transaction.txn_date >= start)
    if end is not None:
        q = q.filter(Transaction.txn_date <= end)
    if currency:
        q = q.filter(Transaction.currency == currency.strip().upper())
    return q.order_by(Transaction.txn_date.asc(), Transaction.id.asc()).all()


# --- Classifications ---
def classify_transaction(
    session: Session,
    *,
    transaction_id: int,
    category_id: Optional[int] = None,
    vendor_id: Optional[int] = None,
    tax_tags: Optional[Iterable[str] | str] = None,
    confidence: Optional[Decimal | float | str] = None,
    source: str = "manual",
    notes: Optional[str] = None,
) -> Classification:
    """One classification per transaction; a second one raises UniquenessViolation."""
    _require(session, Transaction, transaction_id, label="transaction")
    _optional(session, Category, category_id, label="category")
    _optional(session, Vendor, vendor_id, label="vendor")
    row = Classification(
        transaction_id=transaction_id,
        category_id=category_id,
        vendor_id=vendor_id,
        tax_tags=list(tax_tags) if tax_tags is not None and not isinstance(tax_tags, str) else tax_tags,
        confidence=confidence,
        source=source,
        is_overridden=False,
        notes=notes,
    )
    return _add(session, row, context="classify transaction")


def override_classification(
    session: Session,
    *,
    transaction_id: int,
    user_id: int,
    category_id: Optional[int] = _UNSET,
    vendor_id: Optional[int] = _UNSET,
    tax_tags: Optional[Iterable[str] | str] = _UNSET,
    notes: Optional[str] = _UNSET,
) -> Classification:
    """
    Manual correction of a transaction's classification, creating it if absent.

    Confidence becomes unknown (NULL) and the source becomes `manual`.
    """
    _require(session, Transaction, transaction_id, label="transaction")
    _require(session, User, user_id, label="user")
    row = session.query(Classification).filter(Classification.transaction_id == int(transaction_id)).one_or_none()
    if row is None:
        row = _add(session, Classification(transaction_id=transaction_id, source="manual"), context="override")
    if category_id is not _UNSET:
        _optional(session, Category, category_id, label="category")
        row.category_id = category_id
    if vendor_id is not _UNSET:
        _optional(session, Vendor, vendor_id, label="vendor")
        row.vendor_id = vendor_id
    if tax_tags is not _UNSET:
        row.tax_tags = list(tax_tags) if tax_tags is not None and not isinstance(tax_tags, str) else tax_tags
    if notes is not _UNSET:
        row.notes = notes
    row.confidence = None
    row.source = "manual"
    row.is_overridden = True
    row.overridden_by_user_id = user_id
    _flush(session, context="override classification")
    return row


# --- Reconciliation ---
def start_reconciliation_run(
    session: Session,
    *,
    strategy: str = "hybrid",
    parameters: Optional[dict[str, Any]] = None,
    created_by_user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> ReconciliationRun:
    _optional(session, User, created_by_user_id, label="user")
    row = ReconciliationRun(
        strategy=strategy,
        parameters=parameters,
        status="running",
        started_at=utcnow(),
        created_by_user_id=created_by_user_id,
        notes=notes,
    )
    return _add(session, row, context="start reconciliation run")


def finish_reconciliation_run(
    session: Session,
    *,
    run_id: int,
    status: str = "completed",
    notes: Optional[str] = None,
) -> ReconciliationRun:
    if status not in RUN_FINISHED:
        raise DomainError(f"a run can only finish as {'|'.join(RUN_FINISHED)}, got {status!r}")
    run = _require(session, ReconciliationRun, run_id, label="reconciliation run")
    if run.status in RUN_FINISHED:
        raise DomainError(f"reconciliation run {run_id} is already {run.status}")
    if notes is not None:
        run.notes = notes
    run.ended_at = utcnow()
    run.status = status
    _flush(session, context="finish reconciliation run")
    return run


def record_reconciliation_result(
    session: Session,
    *,
    run_id: int,
    transaction_id: int,
    status: str = "unmatched",
    matched_receipt_upload_id: Optional[int] = None,
    match_score: Optional[Decimal | float | str] = None,
    notes: Optional[str] = None,
) -> ReconciliationResult:
    run = _require(session, ReconciliationRun, run_id, label="reconciliation run")
    if run.status in RUN_FINISHED:
        raise DomainError(f"reconciliation run {run_id} is {run.status}; results are closed")
    _require(session, Transaction, transaction_id, label="transaction")
    receipt = _optional(session, Upload, matched_receipt_upload_id, label="receipt upload")
    if receipt is not None and receipt.upload_type != "receipt":
        raise DomainError(f"upload {receipt.id} is a {receipt.upload_type}, not a receipt")
    row = ReconciliationResult(
        reconciliation_run_id=run_id,
        transaction_id=transaction_id,
        matched_receipt_upload_id=matched_receipt_upload_id,
        status=status,
        match_score=match_score,
        notes=notes,
    )
    return _add(session, row, context="record reconciliation result")


# --- Report snapshots ---
def create_report_snapshot(
    session: Session,
    *,
    report_type: str,
    period_start: dt.date,
    period_end: dt.date,
    snapshot: dict[str, Any],
    parameters: Optional[dict[str, Any]] = None,
    created_by_user_id: Optional[int] = None,
    source_reconciliation_run_id: Optional[int] = None,
) -> Report:
    _optional(session, User, created_by_user_id, label="user")
    _optional(session, ReconciliationRun, source_reconciliation_run_id, label="reconciliation run")
    row = Report(
        report_type=report_type,
        period_start=period_start,
        period_end=period_end,
        snapshot=snapshot,
        parameters=parameters,
        generated_at=utcnow(),
        created_by_user_id=created_by_user_id,
        source_reconciliation_run_id=source_reconciliation_run_id,
    )
    return _add(session, row, context="create report snapshot")


def get_report_snapshot(
    session: Session,
    *,
    report_type: str,
    period_start: dt.date,
    period_end: dt.date,
) -> Optional[Report]:
    return (
        session.query(Report)
        .filter(
            Report.report_type == report_type,
            Report.period_start == period_start,
            Report.period_end == period_end,
        )
        .one_or_none()
    )
