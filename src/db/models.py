from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal
from typing import Any, Optional

try:
    from sqlalchemy import (
        JSON,
        BigInteger,
        Boolean,
        Date,
        Enum,
        ForeignKey,
        Index,
        Integer,
        String,
        Text,
        UniqueConstraint,
        false,
        inspect,
        text,
        true,
    )
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy 2.x.\n\n"
        "Create a virtualenv and install the project:\n"
        "  python -m venv .venv\n"
        "  source .venv/bin/activate\n"
        "  pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from src.bookkeeping.errors import DomainError
from src.db.types import FixedDecimal, UTCDateTime
from src.utils.money import fixed_scale, to_decimal
from src.utils.time import parse_date, parse_datetime, utcnow


class Base(DeclarativeBase):
    pass


USER_ROLES = ("admin", "accountant", "user")
UPLOAD_TYPES = ("bank_statement", "receipt", "other")
UPLOAD_STATUSES = ("uploaded", "processing", "processed", "failed")
CATEGORY_TYPES = ("income", "expense", "asset", "liability", "equity", "tax", "cogs")
CLASSIFICATION_SOURCES = ("manual", "ai", "rule")
RUN_STRATEGIES = ("exact_amount_date", "fuzzy", "manual", "hybrid")
RUN_STATUSES = ("running", "completed", "failed")
RUN_FINISHED = ("completed", "failed")
RESULT_STATUSES = ("matched", "unmatched", "ambiguous", "ignored")
REPORT_TYPES = ("summary", "pnl")


def _enum(*values: str, name: str) -> Enum:
    # VARCHAR + CHECK renders the same on SQLite, MySQL and PostgreSQL.
    return Enum(*values, name=name, native_enum=False, create_constraint=True, validate_strings=True)


UserRole = _enum(*USER_ROLES, name="user_role")
UploadType = _enum(*UPLOAD_TYPES, name="upload_type")
UploadStatus = _enum(*UPLOAD_STATUSES, name="upload_status")
CategoryType = _enum(*CATEGORY_TYPES, name="category_type")
ClassificationSource = _enum(*CLASSIFICATION_SOURCES, name="classification_source")
RunStrategy = _enum(*RUN_STRATEGIES, name="reconciliation_strategy")
RunStatus = _enum(*RUN_STATUSES, name="reconciliation_status")
ResultStatus = _enum(*RESULT_STATUSES, name="reconciliation_result_status")
ReportType = _enum(*REPORT_TYPES, name="report_type")

MAX_AMOUNT = Decimal("10000000000000000")  # DECIMAL(18,2) integer part
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


# --- Value checks shared by the validators ---


def check_enum(field: str, value: Any, allowed: tuple[str, ...]) -> str:
    s = str(value).strip() if value is not None else ""
    if s not in allowed:
        raise DomainError(f"{field} must be one of {'|'.join(allowed)}, got {value!r}")
    return s


def check_text(field: str, value: Any, *, max_len: int, required: bool = True) -> Optional[str]:
    if value is None:
        if required:
            raise DomainError(f"{field} is required")
        return None
    s = str(value).strip()
    if not s:
        if required:
            raise DomainError(f"{field} is required")
        return None
    if len(s) > max_len:
        raise DomainError(f"{field} exceeds {max_len} characters")
    return s


def check_amount(field: str, value: Any) -> Decimal:
    d = to_decimal(value)
    if d is None:
        raise DomainError(f"{field} must be a decimal number, got {value!r}")
    scaled = fixed_scale(d, 2)
    if scaled is None:
        raise DomainError(f"{field} must have at most 2 decimal places, got {value!r}")
    if abs(scaled) >= MAX_AMOUNT:
        raise DomainError(f"{field} out of range: {value!r}")
    return scaled


def check_fraction(field: str, value: Any) -> Optional[Decimal]:
    """Nullable score in [0, 1] with at most 4 decimals."""
    if value is None:
        return None
    d = to_decimal(value)
    if d is None:
        raise DomainError(f"{field} must be a decimal number, got {value!r}")
    scaled = fixed_scale(d, 4)
    if scaled is None:
        raise DomainError(f"{field} must have at most 4 decimal places, got {value!r}")
    if scaled < 0 or scaled > 1:
        raise DomainError(f"{field} must lie in [0, 1], got {value!r}")
    return scaled


def check_date(field: str, value: Any, *, required: bool = True) -> Optional[dt.date]:
    if value is None and not required:
        return None
    d = parse_date(value)
    if d is None:
        raise DomainError(f"{field} must be a date, got {value!r}")
    return d


def check_datetime(field: str, value: Any) -> Optional[dt.datetime]:
    if value is None:
        return None
    d = parse_datetime(value)
    if d is None:
        raise DomainError(f"{field} must be a datetime, got {value!r}")
    return d


def check_email(field: str, value: Any) -> str:
    s = check_text(field, value, max_len=255)
    if "@" not in s:
        raise DomainError(f"{field} is not an address: {value!r}")
    return s


def check_period(start_field: str, start: Optional[dt.date], end_field: str, end: Optional[dt.date]) -> None:
    if start is not None and end is not None and start > end:
        raise DomainError(f"{start_field} ({start}) is after {end_field} ({end})")


def _persisted(obj: Base) -> bool:
    return inspect(obj).has_identity


def _created_at() -> Any:
    return mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP"))


def _updated_at() -> Any:
    return mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )


# --- Users ---
class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uniq_users_email"),
        Index("idx_users_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(UserRole, nullable=False, default="user", server_default="user")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[dt.datetime] = _created_at()
    updated_at: Mapped[dt.datetime] = _updated_at()

    @validates("email")
    def _v_email(self, key: str, value: Any) -> str:
        return check_email(key, value)

    @validates("full_name")
    def _v_full_name(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=255, required=False)

    @validates("role")
    def _v_role(self, key: str, value: Any) -> str:
        return check_enum(key, value, USER_ROLES)


# --- Thai accounting categories ---
class Category(Base):
    __tablename__ = "thai_accounting_categories"
    __table_args__ = (
        UniqueConstraint("code", name="uniq_thai_categories_code"),
        UniqueConstraint("parent_id", "name_th", name="uniq_thai_categories_parent_name"),
        Index("idx_thai_categories_type", "type"),
        Index("idx_thai_categories_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name_th: Mapped[str] = mapped_column(String(255), nullable=False)
    name_en: Mapped[Optional[str]] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(CategoryType, nullable=False, default="expense", server_default="expense")
    # Parent references are ids only; see src.bookkeeping.categories.CategoryTree.
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("thai_accounting_categories.id", ondelete="SET NULL", name="fk_thai_categories_parent")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[dt.datetime] = _created_at()

    @validates("code")
    def _v_code(self, key: str, value: Any) -> str:
        return check_text(key, value, max_len=32)

    @validates("name_th")
    def _v_name_th(self, key: str, value: Any) -> str:
        return check_text(key, value, max_len=255)

    @validates("name_en")
    def _v_name_en(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=255, required=False)

    @validates("type")
    def _v_type(self, key: str, value: Any) -> str:
        return check_enum(key, value, CATEGORY_TYPES)

    @validates("parent_id")
    def _v_parent(self, key: str, value: Any) -> Optional[int]:
        if value is not None and self.id is not None and int(value) == self.id:
            raise DomainError(f"category {self.code} cannot be its own parent")
        return value


# --- Vendors ---
class Vendor(Base):
    __tablename__ = "vendors"
    __table_args__ = (
        UniqueConstraint("name", name="uniq_vendors_name"),
        Index("idx_vendors_default_category", "default_category_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    name_th: Mapped[Optional[str]] = mapped_column(String(255))
    name_en: Mapped[Optional[str]] = mapped_column(String(255))
    tax_id: Mapped[Optional[str]] = mapped_column(String(32))
    default_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("thai_accounting_categories.id", ondelete="SET NULL", name="fk_vendors_default_category")
    )
    created_at: Mapped[dt.datetime] = _created_at()

    default_category: Mapped[Optional["Category"]] = relationship()

    @validates("name")
    def _v_name(self, key: str, value: Any) -> str:
        return check_text(key, value, max_len=255)

    @validates("name_th", "name_en")
    def _v_names(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=255, required=False)

    @validates("tax_id")
    def _v_tax_id(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=32, required=False)


# --- Uploads ---
class Upload(Base):
    __tablename__ = "uploads"
    __table_args__ = (
        Index("idx_uploads_created_at", "created_at"),
        Index("idx_uploads_type_created", "upload_type", "created_at"),
        Index("idx_uploads_sha256", "sha256"),
        Index("idx_uploads_uploaded_by", "uploaded_by_user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    uploaded_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", name="fk_uploads_user")
    )
    upload_type: Mapped[str] = mapped_column(UploadType, nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_filename: Mapped[Optional[str]] = mapped_column(String(255))
    mime_type: Mapped[Optional[str]] = mapped_column(String(127))
    file_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    sha256: Mapped[Optional[str]] = mapped_column(String(64))
    source_system: Mapped[Optional[str]] = mapped_column(String(64))
    statement_period_start: Mapped[Optional[dt.date]] = mapped_column(Date)
    statement_period_end: Mapped[Optional[dt.date]] = mapped_column(Date)
    status: Mapped[str] = mapped_column(UploadStatus, nullable=False, default="uploaded", server_default="uploaded")
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = _created_at()
    updated_at: Mapped[dt.datetime] = _updated_at()

    uploaded_by: Mapped[Optional["User"]] = relationship()
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="upload", cascade="all, delete-orphan", passive_deletes=True
    )

    @validates("upload_type")
    def _v_type(self, key: str, value: Any) -> str:
        return check_enum(key, value, UPLOAD_TYPES)

    @validates("status")
    def _v_status(self, key: str, value: Any) -> str:
        return check_enum(key, value, UPLOAD_STATUSES)

    @validates("original_filename")
    def _v_original_filename(self, key: str, value: Any) -> str:
        return check_text(key, value, max_len=255)

    @validates("stored_filename")
    def _v_stored_filename(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=255, required=False)

    @validates("file_size_bytes")
    def _v_size(self, key: str, value: Any) -> Optional[int]:
        if value is None:
            return None
        if int(value) < 0:
            raise DomainError(f"file_size_bytes must be >= 0, got {value!r}")
        return int(value)

    @validates("sha256")
    def _v_sha256(self, key: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        s = str(value).strip().lower()
        if not _SHA256_RE.match(s):
            raise DomainError(f"sha256 must be 64 hex characters, got {value!r}")
        return s

    @validates("statement_period_start")
    def _v_period_start(self, key: str, value: Any) -> Optional[dt.date]:
        d = check_date(key, value, required=False)
        check_period(key, d, "statement_period_end", self.statement_period_end)
        return d

    @validates("statement_period_end")
    def _v_period_end(self, key: str, value: Any) -> Optional[dt.date]:
        d = check_date(key, value, required=False)
        check_period("statement_period_start", self.statement_period_start, key, d)
        return d


# --- Transactions ---
class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_date", "txn_date"),
        Index("idx_transactions_amount", "amount"),
        Index("idx_transactions_currency_date", "currency", "txn_date"),
        Index("idx_transactions_source_upload", "source_upload_id"),
        Index("idx_transactions_date_amount", "txn_date", "amount"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    source_upload_id: Mapped[int] = mapped_column(
        ForeignKey("uploads.id", ondelete="CASCADE", name="fk_transactions_source_upload"), nullable=False
    )
    txn_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    posted_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime)
    amount: Mapped[Decimal] = mapped_column(FixedDecimal(18, 2), nullable=False)  # signed
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="THB", server_default="THB")
    description: Mapped[str] = mapped_column(String(1024), nullable=False)
    counterparty: Mapped[Optional[str]] = mapped_column(String(255))
    account: Mapped[Optional[str]] = mapped_column(String(255))
    reference_no: Mapped[Optional[str]] = mapped_column(String(128))
    memo: Mapped[Optional[str]] = mapped_column(Text)
    raw_text: Mapped[Optional[str]] = mapped_column(Text)
    description_norm: Mapped[Optional[str]] = mapped_column(String(1024))
    counterparty_norm: Mapped[Optional[str]] = mapped_column(String(255))
    account_norm: Mapped[Optional[str]] = mapped_column(String(255))
    memo_norm: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = _created_at()
    updated_at: Mapped[dt.datetime] = _updated_at()

    upload: Mapped["Upload"] = relationship(back_populates="transactions")
    classification: Mapped[Optional["Classification"]] = relationship(
        back_populates="transaction", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )

    @validates("source_upload_id")
    def _v_source_upload_id(self, key: str, value: Any) -> int:
        if value is None:
            raise DomainError("source_upload_id is required")
        current = self.source_upload_id
        if current is not None and int(value) != current:
            raise DomainError(f"source_upload_id is immutable (transaction {self.id})")
        return int(value)

    @validates("upload")
    def _v_upload(self, key: str, value: Any) -> Any:
        current = self.source_upload_id
        if value is not None and current is not None and value.id != current:
            raise DomainError(f"source_upload_id is immutable (transaction {self.id})")
        return value

    @validates("txn_date")
    def _v_txn_date(self, key: str, value: Any) -> dt.date:
        return check_date(key, value)

    @validates("posted_at")
    def _v_posted_at(self, key: str, value: Any) -> Optional[dt.datetime]:
        return check_datetime(key, value)

    @validates("amount")
    def _v_amount(self, key: str, value: Any) -> Decimal:
        return check_amount(key, value)

    @validates("currency")
    def _v_currency(self, key: str, value: Any) -> str:
        s = (str(value) if value is not None else "").strip().upper()
        if not _CURRENCY_RE.match(s):
            raise DomainError(f"currency must be a 3-letter code, got {value!r}")
        return s

    @validates("description")
    def _v_description(self, key: str, value: Any) -> str:
        return check_text(key, value, max_len=1024)

    @validates("counterparty", "account", "counterparty_norm", "account_norm")
    def _v_short_text(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=255, required=False)

    @validates("reference_no")
    def _v_reference_no(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=128, required=False)

    @validates("description_norm")
    def _v_description_norm(self, key: str, value: Any) -> Optional[str]:
        return check_text(key, value, max_len=1024, required=False)


# --- Classifications ---
class Classification(Base):
    __tablename__ = "classifications"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uniq_classifications_transaction"),
        Index("idx_classifications_category", "category_id"),
        Index("idx_classifications_vendor", "vendor_id"),
        Index("idx_classifications_confidence", "confidence"),
        Index("idx_classifications_overridden", "is_overridden"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE", name="fk_classifications_transaction"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("thai_accounting_categories.id", ondelete="SET NULL", name="fk_classifications_category")
    )
    vendor_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("vendors.id", ondelete="SET NULL", name="fk_classifications_vendor")
    )
    tax_tags: Mapped[Optional[list[str]]] = mapped_column(JSON)
    confidence: Mapped[Optional[Decimal]] = mapped_column(FixedDecimal(5, 4))
    is_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    overridden_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", name="fk_classifications_overridden_by")
    )
    source: Mapped[str] = mapped_column(
        ClassificationSource, nullable=False, default="manual", server_default="manual"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = _created_at()
    updated_at: Mapped[dt.datetime] = _updated_at()

    transaction: Mapped["Transaction"] = relationship(back_populates="classification")
    category: Mapped[Optional["Category"]] = relationship()
    vendor: Mapped[Optional["Vendor"]] = relationship()

    @validates("confidence")
    def _v_confidence(self, key: str, value: Any) -> Optional[Decimal]:
        return check_fraction(key, value)

    @validates("source")
    def _v_source(self, key: str, value: Any) -> str:
        return check_enum(key, value, CLASSIFICATION_SOURCES)

    @validates("tax_tags")
    def _v_tax_tags(self, key: str, value: Any) -> Optional[list[str]]:
        if value is None:
            return None
        items = [value] if isinstance(value, str) else value
        if not isinstance(items, (list, tuple, set, frozenset)):
            raise DomainError(f"tax_tags must be a label or a list of labels, got {value!r}")
        out: list[str] = []
        for item in items:
            s = str(item or "").strip()
            if not s:
                raise DomainError("tax_tags cannot contain blank labels")
            if s not in out:
                out.append(s)
        return out


# --- Reconciliation runs ---
class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"
    __table_args__ = (
        Index("idx_recon_runs_status_started", "status", "started_at"),
        Index("idx_recon_runs_started_at", "started_at"),
        Index("idx_recon_runs_created_by", "created_by_user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    started_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )
    ended_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime)
    strategy: Mapped[str] = mapped_column(RunStrategy, nullable=False, default="hybrid", server_default="hybrid")
    parameters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(RunStatus, nullable=False, default="running", server_default="running")
    created_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", name="fk_recon_runs_created_by")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    results: Mapped[list["ReconciliationResult"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )

    def _check_open(self, key: str) -> None:
        if self.status in RUN_FINISHED:
            raise DomainError(f"reconciliation run {self.id} is {self.status}; {key} cannot change")

    @validates("status")
    def _v_status(self, key: str, value: Any) -> str:
        s = check_enum(key, value, RUN_STATUSES)
        current = self.status
        if current in RUN_FINISHED and s != current:
            raise DomainError(f"reconciliation run {self.id} is already {current}")
        return s

    @validates("strategy")
    def _v_strategy(self, key: str, value: Any) -> str:
        self._check_open(key)
        return check_enum(key, value, RUN_STRATEGIES)

    @validates("ended_at")
    def _v_ended_at(self, key: str, value: Any) -> Optional[dt.datetime]:
        self._check_open(key)
        return check_datetime(key, value)

    @validates("parameters", "notes", "started_at")
    def _v_frozen_when_finished(self, key: str, value: Any) -> Any:
        self._check_open(key)
        return value


# --- Reconciliation results ---
class ReconciliationResult(Base):
    __tablename__ = "reconciliation_results"
    __table_args__ = (
        UniqueConstraint("reconciliation_run_id", "transaction_id", name="uniq_recon_run_transaction"),
        Index("idx_recon_results_status", "status"),
        Index("idx_recon_results_transaction", "transaction_id"),
        Index("idx_recon_results_matched_receipt", "matched_receipt_upload_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    reconciliation_run_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_runs.id", ondelete="CASCADE", name="fk_recon_results_run"), nullable=False
    )
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE", name="fk_recon_results_transaction"), nullable=False
    )
    matched_receipt_upload_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("uploads.id", ondelete="SET NULL", name="fk_recon_results_receipt_upload")
    )
    status: Mapped[str] = mapped_column(ResultStatus, nullable=False, default="unmatched", server_default="unmatched")
    match_score: Mapped[Optional[Decimal]] = mapped_column(FixedDecimal(5, 4))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = _created_at()

    run: Mapped["ReconciliationRun"] = relationship(back_populates="results")
    transaction: Mapped["Transaction"] = relationship()
    matched_receipt: Mapped[Optional["Upload"]] = relationship()

    @validates("status")
    def _v_status(self, key: str, value: Any) -> str:
        return check_enum(key, value, RESULT_STATUSES)

    @validates("match_score")
    def _v_match_score(self, key: str, value: Any) -> Optional[Decimal]:
        return check_fraction(key, value)


# --- Report snapshots ---
class Report(Base):
    __tablename__ = "reports"
    __table_args__ = (
        UniqueConstraint("report_type", "period_start", "period_end", name="uniq_reports_type_period"),
        Index("idx_reports_generated_at", "generated_at"),
        Index("idx_reports_created_by", "created_by_user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    report_type: Mapped[str] = mapped_column(ReportType, nullable=False)
    period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    period_end: Mapped[dt.date] = mapped_column(Date, nullable=False)
    generated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )
    parameters: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", name="fk_reports_created_by")
    )
    source_reconciliation_run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reconciliation_runs.id", ondelete="SET NULL", name="fk_reports_source_run")
    )

    @validates("report_type", "period_start", "period_end", "parameters", "snapshot", "generated_at")
    def _v_immutable(self, key: str, value: Any) -> Any:
        if _persisted(self):
            raise DomainError(f"report snapshot {self.id} is immutable; {key} cannot change")
        if key == "report_type":
            return check_enum(key, value, REPORT_TYPES)
        if key == "period_start":
            d = check_date(key, value)
            check_period(key, d, "period_end", self.period_end)
            return d
        if key == "period_end":
            d = check_date(key, value)
            check_period("period_start", self.period_start, key, d)
            return d
        if key == "snapshot" and not isinstance(value, dict):
            raise DomainError(f"snapshot must be a JSON object, got {type(value).__name__}")
        return value


# --- Migration log ---
class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    applied_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )
