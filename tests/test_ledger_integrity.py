from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from src.bookkeeping.errors import (
    DomainError,
    ReferentialIntegrityError,
    UniquenessViolation,
    translate_integrity_error,
)
from src.bookkeeping.ledger import (
    add_transaction,
    classify_transaction,
    create_category,
    create_report_snapshot,
    create_upload,
    create_user,
    create_vendor,
    deactivate_user,
    delete_category,
    delete_upload,
    delete_vendor,
    get_category_by_code,
    get_report_snapshot,
    list_transactions,
    override_classification,
    record_reconciliation_result,
    set_upload_status,
    start_reconciliation_run,
    upsert_category,
    upsert_user,
    upsert_vendor,
)
from src.db.models import (
    Category,
    Classification,
    ReconciliationResult,
    ReconciliationRun,
    Report,
    Transaction,
    Upload,
    User,
    Vendor,
)


def _txn(session, upload_id, *, day=1, amount="-100.00", description="7-ELEVEN 01234 BANGKOK"):
    return add_transaction(
        session,
        upload_id=upload_id,
        txn_date=dt.date(2025, 1, day),
        amount=amount,
        description=description,
    )


def test_transaction_for_missing_upload_is_rejected(session):
    with pytest.raises(ReferentialIntegrityError):
        _txn(session, 999)
    assert session.query(Transaction).count() == 0


def test_store_foreign_key_failure_is_classified(session):
    session.add(Transaction(source_upload_id=424242, txn_date=dt.date(2025, 1, 1), amount="1.00", description="x"))
    with pytest.raises(IntegrityError) as excinfo:
        session.flush()
    assert isinstance(translate_integrity_error(excinfo.value), ReferentialIntegrityError)
    session.rollback()


def test_deleting_upload_cascades_to_transactions_and_classifications(session, statement_upload):
    other = create_upload(session, upload_type="bank_statement", original_filename="scb.pdf")
    t1 = _txn(session, statement_upload.id, day=1)
    t2 = _txn(session, statement_upload.id, day=2)
    keep = _txn(session, other.id, day=3)
    classify_transaction(session, transaction_id=t1.id, source="rule")
    classify_transaction(session, transaction_id=keep.id, source="rule")
    run = start_reconciliation_run(session)
    record_reconciliation_result(session, run_id=run.id, transaction_id=t2.id)
    session.commit()

    res = delete_upload(session, upload_id=statement_upload.id)
    session.commit()

    assert res == {"uploads_deleted": 1, "transactions_deleted": 2, "classifications_deleted": 1}
    assert [t.id for t in session.query(Transaction).all()] == [keep.id]
    assert session.query(Classification).count() == 1
    assert session.query(ReconciliationResult).count() == 0


def test_delete_missing_upload_reports_nothing(session):
    assert delete_upload(session, upload_id=12345) == {
        "uploads_deleted": 0,
        "transactions_deleted": 0,
        "classifications_deleted": 0,
    }


def test_deleting_vendor_clears_classification_vendor(session, statement_upload):
    vendor = create_vendor(session, name="Grab", name_th="แกร็บ")
    t = _txn(session, statement_upload.id)
    c = classify_transaction(session, transaction_id=t.id, vendor_id=vendor.id)
    session.commit()

    assert delete_vendor(session, vendor_id=vendor.id) == 1
    session.commit()

    got = session.get(Classification, c.id)
    assert got is not None
    assert got.vendor_id is None


def test_deleting_category_clears_references(session, statement_upload):
    cat = create_category(session, code="EXP_TRAVEL", name_th="ค่าเดินทาง", name_en="Travel")
    child = create_category(session, code="EXP_TAXI", name_th="ค่าแท็กซี่", parent_id=cat.id)
    vendor = create_vendor(session, name="Bolt", default_category_id=cat.id)
    t = _txn(session, statement_upload.id)
    c = classify_transaction(session, transaction_id=t.id, category_id=cat.id)
    session.commit()

    delete_category(session, category_id=cat.id)
    session.commit()

    assert session.get(Classification, c.id).category_id is None
    assert session.get(Vendor, vendor.id).default_category_id is None
    assert session.get(Category, child.id).parent_id is None


def test_one_classification_per_transaction(session, statement_upload):
    t = _txn(session, statement_upload.id)
    classify_transaction(session, transaction_id=t.id, confidence="0.5", source="ai")
    with pytest.raises(UniquenessViolation):
        classify_transaction(session, transaction_id=t.id, source="rule")
    # The outer transaction is still usable after the failed insert.
    session.commit()
    assert session.query(Classification).count() == 1


def test_result_unique_per_run_and_transaction(session, statement_upload):
    t = _txn(session, statement_upload.id)
    run = start_reconciliation_run(session, strategy="fuzzy")
    record_reconciliation_result(session, run_id=run.id, transaction_id=t.id, status="unmatched")
    with pytest.raises(UniquenessViolation):
        record_reconciliation_result(session, run_id=run.id, transaction_id=t.id, status="matched")

    second = start_reconciliation_run(session, strategy="fuzzy")
    record_reconciliation_result(session, run_id=second.id, transaction_id=t.id, status="ignored")
    assert session.query(ReconciliationResult).count() == 2


def test_matched_receipt_must_be_a_receipt_upload(session, statement_upload):
    t = _txn(session, statement_upload.id)
    receipt = create_upload(session, upload_type="receipt", original_filename="slip.jpg")
    run = start_reconciliation_run(session)
    with pytest.raises(DomainError):
        record_reconciliation_result(
            session, run_id=run.id, transaction_id=t.id, status="matched", matched_receipt_upload_id=statement_upload.id
        )
    r = record_reconciliation_result(
        session,
        run_id=run.id,
        transaction_id=t.id,
        status="matched",
        matched_receipt_upload_id=receipt.id,
        match_score="0.97",
    )
    assert r.match_score == Decimal("0.9700")


def test_finished_run_accepts_no_results(session, statement_upload):
    from src.bookkeeping.ledger import finish_reconciliation_run

    t = _txn(session, statement_upload.id)
    run = start_reconciliation_run(session)
    finish_reconciliation_run(session, run_id=run.id, status="failed", notes="parser crashed")
    with pytest.raises(DomainError):
        record_reconciliation_result(session, run_id=run.id, transaction_id=t.id)


def test_override_marks_manual_and_clears_confidence(session, statement_upload):
    user = create_user(session, email="acc@example.com", role="accountant")
    cat = create_category(session, code="EXP_MEALS_ENT", name_th="ค่าอาหารและรับรอง")
    t = _txn(session, statement_upload.id)
    classify_transaction(session, transaction_id=t.id, confidence="0.62", source="ai", tax_tags=["VAT"])

    c = override_classification(session, transaction_id=t.id, user_id=user.id, category_id=cat.id)
    assert c.is_overridden is True
    assert c.source == "manual"
    assert c.confidence is None
    assert c.overridden_by_user_id == user.id
    assert c.category_id == cat.id
    assert c.tax_tags == ["VAT"]


def test_override_creates_classification_when_absent(session, statement_upload):
    user = create_user(session, email="acc@example.com")
    t = _txn(session, statement_upload.id)
    c = override_classification(session, transaction_id=t.id, user_id=user.id, tax_tags="WHT3")
    assert c.tax_tags == ["WHT3"]
    assert session.query(Classification).count() == 1
    with pytest.raises(ReferentialIntegrityError):
        override_classification(session, transaction_id=t.id, user_id=user.id, vendor_id=777)


def test_users_are_soft_disabled(session):
    user = create_user(session, email="clerk@example.com")
    deactivate_user(session, user_id=user.id)
    assert session.get(User, user.id).is_active is False
    with pytest.raises(UniquenessViolation):
        create_user(session, email="clerk@example.com")


def test_upserts_overwrite_descriptive_columns_only(session):
    first = upsert_user(session, email="admin@example.com", full_name="Admin", role="admin")
    again = upsert_user(session, email="admin@example.com", full_name="Administrator", role="admin")
    assert first.id == again.id
    assert again.full_name == "Administrator"

    cat = upsert_category(session, code="EXP_RENT", name_th="ค่าเช่า", name_en="Rent")
    cat2 = upsert_category(session, code="EXP_RENT", name_th="ค่าเช่าสำนักงาน", name_en="Office rent")
    assert cat.id == cat2.id
    assert cat2.name_en == "Office rent"
    assert session.query(Category).count() == 1

    v = upsert_vendor(session, name="MEA", name_en="MEA", default_category_code="EXP_RENT")
    assert v.default_category_id == cat.id
    with pytest.raises(ReferentialIntegrityError):
        upsert_vendor(session, name="PEA", default_category_code="NOPE")


def test_category_code_and_sibling_names_are_unique(session):
    root = create_category(session, code="EXP", name_th="ค่าใช้จ่าย")
    create_category(session, code="EXP_A", name_th="ก", parent_id=root.id)
    with pytest.raises(UniquenessViolation):
        create_category(session, code="EXP", name_th="อื่น")
    with pytest.raises(UniquenessViolation):
        create_category(session, code="EXP_B", name_th="ก", parent_id=root.id)
    with pytest.raises(UniquenessViolation):
        create_category(session, code="EXP2", name_th="ค่าใช้จ่าย")
    with pytest.raises(ReferentialIntegrityError):
        create_category(session, code="EXP_C", name_th="ข", parent_id=9999)


def test_upload_status_keeps_error_only_when_failed(session, statement_upload):
    u = set_upload_status(session, upload_id=statement_upload.id, status="failed", error_message="bad pdf")
    assert u.error_message == "bad pdf"
    u = set_upload_status(session, upload_id=statement_upload.id, status="processed", error_message="ignored")
    assert u.status == "processed"
    assert u.error_message is None
    with pytest.raises(DomainError):
        set_upload_status(session, upload_id=statement_upload.id, status="done")


def test_list_transactions_filters_and_normalizes(session, statement_upload):
    _txn(session, statement_upload.id, day=10, description="POS 7-ELEVEN REF: ABC123456")
    _txn(session, statement_upload.id, day=2)
    add_transaction(
        session,
        upload_id=statement_upload.id,
        txn_date=dt.date(2025, 2, 1),
        amount="5.00",
        currency="usd",
        description="fx",
        account="xxx-x-x1234-x",
    )
    jan = list_transactions(session, upload_id=statement_upload.id, start=dt.date(2025, 1, 1), end=dt.date(2025, 1, 31))
    assert [t.txn_date.day for t in jan] == [2, 10]
    assert jan[1].description_norm == "7-ELEVEN"
    usd = list_transactions(session, currency="usd")
    assert len(usd) == 1
    assert usd[0].account_norm == "1234X"


def test_report_snapshot_unique_per_type_and_period(session):
    kwargs = dict(report_type="summary", period_start=dt.date(2025, 1, 1), period_end=dt.date(2025, 3, 31))
    create_report_snapshot(session, snapshot={"total": "0.00"}, **kwargs)
    with pytest.raises(UniquenessViolation):
        create_report_snapshot(session, snapshot={"total": "1.00"}, **kwargs)
    assert get_report_snapshot(session, **kwargs).snapshot == {"total": "0.00"}
    assert get_report_snapshot(session, report_type="pnl", period_start=kwargs["period_start"], period_end=kwargs["period_end"]) is None


def test_upload_links_to_uploader(session):
    user = create_user(session, email="owner@example.com")
    u = create_upload(session, upload_type="other", original_filename="notes.txt", uploaded_by_user_id=user.id)
    assert session.get(Upload, u.id).uploaded_by.email == "owner@example.com"
    with pytest.raises(ReferentialIntegrityError):
        create_upload(session, upload_type="other", original_filename="x.txt", uploaded_by_user_id=555)


def test_upsert_category_rejects_duplicate_root_name(session):
    create_category(session, code="EXP_RENT", name_th="ค่าเช่า")
    with pytest.raises(UniquenessViolation):
        upsert_category(session, code="EXP_RENT2", name_th="ค่าเช่า")
    # Re-upserting the same code keeps its own name.
    upsert_category(session, code="EXP_RENT", name_th="ค่าเช่า", name_en="Rent")
    assert session.query(Category).filter(Category.parent_id.is_(None), Category.name_th == "ค่าเช่า").count() == 1


def test_upsert_category_allows_child_name_matching_a_root(session):
    root = create_category(session, code="EXP", name_th="ค่าใช้จ่าย")
    create_category(session, code="EXP_OTHER", name_th="อื่นๆ", parent_id=root.id)
    create_category(session, code="REV_OTHER", name_th="รายได้อื่น")
    upsert_category(session, code="EXP_OTHER", name_th="รายได้อื่น")
    assert get_category_by_code(session, "EXP_OTHER").name_th == "รายได้อื่น"


def test_upsert_user_requires_an_address(session):
    with pytest.raises(DomainError):
        upsert_user(session, email="not-an-address")
    assert session.query(User).count() == 0


def test_deleting_run_cascades_to_results(session, statement_upload):
    t = _txn(session, statement_upload.id)
    run = start_reconciliation_run(session)
    other = start_reconciliation_run(session)
    record_reconciliation_result(session, run_id=run.id, transaction_id=t.id)
    record_reconciliation_result(session, run_id=other.id, transaction_id=t.id)
    session.commit()

    session.execute(delete(ReconciliationRun).where(ReconciliationRun.id == run.id))
    session.commit()
    session.expire_all()

    left = session.query(ReconciliationResult).all()
    assert [r.reconciliation_run_id for r in left] == [other.id]
    assert session.get(Transaction, t.id) is not None


def test_deleting_receipt_clears_matched_receipt(session, statement_upload):
    t = _txn(session, statement_upload.id)
    receipt = create_upload(session, upload_type="receipt", original_filename="slip.jpg")
    run = start_reconciliation_run(session)
    r = record_reconciliation_result(
        session, run_id=run.id, transaction_id=t.id, status="matched", matched_receipt_upload_id=receipt.id
    )
    session.commit()

    assert delete_upload(session, upload_id=receipt.id)["uploads_deleted"] == 1
    session.commit()

    got = session.get(ReconciliationResult, r.id)
    assert got is not None
    assert got.matched_receipt_upload_id is None
    assert got.status == "matched"


def test_deleting_user_clears_actor_references(session):
    user = create_user(session, email="gone@example.com", role="accountant")
    upload = create_upload(
        session, upload_type="bank_statement", original_filename="a.pdf", uploaded_by_user_id=user.id
    )
    t = _txn(session, upload.id)
    c = override_classification(session, transaction_id=t.id, user_id=user.id, notes="checked")
    run = start_reconciliation_run(session, created_by_user_id=user.id)
    report = create_report_snapshot(
        session,
        report_type="pnl",
        period_start=dt.date(2025, 1, 1),
        period_end=dt.date(2025, 1, 31),
        snapshot={},
        created_by_user_id=user.id,
    )
    session.commit()

    session.execute(delete(User).where(User.id == user.id))
    session.commit()
    session.expire_all()

    assert session.get(Upload, upload.id).uploaded_by_user_id is None
    got = session.get(Classification, c.id)
    assert got.overridden_by_user_id is None
    assert got.is_overridden is True
    assert session.get(ReconciliationRun, run.id).created_by_user_id is None
    assert session.get(Report, report.id).created_by_user_id is None
