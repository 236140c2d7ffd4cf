from __future__ import annotations

from src.bookkeeping.normalize import normalize_account, normalize_counterparty, normalize_description, normalize_memo


def test_description_strips_noise_prefix_and_references():
    assert normalize_description("POS PURCHASE  7-Eleven  Silom") == "7-ELEVEN SILOM"
    assert normalize_description("PromptPay: Grab REF# 98XK221AB") == "GRAB"
    assert normalize_description("TRANSFER 1234567890 rent jan") == "RENT JAN"


def test_description_keeps_thai_text():
    assert normalize_description("โอนเงิน  ค่าเช่า  สำนักงาน") == "ค่าเช่า สำนักงาน"


def test_blank_inputs_normalize_to_none():
    assert normalize_description(None) is None
    assert normalize_description("   ") is None
    assert normalize_counterparty("") is None
    assert normalize_account(None) is None
    assert normalize_memo(" ") is None


def test_counterparty_drops_masked_account():
    assert normalize_counterparty("Somchai Jaidee xxx-1234") == "SOMCHAI JAIDEE"


def test_account_reduced_to_significant_characters():
    assert normalize_account("xxx-x-x1234-x") == "1234X"
    assert normalize_account("123-4-56789-0") == "1234567890"
    assert normalize_account("XXXX") is None


def test_memo_collapses_whitespace():
    assert normalize_memo("  slip\n  attached ") == "SLIP ATTACHED"
