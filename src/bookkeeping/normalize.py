from __future__ import annotations

import re
import unicodedata
from typing import Optional

_WS_RE = re.compile(r"\s+")
_NOISE_PREFIX_RE = re.compile(
    r"^(POS PURCHASE|POS|DEBIT CARD PURCHASE|CARD PURCHASE|PURCHASE|PAYMENT|TRANSFER|TRF|PROMPTPAY|ชำระเงิน|โอนเงิน)\b[:\-]?\s*",
    re.IGNORECASE,
)
_REF_RE = re.compile(r"\b(REF|REFERENCE|TRACE|AUTH|ID)[:\s#-]*[A-Z0-9-]{6,}\b", re.IGNORECASE)
_DIGIT_RUN_RE = re.compile(r"(?<!\d)\d{6,}(?!\d)")
_MASKED_ACCT_RE = re.compile(r"[xX*]{2,}[-\s]?\d{3,4}\b")
_PUNCT_RE = re.compile(r"[\"'`~^|<>{}\[\]]+")
_NON_ACCOUNT_RE = re.compile(r"[^0-9A-Za-z]")


def _clean(raw: Optional[str]) -> str:
    # NFC keeps Thai combining vowels/tone marks attached to their base consonant.
    s = unicodedata.normalize("NFC", raw or "")
    s = _PUNCT_RE.sub(" ", s)
    return _WS_RE.sub(" ", s).strip()


def normalize_description(raw: Optional[str]) -> Optional[str]:
    s = _clean(raw)
    s = _NOISE_PREFIX_RE.sub("", s)
    s = _REF_RE.sub("", s)
    s = _DIGIT_RUN_RE.sub("", s)
    s = _WS_RE.sub(" ", s).strip(" -:/")
    return s.upper() or None


def normalize_counterparty(raw: Optional[str]) -> Optional[str]:
    s = _clean(raw)
    s = _NOISE_PREFIX_RE.sub("", s)
    s = _MASKED_ACCT_RE.sub("", s)
    s = _WS_RE.sub(" ", s).strip(" -:/")
    return s.upper() or None


def normalize_account(raw: Optional[str]) -> Optional[str]:
    """
    Bank account labels reduced to their digits/letters, masking kept as the last four.

    - "xxx-x-x1234-x" -> "1234X"
    - "123-4-56789-0" -> "1234567890"
    """
    s = _NON_ACCOUNT_RE.sub("", _clean(raw)).upper()
    if not s:
        return None
    if "X" in s:
        tail = s.lstrip("X")
        return tail or None
    return s


def normalize_memo(raw: Optional[str]) -> Optional[str]:
    s = _clean(raw)
    return s.upper() or None
