from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    pass


class DomainError(LedgerError, ValueError):
    """A value outside an enum's closed set, or a precision/range/lifecycle violation."""


class UniquenessViolation(LedgerError):
    """A natural-key collision outside of the explicit upsert path."""


class ReferentialIntegrityError(LedgerError):
    """A foreign key pointing at a row that does not exist."""


class ConfigError(LedgerError):
    pass


class ApplyError(LedgerError):
    def __init__(self, *, index: int, label: str, sql: str, cause: BaseException) -> None:
        self.index = index
        self.label = label
        self.sql = sql
        self.cause = cause
        super().__init__(f"Statement #{index} ({label}) failed: {type(cause).__name__}: {cause}\n{sql}")


# Driver error codes for constraint failures.
_MYSQL_DUPLICATE = {1062, 1586}
_MYSQL_FOREIGN_KEY = {1216, 1217, 1451, 1452}
_PG_UNIQUE = "23505"
_PG_FOREIGN_KEY = "23503"


def _driver_code(orig: Optional[BaseException]) -> object:
    if orig is None:
        return None
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode:
        return str(pgcode)
    args = getattr(orig, "args", ()) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def translate_integrity_error(exc: Exception, *, context: str = "") -> LedgerError:
    """
    Map a storage-layer IntegrityError onto the ledger's typed errors.

    The store is the authority for uniqueness and foreign keys; this only
    classifies its verdict. Unknown constraint failures become DomainError
    (NOT NULL / CHECK violations).
    """
    orig = getattr(exc, "orig", None)
    code = _driver_code(orig)
    msg = str(orig if orig is not None else exc)
    low = msg.lower()
    prefix = f"{context}: " if context else ""

    if code in _MYSQL_DUPLICATE or code == _PG_UNIQUE or "unique constraint" in low or "duplicate" in low:
        return UniquenessViolation(prefix + msg)
    if code in _MYSQL_FOREIGN_KEY or code == _PG_FOREIGN_KEY or "foreign key" in low:
        return ReferentialIntegrityError(prefix + msg)
    return DomainError(prefix + msg)
