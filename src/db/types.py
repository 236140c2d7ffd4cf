from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import BigInteger, Numeric, TypeDecorator

from src.utils.time import UTC


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as naive UTC and always return tz-aware UTC datetimes.

    SQLite and MySQL DATETIME columns carry no zone; naive values are treated as UTC.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        v = value
        if v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        return v.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class FixedDecimal(TypeDecorator):
    """
    DECIMAL(precision, scale) that always reads back as a Decimal at `scale` places.

    SQLite has no fixed-point storage (NUMERIC values become floats past 15 digits), so there
    the value is kept as an integer count of the smallest unit, e.g. satang for DECIMAL(18, 2).
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int, scale: int) -> None:
        super().__init__(precision=precision, scale=scale, asdecimal=True)
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(precision=self.precision, scale=self.scale, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        d = Decimal(str(value))
        if dialect.name == "sqlite":
            return int(d.scaleb(self.scale).to_integral_value())
        return d

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        q = Decimal(1).scaleb(-self.scale)
        if dialect.name == "sqlite":
            return Decimal(int(value)).scaleb(-self.scale).quantize(q)
        return Decimal(str(value)).quantize(q)
