from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import TypeDecorator

from src.utils.time import UTC


class UTCDateTime(TypeDecorator):
    """
    Transaction, nudge and OTP timestamps are compared against "now" all over the
    engines, so they must always come back tz-aware.

    Naive values are treated as UTC; plain dates bind as midnight UTC. Storage is
    naive UTC, which keeps SQLite and Postgres behaving the same.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | dt.date | None, dialect):
        if value is None:
            return None
        if not isinstance(value, dt.datetime):
            value = dt.datetime(value.year, value.month, value.day)
        v = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return v.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
