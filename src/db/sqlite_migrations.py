from __future__ import annotations

import re

from sqlalchemy import text
from sqlalchemy.engine import Engine


def _table_columns(engine: Engine, table: str) -> set[str]:
    with engine.connect() as conn:
        rows = conn.execute(text(f"PRAGMA table_info({table})")).fetchall()
    # row: (cid, name, type, notnull, dflt_value, pk)
    return {str(r[1]) for r in rows}


_COL_NAME_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\b")


def _add_column(engine: Engine, table: str, column_ddl: str) -> None:
    m = _COL_NAME_RE.match(column_ddl)
    col_name = m.group(1) if m else None
    if col_name and col_name in _table_columns(engine, table):
        return
    try:
        with engine.begin() as conn:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column_ddl}"))
    except Exception as e:
        # SQLite raises OperationalError("duplicate column name: X") for ADD COLUMN on existing columns.
        if "duplicate column name" in str(e).lower():
            return
        raise


# Columns added after the first schema shipped, per table.
_ADDED_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "nudge_actions": [
        ("feedback_rating", "feedback_rating INTEGER"),
        ("feedback_comment", "feedback_comment TEXT"),
        ("was_helpful", "was_helpful BOOLEAN"),
        ("dismiss_reason", "dismiss_reason VARCHAR(200)"),
        ("feedback_at", "feedback_at DATETIME"),
    ],
    "financial_profiles": [
        ("income_rhythm_json", "income_rhythm_json TEXT"),
        ("spend_rhythm_json", "spend_rhythm_json TEXT"),
        ("optimal_nudge_hour", "optimal_nudge_hour INTEGER"),
        ("preferred_nudge_types_json", "preferred_nudge_types_json TEXT NOT NULL DEFAULT '[]'"),
        ("disliked_nudge_types_json", "disliked_nudge_types_json TEXT NOT NULL DEFAULT '[]'"),
        ("last_personalization_update", "last_personalization_update DATETIME"),
    ],
    "bills": [
        ("is_protected", "is_protected BOOLEAN NOT NULL DEFAULT 0"),
        ("protected_amount", "protected_amount NUMERIC(20,2)"),
        ("protected_until", "protected_until DATETIME"),
        ("auto_detected", "auto_detected BOOLEAN NOT NULL DEFAULT 0"),
        ("detection_confidence", "detection_confidence INTEGER"),
    ],
    "otp_challenges": [
        ("attempts", "attempts INTEGER NOT NULL DEFAULT 0"),
    ],
}


def ensure_sqlite_schema(engine: Engine) -> None:
    """
    Minimal SQLite "migrations" (no Alembic).
    Safe to call on every startup: only adds missing columns.
    """
    if engine.url.get_backend_name() != "sqlite":
        return

    # If a table doesn't exist yet, SQLAlchemy create_all will handle it.
    with engine.connect() as conn:
        existing_tables = {r[0] for r in conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'")).fetchall()}

    for table, columns in _ADDED_COLUMNS.items():
        if table not in existing_tables:
            continue
        cols = _table_columns(engine, table)
        for name, ddl in columns:
            if name not in cols:
                _add_column(engine, table, ddl)
                cols.add(name)
