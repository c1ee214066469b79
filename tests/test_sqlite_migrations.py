from __future__ import annotations

from sqlalchemy import create_engine, text

from src.db.models import OtpChallenge
from src.db.sqlite_migrations import _table_columns, ensure_sqlite_schema


def test_missing_feedback_columns_are_added(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}", future=True)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE nudge_actions (id INTEGER PRIMARY KEY, nudge_type VARCHAR(50), message TEXT)"))
        conn.execute(text("INSERT INTO nudge_actions (nudge_type, message) VALUES ('auto-save', 'hi')"))

    ensure_sqlite_schema(engine)
    ensure_sqlite_schema(engine)

    cols = _table_columns(engine, "nudge_actions")
    assert {"feedback_rating", "feedback_comment", "was_helpful", "dismiss_reason", "feedback_at"} <= cols
    # tables that do not exist yet are left to create_all
    assert _table_columns(engine, "bills") == set()
    with engine.connect() as conn:
        assert conn.execute(text("SELECT feedback_rating FROM nudge_actions")).scalar_one() is None


def test_otp_attempt_counter_is_added_with_zero_default(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}", future=True)
    with engine.begin() as conn:
        conn.execute(
            text("CREATE TABLE otp_challenges (id INTEGER PRIMARY KEY, user_id INTEGER, action VARCHAR(100), otp_hash VARCHAR(64))")
        )
        conn.execute(text("INSERT INTO otp_challenges (user_id, action, otp_hash) VALUES (1, 'bill_pay', 'x')"))

    ensure_sqlite_schema(engine)

    assert "attempts" in _table_columns(engine, "otp_challenges")
    assert "attempts" in OtpChallenge.__table__.c
    with engine.connect() as conn:
        assert conn.execute(text("SELECT attempts FROM otp_challenges")).scalar_one() == 0
