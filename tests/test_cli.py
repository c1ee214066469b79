from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from typer.testing import CliRunner

from src import cli
from src.db import session as db_session_module
from src.db.models import Account, Base, NudgeAction, User


runner = CliRunner()


@pytest.fixture()
def SessionLocal(monkeypatch):
    engine = create_engine("sqlite://", future=True, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    monkeypatch.setattr(db_session_module, "get_session", lambda: factory())
    return factory


def test_generate_nudges_for_one_user(SessionLocal):
    with SessionLocal() as s:
        user = User(external_id="alice")
        s.add(user)
        s.flush()
        s.add(Account(user_id=user.id, name="Main", balance=500, is_default=True))
        s.commit()
        user_id = user.id

    result = runner.invoke(cli.app, ["generate-nudges", "--user", "alice"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"created": {str(user_id): 1}}

    with SessionLocal() as s:
        assert s.query(NudgeAction).count() == 1


def test_unknown_user_exits_with_error(SessionLocal):
    result = runner.invoke(cli.app, ["generate-nudges", "--user", "nobody"])
    assert result.exit_code == 2


def test_expire_nudges(SessionLocal):
    result = runner.invoke(cli.app, ["expire-nudges"])
    assert result.exit_code == 0
    assert "Expired 0 nudges." in result.output


def test_rate_limit_stats_lists_configured_limits():
    from src.app.ratelimit import get_limiter

    get_limiter.cache_clear()
    result = runner.invoke(cli.app, ["rate-limit-stats"])
    assert result.exit_code == 0
    body = json.loads(result.output)
    assert body["window_s"] == 60
    assert body["limits"]["/api/ai/predict"] == 5
    get_limiter.cache_clear()
