from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.core.forecast_agent import get_forecast_cache
from src.core.tax_agent import get_tax_cache
from src.db.models import Account, Base, User
from src.rythmiq.config import get_config


def _clear_cached_singletons() -> None:
    get_config.cache_clear()
    get_forecast_cache.cache_clear()
    get_tax_cache.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    for name in ("ENFORCE_OTP", "OTP_THRESHOLD", "APP_ENV", "EXPOSE_OTP_CODES", "GEMINI_API_KEY", "SECRET_ENCRYPTION_KEY"):
        monkeypatch.delenv(name, raising=False)
    # Point at a file that never exists so only defaults and env apply.
    monkeypatch.setenv("RYTHMIQ_CONFIG", str(ROOT / "tests" / "no-such-config.yaml"))
    _clear_cached_singletons()
    yield
    _clear_cached_singletons()


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


def make_user(session: Session, external_id: str = "alice", *, balance: float | None = None) -> User:
    """A user, optionally with a default current account holding `balance`."""
    user = User(external_id=external_id, name=external_id)
    session.add(user)
    session.flush()
    if balance is not None:
        session.add(Account(user_id=user.id, name="Main", type="CURRENT", balance=balance, is_default=True))
        session.flush()
    return user


@pytest.fixture()
def api(monkeypatch):
    """(TestClient, sessionmaker) sharing one in-memory database."""
    from fastapi.testclient import TestClient

    from src.app import ratelimit
    from src.app.db import db_session
    from src.app.main import create_app

    monkeypatch.delenv("APP_PASSWORD", raising=False)
    get_limiter = ratelimit.get_limiter  # tests may monkeypatch it; teardown clears the real one
    get_limiter.cache_clear()

    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)

    def _override():
        s = SessionLocal()
        try:
            yield s
        finally:
            s.close()

    app = create_app()
    app.dependency_overrides[db_session] = _override
    # Not entered as a context manager, so startup (init_db on the real database) never runs.
    client = TestClient(app, headers={"X-Actor": "alice"})
    yield client, SessionLocal
    get_limiter.cache_clear()


def utc(*args: int) -> dt.datetime:
    return dt.datetime(*args, tzinfo=dt.timezone.utc)
