from __future__ import annotations

import os

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite:///./data/rythmiq.db")


_ENGINE: Engine | None = None


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE
    url = get_database_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    _ENGINE = create_engine(url, future=True, connect_args=connect_args, pool_pre_ping=not url.startswith("sqlite"))
    return _ENGINE


SessionLocal = sessionmaker(bind=get_engine(), class_=Session, autoflush=False, autocommit=False)


def get_session() -> Session:
    return SessionLocal()


def check_database_connection() -> dict[str, object]:
    """Used by the health endpoint; never raises."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"connected": True}
    except Exception as e:
        hint = None
        if "unable to open database file" in str(e).lower():
            hint = "Create the ./data directory or point DATABASE_URL somewhere writable."
        return {"connected": False, "error": f"{type(e).__name__}: {e}", "hint": hint}
