from __future__ import annotations

import json
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="RythmIQ CLI")


def _check_runtime() -> None:
    try:
        import sqlalchemy  # noqa: F401
    except Exception as e:
        typer.echo(
            "Runtime dependency error: SQLAlchemy failed to import.\n"
            "Create a venv and run:\n"
            "  python -m venv .venv\n"
            "  source .venv/bin/activate\n"
            "  pip install -e .\n\n"
            f"Original error: {type(e).__name__}: {e}",
            err=True,
        )
        raise typer.Exit(code=1)


def _user_ids(session, external_id: Optional[str]) -> list[int]:
    from src.db.models import User

    q = session.query(User.id)
    if external_id:
        q = q.filter(User.external_id == external_id)
    ids = [row[0] for row in q.order_by(User.id).all()]
    if external_id and not ids:
        typer.echo(f"No user with external id {external_id!r}", err=True)
        raise typer.Exit(code=2)
    return ids


@app.command("init-db")
def init_db_cmd():
    load_dotenv()
    _check_runtime()
    from src.db.init_db import init_db

    init_db()
    typer.echo("Database ready.")


@app.command("generate-nudges")
def generate_nudges_cmd(
    user: Optional[str] = typer.Option(None, help="External user id; all users when omitted"),
):
    load_dotenv()
    _check_runtime()
    from src.db.session import get_session
    from src.rythmiq.nudges.actions import generate_and_create_nudges

    out: dict[int, int] = {}
    with get_session() as session:
        for user_id in _user_ids(session, user):
            out[user_id] = len(generate_and_create_nudges(session, user_id))
        session.commit()
    typer.echo(json.dumps({"created": out}, indent=2))


@app.command("expire-nudges")
def expire_nudges_cmd():
    load_dotenv()
    _check_runtime()
    from src.db.session import get_session
    from src.rythmiq.nudges.actions import expire_stale_nudges

    with get_session() as session:
        count = expire_stale_nudges(session)
        session.commit()
    typer.echo(f"Expired {count} nudges.")


@app.command("refresh-profile")
def refresh_profile_cmd(
    user: Optional[str] = typer.Option(None, help="External user id; all users when omitted"),
):
    """Recompute rhythm and behavior-driven profile fields."""
    load_dotenv()
    _check_runtime()
    from src.db.session import get_session
    from src.rythmiq.nudges.behavior import adjust_profile_from_behavior

    out = {}
    with get_session() as session:
        for user_id in _user_ids(session, user):
            _behavior, updates = adjust_profile_from_behavior(session, user_id)
            out[user_id] = updates
        session.commit()
    typer.echo(json.dumps(out, indent=2))


@app.command("risk-snapshot")
def risk_snapshot_cmd(
    user: Optional[str] = typer.Option(None, help="External user id; all users when omitted"),
):
    load_dotenv()
    _check_runtime()
    from src.core.risk_engine import generate_risk_snapshot
    from src.db.session import get_session

    out = {}
    with get_session() as session:
        for user_id in _user_ids(session, user):
            snap = generate_risk_snapshot(session, user_id)
            out[user_id] = {"risk_score": snap.risk_score, "risk_level": snap.risk_level} if snap else None
        session.commit()
    typer.echo(json.dumps(out, indent=2))


@app.command("rate-limit-stats")
def rate_limit_stats_cmd():
    """Configured per-endpoint limits (counters live in the server process)."""
    load_dotenv()
    from src.app.ratelimit import get_limiter

    limiter = get_limiter()
    typer.echo(
        json.dumps(
            {
                "window_s": limiter.window_s,
                "limits": {path: lim.requests for path, lim in limiter.limits.items()},
                "usage": limiter.stats(),
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    app()
