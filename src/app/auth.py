from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.app.db import db_session
from src.db.models import User


log = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False)


def _expected_password() -> Optional[str]:
    pw = os.environ.get("APP_PASSWORD")
    if pw is not None and pw.strip() == "":
        return None
    return pw


def auth_enabled() -> bool:
    return _expected_password() is not None


def get_actor_from_request(request: Request) -> str:
    return request.headers.get("X-Actor") or os.environ.get("APP_ACTOR_DEFAULT", "local")


def require_actor(credentials: Optional[HTTPBasicCredentials] = Depends(security), request: Request = None) -> str:  # type: ignore[assignment]
    expected = _expected_password()
    if expected is None:
        return get_actor_from_request(request) if request is not None else "local"

    if credentials is None or not secrets.compare_digest(credentials.password.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username or "user"


def get_or_create_user(session: Session, external_id: str) -> User:
    user = session.scalars(select(User).where(User.external_id == external_id)).first()
    if user is None:
        user = User(external_id=external_id, name=external_id)
        session.add(user)
        session.commit()
        log.info("created user for actor %s", external_id)
    return user


def current_user(
    actor: str = Depends(require_actor),
    session: Session = Depends(db_session),
) -> User:
    return get_or_create_user(session, actor)
