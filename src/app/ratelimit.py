from __future__ import annotations

from functools import lru_cache
from typing import Callable

from fastapi import Depends, Request, Response
from fastapi.responses import JSONResponse

from src.app.auth import current_user
from src.db.models import User
from src.rythmiq.config import get_config
from src.utils.rate_limit import EndpointLimit, FixedWindowRateLimiter


class RateLimitExceeded(Exception):
    def __init__(self, payload: dict, headers: dict[str, str]) -> None:
        super().__init__(payload.get("error"))
        self.payload = payload
        self.headers = headers


@lru_cache(maxsize=1)
def get_limiter() -> FixedWindowRateLimiter:
    cfg = get_config().rate_limit
    return FixedWindowRateLimiter(
        {path: EndpointLimit(n) for path, n in cfg.limits.items()},
        window_s=cfg.window_s,
    )


def rate_limited(endpoint: str) -> Callable[..., User]:
    """Dependency that counts the call against `endpoint` and passes the user through."""

    def _dep(response: Response, user: User = Depends(current_user)) -> User:
        result = get_limiter().check(user.external_id, endpoint)
        if result.exceeded:
            raise RateLimitExceeded(result.response or {}, result.headers)
        for k, v in result.headers.items():
            response.headers[k] = v
        return user

    return _dep


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content=exc.payload, headers=exc.headers)
