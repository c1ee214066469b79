from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from src.utils.time import UTC


log = logging.getLogger(__name__)

WINDOW_SECONDS = 60
PRUNE_AFTER_KEYS = 1000


@dataclass(frozen=True)
class EndpointLimit:
    requests: int


DEFAULT_LIMITS: dict[str, EndpointLimit] = {
    "/api/ai/chat": EndpointLimit(30),
    "/api/ai/search": EndpointLimit(20),
    "/api/ai/insights": EndpointLimit(10),
    # Forecasts hit the LLM and are the most expensive call.
    "/api/ai/predict": EndpointLimit(5),
    "/api/ai/jarvis": EndpointLimit(10),
}


@dataclass
class RateLimitResult:
    exceeded: bool
    headers: dict[str, str] = field(default_factory=dict)
    response: Optional[dict] = None


class FixedWindowRateLimiter:
    """
    In-process fixed-window counter keyed by ``(user_id, window, endpoint)``.

    Counts are never shared across processes; a restart clears them.
    """

    def __init__(
        self,
        limits: Optional[dict[str, EndpointLimit]] = None,
        *,
        window_s: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.window_s = int(window_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._store: dict[tuple[str, int, str], int] = {}

    def _window(self) -> int:
        return int(self._clock() // self.window_s)

    def _key(self, user_id: str, endpoint: str) -> tuple[str, int, str]:
        return (str(user_id), self._window(), endpoint)

    def is_exceeded(self, user_id: Optional[str], endpoint: str) -> bool:
        # Anonymous callers are rejected by auth before they get here.
        if not user_id:
            return False
        limit = self.limits.get(endpoint)
        if limit is None:
            return False
        with self._lock:
            count = self._store.get(self._key(user_id, endpoint), 0)
        return count >= limit.requests

    def increment(self, user_id: Optional[str], endpoint: str) -> None:
        if not user_id:
            return
        key = self._key(user_id, endpoint)
        with self._lock:
            self._store[key] = self._store.get(key, 0) + 1
            if len(self._store) > PRUNE_AFTER_KEYS:
                self._prune_locked()

    def remaining(self, user_id: Optional[str], endpoint: str) -> Optional[int]:
        """Requests left in the current window; ``None`` means unlimited."""
        if not user_id:
            return 0
        limit = self.limits.get(endpoint)
        if limit is None:
            return None
        with self._lock:
            count = self._store.get(self._key(user_id, endpoint), 0)
        return max(0, limit.requests - count)

    def reset_at(self) -> dt.datetime:
        return dt.datetime.fromtimestamp((self._window() + 1) * self.window_s, UTC)

    def headers(self, user_id: Optional[str], endpoint: str) -> dict[str, str]:
        limit = self.limits.get(endpoint)
        if limit is None:
            return {}
        return {
            "X-RateLimit-Limit": str(limit.requests),
            "X-RateLimit-Remaining": str(self.remaining(user_id, endpoint)),
            "X-RateLimit-Reset": str((self._window() + 1) * self.window_s),
        }

    def error_payload(self, endpoint: str) -> dict:
        limit = self.limits[endpoint]
        period = "minute" if self.window_s == 60 else f"{self.window_s}s"
        return {
            "success": False,
            "error": f"Rate limit exceeded. Maximum {limit.requests} requests per {period}.",
            "retryAfter": self.reset_at().isoformat(),
            "status": 429,
        }

    def check(self, user_id: Optional[str], endpoint: str) -> RateLimitResult:
        if self.is_exceeded(user_id, endpoint):
            log.debug("Rate limit exceeded for user=%s endpoint=%s", user_id, endpoint)
            return RateLimitResult(
                exceeded=True,
                headers=self.headers(user_id, endpoint),
                response=self.error_payload(endpoint),
            )
        self.increment(user_id, endpoint)
        return RateLimitResult(exceeded=False, headers=self.headers(user_id, endpoint))

    def reset(self, user_id: str, endpoint: str) -> None:
        with self._lock:
            self._store.pop(self._key(user_id, endpoint), None)

    def reset_user(self, user_id: str) -> None:
        user_id = str(user_id)
        with self._lock:
            for key in [k for k in self._store if k[0] == user_id]:
                del self._store[key]

    def stats(self) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {}
        with self._lock:
            items = list(self._store.items())
        for (user_id, _window, endpoint), count in items:
            per_user = out.setdefault(endpoint, {})
            per_user[user_id] = per_user.get(user_id, 0) + count
        return out

    def _prune_locked(self) -> None:
        # Windows more than two behind the current one are dropped.
        current = self._window()
        stale = [k for k in self._store if k[1] < current - 2]
        for key in stale:
            del self._store[key]
