from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar


T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    data: T
    stored_at: float


class UserTTLCache(Generic[T]):
    """
    One cached value per user id, expired lazily on read.
    """

    def __init__(self, ttl_s: float, *, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Any, _Entry[T]] = {}

    def get(self, user_id: Any) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and self._clock() - entry.stored_at < self.ttl_s:
                return entry.data
            self._entries.pop(user_id, None)
            return None

    def set(self, user_id: Any, data: T) -> None:
        with self._lock:
            self._entries[user_id] = _Entry(data=data, stored_at=self._clock())

    def clear(self, user_id: Any) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._entries)
