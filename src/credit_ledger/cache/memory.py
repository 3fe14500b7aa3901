from __future__ import annotations

import time
from typing import Any, Callable, Dict, NamedTuple, Optional

from .base import AsyncCacheBackend


class _Slot(NamedTuple):
    value: Any
    expires_at: Optional[float]


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Process-local cache. `clock` is injectable so tests can expire entries
    without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._slots: Dict[str, _Slot] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if slot.expires_at is not None and slot.expires_at <= self._clock():
            del self._slots[key]
            return None
        return slot.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        self._slots[key] = _Slot(value, expires_at)

    async def delete(self, key: str) -> None:
        self._slots.pop(key, None)

    def __len__(self) -> int:
        return len(self._slots)
