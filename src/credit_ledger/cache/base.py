from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, Optional


class AsyncCacheBackend(ABC):
    """
    Async key/value cache in front of read-mostly reference data (plan rows).
    Balances are never cached: the account document is the only copy
    the debit path may trust.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            await self.delete(key)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Optional[Any]]],
        ttl_seconds: Optional[int] = None,
    ) -> Optional[Any]:
        """Read-through: on a miss call `loader` and cache a non-None result."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl_seconds=ttl_seconds)
        return value
