"""Storage abstraction for connections, events and sync jobs."""

from __future__ import annotations

import asyncio
import copy
from typing import Callable, Generic, Protocol, TypeVar

T = TypeVar("T")


class Repository(Protocol[T]):
    """Protocol that all entity stores must satisfy.

    Reads return copies: callers never see (or cause) a partial update.
    """

    async def get(self, key: str) -> T | None: ...

    async def set(self, key: str, value: T) -> None: ...

    async def update(self, key: str, mutate: Callable[[T], None]) -> T | None: ...

    async def delete(self, key: str) -> bool: ...

    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]: ...

    async def count(self, predicate: Callable[[T], bool] | None = None) -> int: ...


class InMemoryRepository(Generic[T]):
    """Dict-backed repository serialised by a single asyncio lock."""

    def __init__(self) -> None:
        self._items: dict[str, T] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> T | None:
        async with self._lock:
            item = self._items.get(key)
            return copy.deepcopy(item) if item is not None else None

    async def set(self, key: str, value: T) -> None:
        async with self._lock:
            self._items[key] = copy.deepcopy(value)

    async def update(self, key: str, mutate: Callable[[T], None]) -> T | None:
        """Apply ``mutate`` to the stored item atomically. None if the key is absent."""
        async with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            mutate(item)
            return copy.deepcopy(item)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._items.pop(key, None) is not None

    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        async with self._lock:
            return [
                copy.deepcopy(item) for item in self._items.values()
                if predicate is None or predicate(item)
            ]

    async def count(self, predicate: Callable[[T], bool] | None = None) -> int:
        async with self._lock:
            return sum(1 for item in self._items.values() if predicate is None or predicate(item))

    async def clear(self) -> None:
        async with self._lock:
            self._items.clear()
