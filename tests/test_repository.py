"""Tests for the in-memory repository."""

import asyncio
from dataclasses import dataclass, field

from calendar_integration.repository import InMemoryRepository


@dataclass
class _Item:
    name: str
    tags: list[str] = field(default_factory=list)
    count: int = 0


class TestInMemoryRepository:
    async def test_get_returns_copy(self):
        repo = InMemoryRepository()
        await repo.set("a", _Item("a"))
        item = await repo.get("a")
        item.tags.append("changed")
        assert (await repo.get("a")).tags == []

    async def test_set_stores_copy(self):
        repo = InMemoryRepository()
        item = _Item("a")
        await repo.set("a", item)
        item.count = 5
        assert (await repo.get("a")).count == 0

    async def test_get_missing(self):
        repo = InMemoryRepository()
        assert await repo.get("missing") is None

    async def test_update_is_atomic(self):
        repo = InMemoryRepository()
        await repo.set("a", _Item("a"))

        def bump(item):
            item.count += 1

        await asyncio.gather(*(repo.update("a", bump) for _ in range(50)))
        assert (await repo.get("a")).count == 50

    async def test_update_missing_returns_none(self):
        repo = InMemoryRepository()
        assert await repo.update("missing", lambda item: None) is None

    async def test_delete(self):
        repo = InMemoryRepository()
        await repo.set("a", _Item("a"))
        assert await repo.delete("a") is True
        assert await repo.delete("a") is False

    async def test_list_and_count_with_predicate(self):
        repo = InMemoryRepository()
        for i in range(5):
            await repo.set(str(i), _Item(str(i), count=i))
        evens = await repo.list(lambda item: item.count % 2 == 0)
        assert sorted(i.name for i in evens) == ["0", "2", "4"]
        assert await repo.count() == 5
        assert await repo.count(lambda item: item.count > 2) == 2

    async def test_clear(self):
        repo = InMemoryRepository()
        await repo.set("a", _Item("a"))
        await repo.clear()
        assert await repo.count() == 0
