"""Unit tests for JoinGraph."""

import asyncio
from unittest.mock import patch
from uuid import uuid4

import pytest

from commonplace.config.schema import StorageConfig
from commonplace.core.errors import ConflictError, NotFoundError, ValidationError
from commonplace.core.joins import JoinGraph
from commonplace.storage.base import JoinUpdate, VersionConflict
from commonplace.storage.memory import InMemoryEntryStore

METADATA = {"article": "Meditations", "url": "https://example.com/meditations"}


@pytest.mark.asyncio
class TestJoinGraph:
    """Test JoinGraph functionality."""

    @pytest.fixture
    async def store(self):
        store = InMemoryEntryStore(StorageConfig(store_type="memory", dimension=2))
        await store.initialize()
        yield store
        await store.close()

    @pytest.fixture
    async def graph(self, store):
        return JoinGraph(store, max_retries=3)

    @pytest.fixture
    async def entries(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0])
        c = await store.insert("c", METADATA, [1.0, 1.0])
        return a, b, c

    async def test_join_is_symmetric(self, graph, store, entries):
        a, b, _ = entries

        first, second = await graph.join(a.id, b.id)

        assert first.joins == [b.id]
        assert second.joins == [a.id]
        assert (await store.get(a.id)).joins == [b.id]
        assert (await store.get(b.id)).joins == [a.id]

    async def test_join_is_idempotent(self, graph, store, entries):
        a, b, _ = entries
        await graph.join(a.id, b.id)
        await graph.join(b.id, a.id)

        fetched_a = await store.get(a.id)
        assert fetched_a.joins == [b.id]
        assert fetched_a.version == 2
        assert (await store.get(b.id)).joins == [a.id]

    async def test_join_preserves_existing_order(self, graph, store, entries):
        a, b, c = entries
        await graph.join(a.id, b.id)
        await graph.join(a.id, c.id)

        assert (await store.get(a.id)).joins == [b.id, c.id]

    async def test_self_join_rejected(self, graph, entries):
        a, _, _ = entries
        with pytest.raises(ValidationError):
            await graph.join(a.id, a.id)

    async def test_self_join_rejected_before_lookup(self, graph):
        missing = uuid4()
        with pytest.raises(ValidationError):
            await graph.join(missing, missing)

    async def test_join_missing_entry(self, graph, store, entries):
        a, _, _ = entries
        with pytest.raises(NotFoundError):
            await graph.join(a.id, uuid4())
        with pytest.raises(NotFoundError):
            await graph.join(uuid4(), a.id)
        assert (await store.get(a.id)).joins == []

    async def test_concurrent_joins_keep_both_edges(self, graph, store, entries):
        a, b, c = entries

        await asyncio.gather(graph.join(a.id, b.id), graph.join(a.id, c.id))

        assert set((await store.get(a.id)).joins) == {b.id, c.id}
        assert (await store.get(b.id)).joins == [a.id]
        assert (await store.get(c.id)).joins == [a.id]

    async def test_retries_after_conflict(self, graph, store, entries):
        a, b, c = entries
        original = store.update_joins
        calls = []

        async def racing_update(updates):
            calls.append(updates)
            if len(calls) == 1:
                # A competing join lands between our read and our write
                await original([JoinUpdate(a.id, (c.id,), 1), JoinUpdate(c.id, (a.id,), 1)])
            return await original(updates)

        with patch.object(store, "update_joins", side_effect=racing_update):
            first, _ = await graph.join(a.id, b.id)

        assert len(calls) == 2
        assert first.joins == [c.id, b.id]

    async def test_conflict_error_after_max_retries(self, graph, store, entries):
        a, b, _ = entries
        conflict = VersionConflict(a.id, 1, 2)

        with patch.object(store, "update_joins", side_effect=conflict) as mock_update:
            with pytest.raises(ConflictError):
                await graph.join(a.id, b.id)

        assert mock_update.call_count == 4

    async def test_neighbors(self, graph, entries):
        a, b, c = entries
        await graph.join(a.id, b.id)
        await graph.join(a.id, c.id)

        assert [e.id for e in await graph.neighbors(a.id)] == [b.id, c.id]
        assert [e.id for e in await graph.neighbors(b.id)] == [a.id]

    async def test_neighbors_skips_dangling_joins(self, graph, store, entries):
        a, b, _ = entries
        await store.update_joins([JoinUpdate(a.id, (uuid4(), b.id), 1)])

        assert [e.id for e in await graph.neighbors(a.id)] == [b.id]

    async def test_neighbors_missing_entry(self, graph):
        with pytest.raises(NotFoundError):
            await graph.neighbors(uuid4())

    async def test_edges(self, graph, store, entries):
        a, b, c = entries
        await graph.join(a.id, b.id)
        await graph.join(b.id, c.id)

        everything = await store.get_many([a.id, b.id, c.id])
        assert JoinGraph.edges(everything) == [(a.id, b.id), (b.id, c.id)]

        without_c = await store.get_many([a.id, b.id])
        assert JoinGraph.edges(without_c) == [(a.id, b.id)]
