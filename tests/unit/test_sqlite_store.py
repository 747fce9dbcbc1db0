"""Unit tests for the SQLite entry store."""

import asyncio
from uuid import uuid4

import pytest

from commonplace.config.schema import StorageConfig
from commonplace.core.errors import NotFoundError, ValidationError
from commonplace.core.joins import JoinGraph
from commonplace.storage import create_entry_store
from commonplace.storage.base import JoinUpdate, ListOrder, StorageError, VersionConflict
from commonplace.storage.sqlite import SQLiteEntryStore

METADATA = {"article": "Walden", "url": "https://example.com/walden", "section": "Economy"}


def _config(path) -> StorageConfig:
    return StorageConfig(
        store_type="sqlite",
        connection_string=f"sqlite:///{path}",
        dimension=3,
    )


@pytest.mark.asyncio
class TestSQLiteEntryStore:
    """Test SQLiteEntryStore functionality."""

    @pytest.fixture
    async def db_path(self, tmp_path):
        return tmp_path / "entries.db"

    @pytest.fixture
    async def store(self, db_path):
        """Create a SQLiteEntryStore instance for testing."""
        store = SQLiteEntryStore(_config(db_path))
        await store.initialize()
        yield store
        await store.close()

    async def test_factory_creates_sqlite_store(self, db_path):
        store = create_entry_store(_config(db_path))
        assert isinstance(store, SQLiteEntryStore)
        assert store.db_path == str(db_path)

    async def test_in_memory_database(self):
        async with SQLiteEntryStore(
            StorageConfig(store_type="sqlite", connection_string=":memory:", dimension=3)
        ) as store:
            await store.insert("text", METADATA, [1.0, 0.0, 0.0])
            assert await store.count() == 1

    async def test_insert_and_get_round_trip(self, store):
        entry = await store.insert("I went to the woods.", METADATA, [0.5, 0.25, 0.125])

        fetched = await store.get(entry.id)
        assert fetched.id == entry.id
        assert fetched.content == "I went to the woods."
        assert fetched.metadata.section == "Economy"
        assert fetched.metadata.source_label == "Walden > Economy"
        assert fetched.embedding == [0.5, 0.25, 0.125]
        assert fetched.created_at == entry.created_at
        assert fetched.version == 1

    async def test_persists_across_connections(self, db_path):
        async with SQLiteEntryStore(_config(db_path)) as store:
            entry = await store.insert("text", METADATA, [1.0, 0.0, 0.0])

        async with SQLiteEntryStore(_config(db_path)) as store:
            fetched = await store.get(entry.id)
            assert fetched.content == "text"
            assert await store.count() == 1

    async def test_insert_validation_happens_before_write(self, store):
        with pytest.raises(ValidationError):
            await store.insert("text", METADATA, [1.0, 0.0])
        with pytest.raises(ValidationError):
            await store.insert("", METADATA, [1.0, 0.0, 0.0])
        assert await store.count() == 0

    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get(uuid4())

    async def test_get_many(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0, 0.0])

        entries = await store.get_many([b.id, uuid4(), a.id])
        assert [e.id for e in entries] == [b.id, a.id]
        assert await store.get_many([]) == []

    async def test_list_order_and_pagination(self, store):
        ids = [(await store.insert(f"entry {i}", METADATA, [1.0, 0.0, 0.0])).id for i in range(5)]

        newest = await store.list_entries(limit=3)
        assert [e.id for e in newest] == list(reversed(ids))[:3]
        assert all(e.embedding is None for e in newest)

        oldest = await store.list_entries(
            order=ListOrder.OLDEST_FIRST, limit=None, offset=2, include_embedding=True
        )
        assert [e.id for e in oldest] == ids[2:]
        assert all(e.embedding == [1.0, 0.0, 0.0] for e in oldest)

    async def test_sample_random(self, store):
        assert await store.sample_random() is None
        entry = await store.insert("only", METADATA, [1.0, 0.0, 0.0])
        assert (await store.sample_random()).id == entry.id

    async def test_update_joins(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0, 0.0])

        updated = await store.update_joins(
            [JoinUpdate(a.id, (b.id,), 1), JoinUpdate(b.id, (a.id,), 1)]
        )

        assert {e.id: e.joins for e in updated} == {a.id: [b.id], b.id: [a.id]}
        fetched = await store.get(a.id)
        assert fetched.version == 2
        assert fetched.metadata.article == "Walden"

    async def test_update_joins_is_atomic(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0, 0.0])

        with pytest.raises(VersionConflict):
            await store.update_joins(
                [JoinUpdate(a.id, (b.id,), 1), JoinUpdate(b.id, (a.id,), 7)]
            )
        fetched = await store.get(a.id)
        assert fetched.joins == []
        assert fetched.version == 1

        with pytest.raises(NotFoundError):
            await store.update_joins(
                [JoinUpdate(a.id, (b.id,), 1), JoinUpdate(uuid4(), (a.id,), 1)]
            )
        assert (await store.get(a.id)).joins == []

    async def test_concurrent_updates_one_wins(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0, 0.0])
        c = await store.insert("c", METADATA, [0.0, 0.0, 1.0])

        results = await asyncio.gather(
            store.update_joins([JoinUpdate(a.id, (b.id,), 1)]),
            store.update_joins([JoinUpdate(a.id, (c.id,), 1)]),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, VersionConflict)]
        assert len(conflicts) == 1
        assert (await store.get(a.id)).version == 2

    async def test_reads_never_see_rolled_back_joins(self, store):
        a = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        b = await store.insert("b", METADATA, [0.0, 1.0, 0.0])
        c = await store.insert("c", METADATA, [0.0, 0.0, 1.0])

        failing = asyncio.ensure_future(
            store.update_joins([JoinUpdate(a.id, (b.id,), 1), JoinUpdate(b.id, (a.id,), 99)])
        )
        seen = []
        while not failing.done():
            entry = await store.get(a.id)
            seen.append((entry.version, entry.joins))
            await asyncio.sleep(0)

        with pytest.raises(VersionConflict):
            await failing
        assert seen
        assert all(observed == (1, []) for observed in seen)

        await JoinGraph(store).join(a.id, c.id)
        by_id = {e.id: e for e in await store.get_many([a.id, b.id, c.id])}
        assert by_id[a.id].joins == [c.id]
        assert by_id[b.id].joins == []
        assert by_id[c.id].joins == [a.id]

    async def test_corrupt_row_raises_storage_error(self, store):
        entry = await store.insert("a", METADATA, [1.0, 0.0, 0.0])
        await store.connection.execute(
            "UPDATE entries SET metadata = ? WHERE id = ?", ('{"article": ""}', str(entry.id))
        )

        with pytest.raises(StorageError):
            await store.get(entry.id)
        with pytest.raises(StorageError):
            await store.list_entries()
