"""Unit tests for the ingestion and query pipelines."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from commonplace.config.schema import IndexConfig, StorageConfig
from commonplace.core.errors import ValidationError
from commonplace.core.similarity import SimilarityIndex
from commonplace.pipelines.ingestion import IngestionPipeline
from commonplace.pipelines.query import QueryPipeline
from commonplace.providers.base import ProviderError
from commonplace.storage.memory import InMemoryEntryStore

METADATA = {"article": "The Art of Doing Science", "url": "https://example.com/hamming"}


def _provider(embedding=None) -> MagicMock:
    provider = MagicMock()
    provider.embed_text = AsyncMock(return_value=embedding or [1.0, 0.0, 0.0])
    provider.describe_image = AsyncMock(return_value="Text read from the image")
    provider.get_dimension.return_value = 3
    return provider


@pytest.mark.asyncio
class TestIngestionPipeline:
    """Test IngestionPipeline."""

    @pytest.fixture
    async def store(self):
        store = InMemoryEntryStore(StorageConfig(store_type="memory", dimension=3))
        await store.initialize()
        yield store
        await store.close()

    @pytest.fixture
    def provider(self):
        return _provider()

    @pytest.fixture
    def pipeline(self, provider, store):
        return IngestionPipeline(None, provider, store)

    async def test_ingest_text(self, pipeline, provider, store):
        entry = await pipeline.ingest_text("Do important problems.", METADATA)

        provider.embed_text.assert_awaited_once_with("Do important problems.")
        assert entry.embedding == [1.0, 0.0, 0.0]
        assert entry.metadata.article == "The Art of Doing Science"
        assert await store.count() == 1

    @pytest.mark.parametrize(
        "content,metadata",
        [
            (None, METADATA),
            ("   ", METADATA),
            ("text", None),
            ("text", {"article": "No url"}),
            ("text", {**METADATA, "joins": ["6f1c3b1e-1a53-4a5e-9d8e-6d2b0e1f0a11"]}),
        ],
    )
    async def test_validation_before_embedding(self, pipeline, provider, store, content, metadata):
        with pytest.raises(ValidationError):
            await pipeline.ingest_text(content, metadata)

        provider.embed_text.assert_not_awaited()
        assert await store.count() == 0

    async def test_provider_failure_stores_nothing(self, pipeline, provider, store):
        provider.embed_text.side_effect = ProviderError("down", provider="openai")

        with pytest.raises(ProviderError):
            await pipeline.ingest_text("text", METADATA)
        assert await store.count() == 0

    async def test_wrong_dimension_is_provider_failure(self, store):
        pipeline = IngestionPipeline(None, _provider([1.0, 0.0]), store)

        with pytest.raises(ProviderError) as exc_info:
            await pipeline.ingest_text("text", METADATA)

        assert exc_info.value.status_code == 502
        assert "2-dimensional" in exc_info.value.message
        assert await store.count() == 0

    async def test_ingest_image(self, pipeline, provider):
        entry = await pipeline.ingest_image("https://example.com/page.png", METADATA)

        provider.describe_image.assert_awaited_once_with("https://example.com/page.png")
        provider.embed_text.assert_awaited_once_with("Text read from the image")
        assert entry.content == "Text read from the image"
        assert entry.metadata.image_url == "https://example.com/page.png"

    async def test_ingest_image_requires_url(self, pipeline, provider):
        with pytest.raises(ValidationError):
            await pipeline.ingest_image("", METADATA)
        provider.describe_image.assert_not_awaited()

    async def test_ingest_image_validates_metadata_first(self, pipeline, provider):
        with pytest.raises(ValidationError):
            await pipeline.ingest_image("https://example.com/page.png", {"article": "x"})
        provider.describe_image.assert_not_awaited()


@pytest.mark.asyncio
class TestQueryPipeline:
    """Test QueryPipeline."""

    @pytest.fixture
    async def store(self):
        store = InMemoryEntryStore(StorageConfig(store_type="memory", dimension=3))
        await store.initialize()
        yield store
        await store.close()

    @pytest.fixture
    def provider(self):
        return _provider([0.0, 1.0, 0.0])

    @pytest.fixture
    def pipeline(self, provider, store):
        return QueryPipeline(provider, SimilarityIndex(store, IndexConfig()))

    async def test_search(self, pipeline, provider, store):
        await store.insert("x axis", METADATA, [1.0, 0.0, 0.0])
        target = await store.insert("y axis", METADATA, [0.0, 1.0, 0.0])

        results = await pipeline.search("up", k=1)

        provider.embed_text.assert_awaited_once_with("up")
        assert [r.entry.id for r in results] == [target.id]
        assert results[0].similarity == pytest.approx(1.0)

    async def test_search_empty_store(self, pipeline):
        assert await pipeline.search("anything") == []

    @pytest.mark.parametrize("query", ["", "   ", None])
    async def test_empty_query(self, pipeline, provider, query):
        with pytest.raises(ValidationError):
            await pipeline.search(query)
        provider.embed_text.assert_not_awaited()

    async def test_invalid_k(self, pipeline, provider):
        with pytest.raises(ValidationError):
            await pipeline.search("text", k=0)
        provider.embed_text.assert_not_awaited()
