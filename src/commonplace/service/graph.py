"""HighlightGraph: the query surface over one entry store.

Why this exists:
- Wires the store, similarity index, join graph, layout projector and
  pipelines together once, so CLI commands (and any future API layer) only
  talk to one object
- Owns the lifecycle of the store and the optional periodic index rebuild

How to use:
    async with open_graph(config) as graph:
        entry = await graph.add("A highlight", {"article": "...", "url": "..."})
        results = await graph.search("something similar", k=5)
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from commonplace.config.schema import AppConfig
from commonplace.core.joins import JoinGraph
from commonplace.core.layout import LayoutProjector
from commonplace.core.similarity import SimilarityIndex
from commonplace.entities import Entry, EntryMetadata, PositionedEntry, SearchResult
from commonplace.observability.logging import get_logger
from commonplace.pipelines.ingestion import IngestionPipeline
from commonplace.pipelines.query import QueryPipeline
from commonplace.providers import ProviderConfig, create_embedding_provider
from commonplace.providers.base import EmbeddingProvider
from commonplace.service.stores import initialize_store
from commonplace.storage.base import EntryStore, ListOrder

logger = get_logger(__name__)


@dataclass(frozen=True)
class LayoutFilter:
    """Which entries to lay out: one article's, and/or the newest ``limit``."""

    article: Optional[str] = None
    limit: Optional[int] = None


class HighlightGraph:
    """Facade over the highlight store and its derived views."""

    def __init__(
        self,
        config: AppConfig,
        store: EntryStore,
        embedding_provider: EmbeddingProvider,
    ) -> None:
        self.config = config
        self.store = store
        self.embedding_provider = embedding_provider

        self.index = SimilarityIndex(store, config.index)
        self.joins = JoinGraph(store, max_retries=config.joins.max_retries)
        self.projector = LayoutProjector(config.layout)
        self.ingestion = IngestionPipeline(config, embedding_provider, store)
        self.query = QueryPipeline(embedding_provider, self.index)

    # Writes

    async def add(
        self, content: Optional[str], metadata: Optional[EntryMetadata | dict[str, Any]]
    ) -> Entry:
        return await self.ingestion.ingest_text(content, metadata)

    async def add_image(
        self, image_url: Optional[str], metadata: Optional[EntryMetadata | dict[str, Any]]
    ) -> Entry:
        return await self.ingestion.ingest_image(image_url, metadata)

    async def join(self, id1: UUID, id2: UUID) -> tuple[Entry, Entry]:
        return await self.joins.join(id1, id2)

    # Reads

    async def search(self, text: str, k: int = 10) -> list[SearchResult]:
        return await self.query.search(text, k)

    async def neighbors(self, entry_id: UUID) -> list[Entry]:
        return await self.joins.neighbors(entry_id)

    async def get(self, entry_id: UUID) -> Entry:
        return await self.store.get(entry_id)

    async def list_entries(
        self,
        limit: Optional[int] = 50,
        offset: int = 0,
        order: ListOrder = ListOrder.NEWEST_FIRST,
    ) -> list[Entry]:
        return await self.store.list_entries(order=order, limit=limit, offset=offset)

    async def random(self) -> Optional[Entry]:
        return await self.store.sample_random()

    async def count(self) -> int:
        return await self.store.count()

    async def grouped_by_source(self, limit: Optional[int] = 50) -> dict[str, list[Entry]]:
        """Newest entries grouped under "Article > Section" keys.

        Groups appear in order of their newest entry.
        """
        grouped: dict[str, list[Entry]] = {}
        for entry in await self.store.list_entries(limit=limit):
            grouped.setdefault(entry.metadata.source_label, []).append(entry)
        return grouped

    async def project(self, layout_filter: Optional[LayoutFilter] = None) -> list[PositionedEntry]:
        """Lay out the selected entries in 2D.

        Projection runs in a worker thread; cancelling the caller discards
        the result. At most ``layout.max_entries`` of the newest selected
        entries are placed.
        """
        layout_filter = layout_filter or LayoutFilter()
        entries = await self.store.list_entries(limit=None, include_embedding=True)
        if layout_filter.article is not None:
            entries = [e for e in entries if e.metadata.article == layout_filter.article]
        if layout_filter.limit is not None:
            entries = entries[: layout_filter.limit]
        cap = self.config.layout.max_entries
        if len(entries) > cap:
            logger.warning("layout_truncated", selected=len(entries), max_entries=cap)
            entries = entries[:cap]

        positioned = await asyncio.to_thread(
            self.projector.project, entries, self.store.dimension
        )
        logger.info(
            "layout_completed",
            entries=len(positioned),
            article=layout_filter.article,
        )
        return [
            p.model_copy(update={"entry": p.entry.without_embedding()}) for p in positioned
        ]

    def edges(self, positioned: list[PositionedEntry]) -> list[tuple[UUID, UUID]]:
        """Join edges among laid-out entries."""
        return self.joins.edges(p.entry for p in positioned)

    # Index maintenance

    async def reindex(self) -> int:
        """Rebuild the similarity index snapshot; returns its size."""
        await self.index.rebuild()
        return self.index.size

    async def close(self) -> None:
        await self.index.close()
        await self.store.close()
        await self.embedding_provider.close()


@asynccontextmanager
async def open_graph(
    config: AppConfig,
    embedding_provider: Optional[EmbeddingProvider] = None,
) -> AsyncIterator[HighlightGraph]:
    """Open the store, yield a ready HighlightGraph, and close everything on exit.

    When ``index.rebuild_interval_seconds`` is set, a background task
    rebuilds the similarity index for as long as the graph is open.
    """
    if embedding_provider is None:
        embedding_provider = create_embedding_provider(
            ProviderConfig.from_embedding_config(config.embedding)
        )
    try:
        store = await initialize_store(config)
    except BaseException:
        await embedding_provider.close()
        raise
    graph = HighlightGraph(config, store, embedding_provider)

    rebuild_task = None
    if config.index.rebuild_interval_seconds:
        rebuild_task = asyncio.create_task(graph.index.run_periodic_rebuild())

    try:
        yield graph
    finally:
        if rebuild_task is not None:
            rebuild_task.cancel()
            try:
                await rebuild_task
            except asyncio.CancelledError:
                pass
        await graph.close()
