"""Similarity index: rank stored entries by cosine similarity to a query.

Two regimes:
- Small stores (fewer than ``exact_threshold`` entries) are scanned exactly
  on every query, straight from the entry store, so results are always
  fresh and complete.
- Larger stores are searched through a snapshot loaded into an in-memory
  chromadb collection (HNSW graph, cosine space). The collection proposes
  the nearest candidates and they are re-scored exactly against the
  snapshot's normalized vectors. The snapshot is derived data.
  ``rebuild()`` recreates it from the store at any time, and entries
  inserted after the last rebuild are missing from results until the next
  one.

How to use:
    index = SimilarityIndex(store, config.index)
    results = await index.search(query_vector, k=10)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from uuid import uuid4

import numpy as np

from commonplace.config.schema import IndexConfig
from commonplace.core.errors import UpstreamError, ValidationError
from commonplace.entities import Entry, SearchResult
from commonplace.observability.logging import get_logger
from commonplace.storage.base import EntryStore, ListOrder

logger = get_logger(__name__)

# Rows per collection.add() call; chromadb caps the batch size
_ADD_BATCH_SIZE = 1000


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms > 0, norms, 1.0)
    return matrix / safe


def rank_by_similarity(similarities: np.ndarray, k: int) -> np.ndarray:
    """Indices of the top ``k`` similarities, descending.

    Rows are expected newest first, so ties keep the newer entry ahead.
    """
    order = np.lexsort((np.arange(len(similarities)), -similarities))
    return order[:k]


def open_chroma_client() -> Any:
    """In-memory chromadb client; its collections live as long as the process.

    Raises:
        UpstreamError: If chromadb is not installed or cannot start
    """
    try:
        import chromadb
        from chromadb.config import Settings
    except ImportError as e:
        raise UpstreamError("chromadb not installed: pip install chromadb", original_error=e)

    try:
        return chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))
    except Exception as e:
        raise UpstreamError(f"Failed to start chromadb: {e}", original_error=e)


@dataclass
class _Snapshot:
    """Entries and vectors captured at the last rebuild, plus their collection."""

    entries: list[Entry]
    vectors: np.ndarray
    collection: Any = None
    rows: dict[str, int] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.entries)

    def nearest(self, query_unit: np.ndarray, n: int) -> np.ndarray:
        """Row numbers of the collection's ``n`` nearest entries, ascending."""
        if n == 0 or self.collection is None:
            return np.zeros(0, dtype=np.int64)
        reply = self.collection.query(
            query_embeddings=[query_unit.tolist()],
            n_results=n,
            include=["distances"],
        )
        return np.sort(np.asarray([self.rows[i] for i in reply["ids"][0]], dtype=np.int64))


class SimilarityIndex:
    """Cosine-similarity search over the entries of one store.

    The index is an explicitly owned, rebuildable cache. It never writes to
    the store and can be served stale without breaking any invariant.
    """

    def __init__(self, store: EntryStore, config: Optional[IndexConfig] = None) -> None:
        """Initialize the index.

        Args:
            store: Source of truth for entries and embeddings
            config: Index configuration
        """
        self.store = store
        self.config = config or IndexConfig()
        self._snapshot: Optional[_Snapshot] = None
        self._client: Any = None
        self._rebuild_lock = asyncio.Lock()

    @property
    def size(self) -> int:
        """Number of entries in the current snapshot (0 if never built)."""
        return self._snapshot.size if self._snapshot else 0

    @property
    def is_built(self) -> bool:
        return self._snapshot is not None

    async def is_stale(self) -> bool:
        """True when the store holds entries the snapshot has not seen."""
        return await self.store.count() != self.size

    def _validate_query(self, query_embedding: Sequence[float], k: int) -> np.ndarray:
        if k < 1:
            raise ValidationError(f"k must be >= 1, got {k}")
        try:
            query = np.asarray(query_embedding, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Query embedding must be numeric: {e}") from e
        if query.ndim != 1 or query.shape[0] != self.store.dimension:
            raise ValidationError(
                f"Query embedding has dimension {query.size}, expected {self.store.dimension}"
            )
        if not np.all(np.isfinite(query)):
            raise ValidationError("Query embedding contains non-finite values")
        return query

    async def _load_embedded_entries(self) -> tuple[list[Entry], np.ndarray]:
        """Fetch every entry with a valid embedding, newest first."""
        entries = await self.store.list_entries(
            order=ListOrder.NEWEST_FIRST, limit=None, include_embedding=True
        )
        dimension = self.store.dimension
        valid = [
            entry
            for entry in entries
            if entry.embedding is not None and len(entry.embedding) == dimension
        ]
        if not valid:
            return [], np.zeros((0, dimension))

        vectors = np.asarray([entry.embedding for entry in valid], dtype=np.float64)
        return [entry.without_embedding() for entry in valid], normalize_rows(vectors)

    @staticmethod
    def _to_results(
        entries: list[Entry], similarities: np.ndarray, ranked: np.ndarray
    ) -> list[SearchResult]:
        return [
            SearchResult(
                entry=entries[i],
                similarity=float(np.clip(similarities[i], -1.0, 1.0)),
            )
            for i in ranked
        ]

    async def search(self, query_embedding: Sequence[float], k: int = 10) -> list[SearchResult]:
        """Return the ``k`` entries most similar to the query, best first.

        Args:
            query_embedding: Vector of the store's dimension
            k: Number of results (capped at ``max_k``)

        Returns:
            List of search results; empty if the store is empty

        Raises:
            ValidationError: If k < 1 or the query has the wrong dimension
            UpstreamError: If the snapshot cannot be built or queried
        """
        query = self._validate_query(query_embedding, k)
        k = min(k, self.config.max_k)
        query_norm = np.linalg.norm(query)
        query_unit = query / query_norm if query_norm > 0 else query

        total = await self.store.count()
        if total == 0:
            return []

        if total < self.config.exact_threshold:
            entries, vectors = await self._load_embedded_entries()
            if not entries:
                return []
            similarities = vectors @ query_unit
            results = self._to_results(entries, similarities, rank_by_similarity(similarities, k))
            logger.debug("exact_search_completed", candidates=len(entries), k=k)
            return results

        if self._snapshot is None:
            await self.rebuild()
        if self.size == 0:
            return []

        if query_norm == 0:
            # Every entry is equally (un)related to a zero query
            snapshot = self._snapshot
            candidates = np.arange(min(k, snapshot.size))
        else:
            snapshot, candidates = await self._candidates(query_unit, k)

        similarities = snapshot.vectors[candidates] @ query_unit
        ranked_local = rank_by_similarity(similarities, k)
        # candidates are sorted, so local order still puts newer rows first
        results = [
            SearchResult(
                entry=snapshot.entries[candidates[i]],
                similarity=float(np.clip(similarities[i], -1.0, 1.0)),
            )
            for i in ranked_local
        ]
        logger.debug(
            "approximate_search_completed",
            candidates=len(candidates),
            snapshot_size=snapshot.size,
            k=k,
        )
        return results

    async def _candidates(self, query_unit: np.ndarray, k: int) -> tuple[_Snapshot, np.ndarray]:
        snapshot = self._snapshot
        if snapshot is None:
            return _Snapshot(entries=[], vectors=np.zeros((0, len(query_unit)))), np.zeros(0, dtype=np.int64)
        try:
            rows = await asyncio.to_thread(snapshot.nearest, query_unit, min(k, snapshot.size))
            return snapshot, rows
        except Exception as e:
            if self._snapshot is snapshot:
                raise UpstreamError(f"Similarity index query failed: {e}", original_error=e)
        # A rebuild swapped the snapshot and dropped its collection mid-query
        return await self._candidates(query_unit, k)

    def _build_collection(self, entries: list[Entry], vectors: np.ndarray) -> Any:
        if self._client is None:
            self._client = open_chroma_client()

        collection = self._client.create_collection(
            name=f"snapshot_{uuid4().hex}",
            metadata={
                "hnsw:space": "cosine",
                "hnsw:M": self.config.hnsw_m,
                "hnsw:construction_ef": self.config.hnsw_construction_ef,
                "hnsw:search_ef": self.config.hnsw_search_ef,
            },
        )
        ids = [str(entry.id) for entry in entries]
        for start in range(0, len(ids), _ADD_BATCH_SIZE):
            stop = start + _ADD_BATCH_SIZE
            collection.add(ids=ids[start:stop], embeddings=vectors[start:stop].tolist())
        return collection

    def _drop_collection(self, snapshot: Optional[_Snapshot]) -> None:
        if snapshot is None or snapshot.collection is None:
            return
        try:
            self._client.delete_collection(snapshot.collection.name)
        except Exception as e:
            logger.warning("snapshot_drop_failed", collection=snapshot.collection.name, error=str(e))

    async def rebuild(self) -> None:
        """Recreate the snapshot from the store's current contents.

        The previous snapshot keeps serving queries until the new one is
        ready.

        Raises:
            StorageError: If the store cannot be read
            UpstreamError: If the collection cannot be built
        """
        async with self._rebuild_lock:
            entries, vectors = await self._load_embedded_entries()

            collection = None
            if entries:
                try:
                    collection = await asyncio.to_thread(self._build_collection, entries, vectors)
                except UpstreamError:
                    raise
                except Exception as e:
                    raise UpstreamError(f"Failed to build similarity index: {e}", original_error=e)

            previous = self._snapshot
            self._snapshot = _Snapshot(
                entries=entries,
                vectors=vectors,
                collection=collection,
                rows={str(entry.id): row for row, entry in enumerate(entries)},
            )
            await asyncio.to_thread(self._drop_collection, previous)
            logger.info("index_rebuilt", size=len(entries))

    async def run_periodic_rebuild(self, interval: Optional[float] = None) -> None:
        """Rebuild every ``interval`` seconds until cancelled.

        A failed rebuild keeps the previous snapshot and is retried on the
        next tick.
        """
        interval = interval or self.config.rebuild_interval_seconds
        if not interval or interval <= 0:
            raise ValidationError("A positive rebuild interval is required")

        while True:
            await asyncio.sleep(interval)
            try:
                await self.rebuild()
            except Exception as e:
                logger.warning(
                    "periodic_rebuild_failed", error=str(e), error_type=type(e).__name__
                )

    async def close(self) -> None:
        """Drop the snapshot and its collection."""
        async with self._rebuild_lock:
            snapshot, self._snapshot = self._snapshot, None
            if self._client is not None:
                await asyncio.to_thread(self._drop_collection, snapshot)
