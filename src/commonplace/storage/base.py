"""Abstract base class for entry storage backends.

Why this exists:
- The entry store is the single source of truth for highlights
- Allows swapping between SQLite and in-memory backends
- Enables testing with in-memory implementations

How to extend:
1. Subclass EntryStore
2. Implement all abstract methods
3. Register in create_entry_store()

A backend only needs atomic multi-row compare-and-set (for joins) and a way
to enumerate embeddings (for the similarity index). Vector search itself
lives in SimilarityIndex.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence
from uuid import UUID

import pydantic

from commonplace.config.schema import StorageConfig
from commonplace.core.errors import CommonplaceError, UpstreamError, ValidationError
from commonplace.entities import Entry, EntryMetadata


class ListOrder(str, Enum):
    """Ordering for entry listings."""

    NEWEST_FIRST = "newest_first"
    OLDEST_FIRST = "oldest_first"


@dataclass(frozen=True)
class JoinUpdate:
    """Replacement joins for one entry, guarded by the version that was read."""

    entry_id: UUID
    joins: tuple[UUID, ...]
    expected_version: int


class EntryStore(ABC):
    """Abstract interface for entry storage backends.

    Implementations must handle:
    - All-or-nothing inserts
    - Lookup, listing and uniform random sampling
    - Atomic versioned updates of the joins of several entries at once
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize storage with configuration."""
        self.config = config

    @property
    def dimension(self) -> int:
        """Embedding length every stored entry must have."""
        return self.config.dimension

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the store (create tables, indices, etc.)."""
        pass

    async def insert(
        self,
        content: Optional[str],
        metadata: Optional[EntryMetadata | dict[str, Any]],
        embedding: Optional[Sequence[float]],
    ) -> Entry:
        """Validate and persist a new entry.

        Args:
            content: Highlight text
            metadata: Source reference; must not carry joins
            embedding: Vector of length ``dimension``

        Returns:
            The full persisted entry, embedding included

        Raises:
            ValidationError: If any field is missing or malformed
            StorageError: If the backend fails
        """
        entry = self.build_entry(content, metadata, embedding)
        await self._insert(entry)
        return entry

    def build_entry(
        self,
        content: Optional[str],
        metadata: Optional[EntryMetadata | dict[str, Any]],
        embedding: Optional[Sequence[float]],
    ) -> Entry:
        """Validate insert arguments and build the entry to persist."""
        content, metadata = validate_fields(content, metadata)
        vector = self.validate_embedding(embedding)
        return Entry(content=content, metadata=metadata, embedding=vector)

    def validate_embedding(self, embedding: Optional[Sequence[float]]) -> list[float]:
        """Check that an embedding is a finite vector of length ``dimension``."""
        if embedding is None:
            raise ValidationError("Missing embedding")
        try:
            vector = [float(v) for v in embedding]
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Embedding must be a sequence of numbers: {e}") from e
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding has dimension {len(vector)}, expected {self.dimension}"
            )
        if not all(math.isfinite(v) for v in vector):
            raise ValidationError("Embedding contains non-finite values")
        return vector

    @abstractmethod
    async def _insert(self, entry: Entry) -> None:
        """Persist a validated entry atomically."""
        pass

    @abstractmethod
    async def get(self, entry_id: UUID) -> Entry:
        """Retrieve an entry by ID, embedding included.

        Raises:
            NotFoundError: If no entry has this ID
        """
        pass

    @abstractmethod
    async def get_many(self, entry_ids: Sequence[UUID]) -> list[Entry]:
        """Retrieve the entries that exist, in request order, skipping missing IDs."""
        pass

    @abstractmethod
    async def list_entries(
        self,
        order: ListOrder = ListOrder.NEWEST_FIRST,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_embedding: bool = False,
    ) -> list[Entry]:
        """List entries by creation time.

        Args:
            order: Newest or oldest first
            limit: Maximum number of entries, or None for all of them
            offset: Number of entries to skip
            include_embedding: Embeddings are omitted unless requested

        Returns:
            List of entries
        """
        pass

    @abstractmethod
    async def sample_random(self) -> Optional[Entry]:
        """Return one entry chosen uniformly from the whole store, or None if empty."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Return total number of entries stored."""
        pass

    @abstractmethod
    async def update_joins(self, updates: Sequence[JoinUpdate]) -> list[Entry]:
        """Replace the joins of several entries in one atomic step.

        Only the join graph calls this. Every update bumps ``updated_at``
        and ``version``.

        Raises:
            NotFoundError: If an entry does not exist (nothing is written)
            VersionConflict: If an entry changed since it was read (nothing is written)
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources."""
        pass

    async def __aenter__(self) -> "EntryStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def check_pagination(limit: Optional[int], offset: int) -> None:
    if limit is not None and limit < 0:
        raise ValidationError("limit must be >= 0")
    if offset < 0:
        raise ValidationError("offset must be >= 0")


class VersionConflict(CommonplaceError):
    """An entry changed between read and write."""

    status_code = 409

    def __init__(self, entry_id: UUID, expected_version: int, actual_version: int):
        self.entry_id = entry_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Entry {entry_id} is at version {actual_version}, expected {expected_version}"
        )


class StorageError(UpstreamError):
    """Base exception for storage errors."""

    def __init__(self, message: str, storage_type: str, original_error: Exception | None = None):
        self.storage_type = storage_type
        super().__init__(message, original_error=original_error)


def validate_fields(
    content: Optional[str], metadata: Optional[EntryMetadata | dict[str, Any]]
) -> tuple[str, EntryMetadata]:
    """Check the caller-supplied fields of a new entry.

    Raises:
        ValidationError: If content or metadata is missing or malformed
    """
    if content is None or not str(content).strip():
        raise ValidationError("Missing content")
    if metadata is None:
        raise ValidationError("Missing metadata")

    try:
        if isinstance(metadata, EntryMetadata):
            metadata = metadata.model_copy(deep=True)
        else:
            metadata = EntryMetadata.model_validate(metadata)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid metadata: {e}") from e

    if metadata.joins:
        raise ValidationError("New entries cannot carry joins; use join() instead")
    return str(content), metadata
