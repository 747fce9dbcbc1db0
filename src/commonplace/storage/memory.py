"""In-memory entry store for testing and development.

Stores all entries in a dict keyed by id. Useful for:
- Testing without external dependencies
- Development and prototyping
- Ephemeral sessions
"""

import asyncio
import random
from typing import Optional, Sequence
from uuid import UUID

from commonplace.config.schema import StorageConfig
from commonplace.core.errors import NotFoundError
from commonplace.entities import Entry
from commonplace.entities.entry import utcnow
from commonplace.storage.base import (
    EntryStore,
    JoinUpdate,
    ListOrder,
    VersionConflict,
    check_pagination,
)


class InMemoryEntryStore(EntryStore):
    """In-memory entry store implementation.

    Records are copied on the way in and out, so callers never hold a
    reference to stored state. Writes go through a single lock, which makes
    the versioned joins update a true compare-and-set.
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize in-memory entry store."""
        super().__init__(config)
        self.entries: dict[UUID, Entry] = {}
        # Insertion order; used to break created_at ties
        self._sequence: dict[UUID, int] = {}
        self._next_seq = 0
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the entry store."""
        pass

    async def _insert(self, entry: Entry) -> None:
        async with self._lock:
            self.entries[entry.id] = entry.model_copy(deep=True)
            self._sequence[entry.id] = self._next_seq
            self._next_seq += 1

    async def get(self, entry_id: UUID) -> Entry:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry {entry_id} not found", entry_id=entry_id)
        return entry.model_copy(deep=True)

    async def get_many(self, entry_ids: Sequence[UUID]) -> list[Entry]:
        return [
            self.entries[entry_id].model_copy(deep=True)
            for entry_id in entry_ids
            if entry_id in self.entries
        ]

    async def list_entries(
        self,
        order: ListOrder = ListOrder.NEWEST_FIRST,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_embedding: bool = False,
    ) -> list[Entry]:
        check_pagination(limit, offset)
        entries = sorted(
            self.entries.values(),
            key=lambda e: (e.created_at, self._sequence[e.id]),
            reverse=order == ListOrder.NEWEST_FIRST,
        )
        end = None if limit is None else offset + limit
        page = entries[offset:end]

        if include_embedding:
            return [entry.model_copy(deep=True) for entry in page]
        return [entry.without_embedding() for entry in page]

    async def sample_random(self) -> Optional[Entry]:
        if not self.entries:
            return None
        entry_id = random.choice(list(self.entries))
        return self.entries[entry_id].model_copy(deep=True)

    async def count(self) -> int:
        return len(self.entries)

    async def update_joins(self, updates: Sequence[JoinUpdate]) -> list[Entry]:
        async with self._lock:
            # Check every precondition before touching anything
            for update in updates:
                current = self.entries.get(update.entry_id)
                if current is None:
                    raise NotFoundError(
                        f"Entry {update.entry_id} not found", entry_id=update.entry_id
                    )
                if current.version != update.expected_version:
                    raise VersionConflict(
                        update.entry_id, update.expected_version, current.version
                    )

            now = utcnow()
            updated = []
            for update in updates:
                current = self.entries[update.entry_id]
                metadata = current.metadata.model_copy(update={"joins": list(update.joins)})
                new_entry = current.model_copy(
                    update={
                        "metadata": metadata,
                        "updated_at": now,
                        "version": current.version + 1,
                    },
                    deep=True,
                )
                self.entries[update.entry_id] = new_entry
                updated.append(new_entry.model_copy(deep=True))

            return updated

    async def close(self) -> None:
        """Close connections and cleanup resources."""
        self.entries.clear()
        self._sequence.clear()
