"""Join graph: symmetric, user-declared links between entries.

Joins are stored on both endpoints (``metadata.joins``). A join writes both
entries in one atomic store update guarded by the versions that were read,
so concurrent joins that share an entry never lose each other's edge.
"""

import asyncio
from typing import Iterable
from uuid import UUID

from commonplace.core.errors import ConflictError, ValidationError
from commonplace.entities import Entry
from commonplace.observability.logging import get_logger
from commonplace.storage.base import EntryStore, JoinUpdate, VersionConflict

logger = get_logger(__name__)


def _with_join(entry: Entry, other_id: UUID) -> tuple[UUID, ...]:
    joins = list(entry.joins)
    if other_id not in joins:
        joins.append(other_id)
    return tuple(joins)


class JoinGraph:
    """Maintains the undirected join relation over an entry store."""

    def __init__(self, store: EntryStore, max_retries: int = 3) -> None:
        self.store = store
        self.max_retries = max_retries

    async def join(self, id1: UUID, id2: UUID) -> tuple[Entry, Entry]:
        """Link two entries in both directions.

        Joining an already-joined pair succeeds without writing anything.

        Returns:
            Both entries as stored after the join

        Raises:
            ValidationError: If the ids are equal
            NotFoundError: If either entry does not exist
            ConflictError: If concurrent updates kept winning the race
        """
        if id1 == id2:
            raise ValidationError("Cannot join an entry to itself")

        attempts = 0
        while True:
            first = await self.store.get(id1)
            second = await self.store.get(id2)

            first_joins = _with_join(first, id2)
            second_joins = _with_join(second, id1)
            updates = []
            if first_joins != tuple(first.joins):
                updates.append(JoinUpdate(id1, first_joins, first.version))
            if second_joins != tuple(second.joins):
                updates.append(JoinUpdate(id2, second_joins, second.version))

            if not updates:
                logger.debug("join_unchanged", id1=str(id1), id2=str(id2))
                return first, second

            try:
                written = {entry.id: entry for entry in await self.store.update_joins(updates)}
            except VersionConflict as e:
                attempts += 1
                if attempts > self.max_retries:
                    logger.warning(
                        "join_conflict_exhausted",
                        id1=str(id1),
                        id2=str(id2),
                        attempts=attempts,
                    )
                    raise ConflictError(
                        f"Join of {id1} and {id2} kept conflicting with concurrent updates"
                    ) from e
                logger.info(
                    "join_conflict_retry",
                    id1=str(id1),
                    id2=str(id2),
                    attempt=attempts,
                    entry_id=str(e.entry_id),
                )
                # Let the competing writer finish before re-reading
                await asyncio.sleep(0)
                continue

            logger.info("join_completed", id1=str(id1), id2=str(id2))
            return written.get(id1, first), written.get(id2, second)

    async def neighbors(self, entry_id: UUID) -> list[Entry]:
        """Entries joined to ``entry_id``; joins that no longer resolve are skipped.

        Raises:
            NotFoundError: If the entry does not exist
        """
        entry = await self.store.get(entry_id)
        return await self.store.get_many(list(entry.joins))

    @staticmethod
    def edges(entries: Iterable[Entry]) -> list[tuple[UUID, UUID]]:
        """Undirected edges among ``entries``, each reported once.

        Edges to entries outside the given set are left out.
        """
        entries = list(entries)
        present = {entry.id for entry in entries}
        seen: set[frozenset[UUID]] = set()
        result = []
        for entry in entries:
            for other in entry.joins:
                if other not in present or other == entry.id:
                    continue
                key = frozenset((entry.id, other))
                if key in seen:
                    continue
                seen.add(key)
                result.append((entry.id, other))
        return result
