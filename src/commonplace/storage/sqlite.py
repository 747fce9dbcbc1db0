"""SQLite storage implementation for entries.

Provides persistent storage for highlight entries using SQLite.
Uses aiosqlite for async operations.

Layout: one ``entries`` table keyed by id. Metadata and embeddings are JSON
columns; ``version`` backs the optimistic-concurrency joins update and
``seq`` records insertion order.
"""

import asyncio
import json
import os
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

import aiosqlite

from commonplace.config.schema import StorageConfig
from commonplace.core.errors import NotFoundError
from commonplace.entities import Entry, EntryMetadata
from commonplace.entities.entry import utcnow
from commonplace.observability.logging import get_logger
from commonplace.storage.base import (
    EntryStore,
    JoinUpdate,
    ListOrder,
    StorageError,
    VersionConflict,
    check_pagination,
)

logger = get_logger(__name__)

_COLUMNS = "id, content, metadata, created_at, updated_at, version"
_COLUMNS_WITH_EMBEDDING = _COLUMNS + ", embedding"


class SQLiteEntryStore(EntryStore):
    """SQLite entry store implementation.

    A single connection is shared by all callers. Every statement runs under
    one asyncio lock, so reads never see a joins transaction in flight;
    concurrent joins still go through the version check.
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize SQLite entry store."""
        super().__init__(config)

        conn_str = config.connection_string
        if conn_str is None:
            db_dir = os.path.expanduser("~/.commonplace")
            os.makedirs(db_dir, exist_ok=True)
            self.db_path = os.path.join(db_dir, "entries.db")
        elif conn_str.startswith("sqlite:///"):
            self.db_path = os.path.expanduser(conn_str.replace("sqlite:///", "", 1))
        else:
            self.db_path = os.path.expanduser(conn_str)

        self.connection: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None

    async def initialize(self) -> None:
        """Initialize the entry store (create tables)."""
        try:
            if self.db_path != ":memory:":
                parent = os.path.dirname(os.path.abspath(self.db_path))
                os.makedirs(parent, exist_ok=True)

            # isolation_level=None: transactions are managed explicitly
            self.connection = await aiosqlite.connect(self.db_path, isolation_level=None)
            self.connection.row_factory = aiosqlite.Row
            self._lock = asyncio.Lock()

            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    embedding TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """)
            await self.connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_created ON entries(created_at, seq)"
            )

            logger.info("sqlite_entry_store_initialized", path=self.db_path)

        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite entry store: {e}",
                storage_type="sqlite",
                original_error=e,
            )

    def _require_connection(self) -> aiosqlite.Connection:
        if not self.connection:
            raise StorageError("Database not initialized", storage_type="sqlite")
        return self.connection

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row, include_embedding: bool = True) -> Entry:
        try:
            embedding = None
            if include_embedding and "embedding" in row.keys() and row["embedding"] is not None:
                embedding = json.loads(row["embedding"])

            return Entry(
                id=UUID(row["id"]),
                content=row["content"],
                metadata=EntryMetadata.model_validate(json.loads(row["metadata"])),
                embedding=embedding,
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
                version=row["version"],
            )
        except (ValueError, TypeError, KeyError) as e:
            # pydantic.ValidationError and json.JSONDecodeError are ValueErrors
            raise StorageError(
                f"Corrupt entry row {row['id']!r}: {e}",
                storage_type="sqlite",
                original_error=e,
            )

    async def _fetch(self, action: str, sql: str, params: Sequence = (), one: bool = False):
        """Run a read under the connection lock.

        Reads never interleave with an open ``update_joins`` transaction, so
        uncommitted rows are never observed.
        """
        connection = self._require_connection()
        try:
            async with self._lock:
                cursor = await connection.execute(sql, params)
                if one:
                    return await cursor.fetchone()
                return await cursor.fetchall()
        except Exception as e:
            raise StorageError(
                f"Failed to {action}: {e}",
                storage_type="sqlite",
                original_error=e,
            )

    async def _insert(self, entry: Entry) -> None:
        connection = self._require_connection()

        try:
            async with self._lock:
                await connection.execute(
                    """
                    INSERT INTO entries (id, content, metadata, embedding, created_at, updated_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(entry.id),
                        entry.content,
                        entry.metadata.model_dump_json(),
                        json.dumps(entry.embedding),
                        entry.created_at.isoformat(timespec="microseconds"),
                        entry.updated_at.isoformat(timespec="microseconds"),
                        entry.version,
                    ),
                )
        except Exception as e:
            raise StorageError(
                f"Failed to insert entry: {e}",
                storage_type="sqlite",
                original_error=e,
            )

        logger.debug("entry_inserted", entry_id=str(entry.id))

    async def get(self, entry_id: UUID) -> Entry:
        row = await self._fetch(
            "get entry",
            f"SELECT {_COLUMNS_WITH_EMBEDDING} FROM entries WHERE id = ?",
            (str(entry_id),),
            one=True,
        )
        if not row:
            raise NotFoundError(f"Entry {entry_id} not found", entry_id=entry_id)
        return self._row_to_entry(row)

    async def get_many(self, entry_ids: Sequence[UUID]) -> list[Entry]:
        if not entry_ids:
            return []

        placeholders = ", ".join("?" for _ in entry_ids)
        rows = await self._fetch(
            "get entries",
            f"SELECT {_COLUMNS_WITH_EMBEDDING} FROM entries WHERE id IN ({placeholders})",
            [str(entry_id) for entry_id in entry_ids],
        )

        by_id = {UUID(row["id"]): self._row_to_entry(row) for row in rows}
        return [by_id[entry_id] for entry_id in entry_ids if entry_id in by_id]

    async def list_entries(
        self,
        order: ListOrder = ListOrder.NEWEST_FIRST,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_embedding: bool = False,
    ) -> list[Entry]:
        check_pagination(limit, offset)

        direction = "DESC" if order == ListOrder.NEWEST_FIRST else "ASC"
        columns = _COLUMNS_WITH_EMBEDDING if include_embedding else _COLUMNS
        # SQLite treats LIMIT -1 as unbounded
        sql_limit = -1 if limit is None else limit

        rows = await self._fetch(
            "list entries",
            f"""
            SELECT {columns} FROM entries
            ORDER BY created_at {direction}, seq {direction}
            LIMIT ? OFFSET ?
            """,
            (sql_limit, offset),
        )
        return [self._row_to_entry(row, include_embedding) for row in rows]

    async def sample_random(self) -> Optional[Entry]:
        row = await self._fetch(
            "sample entry",
            f"SELECT {_COLUMNS_WITH_EMBEDDING} FROM entries ORDER BY RANDOM() LIMIT 1",
            one=True,
        )
        return self._row_to_entry(row) if row else None

    async def count(self) -> int:
        row = await self._fetch("count entries", "SELECT COUNT(*) FROM entries", one=True)
        return row[0]

    async def update_joins(self, updates: Sequence[JoinUpdate]) -> list[Entry]:
        connection = self._require_connection()
        now = utcnow().isoformat(timespec="microseconds")

        async with self._lock:
            try:
                await connection.execute("BEGIN IMMEDIATE")
            except Exception as e:
                raise StorageError(
                    f"Failed to begin transaction: {e}",
                    storage_type="sqlite",
                    original_error=e,
                )

            try:
                # Every version is checked before the first row is written
                rewritten = []
                for update in updates:
                    cursor = await connection.execute(
                        "SELECT metadata, version FROM entries WHERE id = ?",
                        (str(update.entry_id),),
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        raise NotFoundError(
                            f"Entry {update.entry_id} not found", entry_id=update.entry_id
                        )
                    if row["version"] != update.expected_version:
                        raise VersionConflict(
                            update.entry_id, update.expected_version, row["version"]
                        )
                    metadata = json.loads(row["metadata"])
                    metadata["joins"] = [str(joined) for joined in update.joins]
                    rewritten.append((update, metadata))

                for update, metadata in rewritten:
                    await connection.execute(
                        """
                        UPDATE entries
                        SET metadata = ?, updated_at = ?, version = version + 1
                        WHERE id = ? AND version = ?
                        """,
                        (
                            json.dumps(metadata),
                            now,
                            str(update.entry_id),
                            update.expected_version,
                        ),
                    )

                await connection.execute("COMMIT")
            except (NotFoundError, VersionConflict):
                await connection.execute("ROLLBACK")
                raise
            except Exception as e:
                await connection.execute("ROLLBACK")
                raise StorageError(
                    f"Failed to update joins: {e}",
                    storage_type="sqlite",
                    original_error=e,
                )

        return await self.get_many([update.entry_id for update in updates])

    async def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None
