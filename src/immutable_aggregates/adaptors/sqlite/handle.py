"""
This module provides the SQLite implementation of the `StorageHandle` protocol.

All four storage concerns of an aggregate type (id sequence, known-id set, event log
and current projections) live in one database and are keyed by the type alias, so
the writes of a single `append` share one transaction. `SAVEPOINT` is used so that
the transaction also works on a connection that already has one open.
"""
from typing import AsyncIterable, AsyncIterator, List, Optional
from contextlib import asynccontextmanager
import aiosqlite
import asyncio
import logging
import pydantic_core
from datetime import datetime

from immutable_aggregates.codec import PayloadCodec
from immutable_aggregates.errors import ConcurrencyConflictError, PayloadDecodeError
from immutable_aggregates.models import StoredEvent, StoredState
from immutable_aggregates.protocols import StorageHandle


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS id_sequences (
        alias TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS aggregate_ids (
        alias TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (alias, aggregate_id)
    )
    """,
    # Full scans walk the id set in insertion order.
    """
    CREATE INDEX IF NOT EXISTS idx_aggregate_ids_position ON aggregate_ids (alias, position)
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alias TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_by TEXT,
        data BLOB NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_aggregate ON events (alias, aggregate_id, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS aggregate_states (
        alias TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        state BLOB NOT NULL,
        PRIMARY KEY (alias, aggregate_id)
    )
    """,
]


async def create_schema(conn: aiosqlite.Connection):
    for statement in SCHEMA:
        await conn.execute(statement)
    await conn.commit()


class SQLiteHandle:
    """
    Encapsulates the SQL for one connection. It does not manage transactions
    beyond its own savepoints; committing is left to `sqlite_open_adapter`.
    """

    def __init__(self, conn: aiosqlite.Connection, codec: PayloadCodec):
        self.conn = conn
        self.codec = codec

    @asynccontextmanager
    async def _savepoint(self, name: str) -> AsyncIterator[None]:
        await self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            await self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            await self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        await self.conn.execute(f"RELEASE SAVEPOINT {name}")

    async def next_id(self, alias: str) -> str:
        async with self._savepoint("id_seq"):
            await self.conn.execute(
                """
                INSERT INTO id_sequences (alias, value) VALUES (?, 1)
                ON CONFLICT(alias) DO UPDATE SET value = value + 1
                """,
                (alias,),
            )
            async with self.conn.execute(
                "SELECT value FROM id_sequences WHERE alias = ?", (alias,)
            ) as cursor:
                row = await cursor.fetchone()
        return str(row[0])

    async def current_version(self, alias: str, aggregate_id: str) -> Optional[int]:
        async with self.conn.execute(
            "SELECT version FROM aggregate_states WHERE alias = ? AND aggregate_id = ?",
            (alias, aggregate_id),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def append(
        self,
        alias: str,
        event: StoredEvent,
        state: StoredState,
        expected_version: Optional[int] = None,
    ) -> StoredEvent:
        async with self._savepoint("aggregate_append"):
            # 1. Check for a concurrency conflict inside the transaction
            if expected_version is not None:
                current_version = await self.current_version(alias, state.aggregate_id)
                if current_version != expected_version:
                    raise ConcurrencyConflictError(
                        alias, state.aggregate_id, expected_version, current_version
                    )

            # 2. Append to the event log
            cursor = await self.conn.execute(
                "INSERT INTO events (alias, aggregate_id, name, created_at, created_by, data) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    alias,
                    event.aggregate_id,
                    event.name,
                    event.created_at.isoformat(),
                    event.created_by,
                    self.codec.encode(event.data),
                ),
            )
            sequence_id = cursor.lastrowid
            await cursor.close()

            # 3. Overwrite the current projection
            await self.conn.execute(
                """
                INSERT INTO aggregate_states (alias, aggregate_id, version, state) VALUES (?, ?, ?, ?)
                ON CONFLICT(alias, aggregate_id) DO UPDATE SET version = excluded.version, state = excluded.state
                """,
                (alias, state.aggregate_id, state.version, self.codec.encode(state.state)),
            )

            # 4. Record the id as known; a no-op for ids already in the set
            await self.conn.execute(
                """
                INSERT OR IGNORE INTO aggregate_ids (alias, aggregate_id, position)
                SELECT ?, ?, COALESCE(MAX(position), 0) + 1 FROM aggregate_ids WHERE alias = ?
                """,
                (alias, state.aggregate_id, alias),
            )
        return event.model_copy(update={"sequence_id": sequence_id})

    def _to_state(self, row) -> StoredState:
        aggregate_id, version, state_blob = row
        return StoredState(
            aggregate_id=aggregate_id,
            version=version,
            state=self.codec.decode(state_blob),
        )

    async def load_state(self, alias: str, aggregate_id: str) -> Optional[StoredState]:
        async with self.conn.execute(
            "SELECT aggregate_id, version, state FROM aggregate_states WHERE alias = ? AND aggregate_id = ?",
            (alias, aggregate_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._to_state(row)

    async def load_states(self, alias: str) -> AsyncIterable[StoredState]:
        async with self.conn.execute(
            """
            SELECT s.aggregate_id, s.version, s.state
            FROM aggregate_ids i
            JOIN aggregate_states s ON s.alias = i.alias AND s.aggregate_id = i.aggregate_id
            WHERE i.alias = ?
            ORDER BY i.position
            """,
            (alias,),
        ) as cursor:
            async for row in cursor:
                yield self._to_state(row)

    async def get_events(
        self, alias: str, aggregate_id: str, skip_invalid: bool = False
    ) -> AsyncIterable[StoredEvent]:
        async with self.conn.execute(
            "SELECT id, aggregate_id, name, created_at, created_by, data FROM events WHERE alias = ? AND aggregate_id = ? ORDER BY id",
            (alias, aggregate_id),
        ) as cursor:
            async for row in cursor:
                sequence_id, row_aggregate_id, name, created_at_str, created_by, data_blob = row
                try:
                    event = StoredEvent(
                        aggregate_id=row_aggregate_id,
                        name=name,
                        created_at=datetime.fromisoformat(created_at_str),
                        created_by=created_by,
                        data=self.codec.decode(data_blob),
                        sequence_id=sequence_id,
                    )
                except (PayloadDecodeError, pydantic_core.ValidationError, ValueError) as e:
                    if not skip_invalid:
                        raise PayloadDecodeError(
                            f'Event row {sequence_id} of {alias} with id "{aggregate_id}" is unreadable'
                        ) from e
                    logging.warning(f"Skipping invalid event row {sequence_id} of {alias} \"{aggregate_id}\": {e}")
                    continue
                yield event

    async def clear(self, alias: str):
        async with self._savepoint("alias_clear"):
            for table in ("events", "aggregate_states", "aggregate_ids", "id_sequences"):
                await self.conn.execute(f"DELETE FROM {table} WHERE alias = ?", (alias,))


class SQLiteStorageHandle(StorageHandle):
    """
    The backend handle shared by all repositories of a process. Writes go through
    one dedicated connection guarded by a lock; reads use a pool of read-only
    connections. Without a pool (in-memory databases) reads share the write
    connection and its lock.
    """

    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: Optional[asyncio.Queue],
        codec: PayloadCodec,
    ):
        self.write_conn = write_conn
        self.write_lock = write_lock
        self.read_pool = read_pool
        self.codec = codec

    @asynccontextmanager
    async def _read_handle(self) -> AsyncIterator[SQLiteHandle]:
        """Provides a handle with a connection from the read pool."""
        if self.read_pool is None:
            async with self.write_lock:
                yield SQLiteHandle(self.write_conn, self.codec)
            return
        conn = await self.read_pool.get()
        try:
            yield SQLiteHandle(conn, self.codec)
        finally:
            await self.read_pool.put(conn)

    async def next_id(self, alias: str) -> str:
        async with self.write_lock:
            async with sqlite_open_adapter(self.write_conn, self.codec) as handle:
                return await handle.next_id(alias)

    async def append(
        self,
        alias: str,
        event: StoredEvent,
        state: StoredState,
        expected_version: Optional[int] = None,
    ) -> StoredEvent:
        async with self.write_lock:
            try:
                async with sqlite_open_adapter(self.write_conn, self.codec) as handle:
                    stored = await handle.append(alias, event, state, expected_version)
            except ConcurrencyConflictError:
                raise
            except Exception as e:
                logging.error(f"Failed to persist {event.name} for {alias} \"{event.aggregate_id}\": {e}")
                raise
        logging.debug(f"Persisted {event.name} for {alias} \"{event.aggregate_id}\" at version {state.version}")
        return stored

    async def load_state(self, alias: str, aggregate_id: str) -> Optional[StoredState]:
        async with self._read_handle() as handle:
            return await handle.load_state(alias, aggregate_id)

    async def load_states(self, alias: str) -> AsyncIterable[StoredState]:
        # Rows are collected before yielding so no connection is held while the caller works.
        async with self._read_handle() as handle:
            states: List[StoredState] = [s async for s in handle.load_states(alias)]
        for state in states:
            yield state

    async def get_events(
        self, alias: str, aggregate_id: str, skip_invalid: bool = False
    ) -> AsyncIterable[StoredEvent]:
        async with self._read_handle() as handle:
            events: List[StoredEvent] = [
                e async for e in handle.get_events(alias, aggregate_id, skip_invalid)
            ]
        for event in events:
            yield event

    async def clear(self, alias: str):
        async with self.write_lock:
            async with sqlite_open_adapter(self.write_conn, self.codec) as handle:
                await handle.clear(alias)
        logging.info(f"Cleared all stored data of {alias}")


@asynccontextmanager
async def sqlite_open_adapter(conn: aiosqlite.Connection, codec: PayloadCodec) -> AsyncIterator[SQLiteHandle]:
    """
    Adapter that uses a shared database connection for write transactions.
    It commits on successful exit and rolls back otherwise.
    """
    handle = SQLiteHandle(conn, codec)
    try:
        yield handle
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
