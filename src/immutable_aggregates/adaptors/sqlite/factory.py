from typing import AsyncIterator, Optional
from contextlib import asynccontextmanager
import aiosqlite
import asyncio
import logging
import urllib.parse

from immutable_aggregates.codec import PayloadCodec
from immutable_aggregates.config import SQLiteConfig
from immutable_aggregates.adaptors.sqlite.handle import SQLiteStorageHandle, create_schema


async def _connect(connect_string: str, config: SQLiteConfig, *, uri: bool = False) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(connect_string, uri=uri)
    await conn.execute(f"PRAGMA cache_size = {config.cache_size_kib};")
    await conn.execute(f"PRAGMA busy_timeout = {config.busy_timeout_ms};")
    return conn


@asynccontextmanager
async def sqlite_backend_factory(
    db_path: str,
    *,
    key: Optional[bytes] = None,
    cache_size_kib: int = -16384,
    pool_size: int = 10,
    busy_timeout_ms: int = 5000,
) -> AsyncIterator[SQLiteStorageHandle]:
    """
    Opens a SQLite database as the storage backend for aggregate repositories and
    yields the shared handle. Any number of repositories, one per alias, can use the
    handle at once. All connections are closed when the context exits.
    """
    config = SQLiteConfig(
        db_path=db_path,
        key=key,
        cache_size_kib=cache_size_kib,
        pool_size=pool_size,
        busy_timeout_ms=busy_timeout_ms,
    )

    write_conn = await _connect(config.db_path, config)
    read_pool: Optional[asyncio.Queue] = None
    try:
        if not config.is_memory_db:
            await write_conn.execute("PRAGMA journal_mode=WAL;")
            await write_conn.execute("PRAGMA synchronous = NORMAL;")
        await create_schema(write_conn)

        # An in-memory database only exists for its own connection, so it gets no read pool.
        if not config.is_memory_db:
            read_pool = asyncio.Queue(maxsize=config.pool_size)
            for _ in range(config.pool_size):
                conn = await _connect(f"file:{urllib.parse.quote(config.db_path)}?mode=ro", config, uri=True)
                await read_pool.put(conn)

        codec = PayloadCodec(config.key)
        logging.info(
            f"SQLite backend opened for {config.db_path} (encrypted: {codec.encrypted}, read pool: {config.pool_size if read_pool is not None else 0})"
        )
        yield SQLiteStorageHandle(
            write_conn=write_conn,
            write_lock=asyncio.Lock(),
            read_pool=read_pool,
            codec=codec,
        )
    finally:
        connection_tasks = [write_conn.close()]
        if read_pool is not None:
            while not read_pool.empty():
                conn = await read_pool.get()
                connection_tasks.append(conn.close())
        await asyncio.gather(*connection_tasks)
        logging.info(f"SQLite backend closed for {config.db_path}")
