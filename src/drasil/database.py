from __future__ import annotations

import logging
from typing import Any, Sequence

import aiosqlite

from .errors import PersistenceError
from .services.base import BaseStore

log = logging.getLogger("drasil.database")


async def initialize_database(sqlite_path: str, stores: Sequence[BaseStore]) -> None:
    """Apply connection PRAGMAs and create every store's tables."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA temp_store=MEMORY")
            await db.commit()
    except aiosqlite.Error as e:
        log.error("Failed to configure database %s: %s", sqlite_path, e)
        raise PersistenceError(f"could not open {sqlite_path}: {e}") from e

    log.info("Applied SQLite settings to %s", sqlite_path)
    for store in stores:
        await store.init()
        log.info("Initialized %s", store.__class__.__name__)
    log.info("Database initialization completed")


async def get_database_info(sqlite_path: str) -> dict[str, Any]:
    """Size and per-table row counts, for the health command."""
    async with aiosqlite.connect(sqlite_path) as db:
        async with db.execute("PRAGMA page_count") as cur:
            page_count = (await cur.fetchone())[0]
        async with db.execute("PRAGMA page_size") as cur:
            page_size = (await cur.fetchone())[0]
        async with db.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name") as cur:
            tables = [row[0] for row in await cur.fetchall()]
        counts: dict[str, int] = {}
        for table in tables:
            async with db.execute(f'SELECT COUNT(*) FROM "{table}"') as cur:
                counts[table] = (await cur.fetchone())[0]

    return {
        "size_bytes": page_count * page_size,
        "size_mb": (page_count * page_size) / (1024 * 1024),
        "table_count": len(tables),
        "row_counts": counts,
    }
