"""
Async PostgreSQL connection pool for the durable cache tier.

The durable tier stores one JSON document per cache key. Every durable read
and write borrows a connection from the single module-level pool opened here.

Contents:
- _pool: the shared asyncpg pool, None until first use
- init_db() / get_db_pool() / close_db(): open, fetch and shut down the pool
- ensure_cache_table(): create dataset_cache on first use
- SQL constants used by services.cache.PostgresStore

Pool sizing: 1-5 connections, 30 second command timeout.

Example:
    pool = await get_db_pool()
    await ensure_cache_table(pool)
    async with pool.acquire() as conn:
        row = await conn.fetchrow(SELECT_CACHE_ENTRY, key)
"""

import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from email_analytics.core.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

CACHE_TABLE_DDL: str = """
CREATE TABLE IF NOT EXISTS dataset_cache (
    storage_key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

SELECT_CACHE_ENTRY: str = "SELECT payload FROM dataset_cache WHERE storage_key = $1"

UPSERT_CACHE_ENTRY: str = """
INSERT INTO dataset_cache (storage_key, payload, updated_at)
VALUES ($1, $2, NOW())
ON CONFLICT (storage_key)
DO UPDATE SET payload = EXCLUDED.payload, updated_at = NOW()
"""

DELETE_CACHE_ENTRY: str = "DELETE FROM dataset_cache WHERE storage_key = $1"


# =============================================================================
# Global Pool
# =============================================================================

# None until init_db() is called
_pool: Optional[Pool] = None


# =============================================================================
# Pool Lifecycle
# =============================================================================

async def init_db(dsn: Optional[str] = None) -> Pool:
    """
    Open the shared pool for the durable tier. Calling it again reuses the open pool.

    Args:
        dsn: Connection string; defaults to settings.database_url.

    Raises:
        RuntimeError: If no connection string is available.
        asyncpg.PostgresError / OSError: If the server cannot be reached.
    """
    global _pool

    if _pool is not None:
        return _pool

    target = dsn or get_settings().database_url
    if not target:
        raise RuntimeError("DATABASE_URL is not configured; durable cache tier unavailable")

    _pool = await asyncpg.create_pool(dsn=target, min_size=1, max_size=5, command_timeout=30)
    logger.info("Durable cache pool initialized")
    return _pool


async def get_db_pool() -> Pool:
    """Return the shared pool, opening it on first use."""
    return _pool if _pool is not None else await init_db()


async def close_db() -> None:
    """Close the pool at shutdown. No-op when it was never opened."""
    global _pool

    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("Durable cache pool closed")


async def ensure_cache_table(pool: Pool) -> None:
    """Create dataset_cache if this database has never held a snapshot."""
    async with pool.acquire() as conn:
        await conn.execute(CACHE_TABLE_DDL)
