"""asyncpg pool shared by the batch stores and the Postgres job store.

Batch, document and analysis rows are owner-scoped by RLS policies that read
``app.user_id``; ``rls_connection()`` is the only way the stores touch
those tables. Job rows carry no owner and use the bare pool.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

# Connections kept free for API requests beyond the worker slots
_API_HEADROOM = 3


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Job payloads, results and consolidated reports round-trip as dicts
    for typename in ("json", "jsonb"):
        await conn.set_type_codec(
            typename, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


class DatabaseConfig:
    """Resolves the DSN from ``DATABASE_URL`` or the ``DB_*`` variables."""

    @staticmethod
    def get_connection_string(scheme: str = "postgresql") -> str:
        if url := os.environ.get("DATABASE_URL"):
            if scheme != "postgresql" and url.startswith("postgresql://"):
                url = scheme + url[len("postgresql"):]
            return url

        env = os.environ.get
        return (
            f"{scheme}://{env('DB_USER', 'taxcredit')}:{env('DB_PASSWORD', 'taxcredit')}"
            f"@{env('DB_HOST', 'localhost')}:{env('DB_PORT', '5432')}"
            f"/{env('DB_NAME', 'taxcredit')}?sslmode={env('DB_SSLMODE', 'disable')}"
        )

    @staticmethod
    def pool_size(worker_slots: int = 0) -> int:
        """``DB_POOL_MAX`` when set, otherwise enough for every worker slot."""
        if configured := os.environ.get("DB_POOL_MAX"):
            return int(configured)
        return max(5, worker_slots + _API_HEADROOM)


async def get_pool(*, worker_slots: int = 0) -> asyncpg.Pool:
    """Process-wide pool; ``worker_slots`` only matters on first creation."""
    global _pool  # noqa: PLW0603
    if _pool is None:
        max_size = DatabaseConfig.pool_size(worker_slots)
        logger.info("Creating database pool max_size=%d", max_size)
        _pool = await asyncpg.create_pool(
            dsn=DatabaseConfig.get_connection_string(),
            min_size=1,
            max_size=max_size,
            command_timeout=30,
            init=_init_connection,
        )
    return _pool


async def close_pool() -> None:
    global _pool  # noqa: PLW0603
    if _pool is None:
        return
    await _pool.close()
    _pool = None
    logger.info("Database pool closed")


async def check_db_connection() -> bool:
    """Readiness probe: ``SELECT 1`` through the pool."""
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception:
        logger.exception("Database readiness check failed")
        return False
    return True


@asynccontextmanager
async def rls_connection(user_id: str) -> AsyncIterator[asyncpg.Connection]:
    """Transaction whose ``app.user_id`` is ``user_id``.

    ``set_config(..., true)`` scopes the setting to the transaction, so a
    pooled connection never leaks one owner's id to the next caller. An
    empty ``user_id`` raises ValueError instead of running unscoped.
    """
    if not user_id:
        raise ValueError("user_id is required for owner-scoped queries")

    pool = await get_pool()
    async with pool.acquire() as conn, conn.transaction():
        await conn.execute("SELECT set_config('app.user_id', $1, true)", user_id)
        yield conn
