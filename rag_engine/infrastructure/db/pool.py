"""
===============================================================================
CRC CARD: infrastructure/db/pool.py
===============================================================================

Component:
  Process-wide psycopg ConnectionPool for the chunk store

Responsibilities:
  - Open the pool once, hand it out, close it on shutdown.
  - Prepare every new connection: pgvector adapters and an optional
    statement_timeout so a slow search cannot hold a query past its deadline.

Collaborators:
  - psycopg_pool.ConnectionPool
  - pgvector.psycopg.register_vector
  - container.get_chunk_store / api.main lifespan

Principles:
  - Opening twice or reading before opening is a programming error.
===============================================================================
"""

from __future__ import annotations

import threading
from typing import Optional

from pgvector.psycopg import register_vector
from psycopg import Connection
from psycopg_pool import ConnectionPool

from ...crosscutting.logger import logger


class PoolNotInitializedError(RuntimeError):
    pass


class PoolAlreadyInitializedError(RuntimeError):
    pass


class _PoolSlot:
    """Holds the single pool of the process."""

    def __init__(self) -> None:
        self.pool: Optional[ConnectionPool] = None
        self.lock = threading.Lock()


_slot = _PoolSlot()


def _connection_setup(statement_timeout_ms: int):
    def configure(conn: Connection) -> None:
        register_vector(conn)
        if statement_timeout_ms > 0:
            conn.execute(f"SET statement_timeout = {int(statement_timeout_ms)}")
        conn.commit()

    return configure


def init_pool(
    database_url: str,
    min_size: int,
    max_size: int,
    *,
    statement_timeout_ms: int = 0,
) -> ConnectionPool:
    with _slot.lock:
        if _slot.pool is not None:
            raise PoolAlreadyInitializedError("DB pool already initialized")
        logger.info(
            "Opening DB pool",
            extra={
                "min_size": min_size,
                "max_size": max_size,
                "statement_timeout_ms": statement_timeout_ms,
            },
        )
        _slot.pool = ConnectionPool(
            conninfo=database_url,
            min_size=min_size,
            max_size=max_size,
            configure=_connection_setup(statement_timeout_ms),
            open=True,
        )
        return _slot.pool


def get_pool() -> ConnectionPool:
    pool = _slot.pool
    if pool is None:
        raise PoolNotInitializedError("DB pool not initialized; call init_pool() first")
    return pool


def close_pool() -> None:
    """Close the pool if open; safe to call more than once."""
    with _slot.lock:
        pool, _slot.pool = _slot.pool, None
    if pool is not None:
        logger.info("Closing DB pool")
        pool.close()
