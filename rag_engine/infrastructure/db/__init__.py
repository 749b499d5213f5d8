"""Infra DB: psycopg connection pool."""

from .pool import (
    PoolAlreadyInitializedError,
    PoolNotInitializedError,
    close_pool,
    get_pool,
    init_pool,
)

__all__ = [
    "init_pool",
    "get_pool",
    "close_pool",
    "PoolAlreadyInitializedError",
    "PoolNotInitializedError",
]
