import logging
import os
from typing import Optional

import psycopg
from pgvector.psycopg import register_vector
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL")
POOL_MIN_SIZE = int(os.environ.get("DB_POOL_MIN_SIZE", "1"))
POOL_MAX_SIZE = int(os.environ.get("DB_POOL_MAX_SIZE", "5"))

pool: Optional[ConnectionPool] = None


def _configure_connection(conn) -> None:
    register_vector(conn)


def ensure_vector_extension(conninfo: str) -> None:
    # register_vector needs the type to exist before the pool hands out connections.
    with psycopg.connect(conninfo, autocommit=True) as conn:
        conn.execute("CREATE EXTENSION IF NOT EXISTS vector")


def init_pool() -> None:
    global pool
    if pool is not None:
        return
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")

    ensure_vector_extension(DATABASE_URL)
    pool = ConnectionPool(
        conninfo=DATABASE_URL,
        min_size=POOL_MIN_SIZE,
        max_size=POOL_MAX_SIZE,
        max_idle=5,
        timeout=10,
        configure=_configure_connection,
        # Dict rows keep the response payload simple.
        kwargs={"row_factory": dict_row},
    )
    logger.info("Database pool ready (max_size=%s)", POOL_MAX_SIZE)


def close_pool() -> None:
    global pool
    if pool is not None:
        pool.close()
        pool = None


def get_pool() -> ConnectionPool:
    if pool is None:
        raise RuntimeError("Database pool is not initialized")
    return pool
