"""
Postgres connection helpers shared by every feature's db layer.

Each feature owns its own tables (see features/<name>/db.py); this module
only hands out the single reused connection and dict cursors, and tracks
whether the schema was initialized so services know if write-through is on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []
_state = {"ready": False}


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor, closing it afterwards."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


def jsonb(value: Any) -> str:
    return json.dumps(value, default=str)


# ── Schema ────────────────────────────────────────────────────────────

def init_schema(*schemas: str) -> None:
    """Create every feature's tables; marks the store as ready on success."""
    try:
        with get_cursor() as cur:
            for sql in schemas:
                cur.execute(sql)
        _state["ready"] = True
        log.info("Database schema initialized")
    except Exception as e:
        _state["ready"] = False
        log.error("Failed to initialize database: %s", e)
        raise


def is_ready() -> bool:
    return _state["ready"]


def write_through(label: str, fn: Callable[..., Any], *args: Any) -> None:
    """Best-effort persistence: skipped when the store is down, failures logged."""
    if not _state["ready"]:
        return
    try:
        fn(*args)
    except Exception as e:
        log.warning("[DB] Failed to persist %s: %s", label, e)


# One writer thread keeps upserts ordered and off the event loop.
_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="db-writer")


async def write_through_async(label: str, fn: Callable[..., Any], *args: Any) -> None:
    """write_through for coroutines: the blocking call runs on the writer thread."""
    if not _state["ready"]:
        return
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(_writer, write_through, label, fn, *args)


def write_behind(label: str, fn: Callable[..., Any], *args: Any) -> None:
    """Queue a write_through on the writer thread without waiting for it."""
    if not _state["ready"]:
        return
    _writer.submit(write_through, label, fn, *args)
