"""
Postgres connection helpers shared by the card store and the run journal.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

_pool: list[Any] = []


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
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


def execute_schema(schema_sql: str, label: str) -> None:
    try:
        with get_cursor() as cur:
            cur.execute(schema_sql)
        log.info("%s schema initialized", label)
    except Exception as e:
        log.error("Failed to initialize %s schema: %s", label, e)
        raise
