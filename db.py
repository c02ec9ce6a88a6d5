"""
Database connection utilities for the agent engine.
Supports both SQLite (local dev, tests) and PostgreSQL (production).

When DATABASE_URL is set, uses PostgreSQL with connection pooling.
Otherwise, falls back to SQLite with WAL mode.

Writers that read-modify-write shared rows (rule dedup, preference upsert,
feedback transitions, heartbeat task creation) go through atomic(), which
serialises them per resource on both backends.
"""

import os
import re
import sqlite3
import zlib
import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)

DATA_DIR = os.environ.get('DATA_DIR', 'data' if os.path.exists('data') else '.')
AGENT_DB = os.path.join(DATA_DIR, 'agent_engine.db')

_pg_pool = None
_pool_lock = threading.Lock()

# SQLite: BEGIN IMMEDIATE already serialises writers across processes, this
# lock also keeps threads in one process from spinning on SQLITE_BUSY.
_sqlite_write_lock = threading.RLock()


def _database_url():
    return os.environ.get('DATABASE_URL')


def is_postgres():
    """Check if we're using PostgreSQL."""
    return bool(_database_url())


def _get_pg_pool():
    """Lazily initialize the PostgreSQL connection pool."""
    global _pg_pool
    with _pool_lock:
        if _pg_pool is None and _database_url():
            from psycopg2 import pool
            try:
                _pg_pool = pool.ThreadedConnectionPool(minconn=2, maxconn=20, dsn=_database_url())
            except Exception as e:
                logger.error(f"Failed to initialize PostgreSQL pool: {e}")
                raise
            logger.info("PostgreSQL connection pool initialized (2-20 connections)")
    return _pg_pool


def _sqlite_path():
    data_dir = os.environ.get('DATA_DIR', DATA_DIR)
    return os.path.join(data_dir, 'agent_engine.db')


# ---------------------------------------------------------------------------
# SQL Conversion: SQLite → PostgreSQL
# ---------------------------------------------------------------------------

def _convert_sqlite_to_pg(sql):
    """Convert the SQLite dialect used across the engine to PostgreSQL.

    Handles:
    - ? → %s parameter placeholders
    - INTEGER PRIMARY KEY AUTOINCREMENT → SERIAL PRIMARY KEY
    - INSERT OR IGNORE → INSERT ... ON CONFLICT DO NOTHING
    - INSERT ... RETURNING id (for lastrowid support)
    """
    sql = sql.replace('?', '%s')
    sql = sql.replace('INTEGER PRIMARY KEY AUTOINCREMENT', 'SERIAL PRIMARY KEY')

    ignore = re.match(r'\s*INSERT\s+OR\s+IGNORE\s+', sql, flags=re.IGNORECASE)
    if ignore:
        sql = 'INSERT ' + sql[ignore.end():].rstrip().rstrip(';') + ' ON CONFLICT DO NOTHING'

    stripped = sql.strip()
    upper = stripped.upper()
    if (upper.startswith('INSERT') and 'VALUES' in upper
            and 'RETURNING' not in upper
            and 'SELECT' not in upper.split('VALUES')[0]):
        sql = stripped.rstrip(';') + ' RETURNING id'

    return sql


def get_integrity_error():
    """Return the appropriate IntegrityError class for the current backend."""
    if is_postgres():
        import psycopg2
        return psycopg2.IntegrityError
    return sqlite3.IntegrityError


# ---------------------------------------------------------------------------
# PostgreSQL Row/Cursor/Connection Wrappers
# ---------------------------------------------------------------------------

class _PgRow(dict):
    """psycopg2 row exposed with sqlite3.Row style access (by name or index)."""

    def __init__(self, cursor, row):
        super().__init__((col.name, row[i]) for i, col in enumerate(cursor.description or []))
        self._ordered = list(row)

    def __getitem__(self, key):
        if isinstance(key, int):
            return self._ordered[key]
        return super().__getitem__(key)


class _PgCursor:
    """Cursor wrapper that converts SQL and yields dict-like rows."""

    def __init__(self, cursor):
        self._cursor = cursor
        self._lastrowid = None

    def execute(self, sql, params=None):
        converted = _convert_sqlite_to_pg(sql)
        self._cursor.execute(converted, params)
        if converted.rstrip().upper().endswith('RETURNING ID') and self._cursor.description:
            row = self._cursor.fetchone()
            self._lastrowid = row[0] if row else None
        return self

    def fetchone(self):
        row = self._cursor.fetchone()
        return _PgRow(self._cursor, row) if row is not None else None

    def fetchall(self):
        return [_PgRow(self._cursor, r) for r in self._cursor.fetchall()]

    @property
    def lastrowid(self):
        return self._lastrowid

    @property
    def rowcount(self):
        return self._cursor.rowcount


class _PgConnection:
    """psycopg2 connection with the subset of the sqlite3 interface the engine uses."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, params=None):
        cursor = _PgCursor(self._conn.cursor())
        if sql.strip().upper().startswith('PRAGMA'):
            return cursor
        return cursor.execute(sql, params)

    def cursor(self):
        return _PgCursor(self._conn.cursor())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        pool = _get_pg_pool()
        if pool:
            pool.putconn(self._conn)


# ---------------------------------------------------------------------------
# Connection Management
# ---------------------------------------------------------------------------

def connect(db_path=None):
    """
    Simple connection factory. Caller is responsible for commit and close.

    For PostgreSQL: returns a pool-wrapped connection.
    For SQLite: returns a WAL-enabled connection with Row factory.
    """
    if is_postgres():
        return _PgConnection(_get_pg_pool().getconn())
    conn = sqlite3.connect(db_path or _sqlite_path(), timeout=30, check_same_thread=False)
    conn.execute('PRAGMA journal_mode=WAL')
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path=None):
    """
    Context manager for database connections. Commits on success,
    rolls back and re-raises on error.

    Usage:
        with get_db() as conn:
            conn.execute('SELECT ...')
    """
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _lock_key(resource):
    return zlib.crc32(resource.encode('utf-8')) & 0x7FFFFFFF


@contextmanager
def atomic(resource, db_path=None):
    """
    Serialised read-modify-write transaction for one logical resource
    (e.g. "rules:<user_id>"). Yields a connection; commits on exit.

    SQLite takes the database write lock up front with BEGIN IMMEDIATE.
    PostgreSQL takes a transaction-scoped advisory lock keyed by resource.
    """
    if is_postgres():
        conn = connect(db_path)
        try:
            conn.execute('SELECT pg_advisory_xact_lock(?)', (_lock_key(resource),))
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return

    with _sqlite_write_lock:
        conn = connect(db_path)
        conn.isolation_level = None
        try:
            conn.execute('BEGIN IMMEDIATE')
            yield conn
            conn.execute('COMMIT')
        except Exception:
            conn.execute('ROLLBACK')
            raise
        finally:
            conn.close()


def ping():
    """Return True when the configured database answers a trivial query."""
    try:
        with get_db() as conn:
            conn.execute('SELECT 1').fetchone()
        return True
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return False
