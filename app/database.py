"""
Database initialization.

This module wires up the Postgres connection (via psycopg), a shared
psycopg_pool ConnectionPool for the persistence layer, and the DDL for the
application tables.

Usage:
    from app.database import ensure_db_ready, get_pool, init_schema
    ensure_db_ready()  # optional: verifies DB connectivity
    init_schema()      # creates tables if missing
    with get_pool().connection() as conn:
        ...
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from psycopg import connect
from psycopg.errors import DuplicatePreparedStatement, OperationalError
from psycopg_pool import ConnectionPool


_POOL: Optional[ConnectionPool] = None

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL,
    password_hash   TEXT NOT NULL,
    first_name      TEXT,
    last_name       TEXT,
    phone           TEXT,
    birthday        DATE,
    address         TEXT,
    city            TEXT,
    pharmacy        TEXT,
    profile_picture TEXT,
    facebook        TEXT,
    twitter         TEXT,
    instagram       TEXT,
    points          INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
    is_admin        BOOLEAN NOT NULL DEFAULT FALSE,
    referred_by     TEXT REFERENCES users(id) ON DELETE SET NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email));

CREATE TABLE IF NOT EXISTS sessions (
    token       TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    expires_at  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    stars       INTEGER NOT NULL CHECK (stars >= 0),
    image       TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS rewards (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL,
    name        TEXT NOT NULL,
    points      INTEGER NOT NULL CHECK (points >= 1),
    image       TEXT,
    hint        TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS redemptions (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    user_name       TEXT NOT NULL,
    reward_id       TEXT NOT NULL,
    reward_name     TEXT NOT NULL,
    points_redeemed INTEGER NOT NULL,
    timestamp       TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS settings (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""


def _load_env() -> None:
    """Load environment variables from .env if present."""
    # Safe to call multiple times; no-op if already loaded
    load_dotenv(override=False)


def get_database_url() -> str:
    _load_env()
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set in environment/.env")
    return url


def ensure_db_ready(timeout_seconds: int = 10) -> None:
    """Attempt a simple connection and ping to verify DB is reachable."""
    dsn = get_database_url()
    try:
        with connect(
            dsn,
            connect_timeout=timeout_seconds,
            prepare_threshold=None,
            autocommit=True,
        ) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
    except (OperationalError, DuplicatePreparedStatement) as e:
        raise RuntimeError(f"Unable to connect to Postgres: {e}")


def get_connection(**kwargs):
    """Return a standalone psycopg connection with prepared statements disabled.

    Transaction-mode poolers (Supabase Supavisor, pgbouncer) multiplex
    connections, so prepared statements created on one backend aren't
    visible to others. prepare_threshold=None disables them entirely.

    All keyword arguments are forwarded to psycopg.connect().
    """
    dsn = get_database_url()
    return connect(dsn, prepare_threshold=None, **kwargs)


def get_pool() -> ConnectionPool:
    """Return a singleton ConnectionPool bound to DATABASE_URL."""
    global _POOL
    if _POOL is None:
        dsn = get_database_url()
        _POOL = ConnectionPool(
            dsn,
            kwargs={"prepare_threshold": None},
            open=True,
        )
    return _POOL


def init_schema() -> None:
    """Create the application tables if they don't exist yet."""
    with get_connection(autocommit=True) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)


def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.close()
        _POOL = None
