"""SQLite persistence layer for authproxy.

Owns the schema for users, OTP codes, API keys, daily usage counters and the
audit trail, and hands out short-lived aiosqlite connections.

Design:
  - One connection per operation (``async with db.connect()``); there is no
    shared connection, so concurrent requests never interleave statements
    inside each other's transactions.
  - Multi-step mutations use ``async with db.transaction()``, which issues
    ``BEGIN IMMEDIATE`` so the write lock is taken up front and commits or
    rolls back as a unit.
  - ``PRAGMA foreign_keys = ON`` on every connection (SQLite defaults it off).
  - WAL journal mode, set once in ``initialize()``.
  - Schema version guard via ``PRAGMA user_version``.
  - sqlite errors are translated at this boundary: UNIQUE constraint
    failures become ``UniqueViolation``, everything else ``StorageError``.

Timestamps are fixed-width ISO-8601 UTC strings (see authproxy.utils.timeutil);
salts and hashes are unpadded base64url text.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from authproxy.errors import StorageError, UniqueViolation
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email           TEXT NOT NULL UNIQUE,
    created_at      TEXT NOT NULL,
    last_login_at   TEXT
);

CREATE TABLE IF NOT EXISTS otps (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email           TEXT NOT NULL,
    code_hash       TEXT NOT NULL,
    salt            TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    last_sent_at    TEXT NOT NULL,
    consumed_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_otps_email_created
    ON otps(email, created_at DESC);

CREATE TABLE IF NOT EXISTS api_keys (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    key_prefix      TEXT NOT NULL,
    key_hash        TEXT NOT NULL,
    salt            TEXT NOT NULL,
    label           TEXT,
    created_at      TEXT NOT NULL,
    revoked_at      TEXT,
    last_used_at    TEXT,
    UNIQUE(user_id, key_prefix)
);

CREATE INDEX IF NOT EXISTS idx_api_keys_active_prefix
    ON api_keys(key_prefix) WHERE revoked_at IS NULL;

CREATE TABLE IF NOT EXISTS usage_daily (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    date_utc        TEXT NOT NULL,
    count           INTEGER NOT NULL DEFAULT 0,
    UNIQUE(user_id, date_utc)
);

CREATE TABLE IF NOT EXISTS audits (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER REFERENCES users(id) ON DELETE SET NULL,
    type            TEXT NOT NULL,
    details         TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audits_created
    ON audits(created_at DESC);

CREATE INDEX IF NOT EXISTS idx_audits_user_type
    ON audits(user_id, type);
"""

_SCHEMA_VERSION = 1


def _translate(exc: aiosqlite.Error) -> StorageError:
    if isinstance(exc, aiosqlite.IntegrityError) and "UNIQUE" in str(exc):
        return UniqueViolation(str(exc))
    return StorageError()


class Database:
    """Handle on the authproxy SQLite file.

    Usage:
        db = Database("~/.authproxy/authproxy.db")
        await db.initialize()

        async with db.connect() as conn:
            cursor = await conn.execute("SELECT ...", (...,))

        async with db.transaction() as conn:
            await conn.execute("UPDATE ...")
            await conn.execute("INSERT ...")
    """

    def __init__(self, path: str) -> None:
        self.path: str = os.path.expanduser(path)

    async def initialize(self) -> None:
        """Create the database file and schema.  Idempotent.

        Raises:
            RuntimeError: If the file carries an unknown schema version.
                          The lifespan lets this propagate and refuses startup.
        """
        parent_dir = os.path.dirname(self.path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        async with aiosqlite.connect(self.path) as conn:
            await conn.execute("PRAGMA journal_mode=WAL;")
            cursor = await conn.execute("PRAGMA user_version;")
            row = await cursor.fetchone()
            current_version: int = row[0] if row else 0

            if current_version == 0:
                await conn.executescript(_CREATE_SCHEMA_SQL)
                await conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
                await conn.commit()
                logger.info("db_schema_created", db_path=self.path, schema_version=_SCHEMA_VERSION)
            elif current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported database schema version: {current_version} "
                    f"(expected {_SCHEMA_VERSION}) at {self.path}"
                )

        # The file holds credential hashes; keep it private to the service user.
        try:
            os.chmod(self.path, 0o600)
        except OSError as exc:
            logger.warning("db_chmod_failed", db_path=self.path, error=str(exc))

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield an autocommit connection with foreign keys enforced."""
        try:
            async with aiosqlite.connect(self.path, isolation_level=None) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA foreign_keys = ON;")
                yield conn
        except aiosqlite.Error as exc:
            logger.error("db_error", error=str(exc), error_type=type(exc).__name__)
            raise _translate(exc) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``.

        Commits when the block exits normally, rolls back on any exception
        (which is then re-raised, translated if it came from sqlite).
        """
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()
