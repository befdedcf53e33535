"""
Credential Store Schema.

:func:`initialize_schema` brings a SQLite connection up to
:data:`CURRENT_SCHEMA_VERSION` and is called on every startup.

A fresh database gets every table from :data:`_TABLES` (that is
version 1) and then every registered migration.  An existing database only
runs the migrations above its stored version.  The upgrade and the
version bump share one transaction, so a failed upgrade leaves the stored
version untouched and the next startup retries.

To change the schema, append a :class:`Migration` to :data:`_MIGRATIONS`
with the next version number; its statements must be idempotent.
"""

from __future__ import annotations

import sqlite3
from typing import NamedTuple

from opinions_identity.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]


_VERSION_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

# Version 1 layout, keyed by table name.
_TABLES: dict[str, str] = {
    "identities": """
        CREATE TABLE IF NOT EXISTS identities (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            surname TEXT NOT NULL,
            username TEXT NOT NULL COLLATE NOCASE UNIQUE,
            email TEXT NOT NULL COLLATE NOCASE UNIQUE,
            password_hash TEXT NOT NULL,
            phone TEXT,
            profile_picture TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            email_verified INTEGER NOT NULL DEFAULT 0,
            email_verification_token TEXT UNIQUE,
            email_verification_expires_at TEXT,
            password_reset_token TEXT UNIQUE,
            password_reset_expires_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "roles": """
        CREATE TABLE IF NOT EXISTS roles (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
                 CHECK (name IN ('ADMIN_ROLE', 'USER_ROLE')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    # One row per identity; the id is regenerated on every role change.
    "user_roles": """
        CREATE TABLE IF NOT EXISTS user_roles (
            id TEXT PRIMARY KEY CHECK (length(id) <= 16),
            user_id TEXT NOT NULL UNIQUE,
            role_id TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES identities(id),
            FOREIGN KEY (role_id) REFERENCES roles(id)
        )
    """,
    # Local mirror of the remote projection, or the projection itself offline.
    "identity_projections": """
        CREATE TABLE IF NOT EXISTS identity_projections (
            id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
            source_id TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL DEFAULT '',
            surname TEXT NOT NULL DEFAULT '',
            username TEXT NOT NULL,
            email TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "sync_queue": """
        CREATE TABLE IF NOT EXISTS sync_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            operation TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            attempted_at TIMESTAMP,
            error_message TEXT
        )
    """,
    "audit_log": """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            details TEXT DEFAULT '{}',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
}


class Migration(NamedTuple):
    version: int
    description: str
    statements: tuple[str, ...]


_MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=2,
        description="outbox status and role lookup indexes",
        statements=(
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status)",
            "CREATE INDEX IF NOT EXISTS idx_user_roles_role_id ON user_roles(role_id)",
        ),
    ),
)

CURRENT_SCHEMA_VERSION: int = max(m.version for m in _MIGRATIONS)


def _stored_version(conn: sqlite3.Connection) -> int:
    conn.execute(_VERSION_TABLE)
    conn.commit()
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return int(row[0]) if row else 0


def _upgrade(conn: sqlite3.Connection, logger: StructuredLogger, stored: int) -> None:
    # No commit here; initialize_schema owns the transaction.
    if stored == 0:
        for table, ddl in _TABLES.items():
            conn.execute(ddl)
            logger.debug("Table %s created or verified.", table)
        stored = 1

    for migration in _MIGRATIONS:
        if migration.version <= stored:
            continue
        for statement in migration.statements:
            conn.execute(statement)
        logger.info("Migration to v%d applied: %s.", migration.version, migration.description)

    conn.execute(
        "INSERT INTO schema_version (id, version) VALUES (1, ?) "
        "ON CONFLICT(id) DO UPDATE SET version = excluded.version, "
        "applied_at = CURRENT_TIMESTAMP",
        (CURRENT_SCHEMA_VERSION,),
    )


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the credential store schema.  Idempotent.

    Raises:
        sqlite3.Error: The upgrade failed; it has been rolled back.
    """
    stored = _stored_version(conn)
    if stored >= CURRENT_SCHEMA_VERSION:
        logger.debug("Schema is at version %d.", stored)
        return

    try:
        _upgrade(conn, logger, stored)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logger.error("Schema upgrade from version %d failed; rolled back.", stored)
        raise

    logger.info("Schema upgraded from version %d to %d.", stored, CURRENT_SCHEMA_VERSION)
