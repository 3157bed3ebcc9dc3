"""
SQLite database management for the certificate engine.

Provides async database operations using aiosqlite for managed
certificates, ACME accounts, DNS credentials, nodes and notifications.
"""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from config import settings

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- Managed certificates
CREATE TABLE IF NOT EXISTS certs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL DEFAULT '',
    domains_json TEXT,
    filename TEXT NOT NULL DEFAULT '',
    ssl_certificate_path TEXT NOT NULL DEFAULT '',
    ssl_certificate_key_path TEXT NOT NULL DEFAULT '',
    auto_cert INTEGER NOT NULL DEFAULT -1,
    challenge_method TEXT NOT NULL DEFAULT 'http01',
    dns_credential_id INTEGER,
    acme_user_id INTEGER,
    key_type TEXT NOT NULL DEFAULT '2048',
    log TEXT NOT NULL DEFAULT '',
    resource_json TEXT,
    sync_node_ids_json TEXT,
    must_staple BOOLEAN DEFAULT FALSE,
    disable_cname_following BOOLEAN DEFAULT FALSE,
    revoke_old BOOLEAN DEFAULT FALSE,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,

    FOREIGN KEY (dns_credential_id) REFERENCES dns_credentials(id),
    FOREIGN KEY (acme_user_id) REFERENCES acme_users(id)
);

CREATE INDEX IF NOT EXISTS idx_certs_name ON certs(name);
CREATE INDEX IF NOT EXISTS idx_certs_auto_cert ON certs(auto_cert);
CREATE INDEX IF NOT EXISTS idx_certs_paths ON certs(ssl_certificate_path, ssl_certificate_key_path);

-- ACME accounts
CREATE TABLE IF NOT EXISTS acme_users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL DEFAULT '',
    ca_dir TEXT NOT NULL DEFAULT '',
    registration_json TEXT,
    key_json TEXT,
    proxy TEXT NOT NULL DEFAULT '',
    eab_key_id TEXT NOT NULL DEFAULT '',
    eab_hmac_key TEXT NOT NULL DEFAULT '',
    register_on_startup BOOLEAN DEFAULT FALSE,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_acme_users_name ON acme_users(name);

-- DNS provider credentials
CREATE TABLE IF NOT EXISTS dns_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    provider TEXT NOT NULL DEFAULT '',
    code TEXT NOT NULL,
    configuration_json TEXT,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Fleet nodes
CREATE TABLE IF NOT EXISTS nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    token TEXT NOT NULL DEFAULT '',
    enabled BOOLEAN DEFAULT TRUE,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Operator notifications
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL DEFAULT 'info',
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    details_json TEXT,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON notifications(created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_type ON notifications(type);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.database_path

    async def initialize(self) -> None:
        """Initialize database and create tables if needed."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        """Get a database connection context manager."""
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Execute a write query and return the affected row count."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> dict[str, Any] | None:
        """Execute a query and fetch one result."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute a query and fetch all results."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a row and return its rowid."""
        columns = list(data.keys())
        placeholders = ", ".join(["?" for _ in columns])
        columns_str = ", ".join(columns)

        query = f"INSERT INTO {table} ({columns_str}) VALUES ({placeholders})"

        async with self.connection() as db:
            cursor = await db.execute(query, tuple(data.values()))
            await db.commit()
            return cursor.lastrowid

    async def update(self, table: str, id_value: int, data: dict[str, Any], id_column: str = "id") -> bool:
        """Update a row by id."""
        set_clause = ", ".join([f"{k} = ?" for k in data.keys()])
        query = f"UPDATE {table} SET {set_clause} WHERE {id_column} = ?"
        values = tuple(data.values()) + (id_value,)

        async with self.connection() as db:
            cursor = await db.execute(query, values)
            await db.commit()
            return cursor.rowcount > 0

    async def delete(self, table: str, id_value: int | str, id_column: str = "id") -> bool:
        """Delete rows matching an id column."""
        query = f"DELETE FROM {table} WHERE {id_column} = ?"

        async with self.connection() as db:
            cursor = await db.execute(query, (id_value,))
            await db.commit()
            return cursor.rowcount > 0


def serialize_json(data: Any) -> str | None:
    """Serialize a value to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data)


def deserialize_json(data: str | None) -> Any:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


# Singleton database instance
_db_instance: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


async def initialize_database() -> Database:
    """Initialize and return the database instance."""
    db = get_database()
    await db.initialize()
    return db
