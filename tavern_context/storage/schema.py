from __future__ import annotations

import logging
import os
from pathlib import Path

import aiosqlite

from .utils import sqlite_busy_timeout_ms, sqlite_connection

logger = logging.getLogger("tavern_context.storage")


class StoreSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path, busy_timeout_ms: int | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = sqlite_busy_timeout_ms() if busy_timeout_ms is None else max(0, int(busy_timeout_ms))

    def _connect(self):
        return sqlite_connection(self.db_path, self.busy_timeout_ms)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    logger.warning(
                        "[storage.schema] resetting database %s (user_version=%s, supported=%s)",
                        self.db_path,
                        version,
                        self.SCHEMA_VERSION,
                    )
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "active_selections",
            "session_histories",
            "rewrite_rules",
            "presets",
            "lore_entries",
            "lore_databases",
            "personas",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS personas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER,
                name TEXT NOT NULL,
                raw_document TEXT NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_personas_owner ON personas(owner_id);

            CREATE TABLE IF NOT EXISTS lore_databases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER,
                name TEXT NOT NULL,
                raw_document TEXT NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_lore_databases_owner ON lore_databases(owner_id);

            CREATE TABLE IF NOT EXISTS lore_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                database_id INTEGER NOT NULL REFERENCES lore_databases(id) ON DELETE CASCADE,
                uid TEXT NOT NULL DEFAULT '',
                keys_json TEXT NOT NULL DEFAULT '[]',
                secondary_keys_json TEXT NOT NULL DEFAULT '[]',
                content TEXT NOT NULL,
                comment TEXT NOT NULL DEFAULT '',
                constant INTEGER NOT NULL DEFAULT 0,
                selective INTEGER NOT NULL DEFAULT 0,
                sort_order INTEGER NOT NULL DEFAULT 0,
                placement TEXT NOT NULL DEFAULT 'after_persona',
                enabled INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_lore_entries_database ON lore_entries(database_id, sort_order);

            CREATE TABLE IF NOT EXISTS presets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER,
                name TEXT NOT NULL,
                api_family TEXT NOT NULL,
                raw_parameters TEXT NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_presets_owner_family ON presets(owner_id, api_family);

            CREATE TABLE IF NOT EXISTS rewrite_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER,
                name TEXT NOT NULL DEFAULT '',
                pattern TEXT NOT NULL,
                replacement TEXT NOT NULL DEFAULT '',
                direction TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_rewrite_rules_owner_direction
            ON rewrite_rules(owner_id, direction, sort_order);

            CREATE TABLE IF NOT EXISTS session_histories (
                session_key TEXT PRIMARY KEY,
                items_json TEXT NOT NULL DEFAULT '[]',
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS active_selections (
                scope TEXT NOT NULL,
                kind TEXT NOT NULL,
                api_family TEXT NOT NULL DEFAULT '',
                resource_id INTEGER NOT NULL,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (scope, kind, api_family)
            );
            """
        )
