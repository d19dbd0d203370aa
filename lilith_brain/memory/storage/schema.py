from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
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
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this brain build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if has_tables and version != self.SCHEMA_VERSION and self._allow_destructive_reset_on_mismatch():
                await self._reset_schema(db)
            else:
                await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "memory_vectors",
            "memories_episodic",
            "memories_facts",
            "chat_histories",
            "relationships",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS relationships (
                conversation_id TEXT PRIMARY KEY,
                demon_affection INTEGER NOT NULL DEFAULT 20,
                demon_trust INTEGER NOT NULL DEFAULT 10,
                demon_mood INTEGER NOT NULL DEFAULT 0,
                angel_affection INTEGER NOT NULL DEFAULT 20,
                angel_trust INTEGER NOT NULL DEFAULT 10,
                angel_mood INTEGER NOT NULL DEFAULT 0,
                last_user_activity TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS chat_histories (
                conversation_id TEXT PRIMARY KEY,
                history_json TEXT NOT NULL DEFAULT '[]',
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS memories_facts (
                fact_id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                fact_key TEXT NOT NULL,
                fact_detail TEXT NOT NULL,
                scope TEXT NOT NULL DEFAULT 'user' CHECK (scope IN ('user', 'agent', 'us')),
                updated_at TEXT NOT NULL,
                UNIQUE(conversation_id, fact_key)
            );

            CREATE TABLE IF NOT EXISTS memories_episodic (
                memory_id INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_type TEXT NOT NULL,
                trigger_text TEXT NOT NULL DEFAULT '',
                action_text TEXT NOT NULL DEFAULT '',
                result_text TEXT NOT NULL DEFAULT '',
                importance_score REAL NOT NULL DEFAULT 0.5,
                reflection TEXT,
                conversation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS memory_vectors (
                vector_id INTEGER PRIMARY KEY AUTOINCREMENT,
                text TEXT NOT NULL,
                embedding_json TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                sql_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_relationships_activity
            ON relationships(last_user_activity DESC);

            CREATE INDEX IF NOT EXISTS idx_facts_lookup
            ON memories_facts(conversation_id, scope, updated_at DESC);

            CREATE INDEX IF NOT EXISTS idx_episodic_type_created
            ON memories_episodic(memory_type, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_episodic_created
            ON memories_episodic(created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_vectors_sql_id
            ON memory_vectors(sql_id);
            """
        )
