from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _clamp, _sqlite_memory_connection, normalize_knowledge_text


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

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
                    "SQLite schema version mismatch detected (database is newer than this bot build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if not has_tables:
                await self._create_schema(db)
                await self._create_indexes(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            else:
                await self._create_schema(db)
                await self._migrate_schema(db, version)
                await self._create_indexes(db)
                if version != self.SCHEMA_VERSION:
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "ai_reply_audit",
            "response_feedback",
            "user_privacy",
            "conversation_messages",
            "ai_blacklist",
            "knowledge_entries",
            "user_contexts",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)
        await self._create_indexes(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        return {str(row[1]) for row in rows}

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            await self._migrate_v2_knowledge_text_key(db)

    async def _migrate_v2_knowledge_text_key(self, db: aiosqlite.Connection) -> None:
        # Databases written before v2 may lack the learning columns and may hold duplicates.
        await self._add_column_if_missing(db, "knowledge_entries", "confidence REAL NOT NULL DEFAULT 1.0")
        await self._add_column_if_missing(db, "knowledge_entries", "source TEXT NOT NULL DEFAULT 'manual'")
        await self._add_column_if_missing(db, "knowledge_entries", "text_key TEXT NOT NULL DEFAULT ''")

        db.row_factory = aiosqlite.Row
        async with db.execute(
            """
            SELECT id, guild_id, text, confidence, source
            FROM knowledge_entries
            ORDER BY id ASC
            """
        ) as cursor:
            rows = await cursor.fetchall()
        db.row_factory = None

        survivors: dict[tuple[str, str], dict[str, object]] = {}
        duplicate_ids: list[int] = []
        for row in rows:
            key = (str(row["guild_id"]), normalize_knowledge_text(row["text"]))
            current = survivors.get(key)
            if current is None:
                survivors[key] = {
                    "id": int(row["id"]),
                    "text_key": key[1],
                    "confidence": _clamp(float(row["confidence"]), 0.0, 1.0),
                    "source": str(row["source"] or "manual"),
                }
                continue
            current["confidence"] = max(float(current["confidence"]), _clamp(float(row["confidence"]), 0.0, 1.0))
            if str(row["source"]) == "manual":
                current["source"] = "manual"
            duplicate_ids.append(int(row["id"]))

        for entry_id in duplicate_ids:
            await db.execute("DELETE FROM knowledge_entries WHERE id = ?", (entry_id,))
        for entry in survivors.values():
            await db.execute(
                """
                UPDATE knowledge_entries
                SET text_key = ?, confidence = ?, source = ?
                WHERE id = ?
                """,
                (entry["text_key"], entry["confidence"], entry["source"], entry["id"]),
            )

    async def _create_indexes(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_knowledge_guild_text_key
            ON knowledge_entries(guild_id, text_key);

            CREATE INDEX IF NOT EXISTS idx_conversation_user
            ON conversation_messages(guild_id, user_id, id);

            CREATE INDEX IF NOT EXISTS idx_reply_audit_user
            ON ai_reply_audit(guild_id, user_id, id DESC);

            CREATE INDEX IF NOT EXISTS idx_feedback_guild_created
            ON response_feedback(guild_id, created_at);
            """
        )

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_contexts (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                context TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS knowledge_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                text TEXT NOT NULL,
                text_key TEXT NOT NULL DEFAULT '',
                confidence REAL NOT NULL DEFAULT 1.0,
                source TEXT NOT NULL DEFAULT 'manual',
                added_by TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_blacklist (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                reason TEXT,
                added_by TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS conversation_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_privacy (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                allow_storage INTEGER NOT NULL DEFAULT 1,
                allow_recording INTEGER NOT NULL DEFAULT 1,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS response_feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                rating TEXT NOT NULL,
                reason TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_reply_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                model TEXT NOT NULL,
                used_user_context INTEGER NOT NULL,
                history_count INTEGER NOT NULL,
                knowledge_ids TEXT,
                knowledge_preview TEXT,
                prompt_excerpt TEXT,
                response_excerpt TEXT,
                latency_ms INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );
            """
        )
