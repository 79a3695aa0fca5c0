from __future__ import annotations

from typing import List

import aiosqlite

from ..models import KnowledgeEntry
from .utils import _clamp, _sqlite_memory_connection, normalize_knowledge_source, normalize_knowledge_text, now_ms


REVIEW_CONFIDENCE_THRESHOLD = 0.65

_KNOWLEDGE_COLUMNS = "id, text, confidence, source, added_by, created_at"


class MemoryKnowledgeMixin:
    async def find_knowledge_by_text(self, guild_id: str, text: str) -> KnowledgeEntry | None:
        key = normalize_knowledge_text(text)
        if not key:
            return None
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = ? AND text_key = ?
                LIMIT 1
                """,
                (guild_id, key),
            ) as cursor:
                row = await cursor.fetchone()
        return KnowledgeEntry.from_row(row) if row is not None else None

    async def insert_knowledge(
        self,
        guild_id: str,
        added_by: str,
        text: str,
        confidence: float,
        source: str,
    ) -> int:
        clean = str(text or "").strip()
        key = normalize_knowledge_text(clean)
        if not key:
            raise ValueError("knowledge text cannot be blank")
        conf = _clamp(float(confidence), 0.0, 1.0)
        src = normalize_knowledge_source(source)
        async with _sqlite_memory_connection(self.db_path) as db:
            # The unique (guild_id, text_key) index turns a racing duplicate insert into a merge.
            await db.execute(
                """
                INSERT INTO knowledge_entries (guild_id, text, text_key, confidence, source, added_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, text_key) DO UPDATE SET
                    confidence = MAX(knowledge_entries.confidence, excluded.confidence),
                    source = CASE
                        WHEN knowledge_entries.source = 'manual' OR excluded.source = 'manual' THEN 'manual'
                        ELSE 'learned'
                    END,
                    added_by = excluded.added_by,
                    created_at = excluded.created_at
                """,
                (guild_id, clean, key, conf, src, str(added_by), now_ms()),
            )
            async with db.execute(
                "SELECT id FROM knowledge_entries WHERE guild_id = ? AND text_key = ?",
                (guild_id, key),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()
        return int(row[0])

    async def update_knowledge(
        self,
        guild_id: str,
        entry_id: int,
        *,
        confidence: float,
        source: str,
        added_by: str,
        created_at: int | None = None,
    ) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE knowledge_entries
                SET confidence = ?, source = ?, added_by = ?, created_at = ?
                WHERE guild_id = ? AND id = ?
                """,
                (
                    _clamp(float(confidence), 0.0, 1.0),
                    normalize_knowledge_source(source),
                    str(added_by),
                    int(created_at) if created_at is not None else now_ms(),
                    guild_id,
                    int(entry_id),
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_knowledge(self, guild_id: str, limit: int) -> List[KnowledgeEntry]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (guild_id, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def search_knowledge(self, guild_id: str, query: str, limit: int) -> List[KnowledgeEntry]:
        needle = normalize_knowledge_text(query)
        if not needle or limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = ? AND instr(text_key, ?) > 0
                ORDER BY id DESC
                LIMIT ?
                """,
                (guild_id, needle, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def list_knowledge_for_review(
        self,
        guild_id: str,
        limit: int,
        max_confidence: float = REVIEW_CONFIDENCE_THRESHOLD,
    ) -> List[KnowledgeEntry]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = ? AND source = 'learned' AND confidence <= ?
                ORDER BY confidence ASC, id DESC
                LIMIT ?
                """,
                (guild_id, float(max_confidence), int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def remove_knowledge(self, guild_id: str, entry_id: int) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM knowledge_entries WHERE guild_id = ? AND id = ?",
                (guild_id, int(entry_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count_knowledge(self, guild_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM knowledge_entries WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def count_low_confidence_knowledge(
        self,
        guild_id: str,
        max_confidence: float = REVIEW_CONFIDENCE_THRESHOLD,
    ) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*)
                FROM knowledge_entries
                WHERE guild_id = ? AND source = 'learned' AND confidence <= ?
                """,
                (guild_id, float(max_confidence)),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
