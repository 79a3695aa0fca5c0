from __future__ import annotations

from typing import List

import aiosqlite

from ..models import BlacklistEntry
from .utils import _sqlite_memory_connection, now_ms


class MemoryBlacklistMixin:
    async def is_blacklisted(self, guild_id: str, user_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT 1 FROM ai_blacklist WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        return row is not None

    async def add_blacklist(self, guild_id: str, user_id: str, reason: str, added_by: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO ai_blacklist (guild_id, user_id, reason, added_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET
                    reason = excluded.reason,
                    added_by = excluded.added_by,
                    created_at = excluded.created_at
                """,
                (guild_id, user_id, str(reason or ""), str(added_by), now_ms()),
            )
            await db.commit()

    async def remove_blacklist(self, guild_id: str, user_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM ai_blacklist WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_blacklist(self, guild_id: str, limit: int = 50) -> List[BlacklistEntry]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT user_id, reason, added_by, created_at
                FROM ai_blacklist
                WHERE guild_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (guild_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            BlacklistEntry(
                user_id=str(row["user_id"]),
                reason=str(row["reason"] or ""),
                added_by=str(row["added_by"]),
                created_at=int(row["created_at"]),
            )
            for row in rows
        ]

    async def count_blacklist(self, guild_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM ai_blacklist WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
