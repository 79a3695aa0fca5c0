from __future__ import annotations

from typing import List

import aiosqlite

from ..models import ConversationMessage, UserMessageCount
from .utils import _sqlite_memory_connection, now_ms


CONVERSATION_ROLES = ("user", "assistant")


class MemoryMessagesMixin:
    async def add_conversation_message(self, guild_id: str, user_id: str, role: str, content: str) -> int:
        role_clean = str(role or "").strip().lower()
        if role_clean not in CONVERSATION_ROLES:
            raise ValueError(f"unsupported conversation role: {role!r}")
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO conversation_messages (guild_id, user_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (guild_id, user_id, role_clean, str(content), now_ms()),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def list_conversation_messages(self, guild_id: str, user_id: str, limit: int) -> List[ConversationMessage]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, role, content, created_at
                FROM conversation_messages
                WHERE guild_id = ? AND user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (guild_id, user_id, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        rows = list(rows)
        rows.reverse()
        return [ConversationMessage.from_row(row) for row in rows]

    async def trim_conversation(self, guild_id: str, user_id: str, keep_limit: int) -> int:
        if keep_limit <= 0:
            return await self.clear_conversation(guild_id, user_id)
        async with _sqlite_memory_connection(self.db_path) as db:
            # Insertion order (id), not created_at, decides what survives.
            cursor = await db.execute(
                """
                DELETE FROM conversation_messages
                WHERE guild_id = ? AND user_id = ?
                  AND id NOT IN (
                      SELECT id
                      FROM conversation_messages
                      WHERE guild_id = ? AND user_id = ?
                      ORDER BY id DESC
                      LIMIT ?
                  )
                """,
                (guild_id, user_id, guild_id, user_id, int(keep_limit)),
            )
            await db.commit()
            return max(0, int(cursor.rowcount))

    async def clear_conversation(self, guild_id: str, user_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM conversation_messages WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            )
            await db.commit()
            return max(0, int(cursor.rowcount))

    async def count_conversation_messages(self, guild_id: str, user_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM conversation_messages WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def count_conversations(self, guild_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(DISTINCT user_id) FROM conversation_messages WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_top_chatters(self, guild_id: str, limit: int) -> List[UserMessageCount]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT user_id, COUNT(*) AS message_count
                FROM conversation_messages
                WHERE guild_id = ? AND role = 'user'
                GROUP BY user_id
                ORDER BY message_count DESC, user_id ASC
                LIMIT ?
                """,
                (guild_id, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [UserMessageCount(user_id=str(row["user_id"]), message_count=int(row["message_count"])) for row in rows]
