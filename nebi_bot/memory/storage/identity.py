from __future__ import annotations

import aiosqlite

from ..models import PrivacySettings
from .utils import _sqlite_memory_connection, now_ms


class MemoryIdentityMixin:
    """Per-member records: privacy flags and the free-text user context."""

    async def get_privacy(self, guild_id: str, user_id: str) -> PrivacySettings:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT allow_storage, allow_recording
                FROM user_privacy
                WHERE guild_id = ? AND user_id = ?
                """,
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return PrivacySettings()
        return PrivacySettings(
            allow_storage=bool(row["allow_storage"]),
            allow_recording=bool(row["allow_recording"]),
        )

    async def set_privacy(self, guild_id: str, user_id: str, allow_storage: bool, allow_recording: bool) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_privacy (guild_id, user_id, allow_storage, allow_recording, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET
                    allow_storage = excluded.allow_storage,
                    allow_recording = excluded.allow_recording,
                    updated_at = excluded.updated_at
                """,
                (guild_id, user_id, int(bool(allow_storage)), int(bool(allow_recording)), now_ms()),
            )
            await db.commit()

    async def is_storage_allowed(self, guild_id: str, user_id: str) -> bool:
        privacy = await self.get_privacy(guild_id, user_id)
        return privacy.allow_storage

    async def set_user_context(self, guild_id: str, user_id: str, context: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_contexts (guild_id, user_id, context, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET
                    context = excluded.context,
                    updated_at = excluded.updated_at
                """,
                (guild_id, user_id, str(context), now_ms()),
            )
            await db.commit()

    async def get_user_context(self, guild_id: str, user_id: str) -> str | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT context FROM user_contexts WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        return str(row[0]) if row is not None else None

    async def clear_user_context(self, guild_id: str, user_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM user_contexts WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count_contexts(self, guild_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM user_contexts WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
