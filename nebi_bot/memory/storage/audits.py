from __future__ import annotations

from typing import Sequence

import aiosqlite

from ..models import FeedbackStats, ReplyAudit, encode_knowledge_ids
from .utils import _sqlite_memory_connection, now_ms


FEEDBACK_RATINGS = ("good", "bad")


class MemoryAuditMixin:
    async def save_reply_audit(
        self,
        guild_id: str,
        user_id: str,
        *,
        model: str,
        used_user_context: bool,
        history_count: int,
        knowledge_ids: Sequence[int],
        knowledge_preview: str,
        prompt_excerpt: str,
        response_excerpt: str,
        latency_ms: int,
    ) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO ai_reply_audit (
                    guild_id, user_id, model, used_user_context, history_count, knowledge_ids,
                    knowledge_preview, prompt_excerpt, response_excerpt, latency_ms, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    guild_id,
                    user_id,
                    model,
                    int(bool(used_user_context)),
                    max(0, int(history_count)),
                    encode_knowledge_ids(tuple(knowledge_ids)),
                    knowledge_preview,
                    prompt_excerpt,
                    response_excerpt,
                    max(0, int(latency_ms)),
                    now_ms(),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_latest_reply_audit(self, guild_id: str, user_id: str) -> ReplyAudit | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, guild_id, user_id, model, used_user_context, history_count, knowledge_ids,
                       knowledge_preview, prompt_excerpt, response_excerpt, latency_ms, created_at
                FROM ai_reply_audit
                WHERE guild_id = ? AND user_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        return ReplyAudit.from_row(row) if row is not None else None

    async def add_feedback(self, guild_id: str, user_id: str, rating: str, reason: str = "") -> int:
        rating_clean = str(rating or "").strip().lower()
        if rating_clean not in FEEDBACK_RATINGS:
            raise ValueError(f"unsupported feedback rating: {rating!r}")
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO response_feedback (guild_id, user_id, rating, reason, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (guild_id, user_id, rating_clean, str(reason or ""), now_ms()),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_feedback_stats(self, guild_id: str, since_ms: int) -> FeedbackStats:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT
                    SUM(CASE WHEN rating = 'good' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN rating = 'bad' THEN 1 ELSE 0 END)
                FROM response_feedback
                WHERE guild_id = ? AND created_at >= ?
                """,
                (guild_id, int(since_ms)),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return FeedbackStats()
        return FeedbackStats(good=int(row[0] or 0), bad=int(row[1] or 0))
