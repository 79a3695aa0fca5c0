from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

import asyncpg

from .models import (
    BlacklistEntry,
    ConversationMessage,
    FeedbackStats,
    KnowledgeEntry,
    PrivacySettings,
    ReplyAudit,
    UserMessageCount,
    encode_knowledge_ids,
)
from .storage.audits import FEEDBACK_RATINGS
from .storage.knowledge import REVIEW_CONFIDENCE_THRESHOLD
from .storage.messages import CONVERSATION_ROLES
from .storage.utils import _clamp, normalize_knowledge_source, normalize_knowledge_text, now_ms


logger = logging.getLogger("nebi_bot")

_KNOWLEDGE_COLUMNS = "id, text, confidence, source, added_by, created_at"


class PostgresMemoryStore:
    """Postgres-backed memory store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: asyncpg.Pool | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the bot before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("Postgres memory store ready (schema v%s)", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: asyncpg.Connection) -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: asyncpg.Connection, version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_contexts (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                context TEXT NOT NULL,
                updated_at BIGINT NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS knowledge_entries (
                id BIGSERIAL PRIMARY KEY,
                guild_id TEXT NOT NULL,
                text TEXT NOT NULL,
                text_key TEXT NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
                source TEXT NOT NULL DEFAULT 'manual',
                added_by TEXT NOT NULL,
                created_at BIGINT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_knowledge_guild_text_key
            ON knowledge_entries(guild_id, text_key);

            CREATE TABLE IF NOT EXISTS ai_blacklist (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                reason TEXT,
                added_by TEXT NOT NULL,
                created_at BIGINT NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS conversation_messages (
                id BIGSERIAL PRIMARY KEY,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_user
            ON conversation_messages(guild_id, user_id, id);

            CREATE TABLE IF NOT EXISTS user_privacy (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                allow_storage BOOLEAN NOT NULL DEFAULT TRUE,
                allow_recording BOOLEAN NOT NULL DEFAULT TRUE,
                updated_at BIGINT NOT NULL,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS response_feedback (
                id BIGSERIAL PRIMARY KEY,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                rating TEXT NOT NULL,
                reason TEXT,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_feedback_guild_created
            ON response_feedback(guild_id, created_at);

            CREATE TABLE IF NOT EXISTS ai_reply_audit (
                id BIGSERIAL PRIMARY KEY,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                model TEXT NOT NULL,
                used_user_context BOOLEAN NOT NULL,
                history_count INTEGER NOT NULL,
                knowledge_ids TEXT,
                knowledge_preview TEXT,
                prompt_excerpt TEXT,
                response_excerpt TEXT,
                latency_ms BIGINT NOT NULL,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_reply_audit_user
            ON ai_reply_audit(guild_id, user_id, id DESC);
            """
        )

    # Knowledge

    async def find_knowledge_by_text(self, guild_id: str, text: str) -> KnowledgeEntry | None:
        key = normalize_knowledge_text(text)
        if not key:
            return None
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge_entries WHERE guild_id = $1 AND text_key = $2",
                guild_id,
                key,
            )
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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            entry_id = await conn.fetchval(
                """
                INSERT INTO knowledge_entries (guild_id, text, text_key, confidence, source, added_by, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (guild_id, text_key) DO UPDATE SET
                    confidence = GREATEST(knowledge_entries.confidence, EXCLUDED.confidence),
                    source = CASE
                        WHEN knowledge_entries.source = 'manual' OR EXCLUDED.source = 'manual' THEN 'manual'
                        ELSE 'learned'
                    END,
                    added_by = EXCLUDED.added_by,
                    created_at = EXCLUDED.created_at
                RETURNING id
                """,
                guild_id,
                clean,
                key,
                _clamp(float(confidence), 0.0, 1.0),
                normalize_knowledge_source(source),
                str(added_by),
                now_ms(),
            )
        return int(entry_id)

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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE knowledge_entries
                SET confidence = $1, source = $2, added_by = $3, created_at = $4
                WHERE guild_id = $5 AND id = $6
                """,
                _clamp(float(confidence), 0.0, 1.0),
                normalize_knowledge_source(source),
                str(added_by),
                int(created_at) if created_at is not None else now_ms(),
                guild_id,
                int(entry_id),
            )
        return _affected_rows(status) > 0

    async def list_knowledge(self, guild_id: str, limit: int) -> List[KnowledgeEntry]:
        if limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge_entries WHERE guild_id = $1 ORDER BY id DESC LIMIT $2",
                guild_id,
                int(limit),
            )
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def search_knowledge(self, guild_id: str, query: str, limit: int) -> List[KnowledgeEntry]:
        needle = normalize_knowledge_text(query)
        if not needle or limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = $1 AND strpos(text_key, $2) > 0
                ORDER BY id DESC
                LIMIT $3
                """,
                guild_id,
                needle,
                int(limit),
            )
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def list_knowledge_for_review(
        self,
        guild_id: str,
        limit: int,
        max_confidence: float = REVIEW_CONFIDENCE_THRESHOLD,
    ) -> List[KnowledgeEntry]:
        if limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS}
                FROM knowledge_entries
                WHERE guild_id = $1 AND source = 'learned' AND confidence <= $2
                ORDER BY confidence ASC, id DESC
                LIMIT $3
                """,
                guild_id,
                float(max_confidence),
                int(limit),
            )
        return [KnowledgeEntry.from_row(row) for row in rows]

    async def remove_knowledge(self, guild_id: str, entry_id: int) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM knowledge_entries WHERE guild_id = $1 AND id = $2",
                guild_id,
                int(entry_id),
            )
        return _affected_rows(status) > 0

    async def count_knowledge(self, guild_id: str) -> int:
        return await self._count("SELECT COUNT(*) FROM knowledge_entries WHERE guild_id = $1", guild_id)

    async def count_low_confidence_knowledge(
        self,
        guild_id: str,
        max_confidence: float = REVIEW_CONFIDENCE_THRESHOLD,
    ) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM knowledge_entries WHERE guild_id = $1 AND source = 'learned' AND confidence <= $2",
            guild_id,
            float(max_confidence),
        )

    # Conversation

    async def add_conversation_message(self, guild_id: str, user_id: str, role: str, content: str) -> int:
        role_clean = str(role or "").strip().lower()
        if role_clean not in CONVERSATION_ROLES:
            raise ValueError(f"unsupported conversation role: {role!r}")
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO conversation_messages (guild_id, user_id, role, content, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                guild_id,
                user_id,
                role_clean,
                str(content),
                now_ms(),
            )
        return int(message_id)

    async def list_conversation_messages(self, guild_id: str, user_id: str, limit: int) -> List[ConversationMessage]:
        if limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, role, content, created_at
                FROM conversation_messages
                WHERE guild_id = $1 AND user_id = $2
                ORDER BY id DESC
                LIMIT $3
                """,
                guild_id,
                user_id,
                int(limit),
            )
        return [ConversationMessage.from_row(row) for row in reversed(rows)]

    async def trim_conversation(self, guild_id: str, user_id: str, keep_limit: int) -> int:
        if keep_limit <= 0:
            return await self.clear_conversation(guild_id, user_id)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM conversation_messages
                WHERE guild_id = $1 AND user_id = $2
                  AND id NOT IN (
                      SELECT id
                      FROM conversation_messages
                      WHERE guild_id = $1 AND user_id = $2
                      ORDER BY id DESC
                      LIMIT $3
                  )
                """,
                guild_id,
                user_id,
                int(keep_limit),
            )
        return _affected_rows(status)

    async def clear_conversation(self, guild_id: str, user_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM conversation_messages WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        return _affected_rows(status)

    async def count_conversation_messages(self, guild_id: str, user_id: str) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM conversation_messages WHERE guild_id = $1 AND user_id = $2",
            guild_id,
            user_id,
        )

    async def count_conversations(self, guild_id: str) -> int:
        return await self._count(
            "SELECT COUNT(DISTINCT user_id) FROM conversation_messages WHERE guild_id = $1",
            guild_id,
        )

    async def list_top_chatters(self, guild_id: str, limit: int) -> List[UserMessageCount]:
        if limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, COUNT(*) AS message_count
                FROM conversation_messages
                WHERE guild_id = $1 AND role = 'user'
                GROUP BY user_id
                ORDER BY message_count DESC, user_id ASC
                LIMIT $2
                """,
                guild_id,
                int(limit),
            )
        return [UserMessageCount(user_id=str(row["user_id"]), message_count=int(row["message_count"])) for row in rows]

    # Identity

    async def get_privacy(self, guild_id: str, user_id: str) -> PrivacySettings:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT allow_storage, allow_recording FROM user_privacy WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        if row is None:
            return PrivacySettings()
        return PrivacySettings(allow_storage=bool(row["allow_storage"]), allow_recording=bool(row["allow_recording"]))

    async def set_privacy(self, guild_id: str, user_id: str, allow_storage: bool, allow_recording: bool) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_privacy (guild_id, user_id, allow_storage, allow_recording, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (guild_id, user_id) DO UPDATE SET
                    allow_storage = EXCLUDED.allow_storage,
                    allow_recording = EXCLUDED.allow_recording,
                    updated_at = EXCLUDED.updated_at
                """,
                guild_id,
                user_id,
                bool(allow_storage),
                bool(allow_recording),
                now_ms(),
            )

    async def is_storage_allowed(self, guild_id: str, user_id: str) -> bool:
        privacy = await self.get_privacy(guild_id, user_id)
        return privacy.allow_storage

    async def set_user_context(self, guild_id: str, user_id: str, context: str) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_contexts (guild_id, user_id, context, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (guild_id, user_id) DO UPDATE SET
                    context = EXCLUDED.context,
                    updated_at = EXCLUDED.updated_at
                """,
                guild_id,
                user_id,
                str(context),
                now_ms(),
            )

    async def get_user_context(self, guild_id: str, user_id: str) -> str | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT context FROM user_contexts WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        return str(value) if value is not None else None

    async def clear_user_context(self, guild_id: str, user_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM user_contexts WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        return _affected_rows(status) > 0

    async def count_contexts(self, guild_id: str) -> int:
        return await self._count("SELECT COUNT(*) FROM user_contexts WHERE guild_id = $1", guild_id)

    # Blacklist

    async def is_blacklisted(self, guild_id: str, user_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT 1 FROM ai_blacklist WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        return value is not None

    async def add_blacklist(self, guild_id: str, user_id: str, reason: str, added_by: str) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ai_blacklist (guild_id, user_id, reason, added_by, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (guild_id, user_id) DO UPDATE SET
                    reason = EXCLUDED.reason,
                    added_by = EXCLUDED.added_by,
                    created_at = EXCLUDED.created_at
                """,
                guild_id,
                user_id,
                str(reason or ""),
                str(added_by),
                now_ms(),
            )

    async def remove_blacklist(self, guild_id: str, user_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM ai_blacklist WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
        return _affected_rows(status) > 0

    async def list_blacklist(self, guild_id: str, limit: int = 50) -> List[BlacklistEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, reason, added_by, created_at
                FROM ai_blacklist
                WHERE guild_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                guild_id,
                max(1, int(limit)),
            )
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
        return await self._count("SELECT COUNT(*) FROM ai_blacklist WHERE guild_id = $1", guild_id)

    # Audit + feedback

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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            audit_id = await conn.fetchval(
                """
                INSERT INTO ai_reply_audit (
                    guild_id, user_id, model, used_user_context, history_count, knowledge_ids,
                    knowledge_preview, prompt_excerpt, response_excerpt, latency_ms, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING id
                """,
                guild_id,
                user_id,
                model,
                bool(used_user_context),
                max(0, int(history_count)),
                encode_knowledge_ids(tuple(knowledge_ids)),
                knowledge_preview,
                prompt_excerpt,
                response_excerpt,
                max(0, int(latency_ms)),
                now_ms(),
            )
        return int(audit_id)

    async def get_latest_reply_audit(self, guild_id: str, user_id: str) -> ReplyAudit | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, guild_id, user_id, model, used_user_context, history_count, knowledge_ids,
                       knowledge_preview, prompt_excerpt, response_excerpt, latency_ms, created_at
                FROM ai_reply_audit
                WHERE guild_id = $1 AND user_id = $2
                ORDER BY id DESC
                LIMIT 1
                """,
                guild_id,
                user_id,
            )
        return ReplyAudit.from_row(row) if row is not None else None

    async def add_feedback(self, guild_id: str, user_id: str, rating: str, reason: str = "") -> int:
        rating_clean = str(rating or "").strip().lower()
        if rating_clean not in FEEDBACK_RATINGS:
            raise ValueError(f"unsupported feedback rating: {rating!r}")
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            feedback_id = await conn.fetchval(
                """
                INSERT INTO response_feedback (guild_id, user_id, rating, reason, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                guild_id,
                user_id,
                rating_clean,
                str(reason or ""),
                now_ms(),
            )
        return int(feedback_id)

    async def get_feedback_stats(self, guild_id: str, since_ms: int) -> FeedbackStats:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE rating = 'good') AS good,
                    COUNT(*) FILTER (WHERE rating = 'bad') AS bad
                FROM response_feedback
                WHERE guild_id = $1 AND created_at >= $2
                """,
                guild_id,
                int(since_ms),
            )
        if row is None:
            return FeedbackStats()
        return FeedbackStats(good=int(row["good"] or 0), bad=int(row["bad"] or 0))

    async def _count(self, query: str, *args: object) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(query, *args)
        return int(value or 0)


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 3" or "UPDATE 1".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
