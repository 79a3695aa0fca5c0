from __future__ import annotations

import asyncio
import logging
import zlib
from dataclasses import dataclass
from typing import Any

from ..memory.storage.utils import merge_knowledge_state, normalize_knowledge_text, now_ms

logger = logging.getLogger("nebi_bot.learning")

DEFAULT_LOCK_STRIPES = 64


@dataclass(slots=True)
class MergeOutcome:
    entry_id: int
    created: bool
    confidence: float
    source: str


class KnowledgeMerger:
    """Inserts a knowledge statement or folds it into the existing entry with the same key.

    Merges for one (guild, normalized text) pair run under the same lock stripe, so
    two concurrent learn tasks cannot both take the insert branch. The store's
    unique ``(guild_id, text_key)`` index covers writers in other processes.
    """

    def __init__(self, store: Any, *, stripes: int = DEFAULT_LOCK_STRIPES) -> None:
        self.store = store
        self._locks = [asyncio.Lock() for _ in range(max(1, int(stripes)))]

    def _lock_for(self, guild_id: str, key: str) -> asyncio.Lock:
        digest = zlib.crc32(f"{guild_id}\x00{key}".encode("utf-8"))
        return self._locks[digest % len(self._locks)]

    async def merge(
        self,
        guild_id: str,
        user_id: str,
        text: str,
        confidence: float,
        source: str,
    ) -> MergeOutcome:
        clean = str(text or "").strip()
        key = normalize_knowledge_text(clean)
        if not key:
            raise ValueError("knowledge text cannot be blank")

        async with self._lock_for(guild_id, key):
            existing = await self.store.find_knowledge_by_text(guild_id, clean)
            if existing is None:
                entry_id = await self.store.insert_knowledge(guild_id, user_id, clean, confidence, source)
                merged = await self.store.find_knowledge_by_text(guild_id, clean)
                if merged is not None:
                    return MergeOutcome(merged.id, True, merged.confidence, merged.source)
                return MergeOutcome(entry_id, True, float(confidence), source)

            state = merge_knowledge_state(
                prior_confidence=existing.confidence,
                prior_source=existing.source,
                incoming_confidence=confidence,
                incoming_source=source,
                incoming_added_by=user_id,
                incoming_created_at=now_ms(),
            )
            await self.store.update_knowledge(
                guild_id,
                existing.id,
                confidence=state.confidence,
                source=state.source,
                added_by=state.added_by,
                created_at=state.created_at,
            )
            logger.debug(
                "Merged knowledge #%s in guild %s (confidence %.2f -> %.2f, source=%s)",
                existing.id,
                guild_id,
                existing.confidence,
                state.confidence,
                state.source,
            )
            return MergeOutcome(existing.id, False, state.confidence, state.source)
