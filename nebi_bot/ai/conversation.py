from __future__ import annotations

import logging
from typing import Any, List

from ..memory.models import ConversationMessage
from .text import clip

logger = logging.getLogger("nebi_bot")


class ConversationMemory:
    """Rolling per-user dialogue window kept in the memory store."""

    def __init__(
        self,
        store: Any,
        *,
        max_messages: int,
        max_message_length: int,
        error_reply: str,
    ) -> None:
        self.store = store
        self.max_messages = max(0, int(max_messages))
        self.max_message_length = max(1, int(max_message_length))
        self.error_reply = error_reply

    async def record(
        self,
        guild_id: str,
        user_id: str,
        user_text: str | None,
        assistant_text: str | None,
    ) -> None:
        if self.max_messages <= 0 or assistant_text is None:
            return
        # Fallback replies would teach the model to repeat its own error text.
        if assistant_text == self.error_reply:
            return
        if not await self.store.is_storage_allowed(guild_id, user_id):
            return

        if user_text and user_text.strip():
            await self.store.add_conversation_message(
                guild_id, user_id, "user", clip(user_text, self.max_message_length)
            )
        await self.store.add_conversation_message(
            guild_id, user_id, "assistant", clip(assistant_text, self.max_message_length)
        )
        await self.evict(guild_id, user_id, self.max_messages)

    async def evict(self, guild_id: str, user_id: str, keep_limit: int) -> int:
        if keep_limit <= 0:
            return await self.store.clear_conversation(guild_id, user_id)
        removed = await self.store.trim_conversation(guild_id, user_id, keep_limit)
        if removed:
            logger.debug("Evicted %s conversation rows for %s/%s", removed, guild_id, user_id)
        return removed

    async def history(self, guild_id: str, user_id: str, limit: int | None = None) -> List[ConversationMessage]:
        depth = self.max_messages if limit is None else int(limit)
        if depth <= 0:
            return []
        return await self.store.list_conversation_messages(guild_id, user_id, depth)

    async def forget(self, guild_id: str, user_id: str) -> int:
        return await self.store.clear_conversation(guild_id, user_id)
