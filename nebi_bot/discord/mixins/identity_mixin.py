from __future__ import annotations

import discord

from ..common import strip_mention


class IdentityMixin:
    def _is_addressed(self, message: discord.Message) -> bool:
        if message.guild is None:
            return False
        return bool(self.user and self.user.mentioned_in(message))

    def _strip_bot_mention(self, text: str) -> str:
        return strip_mention(text, self.user.id if self.user else None)

    @staticmethod
    def _display_name(author: discord.abc.User) -> str:
        if isinstance(author, discord.Member):
            return author.display_name
        return (getattr(author, "global_name", None) or author.name or "unknown").strip() or "unknown"

    async def _is_blocked(self, guild_id: str, user_id: str) -> bool:
        return await self.memory.is_blacklisted(guild_id, user_id)
