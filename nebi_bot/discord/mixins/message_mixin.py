from __future__ import annotations

import contextlib
import logging
from typing import Any

import discord

from ...prompts.dialogue import DEFAULT_GREETING_PROMPT
from ..common import NO_MENTIONS, chunk_text

logger = logging.getLogger("nebi_bot")


class MessageMixin:
    async def _send_chunks(
        self,
        channel: discord.abc.Messageable,
        text: str,
        reference: discord.Message | None = None,
    ) -> None:
        for index, chunk in enumerate(chunk_text(text)):
            kwargs: dict[str, Any] = {"allowed_mentions": NO_MENTIONS}
            if index == 0 and reference is not None:
                kwargs["reference"] = reference
            await channel.send(chunk, **kwargs)

    async def _handle_mention(self, message: discord.Message) -> None:
        assert message.guild is not None
        guild_key = str(message.guild.id)
        user_key = str(message.author.id)

        if await self._is_blocked(guild_key, user_key):
            return

        if not self.rate_limiter.allow(guild_key, user_key):
            cooldown = self.settings.cooldown_reply
            if cooldown and cooldown.strip():
                await message.reply(cooldown, allowed_mentions=NO_MENTIONS)
            return

        user_text = self._strip_bot_mention(message.content)
        prompt = user_text or DEFAULT_GREETING_PROMPT
        prompt = prompt[: self.settings.max_user_message_length]

        typing = message.channel.typing() if self.settings.typing_indicator else contextlib.nullcontext()
        async with typing:
            reply = await self.orchestrator.generate_reply(
                guild_key,
                user_key,
                self._display_name(message.author),
                prompt,
                user_text=user_text[: self.settings.max_user_message_length],
            )

        try:
            await self._send_chunks(message.channel, reply, reference=message)
        except discord.HTTPException as exc:
            logger.warning("Failed to send reply in channel %s: %s", message.channel.id, exc)
