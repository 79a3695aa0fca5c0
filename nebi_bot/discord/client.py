from __future__ import annotations

import asyncio
import logging
from typing import Any

import discord
from discord.ext import commands

from ..ai.orchestrator import ReplyOrchestrator
from ..ai.rate_limiter import RateLimiter
from ..config import Settings
from .mixins.identity_mixin import IdentityMixin
from .mixins.message_mixin import MessageMixin

logger = logging.getLogger("nebi_bot")


class NebiDiscordBot(
    MessageMixin,
    IdentityMixin,
    commands.Bot,
):
    def __init__(
        self,
        settings: Settings,
        memory: Any,
        orchestrator: ReplyOrchestrator,
        rate_limiter: RateLimiter,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.guilds = True
        intents.messages = True

        super().__init__(
            command_prefix=settings.command_prefix,
            intents=intents,
            help_command=None,
            allowed_mentions=discord.AllowedMentions.none(),
        )

        self.settings = settings
        self.memory = memory
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter

    async def setup_hook(self) -> None:
        await self.memory.init()
        await self.orchestrator.start()

    async def close(self) -> None:
        await self._run_shutdown_step("orchestrator.close", self.orchestrator.close(), timeout=6.0)
        await self._run_shutdown_step("memory.close", self.memory.close(), timeout=6.0)
        await self._run_shutdown_step("commands.Bot.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return

        prefix = self.settings.command_prefix
        if prefix and message.content.startswith(prefix):
            await self.process_commands(message)
            return

        if not self._is_addressed(message):
            return

        try:
            await self._handle_mention(message)
        except Exception as exc:
            logger.exception("Mention reply failed: %s", exc)
            await message.reply(self.settings.error_reply, allowed_mentions=discord.AllowedMentions.none())
