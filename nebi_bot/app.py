from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from .ai.health import HealthCounters
from .ai.orchestrator import ReplyOrchestrator
from .ai.rate_limiter import RateLimiter
from .ai.workers import WorkerPool
from .config import Settings
from .discord.client import NebiDiscordBot
from .discord.commands import register_commands
from .memory.factory import build_memory_store
from .services.openai_client import OpenAIClient

logger = logging.getLogger("nebi_bot")


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_bot(settings: Settings) -> NebiDiscordBot:
    memory = build_memory_store(settings.sqlite_path)
    llm = OpenAIClient(
        api_key=settings.openai_api_key,
        timeout_seconds=settings.openai_timeout_seconds,
        base_url=settings.openai_base_url,
    )
    pool = WorkerPool("ai", workers=settings.worker_count, queue_size=settings.worker_queue_size)
    orchestrator = ReplyOrchestrator(settings, memory, llm, pool=pool, counters=HealthCounters())
    rate_limiter = RateLimiter(settings.cooldown_seconds, max_entries=settings.rate_limiter_max_entries)

    bot = NebiDiscordBot(settings=settings, memory=memory, orchestrator=orchestrator, rate_limiter=rate_limiter)
    register_commands(bot)
    return bot


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    logger.info(
        "Starting Nebi (model=%s workers=%s queue=%s cooldown=%ss)",
        settings.openai_model,
        settings.worker_count,
        settings.worker_queue_size,
        settings.cooldown_seconds,
    )
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
