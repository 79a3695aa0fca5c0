from __future__ import annotations

import contextlib
import re

import discord
from discord.ext import commands

from ..ai.text import clip
from ..memory.models import KnowledgeEntry, UserMessageCount

MESSAGE_CHUNK_LIMIT = 1900
NO_MENTIONS = discord.AllowedMentions.none()


def chunk_text(text: str, limit: int = MESSAGE_CHUNK_LIMIT) -> list[str]:
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            parts.append(current)
            current = ""
        if len(line) <= limit:
            current = line
        else:
            for i in range(0, len(line), limit):
                parts.append(line[i : i + limit])
    if current:
        parts.append(current)
    return parts


def strip_mention(text: str, bot_user_id: int | str | None) -> str:
    if bot_user_id is None:
        return text.strip()
    return re.sub(rf"<@!?{bot_user_id}>", "", text).strip()


def has_permission(ctx: commands.Context, permission_name: str) -> bool:
    if not ctx.guild or not isinstance(ctx.author, discord.Member):
        return False
    perms = ctx.author.guild_permissions
    return perms.administrator or bool(getattr(perms, permission_name, False))


def clamp_limit(value: object, default: int, low: int, high: int) -> int:
    parsed = default
    if isinstance(value, int) and not isinstance(value, bool):
        parsed = value
    elif isinstance(value, str):
        with contextlib.suppress(ValueError):
            parsed = int(value.strip())
    return max(low, min(high, parsed))


def parse_toggle(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in {"on", "true", "yes", "allow", "1"}:
        return True
    if lowered in {"off", "false", "no", "deny", "0"}:
        return False
    return None


def format_knowledge_lines(entries: list[KnowledgeEntry], *, show_source: bool = True) -> str:
    lines: list[str] = []
    for entry in entries:
        head = f"**#{entry.id}**"
        if show_source:
            head += f" · `{entry.source}`"
        head += f" · `{entry.confidence:.2f}`"
        lines.append(f"{head}\n└ {clip(entry.text, 130)}")
    return "\n\n".join(lines)


def format_top_chatters(rows: list[UserMessageCount]) -> str:
    if not rows:
        return "No chatter data yet."
    return "\n".join(
        f"{index}. <@{row.user_id}> · {row.message_count} messages" for index, row in enumerate(rows, start=1)
    )


def format_summary_line(author: str, content: str) -> str:
    return f"{author}: {clip(content, 280)}"
