from __future__ import annotations

import logging
import time
from typing import Optional

import discord
from discord.ext import commands

from ..ai.text import clip
from ..memory.storage.knowledge import REVIEW_CONFIDENCE_THRESHOLD
from .client import NebiDiscordBot
from .common import (
    clamp_limit,
    format_knowledge_lines,
    format_summary_line,
    format_top_chatters,
    has_permission,
    parse_toggle,
)

logger = logging.getLogger("nebi_bot")

NEED_MANAGE_SERVER = "You need `Manage Server` permission for this command."
FEEDBACK_WINDOW_MS = 7 * 24 * 60 * 60 * 1000
REPLY_LIMIT = 1700


def _guild_key(ctx: commands.Context) -> str:
    assert ctx.guild is not None
    return str(ctx.guild.id)


def register_commands(bot: NebiDiscordBot) -> None:
    prefix = bot.settings.command_prefix

    @bot.command(name="help")
    async def help_command(ctx: commands.Context) -> None:
        lines = [
            "Nebi command list:",
            f"`{prefix}knowledge add <text>` Store a server fact (Manage Server).",
            f"`{prefix}knowledge list [limit]` / `{prefix}knowledge search <query>` Browse server knowledge.",
            f"`{prefix}knowledge review [max_confidence]` Low-confidence learned entries (Manage Server).",
            f"`{prefix}knowledge remove <id>` Delete an entry (Manage Server).",
            f"`{prefix}context set|view|clear` Manage what I know about you.",
            f"`{prefix}privacy view|storage on/off|recording on/off|deny-all|allow-all` Storage consent.",
            f"`{prefix}why` / `{prefix}sources` Explain my last reply to you.",
            f"`{prefix}rate good|bad [reason]` Rate my last reply.",
            f"`{prefix}summarize [limit] [style]` Summarize recent channel messages.",
            f"`{prefix}forget` Clear our conversation history.",
            f"`{prefix}stats` / `{prefix}health` Server numbers and AI health (Manage Server).",
            f"`{prefix}blacklist add|remove|list` Block users from AI replies (Manage Server).",
            "Mention me in chat to talk.",
        ]
        await ctx.send("\n".join(lines))

    # knowledge

    @bot.group(name="knowledge", invoke_without_command=True)
    async def knowledge(ctx: commands.Context) -> None:
        await ctx.send(f"Use `{prefix}knowledge add|list|search|review|remove`.")

    @knowledge.command(name="add")
    async def knowledge_add(ctx: commands.Context, *, text: str) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        try:
            outcome = await bot.orchestrator.add_manual_knowledge(_guild_key(ctx), str(ctx.author.id), text)
        except ValueError as exc:
            await ctx.send(f"Knowledge not saved: {exc}.")
            return
        if outcome.created:
            await ctx.send(f"Knowledge saved as #{outcome.entry_id}.")
        else:
            await ctx.send(f"Already known as #{outcome.entry_id}; marked as manual (confidence {outcome.confidence:.2f}).")

    @knowledge.command(name="list")
    async def knowledge_list(ctx: commands.Context, limit: Optional[int] = None) -> None:
        entries = await bot.memory.list_knowledge(_guild_key(ctx), clamp_limit(limit, 10, 1, 20))
        if not entries:
            await ctx.send("No knowledge stored yet.")
            return
        await ctx.send(clip("Knowledge entries:\n\n" + format_knowledge_lines(entries), REPLY_LIMIT))

    @knowledge.command(name="search")
    async def knowledge_search(ctx: commands.Context, *, query: str) -> None:
        query = query.strip()
        if not query:
            await ctx.send("Give me something to search for.")
            return
        entries = await bot.memory.search_knowledge(_guild_key(ctx), query, 10)
        if not entries:
            await ctx.send(f"Nothing found for `{clip(query, 120)}`.")
            return
        text = f"Search: `{clip(query, 120)}`\n\n" + format_knowledge_lines(entries)
        await ctx.send(clip(text, REPLY_LIMIT))

    @knowledge.command(name="review")
    async def knowledge_review(ctx: commands.Context, max_confidence: Optional[float] = None) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        threshold = REVIEW_CONFIDENCE_THRESHOLD if max_confidence is None else max(0.0, min(1.0, max_confidence))
        entries = await bot.memory.list_knowledge_for_review(_guild_key(ctx), 10, threshold)
        if not entries:
            await ctx.send(f"Nothing to review: no learned entries at or below {threshold:.2f}.")
            return
        text = f"Knowledge review (<= {threshold:.2f}):\n\n" + format_knowledge_lines(entries, show_source=False)
        await ctx.send(clip(text, REPLY_LIMIT))

    @knowledge.command(name="remove")
    async def knowledge_remove(ctx: commands.Context, entry_id: int) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        if await bot.memory.remove_knowledge(_guild_key(ctx), entry_id):
            await ctx.send(f"Knowledge #{entry_id} removed.")
        else:
            await ctx.send(f"No knowledge entry #{entry_id} on this server.")

    # user context

    async def _context_target(ctx: commands.Context, member: discord.Member | None) -> discord.abc.User | None:
        target = member or ctx.author
        if target.id != ctx.author.id and not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return None
        return target

    @bot.group(name="context", invoke_without_command=True)
    async def context(ctx: commands.Context) -> None:
        await ctx.send(f"Use `{prefix}context set|view|clear`.")

    @context.command(name="set")
    async def context_set(ctx: commands.Context, member: Optional[discord.Member] = None, *, text: str) -> None:
        target = await _context_target(ctx, member)
        if target is None:
            return
        guild_key = _guild_key(ctx)
        if not await bot.memory.is_storage_allowed(guild_key, str(target.id)):
            await ctx.send("Storage is disabled for this user, so the context was not saved.")
            return
        text = text.strip()
        if not text:
            await ctx.send("Context cannot be empty.")
            return
        if len(text) > bot.settings.max_context_length:
            await ctx.send(f"Context is too long (max {bot.settings.max_context_length} characters).")
            return
        await bot.memory.set_user_context(guild_key, str(target.id), text)
        await ctx.send(f"Context saved for **{target.display_name}**.")

    @context.command(name="view")
    async def context_view(ctx: commands.Context, member: Optional[discord.Member] = None) -> None:
        target = await _context_target(ctx, member)
        if target is None:
            return
        stored = await bot.memory.get_user_context(_guild_key(ctx), str(target.id))
        if not stored:
            await ctx.send(f"No context stored for **{target.display_name}**.")
            return
        await ctx.send(f"Context for **{target.display_name}**:\n{clip(stored, 1800)}")

    @context.command(name="clear")
    async def context_clear(ctx: commands.Context, member: Optional[discord.Member] = None) -> None:
        target = await _context_target(ctx, member)
        if target is None:
            return
        await bot.memory.clear_user_context(_guild_key(ctx), str(target.id))
        await ctx.send(f"Context cleared for **{target.display_name}**.")

    # privacy

    @bot.group(name="privacy", invoke_without_command=True)
    async def privacy(ctx: commands.Context) -> None:
        await ctx.send(f"Use `{prefix}privacy view|storage on/off|recording on/off|deny-all|allow-all`.")

    @privacy.command(name="view")
    async def privacy_view(ctx: commands.Context, member: Optional[discord.Member] = None) -> None:
        target = await _context_target(ctx, member)
        if target is None:
            return
        settings = await bot.memory.get_privacy(_guild_key(ctx), str(target.id))
        await ctx.send(
            f"Privacy for **{target.display_name}**:\n"
            f"Storage: **{'allowed' if settings.allow_storage else 'denied'}**\n"
            f"Recording: **{'allowed' if settings.allow_recording else 'denied'}**"
        )

    async def _update_privacy(
        ctx: commands.Context,
        *,
        storage: bool | None = None,
        recording: bool | None = None,
    ) -> None:
        guild_key = _guild_key(ctx)
        user_key = str(ctx.author.id)
        current = await bot.memory.get_privacy(guild_key, user_key)
        allow_storage = current.allow_storage if storage is None else storage
        allow_recording = current.allow_recording if recording is None else recording
        await bot.memory.set_privacy(guild_key, user_key, allow_storage, allow_recording)
        await ctx.send(
            f"Privacy updated. Storage: **{'allowed' if allow_storage else 'denied'}**, "
            f"recording: **{'allowed' if allow_recording else 'denied'}**."
        )

    @privacy.command(name="storage")
    async def privacy_storage(ctx: commands.Context, value: str) -> None:
        allow = parse_toggle(value)
        if allow is None:
            await ctx.send("Use `on` or `off`.")
            return
        await _update_privacy(ctx, storage=allow)

    @privacy.command(name="recording")
    async def privacy_recording(ctx: commands.Context, value: str) -> None:
        allow = parse_toggle(value)
        if allow is None:
            await ctx.send("Use `on` or `off`.")
            return
        await _update_privacy(ctx, recording=allow)

    @privacy.command(name="deny-all")
    async def privacy_deny_all(ctx: commands.Context) -> None:
        await _update_privacy(ctx, storage=False, recording=False)

    @privacy.command(name="allow-all")
    async def privacy_allow_all(ctx: commands.Context) -> None:
        await _update_privacy(ctx, storage=True, recording=True)

    # reply inspection

    @bot.command(name="why")
    async def why(ctx: commands.Context) -> None:
        audit = await bot.memory.get_latest_reply_audit(_guild_key(ctx), str(ctx.author.id))
        if audit is None:
            await ctx.send("No data yet. Mention me first.")
            return
        sources = ", ".join(f"#{entry_id}" for entry_id in audit.knowledge_ids) or "none"
        text = (
            "Why this reply?\n"
            f"Model: `{audit.model}`\n"
            f"User context used: **{'yes' if audit.used_user_context else 'no'}**\n"
            f"History messages used: **{audit.history_count}**\n"
            f"Knowledge sources: **{sources}**\n"
            f"Latency: **{audit.latency_ms}ms**\n"
            f"Time: <t:{audit.created_at // 1000}:R>"
        )
        await ctx.send(clip(text, REPLY_LIMIT))

    @bot.command(name="sources")
    async def sources(ctx: commands.Context) -> None:
        audit = await bot.memory.get_latest_reply_audit(_guild_key(ctx), str(ctx.author.id))
        if audit is None:
            await ctx.send("No sources yet. Mention me first.")
            return
        if not audit.knowledge_preview.strip():
            await ctx.send("My last reply did not use stored knowledge.")
            return
        await ctx.send(clip(f"Sources used:\n{audit.knowledge_preview}", REPLY_LIMIT))

    @bot.command(name="rate")
    async def rate(ctx: commands.Context, rating: str, *, reason: str = "") -> None:
        guild_key = _guild_key(ctx)
        user_key = str(ctx.author.id)
        if not await bot.memory.is_storage_allowed(guild_key, user_key):
            await ctx.send("You disabled storage, so feedback is not saved.")
            return
        rating = rating.strip().lower()
        if rating not in {"good", "bad"}:
            await ctx.send("Use `good` or `bad`.")
            return
        if await bot.memory.get_latest_reply_audit(guild_key, user_key) is None:
            await ctx.send("There is no reply to rate yet. Mention me first.")
            return
        await bot.memory.add_feedback(guild_key, user_key, rating, clip(reason.strip(), 280))
        if rating == "good":
            await ctx.send("Thanks for the positive feedback!")
        else:
            await ctx.send("Thanks, I'll use that to improve.")

    @bot.command(name="forget")
    async def forget(ctx: commands.Context) -> None:
        await bot.orchestrator.conversation.forget(_guild_key(ctx), str(ctx.author.id))
        await ctx.send("Conversation cleared. Fresh start.")

    @bot.command(name="summarize")
    async def summarize(ctx: commands.Context, limit: Optional[int] = None, *, style: str = "neutral") -> None:
        count = clamp_limit(limit, 30, 10, 100)
        lines: list[str] = []
        async for item in ctx.channel.history(limit=count, before=ctx.message, oldest_first=False):
            if item.is_system():
                continue
            content = item.clean_content
            if not content or not content.strip():
                continue
            lines.append(format_summary_line(item.author.name, content))
        lines.reverse()

        if not lines:
            await ctx.send("No usable messages found.")
            return
        async with ctx.typing():
            summary = await bot.orchestrator.summarize_messages(
                _guild_key(ctx), str(ctx.author.id), clip(style.strip(), 40), lines
            )
        await bot._send_chunks(ctx.channel, clip(summary, 3800))

    # moderation and stats

    @bot.group(name="blacklist", invoke_without_command=True)
    async def blacklist(ctx: commands.Context) -> None:
        await ctx.send(f"Use `{prefix}blacklist add|remove|list`.")

    @blacklist.command(name="add")
    async def blacklist_add(ctx: commands.Context, member: discord.Member, *, reason: str = "") -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        if bot.user and member.id == bot.user.id:
            await ctx.send("I can't blacklist myself.")
            return
        await bot.memory.add_blacklist(_guild_key(ctx), str(member.id), clip(reason.strip(), 200), str(ctx.author.id))
        await ctx.send(f"**{member.display_name}** will be ignored by the AI.")

    @blacklist.command(name="remove")
    async def blacklist_remove(ctx: commands.Context, member: discord.Member) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        if await bot.memory.remove_blacklist(_guild_key(ctx), str(member.id)):
            await ctx.send(f"**{member.display_name}** removed from the blacklist.")
        else:
            await ctx.send(f"**{member.display_name}** was not blacklisted.")

    @blacklist.command(name="list")
    async def blacklist_list(ctx: commands.Context, limit: Optional[int] = None) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        entries = await bot.memory.list_blacklist(_guild_key(ctx), clamp_limit(limit, 10, 1, 20))
        if not entries:
            await ctx.send("The blacklist is empty.")
            return
        lines = [
            f"<@{entry.user_id}> · {clip(entry.reason, 80) if entry.reason else 'no reason'}" for entry in entries
        ]
        await ctx.send(clip("Blacklist:\n" + "\n".join(lines), REPLY_LIMIT))

    @bot.command(name="stats")
    async def stats(ctx: commands.Context) -> None:
        guild_key = _guild_key(ctx)
        since = int(time.time() * 1000) - FEEDBACK_WINDOW_MS
        feedback = await bot.memory.get_feedback_stats(guild_key, since)
        top = await bot.memory.list_top_chatters(guild_key, 5)
        text = (
            "Server stats\n"
            f"Knowledge entries: **{await bot.memory.count_knowledge(guild_key)}**\n"
            f"User contexts: **{await bot.memory.count_contexts(guild_key)}**\n"
            f"Active conversations: **{await bot.memory.count_conversations(guild_key)}**\n"
            f"Blacklist entries: **{await bot.memory.count_blacklist(guild_key)}**\n"
            f"Feedback (7 days): **{feedback.good} good / {feedback.bad} bad**\n\n"
            f"Top chatters:\n{format_top_chatters(top)}"
        )
        await ctx.send(clip(text, REPLY_LIMIT))

    @bot.command(name="health")
    async def health(ctx: commands.Context) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(NEED_MANAGE_SERVER)
            return
        guild_key = _guild_key(ctx)
        snapshot = bot.orchestrator.health_stats()
        low_confidence = await bot.memory.count_low_confidence_knowledge(guild_key, REVIEW_CONFIDENCE_THRESHOLD)
        top = await bot.memory.list_top_chatters(guild_key, 5)
        text = (
            "AI health\n"
            f"Requests: **{snapshot.total_requests}**\n"
            f"Errors: **{snapshot.total_errors}**\n"
            f"Avg latency: **{snapshot.avg_latency_ms}ms**\n"
            f"Queue: **{snapshot.queue_depth}** | Active: **{snapshot.active_workers}** | "
            f"Done: **{snapshot.completed_tasks}**\n"
            f"Low-confidence knowledge (<= {REVIEW_CONFIDENCE_THRESHOLD:.2f}): **{low_confidence}**\n"
            f"Storage backend: `{getattr(bot.memory, 'backend_name', 'unknown')}`\n\n"
            f"Top chatters:\n{format_top_chatters(top)}"
        )
        await ctx.send(clip(text, REPLY_LIMIT))

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            return
        if isinstance(error, commands.MissingRequiredArgument):
            await ctx.send(f"Missing argument `{error.param.name}`. Use `{prefix}help`.")
            return
        if isinstance(error, commands.BadArgument):
            await ctx.send(f"Invalid argument: {error}")
            return
        logger.error("Command error: %s", error, exc_info=getattr(error, "original", error))
        await ctx.send("Command failed.")
