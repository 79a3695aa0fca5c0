from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Sequence

from ..memory.models import KnowledgeEntry
from ..prompts.dialogue import (
    SUMMARY_SYSTEM_PROMPT,
    build_identity_note,
    build_knowledge_block,
    build_summary_prompt,
    build_system_prompt,
    build_user_context_note,
)
from ..services.errors import log_llm_error
from ..services.openai_client import ChatCompletionClient, ChatMessage
from .conversation import ConversationMemory
from .directives import extract_learn_directives
from .health import HealthCounters, HealthStats
from .knowledge import KnowledgeMerger, MergeOutcome
from .text import clip
from .verifier import FactVerifier
from .workers import PoolSaturatedError, WorkerPool

logger = logging.getLogger("nebi_bot")
learn_logger = logging.getLogger("nebi_bot.learning")

PROMPT_EXCERPT_LIMIT = 400
RESPONSE_EXCERPT_LIMIT = 600
SUMMARY_PROMPT_EXCERPT_LIMIT = 200
PREVIEW_ENTRY_LIMIT = 8
PREVIEW_TEXT_LIMIT = 80
PREVIEW_TOTAL_LIMIT = 700
SUMMARY_TEMPERATURE = 0.3
SUMMARY_MIN_TOKENS = 220
CONVERSATION_ROLES = ("user", "assistant")


def build_knowledge_preview(entries: Sequence[KnowledgeEntry]) -> str:
    parts = [f"#{entry.id} {clip(entry.text, PREVIEW_TEXT_LIMIT)}" for entry in entries[:PREVIEW_ENTRY_LIMIT]]
    return clip(" | ".join(parts), PREVIEW_TOTAL_LIMIT)


class ReplyOrchestrator:
    """Turns one chat message into a model reply and feeds what it learns back into memory.

    ``generate_reply``, ``summarize_messages`` and ``health_stats`` never raise; any
    failure is counted, logged and answered with the configured fallback text.
    """

    def __init__(
        self,
        settings: Any,
        store: Any,
        llm: ChatCompletionClient,
        *,
        pool: WorkerPool | None = None,
        counters: HealthCounters | None = None,
        verifier: FactVerifier | None = None,
        merger: KnowledgeMerger | None = None,
        conversation: ConversationMemory | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.llm = llm
        self.pool = pool or WorkerPool("ai", workers=settings.worker_count, queue_size=settings.worker_queue_size)
        self.counters = counters or HealthCounters()
        self.verifier = verifier or FactVerifier(llm, settings.openai_model)
        self.merger = merger or KnowledgeMerger(store)
        self.conversation = conversation or ConversationMemory(
            store,
            max_messages=settings.max_conversation_messages,
            max_message_length=settings.max_conversation_message_length,
            error_reply=settings.error_reply,
        )

    async def start(self) -> None:
        starter = getattr(self.llm, "start", None)
        if callable(starter):
            await starter()
        await self.pool.start()

    async def close(self) -> None:
        await self.pool.close()
        closer = getattr(self.llm, "close", None)
        if callable(closer):
            await closer()

    def _fail(self, exc: BaseException | None, reply: str | None = None) -> str:
        self.counters.record_error()
        if exc is not None:
            log_llm_error(exc)
        return self.settings.error_reply if reply is None else reply

    async def _run_on_pool(self, factory: Any, *, kind: str) -> str:
        if not self.pool.running:
            await self.pool.start()
        try:
            future = self.pool.submit(factory, kind=kind)
        except PoolSaturatedError as exc:
            logger.warning("%s", exc)
            return self._fail(None)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.cancelled():
                # The caller was cancelled; the job itself is still pending.
                future.cancel()
                raise
            logger.warning("%s job was cancelled before it finished", kind)
            return self._fail(None)
        except Exception as exc:
            logger.exception("%s task failed outside its own error handling", kind)
            return self._fail(exc)

    async def generate_reply(
        self,
        guild_id: str,
        user_id: str,
        display_name: str,
        prompt: str,
        *,
        user_text: str | None = None,
    ) -> str:
        self.counters.record_request()
        text = prompt if user_text is None else user_text
        return await self._run_on_pool(
            lambda: self._reply_task(guild_id, user_id, display_name, prompt, text),
            kind="reply",
        )

    async def _build_messages(
        self,
        guild_id: str,
        user_id: str,
        display_name: str,
        prompt: str,
        storage_allowed: bool,
    ) -> tuple[List[ChatMessage], List[KnowledgeEntry], bool, int]:
        messages: List[ChatMessage] = [
            {"role": "system", "content": build_system_prompt(self.settings.system_prompt)},
            {"role": "system", "content": build_identity_note(display_name, user_id)},
        ]

        knowledge: List[KnowledgeEntry] = []
        if self.settings.max_knowledge_entries > 0:
            knowledge = await self.store.list_knowledge(guild_id, self.settings.max_knowledge_entries)
        block = build_knowledge_block(entry.text for entry in knowledge)
        if block:
            messages.append({"role": "system", "content": block})

        used_context = False
        history_count = 0
        if storage_allowed:
            context = await self.store.get_user_context(guild_id, user_id)
            if context and context.strip():
                messages.append({"role": "system", "content": build_user_context_note(context.strip())})
                used_context = True

            for item in await self.conversation.history(guild_id, user_id):
                if item.role not in CONVERSATION_ROLES or not (item.content or "").strip():
                    continue
                messages.append({"role": item.role, "content": item.content})
                history_count += 1

        messages.append({"role": "user", "content": prompt})
        return messages, knowledge, used_context, history_count

    async def _reply_task(
        self,
        guild_id: str,
        user_id: str,
        display_name: str,
        prompt: str,
        user_text: str,
    ) -> str:
        try:
            storage_allowed = await self.store.is_storage_allowed(guild_id, user_id)
            messages, knowledge, used_context, history_count = await self._build_messages(
                guild_id, user_id, display_name, prompt, storage_allowed
            )
            started = time.perf_counter()
            raw = await asyncio.wait_for(
                self.llm.complete(
                    self.settings.openai_model,
                    messages,
                    temperature=self.settings.openai_temperature,
                    max_tokens=self.settings.openai_max_tokens,
                ),
                timeout=self.settings.openai_timeout_seconds,
            )
            latency_ms = int((time.perf_counter() - started) * 1000)
            self.counters.record_latency(latency_ms)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._fail(exc)

        if not raw or not raw.strip():
            logger.warning("Model returned an empty reply for %s/%s", guild_id, user_id)
            return self._fail(None)

        extraction = extract_learn_directives(raw, self.settings.max_knowledge_length)
        if storage_allowed:
            for candidate in extraction.candidates:
                self._schedule_learn(guild_id, user_id, candidate)
            try:
                await self.store.save_reply_audit(
                    guild_id,
                    user_id,
                    model=self.settings.openai_model,
                    used_user_context=used_context,
                    history_count=history_count,
                    knowledge_ids=[entry.id for entry in knowledge],
                    knowledge_preview=build_knowledge_preview(knowledge),
                    prompt_excerpt=clip(prompt, PROMPT_EXCERPT_LIMIT),
                    response_excerpt=clip(extraction.clean_text, RESPONSE_EXCERPT_LIMIT),
                    latency_ms=latency_ms,
                )
            except Exception:
                logger.exception("Reply audit write failed for %s/%s", guild_id, user_id)

        reply = extraction.clean_text
        if not reply:
            # Nothing visible is left once the directives are stripped.
            return self._fail(None)

        try:
            await self.conversation.record(guild_id, user_id, user_text, reply)
        except Exception:
            logger.exception("Conversation memory write failed for %s/%s", guild_id, user_id)
        return reply

    def _schedule_learn(self, guild_id: str, user_id: str, candidate: str) -> None:
        try:
            self.pool.submit(lambda: self._learn_task(guild_id, user_id, candidate), kind="learn")
        except PoolSaturatedError as exc:
            learn_logger.warning("Dropped learn candidate for guild %s: %s", guild_id, exc)

    async def _learn_task(self, guild_id: str, user_id: str, statement: str) -> None:
        try:
            clean = statement.strip()
            if not clean or len(clean) > self.settings.max_knowledge_length:
                return
            if not await self.store.is_storage_allowed(guild_id, user_id):
                return
            verdict = await self.verifier.fact_check(clean)
            if not verdict.valid:
                learn_logger.info(
                    "Rejected learned knowledge in guild %s (%s): %s", guild_id, verdict.reason, clip(clean, 120)
                )
                return
            outcome = await self.merger.merge(guild_id, user_id, clean, verdict.confidence, "learned")
            learn_logger.info(
                "Learned knowledge #%s in guild %s (confidence=%.2f created=%s): %s",
                outcome.entry_id,
                guild_id,
                outcome.confidence,
                outcome.created,
                clip(clean, 120),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            learn_logger.warning("Learn task failed for guild %s: %s", guild_id, exc)

    async def summarize_messages(
        self,
        guild_id: str,
        user_id: str,
        style: str | None,
        lines: Sequence[str],
    ) -> str:
        self.counters.record_request()
        return await self._run_on_pool(
            lambda: self._summary_task(guild_id, user_id, style, list(lines)),
            kind="summary",
        )

    async def _summary_task(self, guild_id: str, user_id: str, style: str | None, lines: List[str]) -> str:
        tone = style.strip() if style and style.strip() else "neutral"
        messages: List[ChatMessage] = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": build_summary_prompt(tone, lines)},
        ]
        try:
            started = time.perf_counter()
            raw = await asyncio.wait_for(
                self.llm.complete(
                    self.settings.openai_model,
                    messages,
                    temperature=SUMMARY_TEMPERATURE,
                    max_tokens=max(SUMMARY_MIN_TOKENS, self.settings.openai_max_tokens),
                ),
                timeout=self.settings.openai_timeout_seconds,
            )
            latency_ms = int((time.perf_counter() - started) * 1000)
            self.counters.record_latency(latency_ms)

            if await self.store.is_storage_allowed(guild_id, user_id):
                try:
                    await self.store.save_reply_audit(
                        guild_id,
                        user_id,
                        model=self.settings.openai_model,
                        used_user_context=False,
                        history_count=0,
                        knowledge_ids=[],
                        knowledge_preview="",
                        prompt_excerpt=clip(f"summarize:{tone}", SUMMARY_PROMPT_EXCERPT_LIMIT),
                        response_excerpt=clip(raw or "", RESPONSE_EXCERPT_LIMIT),
                        latency_ms=latency_ms,
                    )
                except Exception:
                    logger.exception("Summary audit write failed for %s/%s", guild_id, user_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._fail(exc)

        if not raw or not raw.strip():
            return self._fail(None, self.settings.summary_empty_reply)
        return raw.strip()

    async def add_manual_knowledge(self, guild_id: str, user_id: str, text: str) -> MergeOutcome:
        clean = str(text or "").strip()
        if not clean:
            raise ValueError("knowledge text cannot be blank")
        if len(clean) > self.settings.max_knowledge_length:
            raise ValueError(f"knowledge text is longer than {self.settings.max_knowledge_length} characters")
        return await self.merger.merge(guild_id, user_id, clean, 1.0, "manual")

    def health_stats(self) -> HealthStats:
        try:
            pool = self.pool.stats()
            return HealthStats(
                total_requests=self.counters.total_requests,
                total_errors=self.counters.total_errors,
                avg_latency_ms=self.counters.avg_latency_ms,
                queue_depth=pool.queue_depth,
                active_workers=pool.active_workers,
                completed_tasks=pool.completed_tasks,
                measured_at=int(time.time() * 1000),
            )
        except Exception:
            logger.exception("Could not collect health stats")
            return HealthStats.zeroed()
