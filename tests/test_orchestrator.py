from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nebi_bot.ai.conversation import ConversationMemory  # noqa: E402
from nebi_bot.ai.orchestrator import ReplyOrchestrator, build_knowledge_preview  # noqa: E402
from nebi_bot.ai.workers import WorkerPool  # noqa: E402
from nebi_bot.memory.models import KnowledgeEntry  # noqa: E402
from nebi_bot.memory.store import MemoryStore  # noqa: E402
from nebi_bot.prompts.learning import FACT_CHECK_SYSTEM_PROMPT  # noqa: E402
from nebi_bot.services.errors import LLMServiceError  # noqa: E402


VALID_VERDICT = '{"valid": true, "confidence": 0.9, "reason": "ok"}'


def _settings(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "openai_model": "gpt-test",
        "openai_temperature": 0.7,
        "openai_max_tokens": 100,
        "openai_timeout_seconds": 5,
        "system_prompt": "You are Nebi.",
        "error_reply": "ERR",
        "summary_empty_reply": "NO SUMMARY",
        "max_knowledge_entries": 20,
        "max_knowledge_length": 200,
        "max_conversation_messages": 6,
        "max_conversation_message_length": 50,
        "worker_count": 1,
        "worker_queue_size": 20,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class _ScriptedLLM:
    def __init__(
        self,
        reply: str = "",
        *,
        verdict: str = VALID_VERDICT,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.verdict = verdict
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls: list[dict[str, object]] = []
        self.fact_checks: list[str] = []

    async def complete(self, model, messages, temperature, max_tokens):  # type: ignore[no-untyped-def]
        if messages[0]["content"] == FACT_CHECK_SYSTEM_PROMPT:
            self.fact_checks.append(messages[1]["content"])
            return self.verdict
        self.calls.append(
            {"model": model, "messages": list(messages), "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


def _orchestrator(tmp_path: Path, llm: _ScriptedLLM, **overrides: object) -> ReplyOrchestrator:
    settings = _settings(**overrides)
    store = MemoryStore(tmp_path / "memory.db")
    pool = WorkerPool("test", workers=settings.worker_count, queue_size=settings.worker_queue_size)
    return ReplyOrchestrator(settings, store, llm, pool=pool)


def test_generate_reply_builds_prompt_audits_records_and_learns(tmp_path: Path) -> None:
    llm = _ScriptedLLM("Sure! [LEARN:Nebi loves pizza]")
    orchestrator = _orchestrator(tmp_path, llm)
    store = orchestrator.store

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        first = await store.insert_knowledge("g1", "mod", "Server opened in 2020", 1.0, "manual")
        second = await store.insert_knowledge("g1", "mod", "Pizza on Fridays", 1.0, "manual")
        await store.set_user_context("g1", "u1", "Plays bass")
        await store.add_conversation_message("g1", "u1", "user", "earlier question")
        await store.add_conversation_message("g1", "u1", "assistant", "earlier answer")

        await orchestrator.start()
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "what is for dinner?")
        await orchestrator.pool.join()

        audit = await store.get_latest_reply_audit("g1", "u1")
        history = await store.list_conversation_messages("g1", "u1", 10)
        learned = await store.find_knowledge_by_text("g1", "nebi loves pizza")
        await orchestrator.close()
        return reply, (first, second), audit, history, learned

    reply, (first, second), audit, history, learned = asyncio.run(scenario())

    assert reply == "Sure!"

    messages = llm.calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert messages[0]["content"].startswith("You are Nebi.")
    assert "[LEARN:" in messages[0]["content"]
    assert messages[1] == {"role": "system", "content": "User: Mika (u1). Address the user by name occasionally."}
    assert messages[2] == {"role": "system", "content": "Server knowledge:\n- Pizza on Fridays\n- Server opened in 2020"}
    assert messages[3] == {"role": "system", "content": "User context (use only if relevant): Plays bass"}
    assert messages[4:] == [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "user", "content": "what is for dinner?"},
    ]
    assert llm.calls[0]["temperature"] == pytest.approx(0.7)
    assert llm.calls[0]["max_tokens"] == 100

    assert audit is not None
    assert audit.knowledge_ids == [second, first]
    assert audit.knowledge_preview == f"#{second} Pizza on Fridays | #{first} Server opened in 2020"
    assert audit.used_user_context is True
    assert audit.history_count == 2
    assert audit.prompt_excerpt == "what is for dinner?"
    assert audit.response_excerpt == "Sure!"

    assert [(item.role, item.content) for item in history][-2:] == [
        ("user", "what is for dinner?"),
        ("assistant", "Sure!"),
    ]

    assert llm.fact_checks and "Nebi loves pizza" in llm.fact_checks[0]
    assert learned is not None
    assert learned.source == "learned"
    assert learned.confidence == pytest.approx(0.9)

    stats = orchestrator.health_stats()
    assert stats.total_requests == 1
    assert stats.total_errors == 0


def test_generate_reply_returns_fallback_and_counts_error_on_llm_failure(tmp_path: Path) -> None:
    llm = _ScriptedLLM(error=LLMServiceError("OpenAI API error: 429 slow down", status=429))
    orchestrator = _orchestrator(tmp_path, llm)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "hello")
        audit = await orchestrator.store.get_latest_reply_audit("g1", "u1")
        count = await orchestrator.store.count_conversation_messages("g1", "u1")
        await orchestrator.close()
        return reply, audit, count

    reply, audit, count = asyncio.run(scenario())

    assert reply == "ERR"
    assert audit is None
    assert count == 0
    stats = orchestrator.health_stats()
    assert (stats.total_requests, stats.total_errors) == (1, 1)


def test_generate_reply_blank_response_and_timeout_fall_back(tmp_path: Path) -> None:
    blank = _orchestrator(tmp_path / "blank", _ScriptedLLM("   "))
    slow = _orchestrator(tmp_path / "slow", _ScriptedLLM("late", delay=1.0), openai_timeout_seconds=0.05)

    async def scenario():  # type: ignore[no-untyped-def]
        await blank.store.init()
        await slow.store.init()
        replies = (
            await blank.generate_reply("g1", "u1", "Mika", "hello"),
            await slow.generate_reply("g1", "u1", "Mika", "hello"),
        )
        await blank.close()
        await slow.close()
        return replies

    assert asyncio.run(scenario()) == ("ERR", "ERR")
    assert blank.counters.total_errors == 1
    assert slow.counters.total_errors == 1


def test_generate_reply_fallback_when_store_read_fails(tmp_path: Path) -> None:
    llm = _ScriptedLLM("never used")
    orchestrator = _orchestrator(tmp_path, llm)

    async def broken_privacy(guild_id: str, user_id: str) -> bool:
        raise RuntimeError("database is locked")

    orchestrator.store.is_storage_allowed = broken_privacy  # type: ignore[method-assign]

    async def scenario():  # type: ignore[no-untyped-def]
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "hello")
        await orchestrator.close()
        return reply

    assert asyncio.run(scenario()) == "ERR"
    assert llm.calls == []
    assert orchestrator.counters.total_errors == 1


def test_storage_denied_skips_context_history_audit_memory_and_learning(tmp_path: Path) -> None:
    llm = _ScriptedLLM("Ok [LEARN:Some fact]")
    orchestrator = _orchestrator(tmp_path, llm)
    store = orchestrator.store

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await store.set_user_context("g1", "u1", "Secret context")
        await store.set_privacy("g1", "u1", False, False)
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "hello")
        await orchestrator.pool.join()
        result = (
            reply,
            await store.get_latest_reply_audit("g1", "u1"),
            await store.count_conversation_messages("g1", "u1"),
            await store.count_knowledge("g1"),
        )
        await orchestrator.close()
        return result

    reply, audit, conversation_count, knowledge_count = asyncio.run(scenario())

    assert reply == "Ok"
    assert audit is None
    assert conversation_count == 0
    assert knowledge_count == 0
    assert llm.fact_checks == []
    contents = [message["content"] for message in llm.calls[0]["messages"]]
    assert not any("Secret context" in content for content in contents)
    assert len(contents) == 3


def test_rejected_fact_check_does_not_store_knowledge(tmp_path: Path) -> None:
    llm = _ScriptedLLM("Hmm [LEARN:Party X is the best]", verdict='{"valid": false, "reason": "political"}')
    orchestrator = _orchestrator(tmp_path, llm)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        await orchestrator.generate_reply("g1", "u1", "Mika", "what do you think?")
        await orchestrator.pool.join()
        count = await orchestrator.store.count_knowledge("g1")
        await orchestrator.close()
        return count

    assert asyncio.run(scenario()) == 0
    assert len(llm.fact_checks) == 1


def test_saturated_pool_falls_back_for_replies(tmp_path: Path) -> None:
    gate = asyncio.Event()
    llm = _ScriptedLLM("done", gate=gate)
    orchestrator = _orchestrator(tmp_path, llm, worker_queue_size=1, max_conversation_messages=0)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        await orchestrator.start()
        running = asyncio.create_task(orchestrator.generate_reply("g1", "u1", "Mika", "one"))
        while orchestrator.pool.stats().active_workers == 0:
            await asyncio.sleep(0.01)
        queued = asyncio.create_task(orchestrator.generate_reply("g1", "u2", "Kai", "two"))
        while orchestrator.pool.stats().queue_depth == 0:
            await asyncio.sleep(0.01)

        rejected = await orchestrator.generate_reply("g1", "u3", "Ari", "three")
        gate.set()
        results = await asyncio.gather(running, queued)
        await orchestrator.close()
        return rejected, results

    rejected, results = asyncio.run(scenario())

    assert rejected == "ERR"
    assert results == ["done", "done"]
    assert orchestrator.counters.total_requests == 3
    assert orchestrator.counters.total_errors == 1


def test_audit_excerpt_is_the_visible_reply_without_directives(tmp_path: Path) -> None:
    llm = _ScriptedLLM("Noted! [LEARN:secret fact]  ok", verdict='{"valid": false, "reason": "nope"}')
    orchestrator = _orchestrator(tmp_path, llm)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "remember this")
        await orchestrator.pool.join()
        audit = await orchestrator.store.get_latest_reply_audit("g1", "u1")
        await orchestrator.close()
        return reply, audit

    reply, audit = asyncio.run(scenario())

    assert reply == "Noted! ok"
    assert audit is not None
    assert audit.response_excerpt == "Noted! ok"
    assert "secret fact" not in audit.response_excerpt


def test_pool_shutdown_answers_pending_replies_with_fallback(tmp_path: Path) -> None:
    gate = asyncio.Event()
    llm = _ScriptedLLM("never sent", gate=gate)
    orchestrator = _orchestrator(tmp_path, llm, worker_queue_size=1)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        await orchestrator.start()
        running = asyncio.create_task(orchestrator.generate_reply("g1", "u1", "Mika", "one"))
        while orchestrator.pool.stats().active_workers == 0:
            await asyncio.sleep(0.01)
        queued = asyncio.create_task(orchestrator.summarize_messages("g1", "u2", None, ["a: hi"]))
        while orchestrator.pool.stats().queue_depth == 0:
            await asyncio.sleep(0.01)

        await orchestrator.pool.close()
        return await asyncio.gather(running, queued)

    results = asyncio.run(scenario())

    assert results == ["ERR", "ERR"]
    assert orchestrator.counters.total_errors == 2


def test_saturated_pool_drops_extra_learn_tasks(tmp_path: Path) -> None:
    llm = _ScriptedLLM("Noted [LEARN:Fact one] [LEARN:Fact two]")
    orchestrator = _orchestrator(tmp_path, llm, worker_queue_size=1)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        reply = await orchestrator.generate_reply("g1", "u1", "Mika", "remember these")
        await orchestrator.pool.join()
        texts = [entry.text for entry in await orchestrator.store.list_knowledge("g1", 10)]
        await orchestrator.close()
        return reply, texts

    reply, texts = asyncio.run(scenario())

    assert reply == "Noted"
    assert texts == ["Fact one"]
    assert orchestrator.counters.total_errors == 0


def test_summarize_messages_uses_style_and_audits(tmp_path: Path) -> None:
    llm = _ScriptedLLM("- point one\n- point two")
    orchestrator = _orchestrator(tmp_path, llm, openai_max_tokens=100)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        summary = await orchestrator.summarize_messages("g1", "u1", "  ", ["a: hi", "", "b: hello"])
        audit = await orchestrator.store.get_latest_reply_audit("g1", "u1")
        await orchestrator.close()
        return summary, audit

    summary, audit = asyncio.run(scenario())

    assert summary == "- point one\n- point two"
    call = llm.calls[0]
    assert call["temperature"] == pytest.approx(0.3)
    assert call["max_tokens"] == 220
    user_message = call["messages"][1]["content"]
    assert user_message.startswith("Style: neutral")
    assert "- a: hi\n- b: hello" in user_message
    assert audit is not None
    assert audit.prompt_excerpt == "summarize:neutral"
    assert audit.knowledge_ids == []


def test_summarize_messages_blank_response_returns_empty_reply(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, _ScriptedLLM(""))

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        summary = await orchestrator.summarize_messages("g1", "u1", "short", ["a: hi"])
        audit = await orchestrator.store.get_latest_reply_audit("g1", "u1")
        await orchestrator.close()
        return summary, audit

    summary, audit = asyncio.run(scenario())

    assert summary == "NO SUMMARY"
    assert orchestrator.counters.total_errors == 1
    assert audit is not None
    assert audit.prompt_excerpt == "summarize:short"


def test_add_manual_knowledge_validates_and_merges(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, _ScriptedLLM(), max_knowledge_length=20)

    async def scenario():  # type: ignore[no-untyped-def]
        await orchestrator.store.init()
        await orchestrator.store.set_privacy("g1", "mod", False, False)
        created = await orchestrator.add_manual_knowledge("g1", "mod", "  Rules are pinned ")
        again = await orchestrator.add_manual_knowledge("g1", "mod", "RULES ARE PINNED")
        with pytest.raises(ValueError):
            await orchestrator.add_manual_knowledge("g1", "mod", "   ")
        with pytest.raises(ValueError):
            await orchestrator.add_manual_knowledge("g1", "mod", "x" * 21)
        entry = await orchestrator.store.find_knowledge_by_text("g1", "rules are pinned")
        return created, again, entry

    created, again, entry = asyncio.run(scenario())

    assert created.created is True
    assert again.created is False
    assert again.entry_id == created.entry_id
    assert entry is not None
    assert entry.text == "Rules are pinned"
    assert (entry.source, entry.confidence) == ("manual", 1.0)


def test_health_stats_average_and_zeroed_snapshot(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    orchestrator = _orchestrator(tmp_path, _ScriptedLLM())
    orchestrator.counters.record_request()
    orchestrator.counters.record_request()
    orchestrator.counters.record_latency(101)
    orchestrator.counters.record_latency(50)

    stats = orchestrator.health_stats()
    assert stats.avg_latency_ms == 75
    assert stats.measured_at > 0

    def _broken_stats():  # type: ignore[no-untyped-def]
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator.pool, "stats", _broken_stats)
    zeroed = orchestrator.health_stats()
    assert (zeroed.total_requests, zeroed.total_errors, zeroed.avg_latency_ms) == (0, 0, 0)


def test_knowledge_preview_caps_entries_and_text() -> None:
    entries = [KnowledgeEntry(id=i, text="x" * 100, confidence=1.0, source="manual", added_by="m", created_at=0) for i in range(10)]

    preview = build_knowledge_preview(entries)

    assert preview.count("#") == 8
    assert preview.startswith("#0 " + "x" * 77 + "...")
    assert len(preview) <= 700


def test_conversation_memory_skips_fallback_and_evicts(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    memory = ConversationMemory(store, max_messages=3, max_message_length=10, error_reply="ERR")

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await memory.record("g1", "u1", "first question", "ERR")
        await memory.record("g1", "u1", "q1", "a1")
        await memory.record("g1", "u1", "", "a2")
        await memory.record("g1", "u1", "q3", "a very long assistant answer")
        history = await memory.history("g1", "u1")
        await memory.forget("g1", "u1")
        return history, await store.count_conversation_messages("g1", "u1")

    history, remaining = asyncio.run(scenario())

    assert [(item.role, item.content) for item in history] == [
        ("assistant", "a2"),
        ("user", "q3"),
        ("assistant", "a very ..."),
    ]
    assert remaining == 0


def test_conversation_memory_disabled_depth_is_noop(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    memory = ConversationMemory(store, max_messages=0, max_message_length=10, error_reply="ERR")

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await memory.record("g1", "u1", "q", "a")
        return await store.count_conversation_messages("g1", "u1"), await memory.history("g1", "u1")

    count, history = asyncio.run(scenario())

    assert count == 0
    assert history == []
