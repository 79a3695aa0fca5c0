from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nebi_bot.ai.directives import extract_learn_directives  # noqa: E402
from nebi_bot.ai.knowledge import KnowledgeMerger  # noqa: E402
from nebi_bot.ai.verifier import FactVerifier, TolerantFactCheckParser  # noqa: E402
from nebi_bot.memory.storage.utils import merge_knowledge_state, normalize_knowledge_text  # noqa: E402
from nebi_bot.memory.store import MemoryStore  # noqa: E402
from nebi_bot.services.errors import LLMServiceError  # noqa: E402


class _FakeLLM:
    def __init__(self, reply: str = "", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, object]] = []

    async def complete(self, model, messages, temperature, max_tokens):  # type: ignore[no-untyped-def]
        self.calls.append(
            {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.error is not None:
            raise self.error
        return self.reply


def test_extract_learn_directives_strips_tags_and_collapses_whitespace() -> None:
    result = extract_learn_directives("Hi! [LEARN:fact A] mid [LEARN:fact B] end", 100)

    assert result.clean_text == "Hi! mid end"
    assert result.candidates == ["fact A", "fact B"]


def test_extract_learn_directives_drops_blank_and_oversized_candidates() -> None:
    result = extract_learn_directives("Sure [learn:   ] ok [LEARN:way too long here] [Learn: short ]", 10)

    assert result.candidates == ["short"]
    assert "LEARN" not in result.clean_text.upper()
    assert result.clean_text == "Sure ok"


def test_extract_learn_directives_without_tags_keeps_text() -> None:
    result = extract_learn_directives("  plain answer  ", 50)

    assert result.clean_text == "plain answer"
    assert result.candidates == []


def test_merge_state_takes_max_confidence_and_sticky_manual() -> None:
    merged = merge_knowledge_state(
        prior_confidence=0.4,
        prior_source="manual",
        incoming_confidence=0.9,
        incoming_source="learned",
        incoming_added_by="u2",
        incoming_created_at=123,
    )
    assert merged.confidence == pytest.approx(0.9)
    assert merged.source == "manual"
    assert merged.added_by == "u2"
    assert merged.created_at == 123

    lowered = merge_knowledge_state(
        prior_confidence=0.8,
        prior_source="learned",
        incoming_confidence=0.3,
        incoming_source="learned",
        incoming_added_by="u3",
        incoming_created_at=456,
    )
    assert lowered.confidence == pytest.approx(0.8)
    assert lowered.source == "learned"


def test_merge_state_is_idempotent() -> None:
    first = merge_knowledge_state(
        prior_confidence=0.5,
        prior_source="learned",
        incoming_confidence=0.7,
        incoming_source="manual",
        incoming_added_by="u1",
        incoming_created_at=1,
    )
    second = merge_knowledge_state(
        prior_confidence=first.confidence,
        prior_source=first.source,
        incoming_confidence=0.7,
        incoming_source="manual",
        incoming_added_by="u1",
        incoming_created_at=1,
    )
    assert (first.confidence, first.source) == (second.confidence, second.source)


def test_normalize_knowledge_text_trims_and_casefolds_only() -> None:
    assert normalize_knowledge_text("  Straße IS Big ") == "strasse is big"
    assert normalize_knowledge_text("a  b") != normalize_knowledge_text("a b")


def test_tolerant_parser_reads_fields_from_wrapped_json() -> None:
    parser = TolerantFactCheckParser()

    result = parser.parse('```json\n{"valid": TRUE, "confidence": 0.82, "reason": "well known"}\n```')

    assert result.valid is True
    assert result.confidence == pytest.approx(0.82)
    assert result.reason == "well known"


def test_tolerant_parser_defaults_and_clamps() -> None:
    parser = TolerantFactCheckParser()

    valid_default = parser.parse('{"valid": true}')
    assert (valid_default.valid, valid_default.confidence, valid_default.reason) == (True, 0.55, "no reason")

    invalid_default = parser.parse('{"valid": false, "reason": "political"}')
    assert (invalid_default.valid, invalid_default.confidence) == (False, 0.0)
    assert invalid_default.reason == "political"

    clamped = parser.parse('{"valid": true, "confidence": 7}')
    assert clamped.confidence == pytest.approx(1.0)

    missing = parser.parse("I think this is true")
    assert missing.valid is False


def test_fact_verifier_fails_closed_on_blank_and_transport_error() -> None:
    blank = FactVerifier(_FakeLLM("   "), "gpt-test")
    broken = FactVerifier(_FakeLLM(error=LLMServiceError("boom", status=500)), "gpt-test")

    blank_result = asyncio.run(blank.fact_check("Water is wet"))
    broken_result = asyncio.run(broken.fact_check("Water is wet"))

    assert (blank_result.valid, blank_result.confidence, blank_result.reason) == (False, 0.0, "empty response")
    assert (broken_result.valid, broken_result.confidence, broken_result.reason) == (False, 0.0, "api error")


def test_fact_verifier_sends_statement_with_low_temperature() -> None:
    llm = _FakeLLM('{"valid": true, "confidence": 0.9, "reason": "ok"}')
    verifier = FactVerifier(llm, "gpt-test")

    result = asyncio.run(verifier.fact_check("The {server} opened in 2020"))

    assert result.valid is True
    call = llm.calls[0]
    assert call["temperature"] == pytest.approx(0.1)
    assert call["max_tokens"] == 120
    messages = call["messages"]
    assert messages[0]["role"] == "system"
    assert "JSON" in messages[0]["content"]
    assert 'Statement: "The {server} opened in 2020"' in messages[1]["content"]


def test_knowledge_merger_inserts_then_merges(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    merger = KnowledgeMerger(store)

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        created = await merger.merge("g1", "u1", "Nebi was born in 2023", 0.6, "learned")
        merged = await merger.merge("g1", "u2", "  nebi WAS born in 2023", 0.8, "learned")
        manual = await merger.merge("g1", "mod", "Nebi was born in 2023", 0.2, "manual")
        return created, merged, manual, await store.count_knowledge("g1")

    created, merged, manual, count = asyncio.run(scenario())

    assert created.created is True
    assert merged.created is False
    assert merged.entry_id == created.entry_id
    assert merged.confidence == pytest.approx(0.8)
    assert manual.source == "manual"
    assert manual.confidence == pytest.approx(0.8)
    assert count == 1


def test_knowledge_merger_serializes_concurrent_duplicates(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    merger = KnowledgeMerger(store)

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        outcomes = await asyncio.gather(
            *(merger.merge("g1", f"u{i}", "Pizza night is on Friday", 0.5 + i / 100, "learned") for i in range(8))
        )
        return outcomes, await store.find_knowledge_by_text("g1", "pizza night is on friday")

    outcomes, entry = asyncio.run(scenario())

    assert sum(1 for outcome in outcomes if outcome.created) == 1
    assert len({outcome.entry_id for outcome in outcomes}) == 1
    assert entry is not None
    assert entry.confidence == pytest.approx(0.57)


def test_knowledge_merger_rejects_blank_text(tmp_path: Path) -> None:
    merger = KnowledgeMerger(MemoryStore(tmp_path / "memory.db"))

    with pytest.raises(ValueError):
        asyncio.run(merger.merge("g1", "u1", "   ", 1.0, "manual"))
