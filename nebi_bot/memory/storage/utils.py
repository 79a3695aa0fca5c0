from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import aiosqlite


KNOWLEDGE_SOURCES = ("manual", "learned")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def now_ms() -> int:
    return int(time.time() * 1000)


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def normalize_knowledge_text(value: str) -> str:
    """Dedup key for knowledge entries: trimmed and case-folded, nothing fuzzier."""
    return str(value or "").strip().casefold()


def normalize_knowledge_source(value: str, *, default: str = "learned") -> str:
    raw = str(value or "").strip().lower()
    return raw if raw in KNOWLEDGE_SOURCES else default


@dataclass(slots=True)
class KnowledgeMergeResult:
    confidence: float
    source: str
    added_by: str
    created_at: int


def merge_knowledge_state(
    *,
    prior_confidence: float,
    prior_source: str,
    incoming_confidence: float,
    incoming_source: str,
    incoming_added_by: str,
    incoming_created_at: int,
) -> KnowledgeMergeResult:
    prior_conf = _clamp(float(prior_confidence), 0.0, 1.0)
    incoming_conf = _clamp(float(incoming_confidence), 0.0, 1.0)
    prior_src = normalize_knowledge_source(prior_source, default="manual")
    incoming_src = normalize_knowledge_source(incoming_source)

    # Corroboration only raises confidence; a curated entry is never demoted.
    source = "manual" if "manual" in (prior_src, incoming_src) else "learned"
    return KnowledgeMergeResult(
        confidence=max(prior_conf, incoming_conf),
        source=source,
        added_by=str(incoming_added_by),
        created_at=int(incoming_created_at),
    )
