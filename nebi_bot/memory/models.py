from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


def encode_knowledge_ids(ids: list[int] | tuple[int, ...]) -> str:
    return ",".join(str(int(item)) for item in ids)


def decode_knowledge_ids(raw: str | None) -> list[int]:
    result: list[int] = []
    for chunk in str(raw or "").split(","):
        value = chunk.strip()
        if not value:
            continue
        try:
            result.append(int(value))
        except ValueError:
            continue
    return result


@dataclass(slots=True)
class KnowledgeEntry:
    id: int
    text: str
    confidence: float
    source: str
    added_by: str
    created_at: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "KnowledgeEntry":
        return cls(
            id=int(row["id"]),
            text=str(row["text"]),
            confidence=float(row["confidence"]),
            source=str(row["source"]),
            added_by=str(row["added_by"]),
            created_at=int(row["created_at"]),
        )


@dataclass(slots=True)
class ConversationMessage:
    id: int
    role: str
    content: str
    created_at: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversationMessage":
        return cls(
            id=int(row["id"]),
            role=str(row["role"]),
            content=str(row["content"] or ""),
            created_at=int(row["created_at"]),
        )


@dataclass(slots=True)
class ReplyAudit:
    id: int
    guild_id: str
    user_id: str
    model: str
    used_user_context: bool
    history_count: int
    knowledge_ids: list[int] = field(default_factory=list)
    knowledge_preview: str = ""
    prompt_excerpt: str = ""
    response_excerpt: str = ""
    latency_ms: int = 0
    created_at: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ReplyAudit":
        return cls(
            id=int(row["id"]),
            guild_id=str(row["guild_id"]),
            user_id=str(row["user_id"]),
            model=str(row["model"]),
            used_user_context=bool(row["used_user_context"]),
            history_count=int(row["history_count"]),
            knowledge_ids=decode_knowledge_ids(row["knowledge_ids"]),
            knowledge_preview=str(row["knowledge_preview"] or ""),
            prompt_excerpt=str(row["prompt_excerpt"] or ""),
            response_excerpt=str(row["response_excerpt"] or ""),
            latency_ms=int(row["latency_ms"]),
            created_at=int(row["created_at"]),
        )


@dataclass(slots=True)
class PrivacySettings:
    allow_storage: bool = True
    allow_recording: bool = True


@dataclass(slots=True)
class FeedbackStats:
    good: int = 0
    bad: int = 0

    @property
    def total(self) -> int:
        return self.good + self.bad


@dataclass(slots=True)
class BlacklistEntry:
    user_id: str
    reason: str
    added_by: str
    created_at: int


@dataclass(slots=True)
class UserMessageCount:
    user_id: str
    message_count: int
