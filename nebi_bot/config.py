from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


DEFAULT_SYSTEM_PROMPT = (
    "You are Nebi, a friendly, funny and laid-back Discord bot.\n"
    "Answer briefly, casually and helpfully. Use humor, but stay kind.\n"
    "Use server knowledge and user context only when it really fits and never mention the context directly.\n"
    "Answer in the language of the message."
)
DEFAULT_ERROR_REPLY = "Oof, my head is smoking right now. Try again in a moment."
DEFAULT_COOLDOWN_REPLY = "Let me catch my breath. I'll be back in a few seconds."
DEFAULT_SUMMARY_EMPTY_REPLY = "Could not create a summary."

_PLACEHOLDERS = {
    "put_your_discord_bot_token_here",
    "put_discord_bot_token_here",
    "put_your_openai_api_key_here",
    "put_openai_api_key_here",
}


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_str_allow_empty(name: str, default: str) -> str:
    # An explicitly empty value disables the message instead of falling back.
    raw = _env_lookup(name)
    if raw is None:
        return default
    return raw.strip()


def _env_text(name: str, default: str) -> str:
    # Multi-line prompt values keep their inner newlines; literal "\n" escapes are expanded.
    raw = _env_lookup(name)
    if raw is None or not raw.strip():
        return default
    return raw.replace("\\n", "\n").strip()


@dataclass(slots=True)
class Settings:
    discord_token: str
    command_prefix: str
    discord_message_content_intent: bool
    typing_indicator: bool

    openai_api_key: str
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    openai_max_tokens: int
    openai_timeout_seconds: int

    system_prompt: str
    error_reply: str
    cooldown_reply: str
    summary_empty_reply: str

    cooldown_seconds: int
    rate_limiter_max_entries: int
    max_user_message_length: int
    max_context_length: int
    max_knowledge_length: int
    max_knowledge_entries: int
    max_conversation_messages: int
    max_conversation_message_length: int

    worker_count: int
    worker_queue_size: int

    sqlite_path: Path

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            typing_indicator=_env_bool("TYPING_INDICATOR", True),
            openai_api_key=_clean_token(_env_lookup("OPENAI_API_KEY") or ""),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_model=_env_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            openai_max_tokens=_env_int("OPENAI_MAX_TOKENS", 320),
            openai_timeout_seconds=_env_int("OPENAI_TIMEOUT_SECONDS", 30),
            system_prompt=_env_text("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            error_reply=_env_str("ERROR_REPLY", DEFAULT_ERROR_REPLY),
            cooldown_reply=_env_str_allow_empty("COOLDOWN_REPLY", DEFAULT_COOLDOWN_REPLY),
            summary_empty_reply=_env_str("SUMMARY_EMPTY_REPLY", DEFAULT_SUMMARY_EMPTY_REPLY),
            cooldown_seconds=_env_int("COOLDOWN_SECONDS", 15),
            rate_limiter_max_entries=_env_int("RATE_LIMITER_MAX_ENTRIES", 10000),
            max_user_message_length=_env_int("MAX_USER_MESSAGE_LENGTH", 1200),
            max_context_length=_env_int("MAX_CONTEXT_LENGTH", 800),
            max_knowledge_length=_env_int("MAX_KNOWLEDGE_LENGTH", 1500),
            max_knowledge_entries=_env_int("MAX_KNOWLEDGE_ENTRIES", 20),
            max_conversation_messages=_env_int("MAX_CONVERSATION_MESSAGES", 12),
            max_conversation_message_length=_env_int("MAX_CONVERSATION_MESSAGE_LENGTH", 1000),
            worker_count=_env_int("AI_WORKER_COUNT", 2),
            worker_queue_size=_env_int("AI_WORKER_QUEUE_SIZE", 200),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/nebi.db", aliases=("DATABASE_PATH",))).expanduser(),
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token.lower() in _PLACEHOLDERS:
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.command_prefix.strip():
            raise ValueError("DISCORD_COMMAND_PREFIX cannot be empty")

        if not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required")
        if self.openai_api_key.lower() in _PLACEHOLDERS:
            raise ValueError("OPENAI_API_KEY is still placeholder")
        if not self.openai_model:
            raise ValueError("OPENAI_MODEL cannot be empty")
        if self.openai_temperature < 0.0 or self.openai_temperature > 2.0:
            raise ValueError("OPENAI_TEMPERATURE must be in [0, 2]")
        if self.openai_max_tokens < 1:
            raise ValueError("OPENAI_MAX_TOKENS must be >= 1")
        if self.openai_timeout_seconds < 1:
            raise ValueError("OPENAI_TIMEOUT_SECONDS must be >= 1")

        if not self.error_reply.strip():
            raise ValueError("ERROR_REPLY cannot be empty")

        if self.cooldown_seconds < 0:
            raise ValueError("COOLDOWN_SECONDS must be >= 0 (0 disables the cooldown)")
        if self.rate_limiter_max_entries < 1:
            raise ValueError("RATE_LIMITER_MAX_ENTRIES must be >= 1")
        if self.max_user_message_length < 1:
            raise ValueError("MAX_USER_MESSAGE_LENGTH must be >= 1")
        if self.max_context_length < 1:
            raise ValueError("MAX_CONTEXT_LENGTH must be >= 1")
        if self.max_knowledge_length < 1:
            raise ValueError("MAX_KNOWLEDGE_LENGTH must be >= 1")
        if self.max_knowledge_entries < 0:
            raise ValueError("MAX_KNOWLEDGE_ENTRIES must be >= 0")
        if self.max_conversation_messages < 0:
            raise ValueError("MAX_CONVERSATION_MESSAGES must be >= 0 (0 disables conversation memory)")
        if self.max_conversation_message_length < 4:
            raise ValueError("MAX_CONVERSATION_MESSAGE_LENGTH must be >= 4")

        if self.worker_count < 1:
            raise ValueError("AI_WORKER_COUNT must be >= 1")
        if self.worker_queue_size < 1:
            raise ValueError("AI_WORKER_QUEUE_SIZE must be >= 1")
