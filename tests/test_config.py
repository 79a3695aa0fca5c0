from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nebi_bot.config import DEFAULT_COOLDOWN_REPLY, DEFAULT_ERROR_REPLY, Settings  # noqa: E402


_ENV_KEYS = (
    "DISCORD_TOKEN",
    "DISCORD_COMMAND_PREFIX",
    "DISCORD_MESSAGE_CONTENT_INTENT",
    "TYPING_INDICATOR",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OPENAI_MODEL",
    "OPENAI_TEMPERATURE",
    "OPENAI_MAX_TOKENS",
    "OPENAI_TIMEOUT_SECONDS",
    "SYSTEM_PROMPT",
    "ERROR_REPLY",
    "COOLDOWN_REPLY",
    "SUMMARY_EMPTY_REPLY",
    "COOLDOWN_SECONDS",
    "RATE_LIMITER_MAX_ENTRIES",
    "MAX_USER_MESSAGE_LENGTH",
    "MAX_CONTEXT_LENGTH",
    "MAX_KNOWLEDGE_LENGTH",
    "MAX_KNOWLEDGE_ENTRIES",
    "MAX_CONVERSATION_MESSAGES",
    "MAX_CONVERSATION_MESSAGE_LENGTH",
    "AI_WORKER_COUNT",
    "AI_WORKER_QUEUE_SIZE",
    "SQLITE_PATH",
    "DATABASE_PATH",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DISCORD_TOKEN", "discord-token")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return monkeypatch


def test_from_env_defaults(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.command_prefix == "!"
    assert settings.openai_base_url == "https://api.openai.com/v1"
    assert settings.openai_model == "gpt-4o-mini"
    assert settings.openai_temperature == pytest.approx(0.7)
    assert settings.openai_max_tokens == 320
    assert settings.cooldown_seconds == 15
    assert settings.max_knowledge_entries == 20
    assert settings.max_conversation_messages == 12
    assert settings.error_reply == DEFAULT_ERROR_REPLY
    assert settings.cooldown_reply == DEFAULT_COOLDOWN_REPLY
    assert settings.sqlite_path == Path("./data/nebi.db")


def test_from_env_reads_overrides_and_cleans_tokens(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("DISCORD_TOKEN", 'Bot "abc.def"')
    clean_env.setenv("OPENAI_MODEL", "gpt-test")
    clean_env.setenv("OPENAI_TEMPERATURE", "0.2")
    clean_env.setenv("COOLDOWN_SECONDS", "0")
    clean_env.setenv("MAX_CONVERSATION_MESSAGES", "not-a-number")
    clean_env.setenv("SYSTEM_PROMPT", "Line one\\nLine two")
    clean_env.setenv("DATABASE_PATH", "/tmp/legacy.db")
    clean_env.setenv("\ufeffAI_WORKER_COUNT", "4")

    settings = Settings.from_env()

    assert settings.discord_token == "abc.def"
    assert settings.openai_model == "gpt-test"
    assert settings.openai_temperature == pytest.approx(0.2)
    assert settings.cooldown_seconds == 0
    assert settings.max_conversation_messages == 12
    assert settings.system_prompt == "Line one\nLine two"
    assert settings.sqlite_path == Path("/tmp/legacy.db")
    assert settings.worker_count == 4


def test_empty_cooldown_reply_stays_empty(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("COOLDOWN_REPLY", "   ")
    clean_env.setenv("ERROR_REPLY", "   ")

    settings = Settings.from_env()

    assert settings.cooldown_reply == ""
    assert settings.error_reply == DEFAULT_ERROR_REPLY


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("DISCORD_TOKEN", "put_your_discord_bot_token_here", "DISCORD_TOKEN"),
        ("OPENAI_API_KEY", "", "OPENAI_API_KEY"),
        ("OPENAI_TEMPERATURE", "3", "OPENAI_TEMPERATURE"),
        ("COOLDOWN_SECONDS", "-1", "COOLDOWN_SECONDS"),
        ("MAX_KNOWLEDGE_ENTRIES", "-5", "MAX_KNOWLEDGE_ENTRIES"),
        ("AI_WORKER_QUEUE_SIZE", "0", "AI_WORKER_QUEUE_SIZE"),
    ],
)
def test_validate_rejects_bad_values(clean_env: pytest.MonkeyPatch, key: str, value: str, message: str) -> None:
    clean_env.setenv(key, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
