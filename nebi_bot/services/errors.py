from __future__ import annotations

import asyncio
import logging
from enum import Enum

logger = logging.getLogger("nebi_bot")


class LLMServiceError(RuntimeError):
    """Raised by the chat-completion transport; ``status`` is the HTTP code when one exists."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class LLMErrorKind(str, Enum):
    AUTH_INVALID = "auth_invalid"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    SERVER_UNAVAILABLE = "server_unavailable"
    TIMEOUT = "timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    CONTEXT_TOO_LONG = "context_too_long"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNKNOWN = "unknown"


_STATUS_KINDS = {
    401: LLMErrorKind.AUTH_INVALID,
    403: LLMErrorKind.FORBIDDEN,
    429: LLMErrorKind.RATE_LIMITED,
    500: LLMErrorKind.SERVER_UNAVAILABLE,
    502: LLMErrorKind.SERVER_UNAVAILABLE,
    503: LLMErrorKind.SERVER_UNAVAILABLE,
}

_LOG_MESSAGES = {
    LLMErrorKind.AUTH_INVALID: "LLM API key is invalid or expired (401). Check OPENAI_API_KEY.",
    LLMErrorKind.FORBIDDEN: "LLM access forbidden (403). The key lacks permission for this model.",
    LLMErrorKind.RATE_LIMITED: "LLM rate limit reached (429). Too many requests.",
    LLMErrorKind.SERVER_UNAVAILABLE: "LLM server unavailable (5xx). Try again later.",
    LLMErrorKind.TIMEOUT: "LLM request timed out.",
    LLMErrorKind.NETWORK_UNREACHABLE: "LLM endpoint unreachable. Check network or OPENAI_BASE_URL.",
    LLMErrorKind.CONTEXT_TOO_LONG: "LLM context too long. Lower history or knowledge limits.",
    LLMErrorKind.QUOTA_EXHAUSTED: "LLM quota exhausted. Check the account billing.",
}


def classify_llm_error(exc: BaseException | str | None) -> LLMErrorKind:
    if isinstance(exc, asyncio.TimeoutError):
        return LLMErrorKind.TIMEOUT
    status = getattr(exc, "status", None)
    if isinstance(status, int) and status in _STATUS_KINDS:
        return _STATUS_KINDS[status]

    message = str(exc or "")
    if not message:
        return LLMErrorKind.UNKNOWN
    if "401" in message:
        return LLMErrorKind.AUTH_INVALID
    if "403" in message:
        return LLMErrorKind.FORBIDDEN
    if "429" in message:
        return LLMErrorKind.RATE_LIMITED
    if "500" in message or "502" in message or "503" in message:
        return LLMErrorKind.SERVER_UNAVAILABLE

    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return LLMErrorKind.TIMEOUT
    if "connect" in lowered:
        return LLMErrorKind.NETWORK_UNREACHABLE
    if "context_length" in lowered or "maximum context" in lowered:
        return LLMErrorKind.CONTEXT_TOO_LONG
    if "insufficient_quota" in lowered:
        return LLMErrorKind.QUOTA_EXHAUSTED
    return LLMErrorKind.UNKNOWN


def log_llm_error(exc: BaseException | str | None) -> LLMErrorKind:
    kind = classify_llm_error(exc)
    if kind is LLMErrorKind.UNKNOWN:
        logger.error("LLM request failed: %s", exc or "unknown error")
    elif kind in {LLMErrorKind.RATE_LIMITED, LLMErrorKind.TIMEOUT, LLMErrorKind.SERVER_UNAVAILABLE}:
        logger.warning("[llm.%s] %s", kind.value, _LOG_MESSAGES[kind])
    else:
        logger.error("[llm.%s] %s", kind.value, _LOG_MESSAGES[kind])
    return kind
