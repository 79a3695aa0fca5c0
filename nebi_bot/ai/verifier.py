from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Protocol

from ..prompts.learning import FACT_CHECK_SYSTEM_PROMPT, build_fact_check_prompt
from ..services.errors import classify_llm_error
from ..services.openai_client import ChatCompletionClient

logger = logging.getLogger("nebi_bot.learning")

FACT_CHECK_TEMPERATURE = 0.1
FACT_CHECK_MAX_TOKENS = 120
DEFAULT_VALID_CONFIDENCE = 0.55

_VALID_RE = re.compile(r'"valid"\s*:\s*(true|false)', re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r'"confidence"\s*:\s*(-?\d+(?:\.\d+)?)')
_REASON_RE = re.compile(r'"reason"\s*:\s*"([^"]*)"')


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(slots=True)
class FactCheckResult:
    valid: bool
    confidence: float
    reason: str


class FactCheckParser(Protocol):
    def parse(self, raw: str) -> FactCheckResult: ...


class TolerantFactCheckParser:
    """Pulls the verdict fields out of a model reply without requiring valid JSON.

    Models often wrap the object in prose or code fences, so each field is matched
    on its own. A missing ``valid`` field means the statement is rejected.
    """

    def parse(self, raw: str) -> FactCheckResult:
        text = str(raw or "")
        if not text.strip():
            return FactCheckResult(False, 0.0, "empty response")

        valid_match = _VALID_RE.search(text)
        valid = bool(valid_match) and valid_match.group(1).lower() == "true"

        confidence = DEFAULT_VALID_CONFIDENCE if valid else 0.0
        confidence_match = _CONFIDENCE_RE.search(text)
        if confidence_match:
            try:
                confidence = _clamp(float(confidence_match.group(1)))
            except ValueError:
                pass

        reason_match = _REASON_RE.search(text)
        reason = reason_match.group(1).strip() if reason_match else ""
        return FactCheckResult(valid, confidence, reason or "no reason")


class FactVerifier:
    def __init__(
        self,
        llm: ChatCompletionClient,
        model: str,
        *,
        parser: FactCheckParser | None = None,
    ) -> None:
        self.llm = llm
        self.model = model
        self.parser: FactCheckParser = parser or TolerantFactCheckParser()

    async def fact_check(self, statement: str) -> FactCheckResult:
        messages = [
            {"role": "system", "content": FACT_CHECK_SYSTEM_PROMPT},
            {"role": "user", "content": build_fact_check_prompt(statement)},
        ]
        try:
            raw = await self.llm.complete(
                self.model,
                messages,
                temperature=FACT_CHECK_TEMPERATURE,
                max_tokens=FACT_CHECK_MAX_TOKENS,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Fact check failed (%s): %s", classify_llm_error(exc).value, exc)
            return FactCheckResult(False, 0.0, "api error")

        if not raw or not raw.strip():
            return FactCheckResult(False, 0.0, "empty response")
        return self.parser.parse(raw)
