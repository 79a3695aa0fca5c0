from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Dict, List, Protocol, Sequence

import aiohttp

from .errors import LLMServiceError


ChatMessage = Dict[str, str]


class ChatCompletionClient(Protocol):
    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> str: ...


class OpenAIClient:
    """Minimal client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: str,
        timeout_seconds: int,
        base_url: str = "https://api.openai.com/v1",
        retries: int = 1,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds, connect=timeout_seconds)
        self.retries = max(1, int(retries))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    @staticmethod
    def _build_payload(
        model: str,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> Dict[str, Any]:
        mapped: List[ChatMessage] = []
        for message in messages:
            role = str(message.get("role", "")).strip().lower() or "user"
            mapped.append({"role": role, "content": str(message.get("content", ""))})
        return {
            "model": model,
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
            "messages": mapped,
        }

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, self.retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status < 400:
                        return json.loads(text)

                    error = LLMServiceError(f"OpenAI API error: {response.status} {text}", status=response.status)
                    if response.status not in self.RETRIABLE_STATUSES:
                        raise error
                    last_error = error
            except asyncio.CancelledError:
                raise
            except LLMServiceError as exc:
                if exc.status not in self.RETRIABLE_STATUSES:
                    raise
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < self.retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if isinstance(last_error, LLMServiceError):
            raise last_error
        if isinstance(last_error, asyncio.TimeoutError):
            raise LLMServiceError("OpenAI request timed out")
        if last_error is not None:
            raise LLMServiceError(f"OpenAI request failed: {last_error}")
        raise LLMServiceError("OpenAI request failed without explicit error")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            raise LLMServiceError("OpenAI API returned no choices")
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        if content is None:
            raise LLMServiceError("OpenAI API returned no message content")
        return str(content).strip()

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload = self._build_payload(model, messages, temperature, max_tokens)
        data = await self._request(payload)
        return self._extract_text(data)
