"""Upstream chat model backends."""

from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

from pickleai.exceptions import UpstreamError, UpstreamTimeout
from pickleai.types import ChatMessage


@runtime_checkable
class ChatBackend(Protocol):
    async def send_to_model(self, messages: list[ChatMessage], system_prompt: str) -> str: ...

    async def close(self) -> None: ...


def _wire_messages(messages: list[ChatMessage], system_prompt: str) -> list[dict[str, str]]:
    out = [{"role": "system", "content": system_prompt}]
    out.extend({"role": m.role, "content": m.content} for m in messages)
    return out


class _HttpChatBackend:
    def __init__(self, base_url: str, timeout: float, headers: dict[str, str] | None = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self._headers, timeout=self.timeout,
            )
        return self._client

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=body)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"model request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"model request failed: {e}") from e

        if resp.status_code >= 400:
            detail = "Unknown error"
            try:
                detail = resp.json().get("error", {}).get("message") or detail
            except (ValueError, AttributeError):
                pass
            logger.warning("Upstream model returned {}: {}", resp.status_code, detail)
            # Client errors other than throttling will not improve on retry.
            retryable = resp.status_code >= 500 or resp.status_code == 429
            raise UpstreamError(f"model API error {resp.status_code}: {detail}", retryable=retryable)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("model API returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise UpstreamError("model API returned an unexpected body")
        return data

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIChatBackend(_HttpChatBackend):
    """OpenAI-compatible ``/chat/completions`` backend."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        super().__init__(base_url, timeout, headers={"Authorization": f"Bearer {self.api_key}"})
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise UpstreamError("OpenAI API key not configured", retryable=False)
        return await super()._get_client()

    async def send_to_model(self, messages: list[ChatMessage], system_prompt: str) -> str:
        data = await self._post("/chat/completions", {
            "model": self.model,
            "messages": _wire_messages(messages, system_prompt),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        })
        choices = data.get("choices") or []
        if not choices:
            raise UpstreamError("No response from model")
        try:
            content = choices[0]["message"]["content"]
        except (KeyError, TypeError) as e:
            raise UpstreamError("model response missing message content") from e
        usage = data.get("usage") or {}
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(usage.get("prompt_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("completion_tokens", 0))
        return str(content or "")


class OllamaChatBackend(_HttpChatBackend):
    def __init__(
        self,
        model: str = "llama3.1:8b-instruct",
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> None:
        super().__init__(base_url, timeout)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def send_to_model(self, messages: list[ChatMessage], system_prompt: str) -> str:
        data = await self._post("/api/chat", {
            "model": self.model,
            "messages": _wire_messages(messages, system_prompt),
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        })
        msg = data.get("message")
        if not isinstance(msg, dict) or "content" not in msg:
            raise UpstreamError("No response from model")
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(data.get("prompt_eval_count", 0) or 0)
        self._stats["output_tokens"] += int(data.get("eval_count", 0) or 0)
        return str(msg["content"])
