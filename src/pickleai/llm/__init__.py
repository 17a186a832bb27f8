"""Upstream chat model clients and prompt assembly."""

from pickleai.config import ChatConfig
from pickleai.llm.backends import ChatBackend, OllamaChatBackend, OpenAIChatBackend
from pickleai.llm.prompts import BASE_SYSTEM_PROMPT, build_system_prompt


def create_chat_backend(config: ChatConfig | None = None) -> ChatBackend:
    config = config or ChatConfig()
    p = (config.provider or "openai").strip().lower()
    if p in {"openai", "default"}:
        return OpenAIChatBackend(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            timeout=config.timeout,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    if p in {"ollama", "local"}:
        return OllamaChatBackend(
            model=config.model,
            base_url=config.ollama_url,
            timeout=config.timeout,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    raise ValueError(f"Unsupported provider: {config.provider}")


__all__ = [
    "ChatBackend",
    "OpenAIChatBackend",
    "OllamaChatBackend",
    "BASE_SYSTEM_PROMPT",
    "build_system_prompt",
    "create_chat_backend",
]
