"""Bearer-token identity verification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx
from loguru import logger

from pickleai.config import IdentityConfig
from pickleai.exceptions import UpstreamError, UpstreamTimeout


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None


@runtime_checkable
class IdentityProvider(Protocol):
    async def verify(self, token: str) -> Identity | None: ...

    async def close(self) -> None: ...


def parse_static_tokens(raw: str) -> dict[str, Identity]:
    """Parse ``"tok1=user-1:a@b.c,tok2=user-2:"`` into a token map."""
    tokens: dict[str, Identity] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        token, _, rest = item.partition("=")
        user_id, _, email = rest.partition(":")
        if token.strip() and user_id.strip():
            tokens[token.strip()] = Identity(user_id=user_id.strip(), email=email.strip() or None)
    return tokens


class StaticTokenIdentityProvider:
    """Fixed token table, for local development and tests."""

    def __init__(self, tokens: dict[str, Identity] | None = None) -> None:
        self.tokens = dict(tokens or {})

    async def verify(self, token: str) -> Identity | None:
        return self.tokens.get(token)

    async def close(self) -> None:
        return None


class SupabaseIdentityProvider:
    """Resolves a user access token against Supabase Auth (``GET /auth/v1/user``)."""

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.url:
            raise UpstreamError("SUPABASE_URL is required", retryable=False)
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.url, timeout=self.timeout)
        return self._client

    async def verify(self, token: str) -> Identity | None:
        if not token:
            return None
        client = await self._get_client()
        try:
            resp = await client.get(
                "/auth/v1/user",
                headers={"apikey": self.service_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout("identity lookup timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"identity lookup failed: {e}") from e

        if resp.status_code in (401, 403, 404):
            return None
        if not resp.is_success:
            logger.warning("Identity service returned {}", resp.status_code)
            raise UpstreamError(f"identity service error {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("identity service returned a non-JSON body") from e
        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            return None
        return Identity(user_id=str(user_id), email=data.get("email"))

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def create_identity_provider(config: IdentityConfig | None = None) -> IdentityProvider:
    config = config or IdentityConfig()
    p = (config.provider or "static").strip().lower()
    if p == "static":
        return StaticTokenIdentityProvider(parse_static_tokens(config.static_tokens))
    if p == "supabase":
        return SupabaseIdentityProvider(config.supabase_url, config.supabase_key, timeout=config.timeout)
    raise ValueError(f"Unsupported identity provider: {config.provider}")
