"""Embedding providers for the context store."""

from __future__ import annotations

import hashlib
import os
import re
from typing import Protocol, runtime_checkable

import httpx
import numpy as np
from loguru import logger

from pickleai.config import EmbeddingConfig
from pickleai.exceptions import UpstreamError, UpstreamTimeout


@runtime_checkable
class EmbeddingBackend(Protocol):
    dims: int

    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


# --- Local ---

# Keeps ratings ("3.5") and hyphenated court terms ("non-volley") as one token.
_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?|[a-z0-9]+(?:[-'][a-z0-9]+)*")

STOPWORDS = frozenset(
    "a an and are as at be but by do for from how i in is it me my of on or so "
    "the to what when where which with you your".split()
)


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in STOPWORDS]


class HashEmbedder:
    """Signed feature hashing over unigrams and bigrams.

    Deterministic across processes and offline. Output vectors are L2-normalized;
    text with no usable tokens maps to the zero vector.
    """

    def __init__(self, dims: int = 384) -> None:
        self.dims = max(16, int(dims))

    def _features(self, text: str) -> list[str]:
        tokens = tokenize(text)
        return tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        features = self._features(text)
        if not features:
            return vec
        digests = [hashlib.md5(f.encode("utf-8"), usedforsecurity=False).digest() for f in features]
        idx = np.array([int.from_bytes(d[:4], "little") % self.dims for d in digests])
        signs = np.array([1.0 if d[4] & 1 else -1.0 for d in digests], dtype=np.float32)
        np.add.at(vec, idx, signs)
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        return np.vstack([self._encode(t) for t in texts])

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


# --- Remote ---

class _HttpEmbedder:
    def __init__(
        self,
        base_url: str,
        dims: int,
        timeout: float,
        batch_size: int = 64,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url
        self.dims = dims
        self.timeout = timeout
        self.batch_size = max(1, batch_size)
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self._headers, timeout=self.timeout,
            )
        return self._client

    async def _post(self, path: str, payload: dict) -> dict:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"embedding request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"embedding request failed: {e}") from e
        if not resp.is_success:
            logger.warning("Embedding provider returned {}", resp.status_code)
            raise UpstreamError(
                f"embedding provider error {resp.status_code}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError("embedding provider returned a non-JSON body") from e

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        rows: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            vecs = await self._embed_batch(batch)
            if len(vecs) != len(batch):
                raise UpstreamError(f"expected {len(batch)} embeddings, got {len(vecs)}")
            rows.extend(vecs)
        arr = np.asarray(rows, dtype=np.float32)
        if arr.ndim != 2 or arr.shape[1] != self.dims:
            raise UpstreamError(f"embedding dimension mismatch: got {arr.shape}, want (*, {self.dims})")
        return arr

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIEmbedder(_HttpEmbedder):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dims: int = 384,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        batch_size: int = 64,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        super().__init__(
            base_url, dims, timeout, batch_size,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        self.model = model

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise UpstreamError("OpenAI API key not configured", retryable=False)
        return await super()._get_client()

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        data = await self._post(
            "/embeddings", {"model": self.model, "input": texts, "dimensions": self.dims},
        )
        items = sorted(data.get("data") or [], key=lambda x: x.get("index", 0))
        return [x["embedding"] for x in items]


class OllamaEmbedder(_HttpEmbedder):
    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
        batch_size: int = 32,
    ) -> None:
        super().__init__(base_url, dims, timeout, batch_size)
        self.model = model

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        data = await self._post("/api/embed", {"model": self.model, "input": texts})
        return list(data.get("embeddings") or [])


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "hash").strip().lower()
    if provider in {"hash", "default"}:
        return HashEmbedder(dims=cfg.dims)
    if provider == "openai":
        return OpenAIEmbedder(
            model=cfg.model,
            dims=cfg.dims,
            base_url=cfg.base_url or "https://api.openai.com/v1",
            timeout=cfg.timeout,
        )
    if provider in {"ollama", "local"}:
        return OllamaEmbedder(
            dims=cfg.dims,
            base_url=cfg.base_url or "http://127.0.0.1:11434",
            timeout=cfg.timeout,
        )
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
