"""Semantic Context Store: per-user memory with embedding retrieval."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

import numpy as np
from loguru import logger

from pickleai.config import ContextConfig
from pickleai.embeddings.backends import EmbeddingBackend
from pickleai.exceptions import PersistenceError
from pickleai.retrieval.vector import rank_by_similarity
from pickleai.storage.kv_store import KeyValueStore
from pickleai.types import (
    ContextEntry,
    ContextFilters,
    ContextKind,
    SemanticMatch,
    UserProfile,
)
from pickleai.utils import approx_token_count, iso_str, json_dumps, json_loads, utcnow


def _storage_key(user_id: str) -> str:
    return f"context_{user_id}"


class ContextStore:
    """Durable per-user log of typed memory entries.

    Appends for the same user are serialized by a per-user lock held across
    embedding and persistence, so entries land in submission order even when
    calls interleave at the embedding await.
    """

    def __init__(
        self,
        embedder: EmbeddingBackend,
        kv: KeyValueStore,
        config: ContextConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        memo_size: int = 2048,
    ) -> None:
        self.embedder = embedder
        self.kv = kv
        self.config = config or ContextConfig()
        self._clock = clock
        self._memory: dict[str, list[ContextEntry]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._memo: OrderedDict[str, list[float]] = OrderedDict()
        self._memo_size = max(0, memo_size)

    # --- Write ---

    async def store_context(
        self,
        user_id: str,
        kind: ContextKind | str,
        content: str,
        tags: Iterable[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ContextEntry:
        async with self._lock_for(user_id):
            embedding, degraded = await self._embed(content)
            meta = dict(metadata or {})
            if degraded:
                meta["embedding_fallback"] = True
            entry = ContextEntry(
                user_id=user_id,
                kind=ContextKind(kind),
                content=content,
                embedding=embedding,
                timestamp=self._clock(),
                tags=set(tags or []),
                metadata=meta,
            )
            self._entries(user_id).append(entry)
            self._persist(user_id)
        return entry

    async def update_user_preferences(self, user_id: str, preferences: dict[str, Any]) -> ContextEntry:
        """Record preferences as a preference entry; the profile view picks them up."""
        content = "; ".join(f"{k}: {v}" for k, v in preferences.items())
        return await self.store_context(
            user_id,
            ContextKind.PREFERENCE,
            content,
            tags=list(preferences.keys()),
            metadata={"preferences": dict(preferences)},
        )

    async def generate_insight(self, user_id: str, insight_type: str, data: dict[str, Any]) -> ContextEntry:
        text = self.format_insight(insight_type, data)
        return await self.store_context(
            user_id, ContextKind.INSIGHT, text, tags=[insight_type],
            metadata={"insight_type": insight_type, **data},
        )

    # --- Read ---

    async def retrieve_relevant_context(
        self,
        user_id: str,
        query: str,
        limit: int | None = None,
        filters: ContextFilters | None = None,
    ) -> list[SemanticMatch]:
        limit = self.config.default_limit if limit is None else limit
        query_vector, _ = await self._embed(query)
        candidates = self._apply_filters(self._entries(user_id), filters)
        return rank_by_similarity(query_vector, candidates, limit)

    async def build_context_aware_prompt(
        self,
        user_id: str,
        message: str,
        max_tokens: int | None = None,
    ) -> str:
        """Assemble a prompt from the message plus the most relevant memory.

        Token counts use ``approx_token_count`` (``len / 4``), so the budget is
        approximate. The message is charged first; entries are added in
        relevance order until the first one that would exceed the budget.
        """
        budget = self.config.max_context_tokens if max_tokens is None else max_tokens
        matches = await self.retrieve_relevant_context(
            user_id, message, limit=self.config.prompt_candidates,
        )

        prompt = f"User: {message}\n\nRelevant context:\n"
        token_count = approx_token_count(message)
        items: list[str] = []
        for match in matches:
            cost = approx_token_count(match.entry.content)
            if token_count + cost > budget:
                break
            items.append(
                f"[{match.entry.kind.value}] {match.entry.content} "
                f"(relevance: {match.similarity_score:.2f})"
            )
            token_count += cost

        if items:
            prompt += "\n".join(items) + "\n"
        else:
            prompt += "No relevant context found.\n"
        return prompt

    def get_user_profile(self, user_id: str) -> UserProfile:
        entries = self._entries(user_id)
        preferences: dict[str, Any] = {}
        insights: dict[str, str] = {}
        for e in entries:
            if e.kind is ContextKind.PREFERENCE:
                preferences.update(e.metadata.get("preferences", {}))
            elif e.kind is ContextKind.INSIGHT:
                insight_type = e.metadata.get("insight_type") or next(iter(sorted(e.tags)), "insight")
                insights[insight_type] = e.content
        return UserProfile(
            user_id=user_id,
            preferences=preferences,
            activity_log=[e for e in entries if e.kind is ContextKind.ACTIVITY],
            conversation_history=[e for e in entries if e.kind is ContextKind.CONVERSATION],
            insights=insights,
            last_updated=entries[-1].timestamp if entries else self._clock(),
        )

    def entries(self, user_id: str) -> list[ContextEntry]:
        return list(self._entries(user_id))

    def user_ids(self) -> list[str]:
        """Users with loaded or persisted context."""
        ids = list(self._memory)
        try:
            persisted = self.kv.keys("context_")
        except PersistenceError as e:
            logger.warning("Failed to list persisted context: {}", e)
            return ids
        for key in persisted:
            uid = key[len("context_"):]
            if uid not in self._memory:
                ids.append(uid)
        return ids

    # --- Retention ---

    async def prune_old_context(self, user_id: str, days_old: int | None = None) -> int:
        days = self.config.prune_days if days_old is None else days_old
        cutoff = self._clock() - timedelta(days=days)
        async with self._lock_for(user_id):
            entries = self._entries(user_id)
            kept = [e for e in entries if e.timestamp > cutoff]
            removed = len(entries) - len(kept)
            self._memory[user_id] = kept
            if removed:
                self._persist(user_id)
        if removed:
            logger.debug("Pruned {} context entries older than {} days for {}", removed, days, user_id)
        return removed

    def export_user_context(self, user_id: str) -> str:
        profile = self.get_user_profile(user_id)
        return json_dumps({
            "profile": profile.model_dump(mode="json"),
            "contexts": [e.model_dump(mode="json") for e in self._entries(user_id)],
            "export_date": iso_str(self._clock()),
        })

    async def clear_user_context(self, user_id: str) -> None:
        async with self._lock_for(user_id):
            self._memory.pop(user_id, None)
            try:
                self.kv.remove(_storage_key(user_id))
            except PersistenceError as e:
                logger.warning("Failed to remove persisted context for {}: {}", user_id, e)
        logger.info("Cleared context memory for {}", user_id)

    # --- Formatting ---

    @staticmethod
    def format_insight(insight_type: str, data: dict[str, Any]) -> str:
        if insight_type == "activity_summary":
            return f"User completed {data.get('count', 0)} activities in the last {data.get('period', 'day')}"
        if insight_type == "preference_pattern":
            return f"Detected preference: {data.get('preference', 'unknown')}"
        if insight_type == "usage_pattern":
            return (
                f"Peak usage time: {data.get('peak_time', 'unknown')}, "
                f"Activity: {data.get('activity', 'unknown')}"
            )
        if "description" in data:
            return str(data["description"])
        return f"Insight: {json_dumps(data)}"

    # --- Internals ---

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _entries(self, user_id: str) -> list[ContextEntry]:
        entries = self._memory.get(user_id)
        if entries is None:
            entries = self._load(user_id)
            self._memory[user_id] = entries
        return entries

    def _load(self, user_id: str) -> list[ContextEntry]:
        try:
            raw = self.kv.get(_storage_key(user_id))
        except PersistenceError as e:
            logger.warning("Failed to load context for {}: {}", user_id, e)
            return []
        if not raw:
            return []
        try:
            return [ContextEntry.model_validate(item) for item in json_loads(raw)]
        except ValueError as e:
            logger.warning("Discarding unreadable context log for {}: {}", user_id, e)
            return []

    def _persist(self, user_id: str) -> None:
        payload = json_dumps([e.model_dump(mode="json") for e in self._memory.get(user_id, [])])
        try:
            self.kv.set(_storage_key(user_id), payload)
        except PersistenceError as e:
            logger.warning("Failed to persist context for {}: {}", user_id, e)

    async def _embed(self, text: str) -> tuple[list[float], bool]:
        """Return ``(embedding, degraded)``; failures yield a zero vector."""
        cached = self._memo.get(text)
        if cached is not None:
            self._memo.move_to_end(text)
            return cached, False
        try:
            vec = await self.embedder.embed_single(text)
            embedding = np.asarray(vec, dtype=np.float32).ravel().tolist()
            if not embedding:
                raise ValueError("embedding backend returned an empty vector")
        except Exception as e:
            logger.warning("Embedding failed, storing fallback vector: {}", e)
            return [0.0] * max(1, int(getattr(self.embedder, "dims", 1))), True
        if self._memo_size:
            self._memo[text] = embedding
            if len(self._memo) > self._memo_size:
                self._memo.popitem(last=False)
        return embedding, False

    @staticmethod
    def _apply_filters(entries: list[ContextEntry], filters: ContextFilters | None) -> list[ContextEntry]:
        if filters is None:
            return list(entries)
        out = list(entries)
        if filters.kind is not None:
            out = [e for e in out if e.kind is filters.kind]
        if filters.tags:
            wanted = set(filters.tags)
            out = [e for e in out if e.tags & wanted]
        if filters.start is not None:
            out = [e for e in out if e.timestamp >= filters.start]
        if filters.end is not None:
            out = [e for e in out if e.timestamp <= filters.end]
        return out
