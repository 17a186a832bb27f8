"""PickleAI assistant: wires the gateway, memory, analyzer and upstream model."""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from pickleai.analysis.activity import ActivityAnalyzer
from pickleai.config import Config
from pickleai.content.retrieval import WebContentRetriever
from pickleai.embeddings.backends import EmbeddingBackend, create_embedder
from pickleai.exceptions import UpstreamError
from pickleai.governance.gateway import ModerationGateway
from pickleai.governance.rate_limiter import RateLimiter
from pickleai.governance.rules import DEFAULT_REFUSAL, RATE_LIMIT_MESSAGE
from pickleai.llm import ChatBackend, build_system_prompt, create_chat_backend
from pickleai.memory.context_store import ContextStore
from pickleai.optimizer import RequestOptimizer, ResponseCache
from pickleai.storage.kv_store import KeyValueStore, SQLiteKVStore
from pickleai.types import (
    ActivityRecord,
    ActivityType,
    ChatMessage,
    ChatReply,
    ContentSummary,
    ContextEntry,
    ContextKind,
    RequestPriority,
    SecurityInfo,
    UsageStats,
    UserInsight,
)
from pickleai.utils import content_hash, json_dumps, json_loads


class PickleAssistant:
    """Central orchestrator for the chat flow.

    Every collaborator is constructed here from ``config`` unless injected.
    ``clock`` returns epoch seconds and drives all time-dependent services.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        kv: KeyValueStore | None = None,
        embedder: EmbeddingBackend | None = None,
        chat: ChatBackend | None = None,
        retriever: WebContentRetriever | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or Config()
        self._clock = clock

        if kv is None:
            self.config.ensure_dirs()
            kv = SQLiteKVStore(self.config.db_path)
        self.kv = kv

        def dt_clock() -> datetime:
            return datetime.fromtimestamp(clock(), tz=timezone.utc)

        self.embedder = embedder or create_embedder(self.config.embedding)
        self.context = ContextStore(
            self.embedder, self.kv, self.config.context,
            clock=dt_clock, memo_size=self.config.embedding.memo_size,
        )
        self.analyzer = ActivityAnalyzer(self.kv, self.config.analyzer, clock=dt_clock)
        self.cache = ResponseCache(self.kv, self.config.cache, clock=clock)
        self.optimizer = RequestOptimizer(self.cache, self.config.optimizer, clock=clock)
        self.gateway = ModerationGateway(
            RateLimiter(self.config.security, clock=clock), self.config.security, rng=rng,
        )
        self.chat = chat or create_chat_backend(self.config.chat)
        self.retriever = retriever or WebContentRetriever(
            self.cache, self.config.content, optimizer=self.optimizer,
        )

        self._background: set[asyncio.Task] = set()
        self.analyzer.add_insight_listener(self._on_insights)

    # --- Chat ---

    async def handle_chat(
        self,
        user_id: str,
        message: str,
        conversation_history: list[ChatMessage] | None = None,
        user_context: dict[str, Any] | None = None,
    ) -> ChatReply:
        security = await self.gateway.check_message_security(message, user_id)
        if not security.allowed:
            if security.is_policy_violation:
                self.gateway.record_violation(user_id)
            fallback = RATE_LIMIT_MESSAGE if security.rate_limited else DEFAULT_REFUSAL
            return ChatReply(
                response=security.suggested_alternative or fallback,
                security=SecurityInfo(
                    blocked=True,
                    reason=security.reason,
                    rateLimited=security.rate_limited,
                    cooldownRemaining=security.cooldown_remaining,
                ),
            )

        history = list(conversation_history or [])
        system_prompt = build_system_prompt(user_context)
        if not self.gateway.validate_system_prompt(system_prompt):
            logger.warning("Dropping user context for {}: failed prompt validation", user_id)
            user_context = None
            system_prompt = build_system_prompt(None)

        prompt = await self.context.build_context_aware_prompt(user_id, message)
        messages = history + [ChatMessage(role="user", content=prompt)]

        key = self._chat_cache_key(user_id, message, history, user_context)
        raw = await self.optimizer.cached_request(
            key,
            "chat",
            lambda: self._send_with_retry(messages, system_prompt),
            ttl=self.config.cache.chat_ttl,
            priority=RequestPriority.HIGH,
        )
        reply = self.gateway.redact_sensitive_content(str(raw))

        tags = ["chat", *security.intents]
        await self.context.store_context(
            user_id, ContextKind.CONVERSATION, message, tags=tags, metadata={"role": "user"},
        )
        await self.context.store_context(
            user_id, ContextKind.CONVERSATION, reply, tags=tags, metadata={"role": "assistant"},
        )
        self.analyzer.record_activity(
            user_id, ActivityType.CHAT, "message", metadata={"intents": security.intents},
        )
        return ChatReply(response=reply, security=SecurityInfo(blocked=False))

    async def _send_with_retry(self, messages: list[ChatMessage], system_prompt: str) -> str:
        retries = max(0, self.config.chat.upstream_retries)
        attempt = 0
        while True:
            try:
                return await self.chat.send_to_model(messages, system_prompt)
            except UpstreamError as e:
                if not e.retryable or attempt >= retries:
                    logger.error("Upstream model call failed after {} attempt(s): {}", attempt + 1, e)
                    raise
                delay = self.config.chat.retry_backoff * (2 ** attempt)
                logger.warning("Upstream model call failed ({}); retrying in {:.2f}s", e, delay)
                await asyncio.sleep(delay)
                attempt += 1

    @staticmethod
    def _chat_cache_key(
        user_id: str,
        message: str,
        history: list[ChatMessage],
        user_context: dict[str, Any] | None,
    ) -> str:
        payload = json_dumps({
            "message": message,
            "history": [m.model_dump() for m in history],
            "context": user_context or {},
        })
        return f"chat:{user_id}:{content_hash(payload.encode())}"

    # --- Activity & insights ---

    async def record_activity(
        self,
        user_id: str,
        activity_type: ActivityType | str,
        action: str,
        duration: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityRecord:
        record = self.analyzer.record_activity(user_id, activity_type, action, duration, metadata)
        await self.context.store_context(
            user_id,
            ContextKind.ACTIVITY,
            f"{record.type.value}: {action}",
            tags=[record.type.value],
            metadata={"activity_id": record.id, "duration": duration},
        )
        return record

    async def update_preferences(self, user_id: str, preferences: dict[str, Any]) -> ContextEntry:
        return await self.context.update_user_preferences(user_id, preferences)

    def _on_insights(self, user_id: str, insights: list[UserInsight]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping insight write-back for {}", user_id)
            return
        task = loop.create_task(self._publish_insights(user_id, insights))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _publish_insights(self, user_id: str, insights: list[UserInsight]) -> None:
        latest = self.context.get_user_profile(user_id).insights
        for insight in insights:
            if latest.get(insight.insight_type) == insight.description:
                continue
            try:
                await self.context.generate_insight(user_id, insight.insight_type, {
                    "description": insight.description,
                    "confidence": insight.confidence,
                })
            except Exception as e:
                logger.warning("Failed to store insight {} for {}: {}", insight.insight_type, user_id, e)

    async def drain(self) -> None:
        """Wait for pending background insight writes."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # --- Queries ---

    def analytics(self, user_id: str) -> dict[str, Any]:
        return {
            "analytics": self.analyzer.get_user_analytics(user_id).model_dump(mode="json"),
            "recommendations": [
                r.model_dump() for r in self.analyzer.get_personalized_recommendations(user_id)
            ],
            "summary": self.analyzer.get_activity_summary(user_id).model_dump(),
        }

    def usage_stats(self) -> UsageStats:
        return self.optimizer.usage_stats()

    async def content_summary(self, url: str) -> ContentSummary:
        return await self.retriever.get_content_summary(url)

    # --- Account data ---

    async def export_user_data(self, user_id: str) -> dict[str, Any]:
        await self.drain()
        return {
            "context": json_loads(self.context.export_user_context(user_id)),
            "activities": [
                r.model_dump(mode="json") for r in self.analyzer.get_activities(user_id)
            ],
        }

    async def clear_user_data(self, user_id: str) -> None:
        await self.drain()
        await self.context.clear_user_context(user_id)
        self.analyzer.clear_user_activity(user_id)
        logger.info("Cleared all personalization data for {}", user_id)

    # --- Maintenance ---

    async def run_maintenance(self) -> dict[str, int]:
        swept = self.gateway.sweep()
        pruned = 0
        for uid in self.context.user_ids():
            pruned += await self.context.prune_old_context(uid)
        if swept or pruned:
            logger.info("Maintenance: swept {} rate-limit records, pruned {} context entries", swept, pruned)
        return {"rate_limits_swept": swept, "context_pruned": pruned}

    async def maintenance_loop(self, interval: float | None = None) -> None:
        """Run maintenance forever; cancel the task to stop."""
        interval = self.config.security.sweep_interval_seconds if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("Maintenance pass failed: {}", e)

    async def close(self) -> None:
        await self.drain()
        await self.optimizer.close()
        for closeable in (self.chat, self.embedder, self.retriever):
            await closeable.close()
        self.kv.close()
