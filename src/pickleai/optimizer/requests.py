"""Request optimizer: priority queue, batching and cost accounting."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from loguru import logger

from pickleai.config import OptimizerConfig
from pickleai.exceptions import PersistenceError
from pickleai.optimizer.cache import ResponseCache
from pickleai.types import RequestPriority, UsageStats
from pickleai.utils import json_dumps, json_loads

T = TypeVar("T")

PRIORITY_RANK: dict[RequestPriority, int] = {
    RequestPriority.URGENT: 0,
    RequestPriority.HIGH: 1,
    RequestPriority.NORMAL: 2,
    RequestPriority.LOW: 3,
}

_DAY_SECONDS = 24 * 3600.0
_MONTH_SECONDS = 30 * _DAY_SECONDS

USAGE_KEY = "ai_usage"


@dataclass
class _QueuedRequest:
    seq: int
    request_type: str
    priority: RequestPriority
    enqueued_at: float
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class RequestOptimizer:
    """Wraps every outbound AI/content call.

    Queued requests are dispatched highest priority first and FIFO within a
    level, with at most ``max_concurrency`` of them in flight at once. A request is promoted one level for every
    ``starvation_interval`` seconds it has waited, which bounds the wait of
    low-priority work.

    Usage counters are kept in the cache's key-value store so they survive
    restarts until ``reset_usage`` is called.
    """

    def __init__(
        self,
        cache: ResponseCache,
        config: OptimizerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.config = config or OptimizerConfig()
        self._clock = clock
        self._pending: list[_QueuedRequest] = []
        self._seq = 0
        self._worker: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max(1, self.config.max_concurrency))
        self._last_dispatch = 0.0

        self._request_count: dict[str, int] = {}
        self._cache_hits = 0
        self._total_requests = 0
        self._window_started_at = self._clock()
        self._load_usage()

    # --- Public API ---

    async def execute_request(
        self,
        request_type: str,
        execute: Callable[[], Awaitable[T]],
        priority: RequestPriority = RequestPriority.NORMAL,
        bypass_queue: bool = False,
    ) -> T:
        self._total_requests += 1
        return await self._submit(request_type, execute, priority, bypass_queue)

    async def cached_request(
        self,
        key: str,
        request_type: str,
        execute: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> T:
        """Replay ``key`` from cache, or execute and cache the result.

        A hit is counted towards the hit ratio only; it does not touch the
        per-type upstream counters.
        """
        self._total_requests += 1
        cached = self.cache.get(key)
        if cached is not None:
            self._cache_hits += 1
            self._save_usage()
            return cached
        result = await self._submit(request_type, execute, priority, False)
        if ttl is None:
            ttl = self.cache.ttl_for_endpoint(request_type)
        self.cache.set(key, result, ttl)
        return result

    async def batch_requests(
        self,
        items: Sequence[Any],
        batch_processor: Callable[[list[Any]], Awaitable[T]],
        request_type: str = "batch",
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> T | list:
        """Collapse ``items`` into one upstream call, counted as one request."""
        if not items:
            return []
        batch = list(items)
        self._total_requests += 1
        return await self._submit(request_type, lambda: batch_processor(batch), priority, False)

    # --- Usage accounting ---

    def cost_for(self, request_type: str) -> float:
        table = self.config.cost_per_request_type
        return table.get(request_type, table.get("default", 0.0))

    def usage_stats(self) -> UsageStats:
        estimate = sum(count * self.cost_for(t) for t, count in self._request_count.items())
        elapsed = max(self._clock() - self._window_started_at, _DAY_SECONDS)
        return UsageStats(
            request_count=dict(self._request_count),
            monthly_cost_estimate=estimate,
            projected_monthly_cost=estimate * (_MONTH_SECONDS / elapsed),
            cache_hits=self._cache_hits,
            total_requests=self._total_requests,
            cache_hit_ratio=self.cache_hit_ratio,
            window_started_at=self._window_started_at,
        )

    @property
    def cache_hit_ratio(self) -> float:
        if self._total_requests == 0:
            return 0.0
        return self._cache_hits / self._total_requests

    def request_count(self, request_type: str) -> int:
        return self._request_count.get(request_type, 0)

    def reset_usage(self) -> None:
        self._request_count = {}
        self._cache_hits = 0
        self._total_requests = 0
        self._window_started_at = self._clock()
        self._save_usage()

    def log_cost_estimates(self) -> None:
        stats = self.usage_stats()
        logger.info(
            "AI cost estimate: ${:.2f} so far, ${:.2f} projected/month, cache hit ratio {:.0%}",
            stats.monthly_cost_estimate, stats.projected_monthly_cost, stats.cache_hit_ratio,
        )
        for request_type, count in sorted(stats.request_count.items()):
            logger.info("  {}: {} requests", request_type, count)

    async def close(self) -> None:
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        for task in list(self._running):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        for item in self._pending:
            if not item.future.done():
                item.future.cancel()
        self._pending.clear()

    # --- Queue ---

    async def _submit(
        self,
        request_type: str,
        execute: Callable[[], Awaitable[T]],
        priority: RequestPriority,
        bypass_queue: bool,
    ) -> T:
        self._request_count[request_type] = self._request_count.get(request_type, 0) + 1
        self._save_usage()
        if bypass_queue:
            return await execute()

        loop = asyncio.get_running_loop()
        self._seq += 1
        item = _QueuedRequest(
            seq=self._seq,
            request_type=request_type,
            priority=RequestPriority(priority),
            enqueued_at=self._clock(),
            execute=execute,
            future=loop.create_future(),
        )
        self._pending.append(item)
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return await item.future

    def _effective_rank(self, item: _QueuedRequest, now: float) -> int:
        rank = PRIORITY_RANK[item.priority]
        interval = self.config.starvation_interval
        if interval > 0:
            rank -= int((now - item.enqueued_at) / interval)
        return rank

    def _next_request(self) -> _QueuedRequest:
        now = self._clock()
        return min(self._pending, key=lambda r: (self._effective_rank(r, now), r.seq))

    async def _drain(self) -> None:
        while self._pending:
            # Yield once so requests submitted in the same tick are ranked together.
            await asyncio.sleep(0)
            # Rank only once a slot is free so late arrivals compete fairly.
            await self._slots.acquire()
            if not self._pending:
                self._slots.release()
                break
            delay = self.config.throttle_delay - (self._clock() - self._last_dispatch)
            if self.config.throttle_delay > 0 and delay > 0:
                await asyncio.sleep(delay)

            item = self._next_request()
            self._pending.remove(item)
            if item.future.done():
                self._slots.release()
                continue
            self._last_dispatch = self._clock()
            task = asyncio.get_running_loop().create_task(self._dispatch(item))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _dispatch(self, item: _QueuedRequest) -> None:
        try:
            result = await item.execute()
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._slots.release()

    # --- Persistence ---

    def _load_usage(self) -> None:
        try:
            raw = self.cache.kv.get(USAGE_KEY)
            if raw is None:
                return
            stats = UsageStats.model_validate(json_loads(raw))
        except (PersistenceError, ValueError) as e:
            logger.warning("Could not load usage counters: {}", e)
            return
        self._request_count = dict(stats.request_count)
        self._cache_hits = stats.cache_hits
        self._total_requests = stats.total_requests
        self._window_started_at = stats.window_started_at or self._window_started_at

    def _save_usage(self) -> None:
        stats = UsageStats(
            request_count=self._request_count,
            cache_hits=self._cache_hits,
            total_requests=self._total_requests,
            window_started_at=self._window_started_at,
        )
        try:
            self.cache.kv.set(USAGE_KEY, json_dumps(stats.model_dump(mode="json")))
        except PersistenceError as e:
            logger.warning("Could not save usage counters: {}", e)
