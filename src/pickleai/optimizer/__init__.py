"""Request optimization and caching."""

from pickleai.optimizer.cache import ResponseCache
from pickleai.optimizer.requests import PRIORITY_RANK, RequestOptimizer

__all__ = ["ResponseCache", "RequestOptimizer", "PRIORITY_RANK"]
