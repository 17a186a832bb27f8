"""Moderation and rate-limit governance."""

from pickleai.governance.gateway import ModerationGateway
from pickleai.governance.rate_limiter import RateLimiter

__all__ = ["ModerationGateway", "RateLimiter"]
