"""Moderation & rate-limit gateway: front door for every chat message."""

from __future__ import annotations

import random

from loguru import logger

from pickleai.config import SecurityConfig
from pickleai.governance.rate_limiter import RateLimiter
from pickleai.governance.rules import (
    ALLOWED_INTENTS,
    DENY_RULES,
    PROMPT_INJECTION_PATTERNS,
    REDACTION_RULES,
    REFUSAL_MESSAGES,
    DenyRule,
    detect_intents,
    match_deny_rule,
)
from pickleai.types import RateLimitState, SecurityResult


class ModerationGateway:
    """Rate limiting, topic denial and outbound redaction.

    Blocks are returned as ``SecurityResult`` values, never raised. The
    gateway does not start a cooldown by itself: callers invoke
    ``record_violation`` for content-policy blocks only.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        config: SecurityConfig | None = None,
        deny_rules: tuple[DenyRule, ...] = DENY_RULES,
        refusals: tuple[str, ...] = REFUSAL_MESSAGES,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or SecurityConfig()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(self.config)
        self.deny_rules = deny_rules
        self.refusals = refusals
        self._rng = rng or random.Random()

    async def check_message_security(self, message: str, user_id: str) -> SecurityResult:
        quota = self.rate_limiter.consume(user_id)
        if not quota.allowed:
            logger.info("Rate limited {}: {}", user_id, quota.reason)
            return quota

        rule = match_deny_rule(message, self.deny_rules)
        if rule is not None:
            logger.info("Denied message from {} (category={})", user_id, rule.category)
            return SecurityResult(
                allowed=False,
                reason="Topic not allowed",
                suggested_alternative=self._rng.choice(self.refusals),
                category=rule.category,
            )

        return SecurityResult(allowed=True, intents=self.classify_intents(message))

    def record_violation(self, user_id: str) -> None:
        self.rate_limiter.record_violation(user_id)

    @staticmethod
    def classify_intents(message: str) -> list[str]:
        return [i for i in detect_intents(message) if i in ALLOWED_INTENTS]

    @staticmethod
    def redact_sensitive_content(text: str) -> str:
        redacted = text
        for rule in REDACTION_RULES:
            redacted = rule.pattern.sub(rule.placeholder, redacted)
        return redacted

    @staticmethod
    def validate_system_prompt(prompt: str) -> bool:
        return not any(p.search(prompt) for p in PROMPT_INJECTION_PATTERNS)

    def sweep(self) -> int:
        return self.rate_limiter.sweep()

    def get_rate_limit_info(self, user_id: str) -> RateLimitState | None:
        return self.rate_limiter.get(user_id)

    def reset_rate_limits(self, user_id: str) -> None:
        self.rate_limiter.reset(user_id)
