"""Moderation rule tables: topic denial, intents, refusals and redaction."""

from __future__ import annotations

import re
from typing import NamedTuple


class DenyRule(NamedTuple):
    pattern: re.Pattern[str]
    category: str


class RedactionRule(NamedTuple):
    pattern: re.Pattern[str]
    placeholder: str


def _rx(expr: str) -> re.Pattern[str]:
    return re.compile(expr, re.IGNORECASE)


# Evaluated in order; first match wins.
DENY_RULES: tuple[DenyRule, ...] = (
    DenyRule(
        _rx(r"(xp|streak|leaderboard).*(formula|hack|cheat|bypass|exploit|farm|optimize|reverse)"),
        "gamification_exploit",
    ),
    DenyRule(
        _rx(r"(formula|hack|cheat|bypass|exploit|farm|optimize|reverse).*(xp|streak|leaderboard)"),
        "gamification_exploit",
    ),
    DenyRule(
        _rx(r"business model|monetization|monetize|pricing|ltv|cac|growth|go to market"),
        "business_strategy",
    ),
    DenyRule(
        _rx(r"scrape|export|dump|database|sql|query|endpoint list|api key|token|admin|analytics"),
        "data_access",
    ),
    DenyRule(
        _rx(r"security|vulnerability|penetration|jailbreak|prompt injection|guardrail"),
        "security_bypass",
    ),
    DenyRule(
        _rx(r"private|confidential|internal|roadmap|strategy doc|investor deck"),
        "confidential",
    ),
)

REFUSAL_MESSAGES: tuple[str, ...] = (
    "I can't help with that specific topic, but I'd be happy to help you with pickleball skills, rules, or equipment questions!",
    "That's outside my scope, but I can assist with app features, pickleball tips, or finding local games and tournaments.",
    "I'm focused on pickleball advice and app help. Would you like to know about improving your game or finding places to play?",
    "I can't provide that information, but I'm great at explaining pickleball techniques, rules, and helping you find local courts!",
    "That's not something I can help with, but I'd love to assist with your pickleball game or show you how to use the app features.",
)

DEFAULT_REFUSAL = "I can't help with that topic, but I'd be happy to assist with pickleball questions!"
RATE_LIMIT_MESSAGE = "You're sending messages a little too quickly. Take a short break and try again soon!"

ALLOWED_INTENTS: frozenset[str] = frozenset({
    "app_help",
    "kb_answer",
    "pickleball_tip_basic",
    "dupr_self",
    "skills_advice",
    "rules_explanation",
    "equipment_recommendation",
    "general_pickleball",
})

INTENT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_rx(r"settings|notification|privacy|account|help|how to|feature"), "app_help"),
    (_rx(r"support|kb|knowledge|article|documentation"), "kb_answer"),
    (_rx(r"improve|technique|skill|drill|practice|tip"), "pickleball_tip_basic"),
    (_rx(r"dupr|rating|score|profile"), "dupr_self"),
    (_rx(r"serve|volley|dink|backhand|footwork|strategy"), "skills_advice"),
    (_rx(r"rule|legal|fault|violation|kitchen|non-volley"), "rules_explanation"),
    (_rx(r"paddle|racket|equipment|gear|shoes"), "equipment_recommendation"),
    (_rx(r"tournament|court|club|community|history"), "general_pickleball"),
)

# Applied in order to every outbound model response.
REDACTION_RULES: tuple[RedactionRule, ...] = (
    RedactionRule(re.compile(r"\b[A-Za-z0-9]{32,}\b"), "[REDACTED]"),
    RedactionRule(re.compile(r"\b[A-Za-z0-9]{20,}@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL_REDACTED]"),
    RedactionRule(re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN_REDACTED]"),
    RedactionRule(_rx(r"\b(admin|internal|private)/[^\s]+\b"), "[PATH_REDACTED]"),
)

PROMPT_INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    _rx(r"ignore.*previous.*instruction"),
    _rx(r"bypass.*security"),
    _rx(r"ignore.*safety"),
    _rx(r"act.*as.*different.*person"),
    _rx(r"pretend.*to.*be"),
)


def match_deny_rule(message: str, rules: tuple[DenyRule, ...] = DENY_RULES) -> DenyRule | None:
    for rule in rules:
        if rule.pattern.search(message):
            return rule
    return None


def detect_intents(message: str) -> list[str]:
    return [intent for pattern, intent in INTENT_RULES if pattern.search(message)]
