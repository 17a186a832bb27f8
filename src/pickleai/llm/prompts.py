"""System prompt assembly for the PickleAI assistant."""

from __future__ import annotations

from typing import Any

BASE_SYSTEM_PROMPT = """You are PickleAI, a concise and knowledgeable pickleball assistant for Net Gains. Your scope is limited to:
• explainer help for app settings and how features work
• answers from the official Support Knowledge Base
• general pickleball tips at a basic level
• DUPR lookups for the signed-in user's own profile (or a server-approved profile)

RESPONSE STYLE:
- Be direct and actionable
- Keep responses under 150 words unless explaining complex rules
- Use bullet points for multiple tips
- Be encouraging and supportive
- Focus on practical, implementable advice

EXPERTISE AREAS:
- Skills & Techniques: Serve, dinking, volleys, footwork, strategy
- Rules & Regulations: Official rules, common violations, tournament rules
- Equipment: Paddles, shoes, gear recommendations
- General: Tournaments, courts, community, fitness benefits

For Denial: Use friendly two-sentence refusals that gently pivot to helpful, in-scope options. Keep it short and actionable."""

CONTEXT_LABELS = {
    "experience": "Experience",
    "budget": "Budget",
    "playFrequency": "Play frequency",
    "playStyle": "Play style",
    "physicalConsiderations": "Physical",
    "goals": "Goals",
    "duprScore": "DUPR",
    "playerName": "Player",
}


def _context_line(key: str, value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value)
    return f"{CONTEXT_LABELS.get(key, key)}: {value}"


def format_user_context(user_context: dict[str, Any] | None) -> str:
    """Render known profile fields, skipping empty and ``"unknown"`` values."""
    lines = [
        _context_line(k, v)
        for k, v in (user_context or {}).items()
        if v and v != "unknown"
    ]
    return "\n".join(lines)


def build_system_prompt(user_context: dict[str, Any] | None = None) -> str:
    if not user_context:
        return BASE_SYSTEM_PROMPT
    return (
        f"{BASE_SYSTEM_PROMPT}\n\n"
        f"USER CONTEXT:\n{format_user_context(user_context)}\n\n"
        "Use this information to provide personalized, actionable advice. "
        "Keep responses concise and practical."
    )
