"""Core data model for the PickleAI gateway."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from pickleai.utils import new_id, utcnow


class ContextKind(str, Enum):
    CONVERSATION = "conversation"
    PREFERENCE = "preference"
    ACTIVITY = "activity"
    INSIGHT = "insight"


class ActivityType(str, Enum):
    SESSION = "session"
    MATCH = "match"
    INVITE = "invite"
    CHAT = "chat"
    RECOMMENDATION = "recommendation"
    GAMEPLAY = "gameplay"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class RequestPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# --- Context store ---

class ContextEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ctx"))
    user_id: str
    kind: ContextKind
    content: str
    embedding: list[float] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    tags: set[str] = Field(default_factory=set)
    metadata: dict[str, Any] = Field(default_factory=dict)
    relevance_score: float = 1.0


class SemanticMatch(BaseModel):
    entry: ContextEntry
    similarity_score: float


class ContextFilters(BaseModel):
    kind: ContextKind | None = None
    tags: list[str] = Field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None


class UserProfile(BaseModel):
    user_id: str
    preferences: dict[str, Any] = Field(default_factory=dict)
    activity_log: list[ContextEntry] = Field(default_factory=list)
    conversation_history: list[ContextEntry] = Field(default_factory=list)
    insights: dict[str, str] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)


# --- Activity analysis ---

class ActivityRecord(BaseModel):
    id: str = Field(default_factory=lambda: new_id("act"))
    user_id: str
    type: ActivityType
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
    duration: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    engagement_score: float = 0.0


class ActivityPattern(BaseModel):
    user_id: str
    type: ActivityType
    frequency: int
    avg_duration: float
    trend: Trend
    last_occurrence: datetime


class UserInsight(BaseModel):
    user_id: str
    insight_type: str
    description: str
    confidence: float
    actionable: bool = True
    recommendation: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class ActivityAnalytics(BaseModel):
    user_id: str
    total_activities: int
    active_minutes: int
    engagement_score: float
    top_activity: str
    patterns: list[ActivityPattern] = Field(default_factory=list)
    insights: list[UserInsight] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class ActivitySummary(BaseModel):
    period: str
    total_activities: int
    active_hours: int
    avg_engagement: float
    most_active_day: str


class Recommendation(BaseModel):
    recommendation: str
    reasoning: str
    priority: str  # high | medium


# --- Optimizer ---

class CacheEntry(BaseModel):
    key: str
    value: Any = None
    expires_at: float


class UsageStats(BaseModel):
    request_count: dict[str, int] = Field(default_factory=dict)
    monthly_cost_estimate: float = 0.0
    projected_monthly_cost: float = 0.0
    cache_hits: int = 0
    total_requests: int = 0
    cache_hit_ratio: float = 0.0
    window_started_at: float = 0.0


# --- Gateway ---

class RateLimitState(BaseModel):
    user_id: str
    requests_this_window: int = 0
    requests_today: int = 0
    minute_window_start: float = 0.0
    day_window_start: float = 0.0
    cooldown_until: float | None = None
    last_violation_at: float | None = None


class SecurityResult(BaseModel):
    allowed: bool
    reason: str | None = None
    suggested_alternative: str | None = None
    rate_limited: bool | None = None
    cooldown_remaining: int | None = None
    category: str | None = None
    intents: list[str] = Field(default_factory=list)

    @property
    def is_policy_violation(self) -> bool:
        return not self.allowed and not self.rate_limited


# --- Chat ---

class ChatMessage(BaseModel):
    role: str
    content: str


class SecurityInfo(BaseModel):
    blocked: bool
    reason: str | None = None
    rateLimited: bool | None = None
    cooldownRemaining: int | None = None


class ChatReply(BaseModel):
    response: str
    security: SecurityInfo


# --- Web content ---

class WebLink(BaseModel):
    text: str
    url: str
    type: str  # internal | external | resource


class WebContent(BaseModel):
    url: str
    title: str = ""
    description: str = ""
    content: str = ""
    summary: str = ""
    image_url: str | None = None
    publish_date: str | None = None
    author: str | None = None
    live_links: list[WebLink] = Field(default_factory=list)
    retrieved_at: datetime = Field(default_factory=utcnow)
    is_accessible: bool = True


class ContentSummary(BaseModel):
    original_length: int
    summary_length: int
    key_points: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    sentiment: str = "neutral"
