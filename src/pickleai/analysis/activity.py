"""Activity Pattern Analyzer: engagement scoring, trends and insights."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from pickleai.config import AnalyzerConfig
from pickleai.exceptions import PersistenceError
from pickleai.storage.kv_store import KeyValueStore
from pickleai.types import (
    ActivityAnalytics,
    ActivityPattern,
    ActivityRecord,
    ActivitySummary,
    ActivityType,
    Recommendation,
    Trend,
    UserInsight,
)
from pickleai.utils import json_dumps, json_loads, utcnow

TYPE_WEIGHTS: dict[ActivityType, float] = {
    ActivityType.MATCH: 0.9,
    ActivityType.GAMEPLAY: 0.85,
    ActivityType.SESSION: 0.8,
    ActivityType.CHAT: 0.7,
    ActivityType.INVITE: 0.7,
    ActivityType.RECOMMENDATION: 0.6,
}

METADATA_BONUSES: dict[str, float] = {
    "multiplayer": 0.1,
    "competitive": 0.05,
    "social": 0.1,
}

LONG_ACTIVITY_SECONDS = 600
LONG_ACTIVITY_BONUS = 0.15

_WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
_WEEKDAYS_LONG = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

InsightListener = Callable[[str, list[UserInsight]], None]


def engagement_score(
    activity_type: ActivityType,
    duration: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> float:
    """Deterministic engagement score in ``[0, 1]`` assigned at write time."""
    score = (0.5 + TYPE_WEIGHTS.get(activity_type, 0.0)) / 2
    if duration and duration > LONG_ACTIVITY_SECONDS:
        score += LONG_ACTIVITY_BONUS
    for flag, bonus in METADATA_BONUSES.items():
        if (metadata or {}).get(flag):
            score += bonus
    return max(0.0, min(1.0, score))


def classify_trend(recent: int, previous: int) -> Trend:
    # previous == 0 with any recent activity counts as increasing.
    if recent > previous * 1.2:
        return Trend.INCREASING
    if recent < previous * 0.8:
        return Trend.DECREASING
    return Trend.STABLE


class ActivityAnalyzer:
    """Append-only activity log per user with derived patterns and insights.

    Patterns and insights are recomputed synchronously on every write and
    replace the previous set for that user.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        config: AnalyzerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.config = config or AnalyzerConfig()
        self._clock = clock
        self._activities: dict[str, list[ActivityRecord]] = {}
        self._patterns: dict[str, list[ActivityPattern]] = {}
        self._insights: dict[str, list[UserInsight]] = {}
        self._listeners: list[InsightListener] = []

    def add_insight_listener(self, listener: InsightListener) -> None:
        self._listeners.append(listener)

    def record_activity(
        self,
        user_id: str,
        activity_type: ActivityType | str,
        action: str,
        duration: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityRecord:
        atype = ActivityType(activity_type)
        record = ActivityRecord(
            user_id=user_id,
            type=atype,
            action=action,
            timestamp=self._clock(),
            duration=duration,
            metadata=dict(metadata or {}),
            engagement_score=engagement_score(atype, duration, metadata),
        )
        self._records(user_id).append(record)
        self.analyze_patterns(user_id)
        self._persist(user_id)
        return record

    # --- Analysis ---

    def analyze_patterns(self, user_id: str, notify: bool = True) -> list[ActivityPattern]:
        records = self._records(user_id)
        if not records:
            return []

        now = self._clock()
        window = timedelta(days=self.config.trend_window_days)
        recent_start = now - window
        previous_start = now - 2 * window

        grouped: dict[ActivityType, list[ActivityRecord]] = {}
        for r in records:
            grouped.setdefault(r.type, []).append(r)

        patterns: list[ActivityPattern] = []
        for atype, items in grouped.items():
            frequency = len(items)
            avg_duration = sum(r.duration or 0 for r in items) / frequency
            recent = sum(1 for r in items if r.timestamp > recent_start)
            previous = sum(1 for r in items if previous_start < r.timestamp <= recent_start)
            patterns.append(ActivityPattern(
                user_id=user_id,
                type=atype,
                frequency=frequency,
                avg_duration=avg_duration,
                trend=classify_trend(recent, previous),
                last_occurrence=items[-1].timestamp,
            ))

        self._patterns[user_id] = patterns
        self.generate_insights(user_id, patterns, records, notify=notify)
        return patterns

    def generate_insights(
        self,
        user_id: str,
        patterns: list[ActivityPattern],
        records: list[ActivityRecord],
        notify: bool = True,
    ) -> list[UserInsight]:
        now = self._clock()
        insights: list[UserInsight] = []

        mean_engagement = sum(r.engagement_score for r in records) / len(records) if records else 0.0
        if mean_engagement > self.config.high_engagement_threshold:
            insights.append(UserInsight(
                user_id=user_id,
                insight_type="high_engagement",
                description="User shows high engagement with the app",
                confidence=min(1.0, mean_engagement),
                recommendation="Recommend premium features or tournaments",
                timestamp=now,
            ))

        growing = [p.type.value for p in patterns if p.trend is Trend.INCREASING]
        if growing:
            insights.append(UserInsight(
                user_id=user_id,
                insight_type="increasing_activity",
                description=f"User activity is increasing in {', '.join(growing)}",
                confidence=0.8,
                recommendation="Send engagement content related to their growing interests",
                timestamp=now,
            ))

        top = self._top_pattern(patterns)
        if top is not None:
            insights.append(UserInsight(
                user_id=user_id,
                insight_type="activity_preference",
                description=f"User's primary activity is {top.type.value} ({top.frequency} times)",
                confidence=0.9,
                recommendation=f"Create personalized content for {top.type.value}",
                timestamp=now,
            ))

        idle_days = self._days_since_last_activity(records, now)
        if idle_days > self.config.inactivity_days:
            insights.append(UserInsight(
                user_id=user_id,
                insight_type="user_inactivity",
                description=f"User inactive for {idle_days} days",
                confidence=1.0,
                recommendation="Send re-engagement notifications or special offers",
                timestamp=now,
            ))

        sessions = [r for r in records if r.type is ActivityType.SESSION]
        if sessions:
            avg_session = sum(r.duration or 0 for r in sessions) / len(sessions)
            if avg_session > self.config.long_session_seconds:
                insights.append(UserInsight(
                    user_id=user_id,
                    insight_type="long_sessions",
                    description="User engages in long gaming sessions",
                    confidence=0.85,
                    recommendation="Recommend breaks or hydration reminders",
                    timestamp=now,
                ))

        self._insights[user_id] = insights
        if not notify:
            return insights
        for listener in self._listeners:
            try:
                listener(user_id, list(insights))
            except Exception as e:
                logger.warning("Insight listener failed for {}: {}", user_id, e)
        return insights

    # --- Queries ---

    def get_patterns(self, user_id: str) -> list[ActivityPattern]:
        self._ensure_analyzed(user_id)
        return list(self._patterns.get(user_id, []))

    def get_insights(self, user_id: str) -> list[UserInsight]:
        self._ensure_analyzed(user_id)
        return list(self._insights.get(user_id, []))

    def get_activities(self, user_id: str) -> list[ActivityRecord]:
        return list(self._records(user_id))

    def get_user_analytics(self, user_id: str) -> ActivityAnalytics:
        self._ensure_analyzed(user_id)
        records = self._records(user_id)
        patterns = self._patterns.get(user_id, [])
        total = len(records)
        active_minutes = sum(r.duration or 0 for r in records) / 60
        engagement = sum(r.engagement_score for r in records) / total if total else 0.0
        top = self._top_pattern(patterns)
        return ActivityAnalytics(
            user_id=user_id,
            total_activities=total,
            active_minutes=round(active_minutes),
            engagement_score=round(engagement, 2),
            top_activity=top.type.value if top else "none",
            patterns=list(patterns),
            insights=list(self._insights.get(user_id, [])),
            generated_at=self._clock(),
        )

    def get_personalized_recommendations(self, user_id: str) -> list[Recommendation]:
        self._ensure_analyzed(user_id)
        return [
            Recommendation(
                recommendation=i.recommendation,
                reasoning=i.description,
                priority="high" if i.confidence > 0.8 else "medium",
            )
            for i in self._insights.get(user_id, [])
            if i.actionable and i.recommendation
        ]

    def get_activity_heatmap(self, user_id: str, start: datetime, end: datetime) -> dict[str, int]:
        """Count activities per ``{weekday}_{hour}`` within ``[start, end]``."""
        heatmap: Counter[str] = Counter()
        for r in self._records(user_id):
            if start <= r.timestamp <= end:
                heatmap[f"{_WEEKDAYS[r.timestamp.weekday()]}_{r.timestamp.hour}"] += 1
        return dict(heatmap)

    def get_activity_summary(self, user_id: str, days: int = 7) -> ActivitySummary:
        cutoff = self._clock() - timedelta(days=days)
        recent = [r for r in self._records(user_id) if r.timestamp > cutoff]
        total = len(recent)
        by_day = Counter(_WEEKDAYS_LONG[r.timestamp.weekday()] for r in recent)
        most_active = by_day.most_common(1)[0][0] if by_day else "N/A"
        return ActivitySummary(
            period=f"Last {days} days",
            total_activities=total,
            active_hours=round(sum(r.duration or 0 for r in recent) / 3600),
            avg_engagement=round(sum(r.engagement_score for r in recent) / total, 2) if total else 0.0,
            most_active_day=most_active,
        )

    def clear_user_activity(self, user_id: str) -> None:
        self._activities.pop(user_id, None)
        self._patterns.pop(user_id, None)
        self._insights.pop(user_id, None)
        try:
            self.kv.remove(f"activities_{user_id}")
        except PersistenceError as e:
            logger.warning("Failed to remove persisted activities for {}: {}", user_id, e)

    # --- Internals ---

    @staticmethod
    def _top_pattern(patterns: list[ActivityPattern]) -> ActivityPattern | None:
        top: ActivityPattern | None = None
        for p in patterns:
            if top is None or p.frequency > top.frequency:
                top = p
        return top

    @staticmethod
    def _days_since_last_activity(records: list[ActivityRecord], now: datetime) -> float:
        if not records:
            return float("inf")
        return (now - records[-1].timestamp).days

    def _ensure_analyzed(self, user_id: str) -> None:
        # Activity logs reloaded from storage carry no derived state yet.
        if user_id not in self._patterns and self._records(user_id):
            self.analyze_patterns(user_id, notify=False)

    def _records(self, user_id: str) -> list[ActivityRecord]:
        records = self._activities.get(user_id)
        if records is None:
            records = self._load(user_id)
            self._activities[user_id] = records
        return records

    def _load(self, user_id: str) -> list[ActivityRecord]:
        try:
            raw = self.kv.get(f"activities_{user_id}")
        except PersistenceError as e:
            logger.warning("Failed to load activities for {}: {}", user_id, e)
            return []
        if not raw:
            return []
        try:
            return [ActivityRecord.model_validate(item) for item in json_loads(raw)]
        except ValueError as e:
            logger.warning("Discarding unreadable activity log for {}: {}", user_id, e)
            return []

    def _persist(self, user_id: str) -> None:
        payload = json_dumps([r.model_dump(mode="json") for r in self._activities.get(user_id, [])])
        try:
            self.kv.set(f"activities_{user_id}", payload)
        except PersistenceError as e:
            logger.warning("Failed to persist activities for {}: {}", user_id, e)
