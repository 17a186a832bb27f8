from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pickleai.analysis.activity import ActivityAnalyzer, classify_trend, engagement_score
from pickleai.storage.kv_store import MemoryKVStore
from pickleai.types import ActivityType, Trend

# 2024-01-01 is a Monday.
BASE = datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = BASE) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _analyzer(clock=None, kv=None) -> ActivityAnalyzer:
    return ActivityAnalyzer(kv or MemoryKVStore(), clock=clock or _Clock())


def test_engagement_score_weights_and_bonuses():
    assert engagement_score(ActivityType.RECOMMENDATION) == pytest.approx(0.55)
    assert engagement_score(ActivityType.SESSION) == pytest.approx(0.65)
    assert engagement_score(ActivityType.SESSION, duration=601) == pytest.approx(0.80)
    assert engagement_score(ActivityType.SESSION, duration=600) == pytest.approx(0.65)
    assert engagement_score(ActivityType.CHAT, metadata={"social": True}) == pytest.approx(0.70)
    maxed = engagement_score(
        ActivityType.MATCH,
        duration=3600,
        metadata={"multiplayer": True, "competitive": True, "social": True},
    )
    assert maxed == 1.0


def test_classify_trend_thresholds():
    assert classify_trend(10, 5) is Trend.INCREASING
    assert classify_trend(6, 5) is Trend.STABLE
    assert classify_trend(3, 5) is Trend.DECREASING
    assert classify_trend(1, 0) is Trend.INCREASING
    assert classify_trend(0, 0) is Trend.STABLE


def test_recent_week_doubling_is_increasing_trend():
    clock = _Clock(BASE - timedelta(days=8))
    analyzer = _analyzer(clock)
    for _ in range(5):
        analyzer.record_activity("u1", ActivityType.MATCH, "played")
    clock.now = BASE - timedelta(days=1)
    for _ in range(10):
        analyzer.record_activity("u1", ActivityType.MATCH, "played")
    clock.now = BASE

    patterns = analyzer.analyze_patterns("u1")
    assert len(patterns) == 1
    assert patterns[0].frequency == 15
    assert patterns[0].trend is Trend.INCREASING


def test_pattern_frequency_and_average_duration():
    analyzer = _analyzer()
    analyzer.record_activity("u1", ActivityType.SESSION, "joined", duration=600)
    analyzer.record_activity("u1", ActivityType.SESSION, "joined")
    analyzer.record_activity("u1", ActivityType.INVITE, "sent")

    by_type = {p.type: p for p in analyzer.get_patterns("u1")}
    assert by_type[ActivityType.SESSION].frequency == 2
    assert by_type[ActivityType.SESSION].avg_duration == 300
    assert by_type[ActivityType.INVITE].frequency == 1


def test_insights_are_replaced_on_each_pass():
    analyzer = _analyzer()
    analyzer.record_activity("u1", ActivityType.SESSION, "marathon", duration=4000)
    types = {i.insight_type for i in analyzer.get_insights("u1")}
    assert "long_sessions" in types

    analyzer.record_activity("u1", ActivityType.SESSION, "quick hit", duration=100)
    types = {i.insight_type for i in analyzer.get_insights("u1")}
    assert "long_sessions" not in types
    assert "activity_preference" in types


def test_high_engagement_and_preference_tie_goes_to_first_seen():
    analyzer = _analyzer()
    analyzer.record_activity("u1", ActivityType.GAMEPLAY, "rally", metadata={"multiplayer": True})
    analyzer.record_activity("u1", ActivityType.MATCH, "won", metadata={"competitive": True, "social": True})

    insights = {i.insight_type: i for i in analyzer.get_insights("u1")}
    assert "high_engagement" in insights
    assert insights["high_engagement"].confidence > 0.7
    assert insights["activity_preference"].description.startswith("User's primary activity is gameplay")
    assert insights["activity_preference"].confidence == 0.9


def test_inactivity_insight_after_a_quiet_week():
    clock = _Clock(BASE - timedelta(days=10))
    analyzer = _analyzer(clock)
    analyzer.record_activity("u1", ActivityType.MATCH, "played")
    clock.now = BASE
    analyzer.analyze_patterns("u1")

    insights = {i.insight_type: i for i in analyzer.get_insights("u1")}
    assert insights["user_inactivity"].confidence == 1.0
    assert "10 days" in insights["user_inactivity"].description


def test_heatmap_uses_weekday_hour_keys_and_inclusive_range():
    clock = _Clock()
    analyzer = _analyzer(clock)
    analyzer.record_activity("u1", ActivityType.MATCH, "played")
    analyzer.record_activity("u1", ActivityType.CHAT, "asked")
    clock.now = BASE + timedelta(days=1, hours=2)
    analyzer.record_activity("u1", ActivityType.SESSION, "joined")

    heatmap = analyzer.get_activity_heatmap("u1", BASE, BASE)
    assert heatmap == {"Mon_13": 2}

    heatmap = analyzer.get_activity_heatmap("u1", BASE, BASE + timedelta(days=2))
    assert heatmap == {"Mon_13": 2, "Tue_15": 1}


def test_analytics_recommendations_and_summary():
    analyzer = _analyzer()
    analyzer.record_activity("u1", ActivityType.MATCH, "played", duration=1800)
    analyzer.record_activity("u1", ActivityType.MATCH, "played", duration=1800)

    analytics = analyzer.get_user_analytics("u1")
    assert analytics.total_activities == 2
    assert analytics.active_minutes == 60
    assert analytics.top_activity == "match"

    recs = analyzer.get_personalized_recommendations("u1")
    by_priority = {r.priority for r in recs}
    assert "high" in by_priority
    assert all(r.recommendation for r in recs)

    summary = analyzer.get_activity_summary("u1", days=7)
    assert summary.total_activities == 2
    assert summary.active_hours == 1
    assert summary.most_active_day == "Monday"


def test_listener_receives_each_insight_pass():
    seen: list[tuple[str, list[str]]] = []
    analyzer = _analyzer()
    analyzer.add_insight_listener(lambda uid, insights: seen.append((uid, [i.insight_type for i in insights])))
    analyzer.record_activity("u1", ActivityType.INVITE, "sent")
    analyzer.record_activity("u1", ActivityType.INVITE, "sent")

    assert len(seen) == 2
    assert seen[-1][0] == "u1"
    assert "activity_preference" in seen[-1][1]


def test_activity_log_persists_and_clears():
    kv = MemoryKVStore()
    analyzer = _analyzer(kv=kv)
    analyzer.record_activity("u1", ActivityType.CHAT, "asked")

    reloaded = _analyzer(kv=kv)
    assert [r.action for r in reloaded.get_activities("u1")] == ["asked"]

    reloaded.clear_user_activity("u1")
    assert reloaded.get_activities("u1") == []
    assert kv.get("activities_u1") is None


def test_reloaded_log_is_analyzed_on_first_query():
    kv = MemoryKVStore()
    analyzer = _analyzer(kv=kv)
    for _ in range(3):
        analyzer.record_activity("u1", ActivityType.MATCH, "played", duration=1800)

    seen: list[str] = []
    reloaded = _analyzer(kv=kv)
    reloaded.add_insight_listener(lambda uid, insights: seen.append(uid))

    analytics = reloaded.get_user_analytics("u1")
    assert analytics.total_activities == 3
    assert analytics.top_activity == "match"
    assert [p.frequency for p in reloaded.get_patterns("u1")] == [3]
    assert any(i.insight_type == "activity_preference" for i in reloaded.get_insights("u1"))
    assert reloaded.get_personalized_recommendations("u1")
    assert seen == []
    assert _analyzer(kv=kv).get_patterns("nobody") == []
