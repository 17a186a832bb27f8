"""Activity pattern analysis."""

from pickleai.analysis.activity import ActivityAnalyzer, classify_trend, engagement_score

__all__ = ["ActivityAnalyzer", "classify_trend", "engagement_score"]
