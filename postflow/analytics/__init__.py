"""Analytics: metric collection, engagement scoring, calibration feedback."""

from postflow.analytics.collector import AnalyticsCollector, CollectionReport, MetricPush
from postflow.analytics.reconciliation import ReconciliationEngine, ReconciliationReport
from postflow.analytics.scoring import EngagementScorer, calibrated_score, normalize_engagement

__all__ = [
    "AnalyticsCollector",
    "CollectionReport",
    "EngagementScorer",
    "MetricPush",
    "ReconciliationEngine",
    "ReconciliationReport",
    "calibrated_score",
    "normalize_engagement",
]
