"""
Anomaly Detection Engine

Statistical, self-learning anomaly detection for monitored hosts.

Architecture:
- Baselines: per-(host, metric) mean, spread and time-of-day pattern, blended
  with every new window of history and kept in the cache
- Scoring: Z-score of the current value against the baseline, classified into severities
- Aggregation: weighted host scores and a fleet-wide summary
- Forecasts: linear trend extrapolation of utilization metrics

Usage:
    python -m src.anomaly.detect --summary
"""

from .aggregator import aggregate_anomalies, create_anomaly_summary
from .baseline import BaselineStore, create_baseline
from .errors import AnomalyError, HostOutcome
from .models import (
    AnomalyConfig,
    AnomalyDetectionResult,
    AnomalyScore,
    AnomalySummary,
    MetricBaseline,
    MetricDataPoint,
    ServiceConfig,
    Severity,
    TrendPrediction,
)
from .scorer import analyze_value
from .service import AnomalyService
from .source import MetricSource, ZabbixSource
from .trend import analyze_trend, detect_spike_or_drop

__all__ = [
    "AnomalyConfig",
    "AnomalyDetectionResult",
    "AnomalyError",
    "AnomalyScore",
    "AnomalyService",
    "AnomalySummary",
    "BaselineStore",
    "HostOutcome",
    "MetricBaseline",
    "MetricDataPoint",
    "MetricSource",
    "ServiceConfig",
    "Severity",
    "TrendPrediction",
    "ZabbixSource",
    "aggregate_anomalies",
    "analyze_trend",
    "analyze_value",
    "create_anomaly_summary",
    "create_baseline",
    "detect_spike_or_drop",
]
