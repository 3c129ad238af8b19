"""
Host- and fleet-level aggregation of anomaly scores.
"""

import math
from collections.abc import Sequence
from dataclasses import replace

from .models import (
    AnomalyDetectionResult,
    AnomalyScore,
    AnomalySummary,
    Severity,
    now_ms,
)

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.NORMAL: 0,
}

TOP_ANOMALIES = 10


def aggregate_anomalies(
    host_id: str,
    host_name: str,
    scores: Sequence[AnomalyScore],
) -> AnomalyDetectionResult:
    """Combine per-metric scores into one host result

    `total_score` is the severity-weighted average of all scores. Normal scores
    carry weight 0, so a host with only normal metrics scores 0.
    """
    weighted_sum = 0.0
    total_weight = 0
    for score in scores:
        weight = SEVERITY_WEIGHTS[score.severity]
        weighted_sum += score.anomaly_score * weight
        total_weight += weight

    total = weighted_sum / total_weight if total_weight > 0 else 0.0

    return AnomalyDetectionResult(
        host_id=host_id,
        host_name=host_name,
        total_score=math.floor(total + 0.5),
        anomalies=[
            replace(score, host_name=host_name)
            for score in scores
            if score.severity is not Severity.NORMAL
        ],
        timestamp=now_ms(),
    )


def create_anomaly_summary(results: Sequence[AnomalyDetectionResult]) -> AnomalySummary:
    counts = {severity: 0 for severity in Severity}
    flattened: list[AnomalyScore] = []

    for result in results:
        for anomaly in result.anomalies:
            flattened.append(anomaly)
            counts[anomaly.severity] += 1

    top = sorted(flattened, key=lambda a: a.anomaly_score, reverse=True)[:TOP_ANOMALIES]

    return AnomalySummary(
        total_hosts=len(results),
        hosts_with_anomalies=sum(1 for r in results if r.anomalies),
        critical_count=counts[Severity.CRITICAL],
        high_count=counts[Severity.HIGH],
        medium_count=counts[Severity.MEDIUM],
        low_count=counts[Severity.LOW],
        top_anomalies=top,
        timestamp=now_ms(),
    )
