"""
Scores a current metric value against its learned baseline.
"""

from datetime import datetime, tzinfo
from typing import Optional

from .models import AnomalyConfig, AnomalyScore, MetricBaseline, Severity, now_ms
from .statistics import z_score

MAX_SCORE_Z = 6.0  # |z| at which the anomaly score saturates at 100
STD_FLOOR_RATIO = 0.1  # minimum std dev as a fraction of the mean
MAX_BREACH_FACTOR = 1.5


def expected_value(
    baseline: MetricBaseline,
    config: AnomalyConfig,
    now: datetime,
) -> float:
    """Value the baseline predicts for `now`"""
    if config.enable_time_pattern and baseline.hourly_pattern:
        return baseline.hourly_pattern[now.hour]
    if config.enable_day_pattern and baseline.day_of_week_pattern:
        return baseline.day_of_week_pattern[now.weekday()]
    return baseline.mean


def classify(abs_z: float, threshold: float) -> Severity:
    """Map |z| to a severity. Thresholds are checked from the top down."""
    if abs_z >= 5:
        return Severity.CRITICAL
    if abs_z >= 4:
        return Severity.HIGH
    if abs_z >= threshold:
        return Severity.MEDIUM
    if abs_z >= 2:
        return Severity.LOW
    return Severity.NORMAL


_REASONS = {
    Severity.CRITICAL: "Extreme deviation",
    Severity.HIGH: "High deviation",
    Severity.MEDIUM: "Moderate deviation",
    Severity.LOW: "Slight deviation",
}


def analyze_value(
    value: float,
    baseline: MetricBaseline,
    config: Optional[AnomalyConfig] = None,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> AnomalyScore:
    """Evaluate one value against its baseline

    Args:
        value: Current metric value
        baseline: Learned baseline for the metric
        config: Detection settings (defaults apply when omitted)
        now: Evaluation time, used to pick the hour/day bucket
        tz: Zone for `now` when it is not given. None means process local time.

    Returns:
        AnomalyScore with an empty host_name; the caller fills it in
    """
    config = config or AnomalyConfig()
    now = now or datetime.now(tz)

    expected = expected_value(baseline, config, now)
    effective_std = max(baseline.std_dev, baseline.mean * STD_FLOOR_RATIO)

    z = z_score(value, expected, effective_std)
    abs_z = abs(z)
    deviation = (value - expected) / expected * 100 if expected != 0 else value
    score = min(100.0, max(0.0, abs_z / MAX_SCORE_Z * 100))

    severity = classify(abs_z, config.z_score_threshold)
    if severity is Severity.NORMAL:
        reason = "Normal range"
    else:
        reason = f"{_REASONS[severity]}: {deviation:.1f}% from expected"

    if value > baseline.max_value * MAX_BREACH_FACTOR:
        severity = severity.at_least(Severity.MEDIUM)
        if baseline.max_value > 0:
            excess = (value / baseline.max_value - 1) * 100
            reason = f"Value exceeds historical maximum by {excess:.1f}%"
        else:
            reason = f"Value exceeds historical maximum of {baseline.max_value:g}"

    return AnomalyScore(
        host_id=baseline.host_id,
        host_name="",
        item_key=baseline.item_key,
        item_name=baseline.item_name,
        current_value=value,
        expected_value=expected,
        deviation=deviation,
        z_score=z,
        anomaly_score=score,
        severity=severity,
        timestamp=now_ms(),
        reason=reason,
    )
