"""
Trend direction, spike/drop detection and resource exhaustion forecasts.
"""

from collections.abc import Sequence
from typing import NamedTuple, Optional

from .models import ItemHistory, Risk, TrendDirection, TrendPrediction
from .statistics import mean, std_dev, trend_slope, z_score

TREND_SLOPE_THRESHOLD = 0.01
FORECAST_HOURS = 24
MIN_FORECAST_POINTS = 10
UTILIZATION_MARKERS = ("util", "pused")


class TrendAnalysis(NamedTuple):
    direction: TrendDirection
    slope: float  # normalized by the mean when it is nonzero


class SpikeReport(NamedTuple):
    has_spike: bool
    has_drop: bool
    indices: list[int]


def analyze_trend(values: Sequence[float]) -> TrendAnalysis:
    if len(values) < 2:
        return TrendAnalysis(TrendDirection.STABLE, 0.0)

    slope = trend_slope(values)
    center = mean(values)
    normalized = slope / center if center != 0 else slope

    if normalized > TREND_SLOPE_THRESHOLD:
        direction = TrendDirection.INCREASING
    elif normalized < -TREND_SLOPE_THRESHOLD:
        direction = TrendDirection.DECREASING
    else:
        direction = TrendDirection.STABLE

    return TrendAnalysis(direction, normalized)


def detect_spike_or_drop(values: Sequence[float], threshold: float = 2.0) -> SpikeReport:
    """Flag abrupt changes between consecutive values

    Each first difference is scored against the mean/std of all differences.
    Flagged indices point at the value after the jump.
    """
    if len(values) < 3:
        return SpikeReport(False, False, [])

    diffs = [values[i] - values[i - 1] for i in range(1, len(values))]
    diff_mean = mean(diffs)
    diff_std = std_dev(diffs, diff_mean)

    indices = []
    has_spike = has_drop = False
    for i, diff in enumerate(diffs):
        z = z_score(diff, diff_mean, diff_std)
        if abs(z) > threshold:
            indices.append(i + 1)
            if z > 0:
                has_spike = True
            else:
                has_drop = True

    return SpikeReport(has_spike, has_drop, indices)


def is_utilization_metric(item_key: str) -> bool:
    return any(marker in item_key for marker in UTILIZATION_MARKERS)


def assess_exhaustion(
    host_id: str,
    host_name: str,
    metric: ItemHistory,
    threshold: float = 90.0,
) -> Optional[TrendPrediction]:
    """Forecast a percentage metric 24h ahead and rate the exhaustion risk

    Returns None when the history is too short to fit a trend.
    """
    values = [dp.value for dp in metric.history]
    if len(values) < MIN_FORECAST_POINTS:
        return None

    direction, slope = analyze_trend(values)
    current = metric.last_value
    predicted = current + slope * current * FORECAST_HOURS

    above = current >= threshold
    if predicted >= 100:
        risk = Risk.HIGH
        reason = "Predicted to reach 100% within 24 hours"
    elif above and direction is TrendDirection.INCREASING:
        risk = Risk.HIGH
        reason = f"Currently above {threshold:g}% threshold and still increasing"
    elif predicted >= threshold:
        risk = Risk.MEDIUM
        reason = f"Predicted to exceed {threshold:g}% threshold"
    elif above:
        risk = Risk.MEDIUM
        reason = f"Currently above {threshold:g}% threshold"
    else:
        risk = Risk.LOW
        reason = "Stable trend" if direction is TrendDirection.STABLE else "Within safe range"

    return TrendPrediction(
        host_id=host_id,
        host_name=host_name,
        item_key=metric.item_key,
        item_name=metric.item_name,
        current_value=current,
        trend=direction,
        slope=slope,
        predicted_value_24h=min(100.0, max(0.0, predicted)),
        risk=risk,
        reason=reason,
    )
