"""
Pure statistical helpers used by the baseline learner, scorer and trend analyzer.

All functions are total: empty or short inputs return neutral values instead of raising.
"""

import math
from collections.abc import Sequence
from typing import NamedTuple, Optional

import numpy as np


class IQRBounds(NamedTuple):
    lower: float
    upper: float


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def std_dev(values: Sequence[float], mean_override: Optional[float] = None) -> float:
    """Population standard deviation, 0 for fewer than 2 samples"""
    if len(values) < 2:
        return 0.0
    center = mean(values) if mean_override is None else mean_override
    arr = np.asarray(values, dtype=float)
    return float(math.sqrt(np.mean((arr - center) ** 2)))


def z_score(value: float, mean: float, std_dev: float) -> float:
    # Zero variance reports every value as 0 sigma away
    if std_dev == 0:
        return 0.0
    return (value - mean) / std_dev


def moving_average(values: Sequence[float], window_size: int) -> list[float]:
    if window_size < 1 or len(values) < window_size:
        return list(values)
    arr = np.asarray(values, dtype=float)
    kernel = np.ones(window_size) / window_size
    return np.convolve(arr, kernel, mode="valid").tolist()


def ema(values: Sequence[float], alpha: float = 0.2) -> list[float]:
    """Exponential moving average seeded with the first value"""
    if len(values) == 0:
        return []
    result = [float(values[0])]
    for value in values[1:]:
        result.append(alpha * value + (1 - alpha) * result[-1])
    return result


def iqr_bounds(values: Sequence[float]) -> IQRBounds:
    """Tukey fences around the interquartile range"""
    if len(values) == 0:
        return IQRBounds(0.0, 0.0)
    ordered = sorted(values)
    n = len(ordered)
    q1 = ordered[math.floor(n * 0.25)]
    q3 = ordered[math.floor(n * 0.75)]
    iqr = q3 - q1
    return IQRBounds(lower=q1 - 1.5 * iqr, upper=q3 + 1.5 * iqr)


def trend_slope(values: Sequence[float]) -> float:
    """Ordinary least squares slope of values against their index"""
    n = len(values)
    if n < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    x = np.arange(n, dtype=float)
    x_centered = x - x.mean()
    denominator = float(np.sum(x_centered**2))
    if denominator == 0:
        return 0.0
    return float(np.sum(x_centered * (y - y.mean())) / denominator)
