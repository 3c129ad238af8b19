"""
Baseline learning and persistence.

A baseline is rebuilt from each window of history and blended into the stored
one with a fixed weight for the new batch, so it adapts while keeping memory of
earlier windows. The store persists baselines in the cache with a TTL; an
expired baseline is simply learned again from scratch.
"""

from collections.abc import Callable, Sequence
from datetime import datetime, tzinfo
from typing import Optional

import pandas as pd
import structlog

from src.core.cache import Cache, CacheError

from .errors import CacheUnavailableError
from .models import (
    DAYS_PER_WEEK,
    HOURS_PER_DAY,
    MetricBaseline,
    MetricDataPoint,
    now_ms,
)
from .statistics import mean, std_dev

logger = structlog.get_logger(__name__)

BLEND_ALPHA = 0.3  # weight of the newest batch when merging


def create_baseline(
    host_id: str,
    item_key: str,
    item_name: str,
    data_points: Sequence[MetricDataPoint],
    existing: Optional[MetricBaseline] = None,
    tz: Optional[tzinfo] = None,
) -> MetricBaseline:
    """Build a baseline from a window of history, merging into `existing`

    Args:
        host_id: Host identifier
        item_key: Metric key
        item_name: Human-readable metric name
        data_points: Raw history window
        existing: Previously stored baseline, if any
        tz: Zone used for hour/day buckets. None means process local time.

    Returns:
        A new MetricBaseline. `existing` is never mutated.
    """
    if len(data_points) == 0:
        if existing is not None:
            return existing
        return MetricBaseline(
            host_id=host_id,
            item_key=item_key,
            item_name=item_name,
            last_updated=now_ms(),
        )

    frame = _to_frame(data_points, tz)
    values = frame["value"].tolist()

    batch_mean = mean(values)
    batch_std = std_dev(values, batch_mean)
    batch_min = min(values)
    batch_max = max(values)
    hourly = _bucket_means(frame, "hour", HOURS_PER_DAY, batch_mean)
    daily = _bucket_means(frame, "weekday", DAYS_PER_WEEK, batch_mean)

    if existing is not None and existing.sample_count > 0:
        return MetricBaseline(
            host_id=host_id,
            item_key=item_key,
            item_name=item_name,
            mean=_blend(batch_mean, existing.mean),
            std_dev=_blend(batch_std, existing.std_dev),
            min_value=min(batch_min, existing.min_value),
            max_value=max(batch_max, existing.max_value),
            sample_count=existing.sample_count + len(values),
            last_updated=now_ms(),
            hourly_pattern=_blend_pattern(hourly, existing.hourly_pattern),
            day_of_week_pattern=_blend_pattern(daily, existing.day_of_week_pattern),
        )

    return MetricBaseline(
        host_id=host_id,
        item_key=item_key,
        item_name=item_name,
        mean=batch_mean,
        std_dev=batch_std,
        min_value=batch_min,
        max_value=batch_max,
        sample_count=len(values),
        last_updated=now_ms(),
        hourly_pattern=hourly,
        day_of_week_pattern=daily,
    )


def _to_frame(data_points: Sequence[MetricDataPoint], tz: Optional[tzinfo]) -> pd.DataFrame:
    stamps = [datetime.fromtimestamp(dp.timestamp, tz) for dp in data_points]
    return pd.DataFrame(
        {
            "value": [float(dp.value) for dp in data_points],
            "hour": [ts.hour for ts in stamps],
            "weekday": [ts.weekday() for ts in stamps],
        }
    )


def _bucket_means(frame: pd.DataFrame, column: str, size: int, fallback: float) -> list[float]:
    """Average value per bucket; empty buckets take `fallback`"""
    grouped = frame.groupby(column)["value"].mean()
    return [float(grouped.get(i, fallback)) for i in range(size)]


def _blend(new: float, old: float) -> float:
    return BLEND_ALPHA * new + (1 - BLEND_ALPHA) * old


def _blend_pattern(new: list[float], old: Optional[list[float]]) -> list[float]:
    if old is None or len(old) != len(new):
        # Nothing to blend with; equivalent to blending each bucket with itself
        return list(new)
    return [_blend(n, o) for n, o in zip(new, old)]


class BaselineStore:
    """Cache-backed persistence for per-(host, metric) baselines"""

    def __init__(self, cache: Cache, ttl_seconds: int = 3600, max_retries: int = 5):
        self.cache = cache
        self.ttl = ttl_seconds
        self.max_retries = max_retries

    def get(self, host_id: str, item_key: str) -> Optional[MetricBaseline]:
        """Load a baseline. A miss or undecodable entry returns None"""
        data = self.cache.get(self.make_key(host_id, item_key))
        if data is None:
            return None
        try:
            return MetricBaseline.from_dict(data)
        except (TypeError, KeyError) as e:
            logger.warning(
                "Discarding malformed baseline", host_id=host_id, item_key=item_key, error=str(e)
            )
            return None

    def save(self, baseline: MetricBaseline) -> bool:
        return self.cache.set(
            self.make_key(baseline.host_id, baseline.item_key), baseline.to_dict(), self.ttl
        )

    def update(
        self,
        host_id: str,
        item_key: str,
        fn: Callable[[Optional[MetricBaseline]], MetricBaseline],
    ) -> MetricBaseline:
        """Atomically replace a baseline with `fn(current)`

        Concurrent detections of the same key are resolved by the cache's
        compare-and-swap: a writer that lost the race recomputes from the winner's value.

        Raises:
            CacheUnavailableError: If the cache failed or stayed contended
        """
        key = self.make_key(host_id, item_key)

        def apply(raw: Optional[dict]) -> dict:
            current = None
            if raw is not None:
                try:
                    current = MetricBaseline.from_dict(raw)
                except (TypeError, KeyError) as e:
                    logger.warning("Discarding malformed baseline", key=key, error=str(e))
            return fn(current).to_dict()

        try:
            data = self.cache.update(key, apply, self.ttl, max_retries=self.max_retries)
        except CacheError as e:
            raise CacheUnavailableError(f"Baseline update failed for {key}: {e}") from e

        return MetricBaseline.from_dict(data)

    @staticmethod
    def make_key(host_id: str, item_key: str) -> str:
        return f"anomaly:baseline:{host_id}:{item_key}"
