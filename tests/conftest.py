"""
Pytest configuration and shared fixtures.
"""

import threading
import time

import pytest

from src.anomaly.errors import SourceUnavailableError
from src.anomaly.models import (
    AnomalyConfig,
    HostInfo,
    ItemHistory,
    MetricBaseline,
    MetricDataPoint,
    ServiceConfig,
)
from src.anomaly.source import MetricSource
from src.core.cache import MemoryCache

BASE_TS = 1_700_000_000  # 2023-11-14T22:13:20Z


def _make_points(values, start=BASE_TS, step=60):
    """Build history points spaced `step` seconds apart"""
    return [MetricDataPoint(timestamp=start + i * step, value=v) for i, v in enumerate(values)]


def _make_item(key, values, last_value=None, name=None):
    return ItemHistory(
        item_key=key,
        item_name=name or key,
        last_value=values[-1] if last_value is None else last_value,
        history=_make_points(values),
    )


class FakeSource(MetricSource):
    """In-memory metric source with optional failures and delays"""

    def __init__(self, hosts=None, delay=0.0):
        self.hosts: dict[str, tuple[str, list[ItemHistory]]] = hosts or {}
        self.delay = delay
        self.failing: set[str] = set()
        self.slow: dict[str, float] = {}
        self.closed = False

        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def add_host(self, host_id, host_name, metrics):
        self.hosts[host_id] = (host_name, metrics)

    def list_enabled_hosts(self):
        return [HostInfo(host_id=h, host_name=name) for h, (name, _) in self.hosts.items()]

    def get_host(self, host_id):
        if host_id in self.failing:
            raise SourceUnavailableError(f"{host_id} unreachable")
        if host_id not in self.hosts:
            return None
        return HostInfo(host_id=host_id, host_name=self.hosts[host_id][0])

    def get_history(self, host_id, item_keys, time_from):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.slow.get(host_id, self.delay))
            return list(self.hosts[host_id][1])
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self):
        self.closed = True


@pytest.fixture
def anomaly_config():
    """Detection settings independent of the wall clock hour."""
    return AnomalyConfig(enable_time_pattern=False)


@pytest.fixture
def service_config():
    return ServiceConfig(
        redis_host=None,
        batch_size=5,
        host_timeout_seconds=5.0,
        timezone="UTC",
    )


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def steady_baseline():
    """Baseline with mean 50 and std dev 5."""
    return MetricBaseline(
        host_id="10084",
        item_key="system.cpu.util",
        item_name="CPU Utilization",
        mean=50.0,
        std_dev=5.0,
        min_value=35.0,
        max_value=65.0,
        sample_count=100,
        last_updated=0,
    )


@pytest.fixture
def make_points():
    """Factory for evenly spaced history points."""
    return _make_points


@pytest.fixture
def make_item():
    """Factory for an ItemHistory built from raw values."""
    return _make_item
