"""
Data models and configuration for the anomaly detection engine.
"""

import os
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional

HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


class Severity(str, Enum):
    """Ordinal classification of a single evaluation"""

    NORMAL = "normal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: "Severity") -> "Severity":
        """Return the more severe of self and other"""
        return self if self.rank >= other.rank else other


_SEVERITY_ORDER = [
    Severity.NORMAL,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class MetricDataPoint:
    """A single history sample from the metric source"""

    timestamp: int  # epoch seconds
    value: float


@dataclass
class MetricBaseline:
    """Learned statistical profile of one metric on one host"""

    host_id: str
    item_key: str
    item_name: str
    mean: float = 0.0
    std_dev: float = 0.0
    min_value: float = 0.0
    max_value: float = 0.0
    sample_count: int = 0
    last_updated: int = 0  # epoch ms
    hourly_pattern: Optional[list[float]] = None
    day_of_week_pattern: Optional[list[float]] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MetricBaseline":
        """Create from dictionary, dropping malformed patterns"""
        data = dict(data)
        data["hourly_pattern"] = _checked_pattern(data.get("hourly_pattern"), HOURS_PER_DAY)
        data["day_of_week_pattern"] = _checked_pattern(
            data.get("day_of_week_pattern"), DAYS_PER_WEEK
        )
        return cls(**data)


def _checked_pattern(pattern: Optional[list], size: int) -> Optional[list[float]]:
    if pattern is None or len(pattern) != size:
        return None
    return [float(v) for v in pattern]


@dataclass(frozen=True)
class AnomalyScore:
    """One (host, metric, timestamp) evaluation"""

    host_id: str
    host_name: str
    item_key: str
    item_name: str
    current_value: float
    expected_value: float
    deviation: float  # percent
    z_score: float
    anomaly_score: float  # 0-100
    severity: Severity
    timestamp: int  # epoch ms
    reason: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnomalyScore":
        return cls(**{**data, "severity": Severity(data["severity"])})


@dataclass
class AnomalyDetectionResult:
    """Per-host aggregate of one detection run"""

    host_id: str
    host_name: str
    total_score: int
    anomalies: list[AnomalyScore]
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "host_id": self.host_id,
            "host_name": self.host_name,
            "total_score": self.total_score,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnomalyDetectionResult":
        return cls(
            host_id=data["host_id"],
            host_name=data["host_name"],
            total_score=data["total_score"],
            anomalies=[AnomalyScore.from_dict(a) for a in data.get("anomalies", [])],
            timestamp=data["timestamp"],
        )


@dataclass
class AnomalySummary:
    """Fleet-wide view derived from per-host results"""

    total_hosts: int
    hosts_with_anomalies: int
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    top_anomalies: list[AnomalyScore]
    timestamp: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["top_anomalies"] = [a.to_dict() for a in self.top_anomalies]
        return data


@dataclass(frozen=True)
class TrendPrediction:
    """Short-horizon resource exhaustion forecast for one metric"""

    host_id: str
    host_name: str
    item_key: str
    item_name: str
    current_value: float
    trend: TrendDirection
    slope: float
    predicted_value_24h: float
    risk: Risk
    reason: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["trend"] = self.trend.value
        data["risk"] = self.risk.value
        return data


@dataclass(frozen=True)
class HostInfo:
    host_id: str
    host_name: str


@dataclass
class ItemHistory:
    """One monitored item of a host with its recent history"""

    item_key: str
    item_name: str
    last_value: float
    history: list[MetricDataPoint] = field(default_factory=list)


@dataclass
class HostMetrics:
    host_id: str
    host_name: str
    metrics: list[ItemHistory] = field(default_factory=list)


@dataclass(frozen=True)
class AnomalyConfig:
    """Detection tuning parameters"""

    z_score_threshold: float = 3.0
    min_sample_count: int = 30
    baseline_window_hours: int = 24
    detection_interval_seconds: int = 60
    enable_time_pattern: bool = True  # expected value from the hour-of-day pattern
    enable_day_pattern: bool = False  # expected value from the day-of-week pattern

    def with_overrides(self, **overrides) -> "AnomalyConfig":
        """Return a copy with the given fields replaced"""
        return replace(self, **overrides)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ServiceConfig:
    """Connection and runtime settings of the detection service"""

    # Zabbix settings. Local development defaults; production reads them from the environment
    zabbix_url: str = "http://localhost:8080"
    zabbix_user: str = "Admin"
    zabbix_password: str = "zabbix"
    zabbix_timeout_seconds: float = 10.0
    history_limit: int = 1000

    # Redis settings
    redis_host: Optional[str] = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    # Cache TTLs
    baseline_ttl_seconds: int = 60 * 60
    scores_ttl_seconds: int = 5 * 60

    # Orchestration
    batch_size: int = 5  # hosts processed concurrently
    host_timeout_seconds: float = 30.0
    cas_max_retries: int = 5

    # IANA zone name for hour/day buckets. None means the process local time.
    timezone: Optional[str] = None

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.host_timeout_seconds <= 0:
            raise ValueError("host_timeout_seconds must be > 0")

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Build settings from environment variables"""
        defaults = cls()
        return cls(
            zabbix_url=os.getenv("ZABBIX_URL", defaults.zabbix_url),
            zabbix_user=os.getenv("ZABBIX_USER", defaults.zabbix_user),
            zabbix_password=os.getenv("ZABBIX_PASSWORD", defaults.zabbix_password),
            redis_host=os.getenv("REDIS_HOST", defaults.redis_host),
            redis_port=int(os.getenv("REDIS_PORT", str(defaults.redis_port))),
            redis_db=int(os.getenv("REDIS_DB", str(defaults.redis_db))),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            batch_size=int(os.getenv("ANOMALY_BATCH_SIZE", str(defaults.batch_size))),
            host_timeout_seconds=float(
                os.getenv("ANOMALY_HOST_TIMEOUT", str(defaults.host_timeout_seconds))
            ),
            timezone=os.getenv("ANOMALY_TIMEZONE") or None,
        )
