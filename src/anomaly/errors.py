"""
Error kinds and the explicit per-host outcome type.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import AnomalyDetectionResult


class AnomalyError(str, Enum):
    SOURCE_UNAVAILABLE = "source_unavailable"
    INSUFFICIENT_DATA = "insufficient_data"
    CACHE_ERROR = "cache_error"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


class AnomalyEngineError(Exception):
    """Base class for engine failures"""

    kind = AnomalyError.UNEXPECTED


class SourceUnavailableError(AnomalyEngineError):
    """The metric source could not be reached or returned an error"""

    kind = AnomalyError.SOURCE_UNAVAILABLE


class CacheUnavailableError(AnomalyEngineError):
    """The baseline store could not be read or written"""

    kind = AnomalyError.CACHE_ERROR


@dataclass(frozen=True)
class HostOutcome:
    """Result of one host detection: either a result or the reason there is none"""

    host_id: str
    result: Optional[AnomalyDetectionResult] = None
    error: Optional[AnomalyError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None
