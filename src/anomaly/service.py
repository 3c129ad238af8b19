"""
Detection orchestrator.

Collects metric history per host, updates baselines, scores current values and
aggregates the results. Hosts of a fleet run are processed in fixed-size
batches on a thread pool, each bounded by a timeout, so one unreachable host
cannot stall its siblings.
"""

import math
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from src.core.cache import Cache, build_cache

from .aggregator import aggregate_anomalies, create_anomaly_summary
from .baseline import BaselineStore, create_baseline
from .errors import AnomalyEngineError, AnomalyError, HostOutcome
from .models import (
    AnomalyConfig,
    AnomalyDetectionResult,
    AnomalyScore,
    AnomalySummary,
    HostMetrics,
    ItemHistory,
    Risk,
    ServiceConfig,
    Severity,
    TrendPrediction,
)
from .scorer import analyze_value
from .source import MONITORED_KEYS, MetricSource, ZabbixSource
from .trend import FORECAST_HOURS, assess_exhaustion, is_utilization_metric

logger = structlog.get_logger(__name__)

FLEET_RESULTS_KEY = "anomaly:scores:all"
SUMMARY_KEY = "anomaly:summary"


class AnomalyService:
    """Anomaly detection over the hosts of a metric source"""

    def __init__(
        self,
        source: MetricSource,
        cache: Cache,
        config: Optional[AnomalyConfig] = None,
        service_config: Optional[ServiceConfig] = None,
    ):
        self.source = source
        self.cache = cache
        self.config = config or AnomalyConfig()
        self.service_config = service_config or ServiceConfig()
        self.store = BaselineStore(
            cache,
            ttl_seconds=self.service_config.baseline_ttl_seconds,
            max_retries=self.service_config.cas_max_retries,
        )
        self.tz = ZoneInfo(self.service_config.timezone) if self.service_config.timezone else None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.stats = {
            "runs": 0,
            "last_run_at": None,
            "last_fleet_size": 0,
            "last_failed_hosts": 0,
        }

        logger.info(
            "Anomaly service initialized",
            source=type(source).__name__,
            cache=type(cache).__name__,
            batch_size=self.service_config.batch_size,
            host_timeout=self.service_config.host_timeout_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[AnomalyConfig] = None,
        service_config: Optional[ServiceConfig] = None,
    ) -> "AnomalyService":
        """Wire a Zabbix source and a Redis (or in-memory) cache from settings"""
        service_config = service_config or ServiceConfig.from_env()
        source = ZabbixSource.from_config(service_config)
        cache = build_cache(
            host=service_config.redis_host,
            port=service_config.redis_port,
            db=service_config.redis_db,
            password=service_config.redis_password,
        )
        return cls(source, cache, config=config, service_config=service_config)

    # ------------------------------------------------------------------
    # Single host
    # ------------------------------------------------------------------

    def collect_host_metrics(self, host_id: str, hours: int) -> Optional[HostMetrics]:
        """Fetch the last `hours` of history for the monitored items of a host

        Returns None if the host does not exist.

        Raises:
            SourceUnavailableError: If the metric source cannot be reached
        """
        host = self.source.get_host(host_id)
        if host is None:
            return None

        time_from = int(time.time()) - hours * 3600
        metrics = self.source.get_history(host_id, MONITORED_KEYS, time_from)
        return HostMetrics(host_id=host_id, host_name=host.host_name, metrics=metrics)

    def run_host(self, host_id: str, config: Optional[AnomalyConfig] = None) -> HostOutcome:
        """Run detection for one host and report why when there is no result"""
        config = config or self.config
        log = logger.bind(host_id=host_id)

        try:
            host_metrics = self.collect_host_metrics(host_id, config.baseline_window_hours)
            if host_metrics is None or not host_metrics.metrics:
                log.info("No metrics available for host")
                return HostOutcome(host_id, error=AnomalyError.INSUFFICIENT_DATA)

            scores = []
            for metric in host_metrics.metrics:
                score = self._analyze_metric(host_metrics, metric, config)
                if score is not None:
                    scores.append(score)

            result = aggregate_anomalies(host_id, host_metrics.host_name, scores)

            if not self.cache.set(
                self.scores_key(host_id),
                result.to_dict(),
                self.service_config.scores_ttl_seconds,
            ):
                log.warning("Failed to cache host result")

            log.info(
                "Host analyzed",
                host_name=result.host_name,
                metrics=len(host_metrics.metrics),
                scored=len(scores),
                anomalies=len(result.anomalies),
                total_score=result.total_score,
            )
            return HostOutcome(host_id, result=result)

        except AnomalyEngineError as e:
            log.error("Anomaly detection failed", kind=e.kind.value, error=str(e))
            return HostOutcome(host_id, error=e.kind)

        except Exception as e:
            log.error("Anomaly detection failed", error=str(e), exc_info=True)
            return HostOutcome(host_id, error=AnomalyError.UNEXPECTED)

    def detect_anomalies_for_host(
        self, host_id: str, config: Optional[AnomalyConfig] = None
    ) -> Optional[AnomalyDetectionResult]:
        """Detect anomalies on one host. None means no result is available."""
        return self.run_host(host_id, config).result

    def _analyze_metric(
        self,
        host_metrics: HostMetrics,
        metric: ItemHistory,
        config: AnomalyConfig,
    ) -> Optional[AnomalyScore]:
        # read-learn-write happens as one atomic update of the stored baseline
        baseline = self.store.update(
            host_metrics.host_id,
            metric.item_key,
            lambda existing: create_baseline(
                host_metrics.host_id,
                metric.item_key,
                metric.item_name,
                metric.history,
                existing,
                tz=self.tz,
            ),
        )

        if baseline.sample_count < config.min_sample_count:
            logger.debug(
                "Insufficient samples, skipping scoring",
                host_id=host_metrics.host_id,
                item_key=metric.item_key,
                samples=baseline.sample_count,
                required=config.min_sample_count,
            )
            return None

        if not math.isfinite(metric.last_value):
            logger.debug(
                "Non-numeric current value, skipping scoring",
                host_id=host_metrics.host_id,
                item_key=metric.item_key,
            )
            return None

        score = analyze_value(metric.last_value, baseline, config, tz=self.tz)
        if score.severity is not Severity.NORMAL:
            logger.info(
                "Anomaly detected",
                host_id=host_metrics.host_id,
                item_key=metric.item_key,
                severity=score.severity.value,
                z_score=round(score.z_score, 2),
                actual=round(score.current_value, 2),
                expected=round(score.expected_value, 2),
            )
        return replace(score, host_name=host_metrics.host_name)

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------

    def detect_anomalies_for_all_hosts(
        self, config: Optional[AnomalyConfig] = None
    ) -> list[AnomalyDetectionResult]:
        """Detect anomalies on every enabled host, highest total score first"""
        try:
            hosts = self.source.list_enabled_hosts()
        except AnomalyEngineError as e:
            logger.error("Failed to list hosts", kind=e.kind.value, error=str(e))
            return []
        except Exception as e:
            logger.error("Failed to list hosts", error=str(e), exc_info=True)
            return []

        if not hosts:
            logger.info("No enabled hosts found")
            return []

        results = self.detect_anomalies_for_hosts([h.host_id for h in hosts], config)

        self.cache.set(
            FLEET_RESULTS_KEY,
            [r.to_dict() for r in results],
            self.service_config.scores_ttl_seconds,
        )
        return results

    def detect_anomalies_for_hosts(
        self,
        host_ids: Sequence[str],
        config: Optional[AnomalyConfig] = None,
    ) -> list[AnomalyDetectionResult]:
        """Detect anomalies on an explicit set of hosts, highest total score first"""
        start_time = time.time()
        outcomes = self._run_batches(list(host_ids), config or self.config)

        results = [o.result for o in outcomes if o.result is not None]
        results.sort(key=lambda r: r.total_score, reverse=True)

        failed = len(host_ids) - len(results)
        self.stats["last_fleet_size"] = len(host_ids)
        self.stats["last_failed_hosts"] = failed

        logger.info(
            "Anomaly detection completed",
            hosts=len(host_ids),
            with_results=len(results),
            without_results=failed,
            elapsed_sec=round(time.time() - start_time, 1),
        )
        return results

    def _run_batches(self, host_ids: list[str], config: AnomalyConfig) -> list[HostOutcome]:
        batch_size = self.service_config.batch_size
        timeout = self.service_config.host_timeout_seconds
        outcomes: list[HostOutcome] = []

        for start in range(0, len(host_ids), batch_size):
            batch = host_ids[start : start + batch_size]
            # Each batch gets its own workers, so hosts still stuck in an earlier
            # batch never occupy a slot needed by this one
            executor = ThreadPoolExecutor(
                max_workers=len(batch), thread_name_prefix="anomaly-host"
            )
            try:
                futures = [executor.submit(self.run_host, host_id, config) for host_id in batch]
                done, _ = wait(futures, timeout=timeout)

                for host_id, future in zip(batch, futures):
                    if future in done:
                        outcomes.append(future.result())
                    else:
                        logger.warning(
                            "Host detection timed out", host_id=host_id, timeout_sec=timeout
                        )
                        outcomes.append(HostOutcome(host_id, error=AnomalyError.TIMEOUT))
            finally:
                # Timed-out hosts finish on their own threads
                executor.shutdown(wait=False)

        return outcomes

    # ------------------------------------------------------------------
    # Cached results and summaries
    # ------------------------------------------------------------------

    def get_cached_results(
        self, host_id: Optional[str] = None
    ) -> AnomalyDetectionResult | list[AnomalyDetectionResult] | None:
        """Last cached result of one host, or of the last fleet run

        A missing or undecodable entry returns None.
        """
        key = self.scores_key(host_id) if host_id is not None else FLEET_RESULTS_KEY
        data = self.cache.get(key)
        if data is None:
            return None

        try:
            if host_id is not None:
                return AnomalyDetectionResult.from_dict(data)
            return [AnomalyDetectionResult.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cached result", key=key, error=str(e))
            return None

    def create_anomaly_summary(
        self, results: Sequence[AnomalyDetectionResult]
    ) -> AnomalySummary:
        return create_anomaly_summary(results)

    def get_cached_summary(self) -> Optional[dict]:
        """Summary written by the last background cycle"""
        return self.cache.get(SUMMARY_KEY)

    # ------------------------------------------------------------------
    # Forecasts
    # ------------------------------------------------------------------

    def predict_resource_exhaustion(
        self, host_id: str, threshold: float = 90.0
    ) -> list[TrendPrediction]:
        """Forecast utilization metrics 24h ahead, returning only non-low risks"""
        try:
            host_metrics = self.collect_host_metrics(host_id, FORECAST_HOURS)
        except AnomalyEngineError as e:
            logger.error(
                "Failed to collect metrics for prediction", host_id=host_id, error=str(e)
            )
            return []
        except Exception as e:
            logger.error(
                "Failed to collect metrics for prediction",
                host_id=host_id,
                error=str(e),
                exc_info=True,
            )
            return []

        if host_metrics is None:
            return []

        predictions = []
        for metric in host_metrics.metrics:
            if not is_utilization_metric(metric.item_key):
                continue
            prediction = assess_exhaustion(host_id, host_metrics.host_name, metric, threshold)
            if prediction is not None and prediction.risk is not Risk.LOW:
                predictions.append(prediction)

        logger.debug("Exhaustion forecast computed", host_id=host_id, at_risk=len(predictions))
        return predictions

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> AnomalySummary:
        """Run one fleet detection and cache its summary"""
        results = self.detect_anomalies_for_all_hosts()
        summary = create_anomaly_summary(results)
        self.cache.set(SUMMARY_KEY, summary.to_dict(), self.service_config.scores_ttl_seconds)

        purged = self.cache.purge_expired()
        if purged:
            logger.debug("Purged expired cache entries", count=purged)

        self.stats["runs"] += 1
        self.stats["last_run_at"] = summary.timestamp
        return summary

    def start(self) -> None:
        """Run detection in the background every `detection_interval_seconds`"""
        if self.is_running:
            logger.warning("Anomaly service already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="anomaly-detector", daemon=True
        )
        self._thread.start()
        logger.info(
            "Anomaly service started", interval_sec=self.config.detection_interval_seconds
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Anomaly service stopped", runs=self.stats["runs"])

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = self.run_cycle()
                logger.info(
                    "Detection cycle completed",
                    hosts=summary.total_hosts,
                    hosts_with_anomalies=summary.hosts_with_anomalies,
                    critical=summary.critical_count,
                )
            except Exception as e:
                logger.error("Detection cycle failed", error=str(e), exc_info=True)

            self._stop_event.wait(self.config.detection_interval_seconds)

    def status(self) -> dict:
        return {
            "status": "active" if self.is_running else "idle",
            "config": self.config.to_dict(),
            **self.stats,
        }

    def close(self) -> None:
        """Stop the background loop and release the source and cache"""
        self.stop()
        self.source.close()
        self.cache.close()
        logger.info("Anomaly service closed")

    def __enter__(self) -> "AnomalyService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def scores_key(host_id: str) -> str:
        return f"anomaly:scores:{host_id}"
