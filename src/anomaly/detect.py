"""
CLI for anomaly detection and resource exhaustion forecasts.

Usage:
    python -m src.anomaly.detect [options]
"""

import argparse
import json
import os
import sys
import time

import structlog

from src.core.logger import LOG_LEVELS, setup_logging

from .aggregator import create_anomaly_summary
from .models import AnomalyConfig, ServiceConfig
from .service import AnomalyService

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Statistical anomaly detection for monitored hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Detect anomalies on every enabled host and print a fleet summary
        python -m src.anomaly.detect --summary

        # Detect on selected hosts only
        python -m src.anomaly.detect --host 10084 --host 10105

        # Forecast resource exhaustion for a host
        python -m src.anomaly.detect --host 10084 --predict --threshold 85

        # Keep detecting every 60 seconds
        python -m src.anomaly.detect --schedule
        """,
    )

    # Targets
    parser.add_argument(
        "--host",
        action="append",
        dest="hosts",
        default=[],
        help="Host ID to analyze (repeatable, default: all enabled hosts)",
    )
    parser.add_argument(
        "--predict",
        action="store_true",
        help="Forecast resource exhaustion instead of detecting anomalies (requires --host)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=90.0,
        help="Utilization threshold in percent for --predict (default: 90)",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print the fleet summary instead of per-host results",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run detection periodically every --interval seconds",
    )

    # Detection parameters
    defaults = AnomalyConfig()
    parser.add_argument(
        "--z-score-threshold",
        type=float,
        default=defaults.z_score_threshold,
        help="Z-score at which a deviation is rated medium (default: 3.0)",
    )
    parser.add_argument(
        "--min-samples",
        type=int,
        default=defaults.min_sample_count,
        help="Samples a baseline needs before it is used for scoring (default: 30)",
    )
    parser.add_argument(
        "--window-hours",
        type=int,
        default=defaults.baseline_window_hours,
        help="Hours of history fed to the baseline per run (default: 24)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=defaults.detection_interval_seconds,
        help="Seconds between scheduled runs (default: 60)",
    )
    parser.add_argument(
        "--no-time-pattern",
        action="store_true",
        help="Use the overall mean instead of the hour-of-day pattern",
    )
    parser.add_argument(
        "--day-pattern",
        action="store_true",
        help="Use the day-of-week pattern when the hourly pattern is disabled",
    )

    # Orchestration
    parser.add_argument(
        "--batch-size",
        type=int,
        default=int(os.getenv("ANOMALY_BATCH_SIZE", "5")),
        help="Hosts analyzed concurrently (default: 5)",
    )
    parser.add_argument(
        "--host-timeout",
        type=float,
        default=float(os.getenv("ANOMALY_HOST_TIMEOUT", "30")),
        help="Seconds before a host is skipped (default: 30)",
    )

    # Zabbix settings
    parser.add_argument(
        "--zabbix-url",
        default=os.getenv("ZABBIX_URL", "http://localhost:8080"),
        help="Zabbix frontend URL (default: http://localhost:8080 or ZABBIX_URL env var)",
    )

    # Redis configuration
    parser.add_argument(
        "--redis-host",
        default=os.getenv("REDIS_HOST", "localhost"),
        help="Redis host (default: localhost or REDIS_HOST env var)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["console", "json"],
        default=os.getenv("LOG_FORMAT", "console"),
        help="Log output format (default: console or LOG_FORMAT env var)",
    )

    return parser.parse_args(argv)


def build_config(args) -> tuple[AnomalyConfig, ServiceConfig]:
    """Build configuration from arguments"""
    config = AnomalyConfig(
        z_score_threshold=args.z_score_threshold,
        min_sample_count=args.min_samples,
        baseline_window_hours=args.window_hours,
        detection_interval_seconds=args.interval,
        enable_time_pattern=not args.no_time_pattern,
        enable_day_pattern=args.day_pattern,
    )

    env = ServiceConfig.from_env()
    service_config = ServiceConfig(
        zabbix_url=args.zabbix_url,
        zabbix_user=env.zabbix_user,
        zabbix_password=env.zabbix_password,
        redis_host=args.redis_host,
        redis_port=env.redis_port,
        redis_db=env.redis_db,
        redis_password=env.redis_password,
        batch_size=args.batch_size,
        host_timeout_seconds=args.host_timeout,
        timezone=env.timezone,
    )
    return config, service_config


def run_once(service: AnomalyService, args) -> dict | list:
    """Run the requested action once and return a JSON-serializable payload"""
    if args.predict:
        return {
            host_id: [
                p.to_dict() for p in service.predict_resource_exhaustion(host_id, args.threshold)
            ]
            for host_id in args.hosts
        }

    if args.hosts:
        results = service.detect_anomalies_for_hosts(args.hosts)
    else:
        results = service.detect_anomalies_for_all_hosts()

    if args.summary:
        return create_anomaly_summary(results).to_dict()
    return [r.to_dict() for r in results]


def run_scheduled(service: AnomalyService) -> None:
    """Run the background detection loop until interrupted"""
    service.start()
    try:
        while service.is_running:
            time.sleep(1.0)
    finally:
        service.stop()


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    log_level = LOG_LEVELS.get(args.log_level.upper(), LOG_LEVELS["INFO"])
    setup_logging(
        level=log_level,
        colors=sys.stderr.isatty(),
        json_logs=args.log_format == "json",
    )

    if args.predict and not args.hosts:
        logger.error("--predict requires at least one --host")
        return 2

    try:
        config, service_config = build_config(args)
        service = AnomalyService.from_config(config, service_config)

        with service:
            if args.schedule:
                run_scheduled(service)
            else:
                payload = run_once(service, args)
                print(json.dumps(payload, indent=2))

        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Anomaly detection failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
