"""Logging and Prometheus wiring for the gateway.

Log records carry structured fields through ``extra={"json_fields": {...}}``;
both the JSON console formatter and Cloud Logging pick them up.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from prometheus_client import Counter  # type: ignore[import]
from prometheus_fastapi_instrumentator import Instrumentator, metrics  # type: ignore[import]

from gateway.app import config

try:  # pragma: no cover - optional dependency
    import google.cloud.logging  # type: ignore[import]
    from google.cloud.logging_v2.handlers import CloudLoggingHandler  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover - optional dependency
    google = None  # type: ignore[assignment]
    CloudLoggingHandler = None  # type: ignore[assignment]

# Driver loggers that are chatty at INFO and would drown out admission events.
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with ``json_fields`` merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple serialization
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        json_fields = getattr(record, "json_fields", None)
        if isinstance(json_fields, dict):
            payload.update(json_fields)
        if record.exc_info:
            payload["trace"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


def _cloud_handler() -> Optional[logging.Handler]:
    if not config.ENABLE_CLOUD_LOGGING:
        return None
    if google is None or CloudLoggingHandler is None:
        logging.getLogger(__name__).warning("ENABLE_CLOUD_LOGGING is set but google-cloud-logging is not installed")
        return None
    try:  # pragma: no cover - needs Google credentials
        client = google.cloud.logging.Client()
        return CloudLoggingHandler(client=client, name=config.CLOUD_LOGGING_LOG_NAME)
    except Exception as exc:  # pragma: no cover - falls back to console output
        logging.getLogger(__name__).warning(
            "Failed to initialize Cloud Logging; falling back to JSON console",
            extra={"json_fields": {"error": str(exc)}},
        )
        return None


def configure_logging() -> None:
    """Route the root logger to Cloud Logging when enabled, JSON console otherwise."""

    root_logger = logging.getLogger()
    log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)

    handler = _cloud_handler()
    cloud = handler is not None
    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())

    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    excluded: list[str] = []
    if cloud:
        excluded = [name for name in config.CLOUD_LOGGING_EXCLUDED_LOGGERS if name]
        for name in excluded:
            logging.getLogger(name).propagate = False

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "json_fields": {
                "sink": "cloud" if cloud else "console",
                "logLevel": logging.getLevelName(log_level),
                "excluded": excluded,
            }
        },
    )


_auth_failure_counter = Counter(
    "auth_failures_total",
    "Number of requests rejected by token or session verification",
    labelnames=("reason",),
    namespace=config.PROMETHEUS_METRICS_NAMESPACE,
    subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
)

_rate_limit_rejection_counter = Counter(
    "rate_limit_rejections_total",
    "Number of requests rejected with 429",
    labelnames=("scope", "axis"),
    namespace=config.PROMETHEUS_METRICS_NAMESPACE,
    subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
)

_rate_limit_store_error_counter = Counter(
    "rate_limit_store_errors_total",
    "Number of counter store failures absorbed by the limiter",
    labelnames=("operation",),
    namespace=config.PROMETHEUS_METRICS_NAMESPACE,
    subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
)

_identity_cache_counter = Counter(
    "identity_cache_lookups_total",
    "Identity cache lookups by result",
    labelnames=("result",),
    namespace=config.PROMETHEUS_METRICS_NAMESPACE,
    subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
)

_session_revocation_counter = Counter(
    "sessions_revoked_total",
    "Number of sessions revoked",
    labelnames=("reason",),
    namespace=config.PROMETHEUS_METRICS_NAMESPACE,
    subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
)


def configure_metrics(app) -> None:
    """Attach Prometheus instrumentation to the FastAPI app when enabled."""

    if not config.ENABLE_PROMETHEUS_METRICS:
        logging.getLogger(__name__).info("Prometheus metrics disabled via configuration")
        return

    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=[".*metrics"],
    )
    instrumentator.add(
        metrics.default(
            metric_namespace=config.PROMETHEUS_METRICS_NAMESPACE,
            metric_subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
        )
    )
    instrumentator.instrument(
        app,
        metric_namespace=config.PROMETHEUS_METRICS_NAMESPACE,
        metric_subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
    ).expose(app, include_in_schema=False, should_gzip=True)
    logging.getLogger(__name__).info(
        "Prometheus metrics endpoint exposed",
        extra={
            "json_fields": {
                "namespace": config.PROMETHEUS_METRICS_NAMESPACE,
                "subsystem": config.PROMETHEUS_METRICS_SUBSYSTEM,
            }
        },
    )


def record_auth_failure(reason: str) -> None:
    _auth_failure_counter.labels(reason=reason).inc()


def record_rate_limit_rejection(scope: str, axis: str) -> None:
    _rate_limit_rejection_counter.labels(scope=scope, axis=axis).inc()


def record_rate_limit_store_error(operation: str) -> None:
    _rate_limit_store_error_counter.labels(operation=operation).inc()


def record_identity_cache_lookup(result: str) -> None:
    _identity_cache_counter.labels(result=result).inc()


def record_session_revocation(reason: str) -> None:
    _session_revocation_counter.labels(reason=reason).inc()


__all__ = [
    "configure_logging",
    "configure_metrics",
    "record_auth_failure",
    "record_identity_cache_lookup",
    "record_rate_limit_rejection",
    "record_rate_limit_store_error",
    "record_session_revocation",
]
