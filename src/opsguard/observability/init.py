"""
Observability initialization

Wires tracing, metrics and structured logging from one TelemetryConfig.
"""

import logging
import logging.config
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from .config import TelemetryConfig
from .metrics import initialize_metrics, reset_metrics
from .tracer import initialize_tracing

logger = logging.getLogger(__name__)

_initialized = False
_config: Optional[TelemetryConfig] = None


def initialize_observability(config: TelemetryConfig) -> None:
    """
    Initialize all observability features

    Args:
        config: Telemetry configuration
    """
    global _initialized, _config

    if _initialized:
        logger.warning("Observability already initialized, skipping")
        return

    _config = config

    if not config.enabled:
        logger.info("Observability is disabled")
        return

    logger.info(f"Initializing observability for environment: {config.environment}")

    if config.tracing.enabled:
        initialize_tracing(config)

    if config.metrics.enabled:
        initialize_metrics(config)

    if config.logging.enabled:
        configure_logging(config)

    _initialized = True
    logger.info("Observability initialization complete")


def configure_logging(config: TelemetryConfig) -> None:
    """Configure structured logging with trace correlation"""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "text": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": config.logging.level,
                "formatter": config.logging.format,
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": config.logging.level, "handlers": ["console"]},
        "loggers": {"opsguard": {"level": config.logging.level, "propagate": True}},
    }

    logging.config.dictConfig(log_config)

    if config.tracing.enabled and (
        config.logging.include_trace_id or config.logging.include_span_id
    ):
        _add_trace_correlation_filter()


class TraceContextFilter(logging.Filter):
    """Attach the active trace and span ids to every log record"""

    def filter(self, record):
        span = trace.get_current_span()
        if span.is_recording():
            span_context = span.get_span_context()
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = ""
            record.span_id = ""
        return True


def _add_trace_correlation_filter():
    for handler in logging.getLogger().handlers:
        handler.addFilter(TraceContextFilter())


def get_observability_config() -> Optional[TelemetryConfig]:
    """Get the current observability configuration"""
    return _config


def is_observability_initialized() -> bool:
    """Check if observability has been initialized"""
    return _initialized


def shutdown_observability() -> None:
    """Shutdown observability systems gracefully"""
    global _initialized

    if not _initialized:
        return

    logger.info("Shutting down observability systems")

    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        provider.shutdown()
        logger.debug("Tracing provider shutdown complete")

    reset_metrics()

    _initialized = False
    logger.info("Observability shutdown complete")
