"""
Prometheus metrics collection for opsguard

Tracks operation authorization flow, cooldown rejections, executor latency
and alert correlation activity.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from .config import TelemetryConfig

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """
    Central metrics collector for opsguard

    Every ``record_*`` method is a no-op when metrics are disabled, so callers
    only need to check that a collector exists.
    """

    config: TelemetryConfig
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)
    enabled: bool = field(default=False, init=False)

    # Operation metrics
    operations_queued_total: Counter = field(init=False)
    operation_transitions_total: Counter = field(init=False)
    rate_limited_total: Counter = field(init=False)
    executor_duration: Histogram = field(init=False)

    # Alert metrics
    alerts_ingested_total: Counter = field(init=False)
    alerts_evicted_total: Counter = field(init=False)
    correlation_groups: Gauge = field(init=False)
    root_cause_confidence: Histogram = field(init=False)

    system_info: Info = field(init=False)

    def __post_init__(self):
        """Initialize all metrics after dataclass creation"""
        if not self.config.metrics.enabled:
            logger.info("Metrics collection is disabled")
            return

        self._initialize_metrics()
        self.enabled = True

        if self.config.should_start_metrics_server():
            self._start_metrics_server()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics"""
        labels = list(self.config.metrics.default_labels.keys())
        buckets = self.config.metrics.duration_buckets

        self.operations_queued_total = Counter(
            "opsguard_operations_queued_total",
            "Total number of operations queued for authorization",
            labelnames=["operation_type", "risk_level", "initial_status"] + labels,
            registry=self.registry,
        )

        self.operation_transitions_total = Counter(
            "opsguard_operation_transitions_total",
            "Total number of operation status transitions",
            labelnames=["operation_type", "from_status", "to_status"] + labels,
            registry=self.registry,
        )

        self.rate_limited_total = Counter(
            "opsguard_rate_limited_total",
            "Total number of executions refused by an active cooldown",
            labelnames=["operation_type"] + labels,
            registry=self.registry,
        )

        self.executor_duration = Histogram(
            "opsguard_executor_duration_seconds",
            "Duration of injected executor calls",
            labelnames=["operation_type"] + labels,
            buckets=buckets,
            registry=self.registry,
        )

        self.alerts_ingested_total = Counter(
            "opsguard_alerts_ingested_total",
            "Total number of alerts ingested",
            labelnames=["alert_type", "severity", "correlated"] + labels,
            registry=self.registry,
        )

        self.alerts_evicted_total = Counter(
            "opsguard_alerts_evicted_total",
            "Total number of alerts removed by retention sweeps or cleanup",
            labelnames=["reason"] + labels,
            registry=self.registry,
        )

        self.correlation_groups = Gauge(
            "opsguard_correlation_groups",
            "Number of live correlation groups",
            labelnames=labels,
            registry=self.registry,
        )

        self.root_cause_confidence = Histogram(
            "opsguard_root_cause_confidence",
            "Confidence of inferred root causes",
            labelnames=["root_cause_type"] + labels,
            buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
            registry=self.registry,
        )

        self.system_info = Info(
            "opsguard_system", "System information", registry=self.registry
        )
        self.system_info.info(
            {
                "version": self.config.tracing.service_version,
                "environment": self.config.environment,
            }
        )

        logger.info("Prometheus metrics initialized")

    def _start_metrics_server(self):
        """Start HTTP server for metrics endpoint"""
        try:
            start_http_server(port=self.config.metrics.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.config.metrics.port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def _get_default_labels(self) -> dict[str, str]:
        return self.config.metrics.default_labels.copy()

    @contextmanager
    def time_executor(self, operation_type: str):
        """Context manager timing an executor call"""
        start_time = time.time()
        try:
            yield
        finally:
            if self.enabled:
                labels = {**self._get_default_labels(), "operation_type": operation_type}
                self.executor_duration.labels(**labels).observe(time.time() - start_time)

    def record_operation_queued(
        self, operation_type: str, risk_level: str, initial_status: str
    ):
        if not self.enabled:
            return
        labels = {
            **self._get_default_labels(),
            "operation_type": operation_type,
            "risk_level": risk_level,
            "initial_status": initial_status,
        }
        self.operations_queued_total.labels(**labels).inc()

    def record_transition(self, operation_type: str, from_status: str, to_status: str):
        if not self.enabled:
            return
        labels = {
            **self._get_default_labels(),
            "operation_type": operation_type,
            "from_status": from_status,
            "to_status": to_status,
        }
        self.operation_transitions_total.labels(**labels).inc()

    def record_rate_limited(self, operation_type: str):
        if not self.enabled:
            return
        labels = {**self._get_default_labels(), "operation_type": operation_type}
        self.rate_limited_total.labels(**labels).inc()

    def record_alert_ingested(self, alert_type: str, severity: str, correlated: bool):
        if not self.enabled:
            return
        labels = {
            **self._get_default_labels(),
            "alert_type": alert_type,
            "severity": severity,
            "correlated": str(correlated).lower(),
        }
        self.alerts_ingested_total.labels(**labels).inc()

    def record_alerts_evicted(self, reason: str, count: int):
        if not self.enabled or count <= 0:
            return
        labels = {**self._get_default_labels(), "reason": reason}
        self.alerts_evicted_total.labels(**labels).inc(count)

    def set_correlation_groups(self, count: int):
        if not self.enabled:
            return
        gauge = self.correlation_groups
        default_labels = self._get_default_labels()
        if default_labels:
            gauge = gauge.labels(**default_labels)
        gauge.set(count)

    def record_root_cause(self, root_cause_type: str, confidence: float):
        if not self.enabled:
            return
        labels = {**self._get_default_labels(), "root_cause_type": root_cause_type}
        self.root_cause_confidence.labels(**labels).observe(confidence)

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def initialize_metrics(config: TelemetryConfig) -> MetricsCollector:
    """Initialize the global metrics collector"""
    global _metrics
    _metrics = MetricsCollector(config)
    return _metrics


def get_metrics() -> Optional[MetricsCollector]:
    """Get the global metrics collector"""
    return _metrics


def reset_metrics() -> None:
    """Drop the global metrics collector"""
    global _metrics
    _metrics = None


def is_metrics_enabled() -> bool:
    """Check if metrics collection is enabled"""
    return _metrics is not None and _metrics.enabled
