"""
Pytest configuration and shared fixtures for opsguard tests

Provides fake clocks, configurations, components and sample data.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from opsguard.authorizer import OperationAuthorizer
from opsguard.config import OpsguardConfig, SafetyConfig, StorageConfig, set_config
from opsguard.cooldown import CooldownLimiter
from opsguard.correlation import AlertCorrelator
from opsguard.engine import SafetyEngine
from opsguard.models import (
    AlertInput,
    AlertSeverity,
    AlertSource,
    AlertType,
    OperationInput,
    OperationTarget,
    OperationType,
    SourceType,
    TargetType,
)
from opsguard.observability.metrics import reset_metrics
from opsguard.storage import MemoryStateStore

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced epoch-seconds clock"""

    def __init__(self, start: float = BASE_TIME.timestamp()):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatetimeClock:
    """Manually advanced aware-datetime clock"""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Provide a fake epoch clock for cooldowns"""
    return FakeClock()


@pytest.fixture
def alert_clock():
    """Provide a fake datetime clock for alerts"""
    return FakeDatetimeClock()


@pytest.fixture
def safety_config():
    """Provide the default safety policy"""
    return SafetyConfig()


@pytest.fixture
def test_config():
    """Provide a test configuration with safe defaults"""
    config = OpsguardConfig()
    config.storage = StorageConfig(backend="memory")
    config.actor = "test-operator"
    return config


@pytest.fixture
def limiter(safety_config, clock):
    return CooldownLimiter(safety_config, clock=clock)


@pytest.fixture
def authorizer(safety_config, limiter):
    return OperationAuthorizer(safety_config, limiter)


@pytest.fixture
def correlator(safety_config, alert_clock):
    return AlertCorrelator(safety_config, clock=alert_clock)


@pytest.fixture
def engine(test_config, clock, alert_clock):
    """Provide an engine backed by an in-memory store"""
    return SafetyEngine(
        test_config,
        store=MemoryStateStore(),
        clock=clock,
        alert_clock=alert_clock,
    )


@pytest.fixture
def prod_vm():
    return OperationTarget(type=TargetType.VM, id="prod-db-01", name="prod-db-01")


@pytest.fixture
def worker_container():
    return OperationTarget(type=TargetType.CONTAINER, id="c1", name="worker-1")


@pytest.fixture
def restart_input(worker_container):
    """Auto-approved restart of a non-production container"""
    return OperationInput(type=OperationType.RESTART, target=worker_container)


@pytest.fixture
def delete_input(prod_vm):
    """Critical delete that needs confirmation"""
    return OperationInput(type=OperationType.DELETE, target=prod_vm)


@pytest.fixture
def make_alert():
    """Factory building AlertInput objects with sensible defaults"""

    def _make_alert(
        source_id: str = "svc-api",
        alert_type: AlertType = AlertType.SERVICE_DOWN,
        severity: AlertSeverity = AlertSeverity.ERROR,
        source_type: SourceType = SourceType.SERVICE,
        host: str = None,
        name: str = None,
        message: str = "Health check failed",
        timestamp: datetime = None,
    ) -> AlertInput:
        return AlertInput(
            source=AlertSource(
                type=source_type, id=source_id, name=name or source_id, host=host
            ),
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=timestamp,
        )

    return _make_alert


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for testing"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def temp_config_file(temp_dir):
    """Provide a temporary config file for testing"""
    config_file = temp_dir / "opsguard.yml"
    config_file.write_text(
        """
actor: "config-operator"
safety:
  correlation_window_ms: 120000
  default_cooldowns:
    restart: 5000
storage:
  backend: file
  path: /tmp/opsguard-test-state
"""
    )
    return config_file


@pytest.fixture(autouse=True)
def reset_globals():
    """Drop process-level configuration and metrics between tests"""
    yield
    set_config(None)
    reset_metrics()


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line(
        "markers", "integration: Integration tests across multiple components"
    )
