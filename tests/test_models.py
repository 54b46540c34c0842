"""
Test suite for core data models

Tests validation rules, derived properties and serialization helpers.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from opsguard.models import (
    Alert,
    AlertSeverity,
    AlertSource,
    AlertType,
    CorrelationGroup,
    Operation,
    OperationStatus,
    OperationTarget,
    OperationType,
    RiskLevel,
    RootCause,
    RootCauseType,
    SourceType,
    TargetType,
    generate_id,
)


def make_operation(**overrides) -> Operation:
    fields = {
        "id": "op_1",
        "type": OperationType.RESTART,
        "target": OperationTarget(type=TargetType.CONTAINER, id="c1", name="worker-1"),
        "risk_level": RiskLevel.MODERATE,
        "status": OperationStatus.FAILED,
        "requires_confirmation": False,
        "cooldown_ms": 30_000,
        "max_retries": 2,
    }
    fields.update(overrides)
    return Operation(**fields)


def make_alert(**overrides) -> Alert:
    fields = {
        "id": "alert_1",
        "source": AlertSource(type=SourceType.SERVICE, id="svc-api", name="api"),
        "type": AlertType.SERVICE_DOWN,
        "severity": AlertSeverity.ERROR,
        "message": "Health check failed",
        "timestamp": datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Alert(**fields)


class TestGenerateId:
    """Test identifier generation"""

    def test_prefix_and_uniqueness(self):
        ids = {generate_id("op") for _ in range(100)}

        assert len(ids) == 100
        assert all(i.startswith("op_") for i in ids)


class TestOperation:
    """Test operation record rules"""

    def test_operation_key(self):
        assert make_operation().operation_key == "restart:c1"

    def test_target_is_immutable(self):
        operation = make_operation()

        with pytest.raises(ValidationError):
            operation.target.id = "c2"

    def test_retry_count_cannot_exceed_budget(self):
        with pytest.raises(ValidationError, match="exceeds max_retries"):
            make_operation(retry_count=3, max_retries=2)

    def test_negative_cooldown_rejected(self):
        with pytest.raises(ValidationError):
            make_operation(cooldown_ms=-1)

    @pytest.mark.parametrize(
        "status,retry_count,expected",
        [
            (OperationStatus.FAILED, 0, True),
            (OperationStatus.FAILED, 1, True),
            (OperationStatus.FAILED, 2, False),
            (OperationStatus.EXECUTED, 0, False),
            (OperationStatus.PENDING, 0, False),
        ],
    )
    def test_can_retry(self, status, retry_count, expected):
        assert make_operation(status=status, retry_count=retry_count).can_retry() is expected

    def test_retried_record_cannot_retry(self):
        assert not make_operation(retried_as="op_2").can_retry()

    def test_is_terminal(self):
        assert make_operation(status=OperationStatus.EXECUTED).is_terminal
        assert make_operation(status=OperationStatus.REJECTED).is_terminal
        assert not make_operation(status=OperationStatus.FAILED).is_terminal

    def test_dict_round_trip(self):
        operation = make_operation()
        data = operation.to_dict()

        assert data["status"] == "failed"
        assert data["target"] == {"type": "container", "id": "c1", "name": "worker-1"}
        assert Operation.from_dict(data) == operation


class TestAlert:
    """Test alert record rules"""

    def test_naive_timestamp_becomes_utc(self):
        alert = make_alert(timestamp=datetime(2024, 1, 15, 10, 0))

        assert alert.timestamp.tzinfo == timezone.utc

    def test_resolved_requires_timestamp(self):
        with pytest.raises(ValidationError, match="resolved_at"):
            make_alert(resolved=True)

    def test_unresolved_rejects_timestamp(self):
        with pytest.raises(ValidationError, match="resolved_at"):
            make_alert(resolved_at=datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc))

    def test_severity_rank(self):
        assert make_alert(severity=AlertSeverity.INFO).severity_rank == 0
        assert make_alert(severity=AlertSeverity.CRITICAL).severity_rank == 3


class TestCorrelationGroup:
    """Test group properties"""

    def test_is_open_while_any_member_unresolved(self):
        resolved = make_alert(
            id="alert_2",
            resolved=True,
            resolved_at=datetime(2024, 1, 15, 10, 5, tzinfo=timezone.utc),
        )
        group = CorrelationGroup(id="corr_1", alerts=[make_alert(), resolved])

        assert group.is_open
        assert not CorrelationGroup(id="corr_1", alerts=[resolved]).is_open

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            RootCause(type=RootCauseType.DNS, description="dns", confidence=1.5)
