"""
Core data models for opsguard

Defines operations, alerts, correlation groups and root causes using
Pydantic for validation and JSON-safe serialization.
"""

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a unique, time-ordered identifier such as ``op_1700000000000_k3j9x2a``"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)[:7]}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps are taken to be UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OperationType(str, Enum):
    QUERY = "query"
    RESTART = "restart"
    STOP = "stop"
    REBOOT = "reboot"
    DELETE = "delete"


class RiskLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"
    CRITICAL = "critical"


class OperationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


class TargetType(str, Enum):
    VM = "vm"
    CONTAINER = "container"
    SERVICE = "service"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    SERVICE_DOWN = "service_down"
    SERVICE_DEGRADED = "service_degraded"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    NETWORK_ISSUE = "network_issue"
    DNS_ISSUE = "dns_issue"
    VM_ISSUE = "vm_issue"
    CONTAINER_ISSUE = "container_issue"
    SECURITY = "security"
    PERFORMANCE = "performance"
    CUSTOM = "custom"


class SourceType(str, Enum):
    VM = "vm"
    CONTAINER = "container"
    SERVICE = "service"
    NETWORK = "network"
    SYSTEM = "system"


class RootCauseType(str, Enum):
    NETWORK = "network"
    DNS = "dns"
    VM = "vm"
    SERVICE = "service"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


SEVERITY_ORDER: dict[AlertSeverity, int] = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class SerializableModel(BaseModel):
    """Base model with dict round-tripping helpers"""

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls.model_validate(data)


class OperationTarget(SerializableModel):
    """What an operation acts on; immutable once created"""

    model_config = ConfigDict(frozen=True)

    type: TargetType
    id: str
    name: str


class OperationResult(SerializableModel):
    """Outcome of dispatching an operation to the infrastructure"""

    success: bool
    message: str = ""
    error: Optional[str] = None
    executed_at: datetime = Field(default_factory=utcnow)


class OperationInput(SerializableModel):
    """Request to queue an operation; unset fields are derived from config"""

    type: OperationType
    target: OperationTarget
    risk_level: Optional[RiskLevel] = None
    requires_confirmation: Optional[bool] = None
    cooldown_ms: Optional[int] = Field(default=None, ge=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_count: int = Field(default=0, ge=0)
    idempotency_key: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Operation(SerializableModel):
    """An authorizable infrastructure action and its lifecycle state"""

    id: str
    type: OperationType
    target: OperationTarget
    risk_level: RiskLevel
    status: OperationStatus
    requires_confirmation: bool
    cooldown_ms: int = Field(ge=0)
    max_retries: int = Field(ge=0)
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    executed_at: Optional[datetime] = None
    result: Optional[OperationResult] = None
    idempotency_key: Optional[str] = None
    # Id of the retry record created from this one
    retried_as: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Operation":
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        return self

    @property
    def operation_key(self) -> str:
        """Cooldown ledger key for this operation"""
        return f"{self.type.value}:{self.target.id}"

    @property
    def is_terminal(self) -> bool:
        return self.status in (OperationStatus.EXECUTED, OperationStatus.REJECTED)

    def can_retry(self) -> bool:
        return (
            self.status == OperationStatus.FAILED
            and self.retried_as is None
            and self.retry_count < self.max_retries
        )


class AlertSource(SerializableModel):
    """Where an alert came from"""

    model_config = ConfigDict(frozen=True)

    type: SourceType
    id: str
    name: str
    host: Optional[str] = None


class AlertInput(SerializableModel):
    """Alert as submitted by a monitoring collaborator"""

    source: AlertSource
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _coerce_utc(cls, value):
        return _as_utc(value)


class Alert(SerializableModel):
    """An ingested health alert"""

    id: str
    source: AlertSource
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime
    correlation_id: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_alert_ids: list[str] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _coerce_utc(cls, value):
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_resolution(self) -> "Alert":
        if self.resolved and self.resolved_at is None:
            raise ValueError("resolved alerts must carry resolved_at")
        if not self.resolved and self.resolved_at is not None:
            raise ValueError("unresolved alerts must not carry resolved_at")
        return self

    @property
    def severity_rank(self) -> int:
        return SEVERITY_ORDER[self.severity]


class RootCause(SerializableModel):
    """Best inferred explanation for a correlation group"""

    type: RootCauseType
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    affected_sources: list[AlertSource] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    origin_alert_id: Optional[str] = None


class CorrelationGroup(SerializableModel):
    """Cluster of alerts believed to share a common underlying cause"""

    id: str
    alerts: list[Alert] = Field(default_factory=list)
    root_cause: Optional[RootCause] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        """A group accepts new members while any member is unresolved"""
        return any(not alert.resolved for alert in self.alerts)
