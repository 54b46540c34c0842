"""
Alert correlation

Ingests health alerts, clusters alerts that co-occur within the correlation
window and share a causal signal, and keeps each cluster's inferred root
cause current as membership changes.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..config import SafetyConfig
from ..context import resolve_actor
from ..models import (
    Alert,
    AlertInput,
    AlertSeverity,
    AlertType,
    CorrelationGroup,
    RootCause,
    SourceType,
    generate_id,
    utcnow,
)
from ..observability.metrics import get_metrics
from ..observability.tracer import set_attribute, trace_operation
from .rules import RuleRegistry, detect_root_cause

logger = logging.getLogger(__name__)

NETWORK_FAMILY = frozenset(
    {AlertType.NETWORK_ISSUE, AlertType.DNS_ISSUE, AlertType.SERVICE_DOWN}
)
SERVICE_FAMILY = frozenset(
    {AlertType.SERVICE_DOWN, AlertType.SERVICE_DEGRADED, AlertType.CONTAINER_ISSUE}
)

# cause -> effects it commonly produces
CAUSALITY: dict[AlertType, frozenset[AlertType]] = {
    AlertType.DNS_ISSUE: frozenset({AlertType.SERVICE_DEGRADED}),
    AlertType.NETWORK_ISSUE: frozenset({AlertType.SERVICE_DEGRADED}),
    AlertType.VM_ISSUE: frozenset({AlertType.CONTAINER_ISSUE, AlertType.SERVICE_DOWN}),
    AlertType.RESOURCE_EXHAUSTED: frozenset(
        {AlertType.PERFORMANCE, AlertType.SERVICE_DEGRADED}
    ),
}


def _hosted_on(a: Alert, b: Alert) -> bool:
    """True when a's host names b's VM"""
    return (
        a.source.host is not None
        and b.source.type == SourceType.VM
        and a.source.host in (b.source.id, b.source.name)
    )


def alerts_related(a: Alert, b: Alert) -> bool:
    """Check whether two alerts share a plausible causal signal"""
    if a.source.id == b.source.id:
        return True

    if a.source.host and a.source.host == b.source.host:
        return True

    if _hosted_on(a, b) or _hosted_on(b, a):
        return True

    if a.type in NETWORK_FAMILY and b.type in NETWORK_FAMILY:
        return True

    if (
        a.type in SERVICE_FAMILY
        and b.type in SERVICE_FAMILY
        and a.source.type == b.source.type
    ):
        return True

    return b.type in CAUSALITY.get(a.type, ()) or a.type in CAUSALITY.get(b.type, ())


@dataclass
class _GroupRecord:
    id: str
    created_at: datetime
    updated_at: datetime
    root_cause: Optional[RootCause] = None
    member_ids: list[str] = field(default_factory=list)


class AlertCorrelator:
    """
    Thread-safe alert store and correlator

    Groups only hold member ids; every alert's ``correlation_id`` is the
    source of truth for membership. Returned alerts and groups are copies.
    """

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        rules: Optional[RuleRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        default_actor: Optional[str] = None,
    ):
        """
        Initialize the correlator

        Args:
            config: Safety configuration providing window and retention
            rules: Root-cause rule registry (defaults to the built-in rules)
            clock: Returns the current time as an aware datetime
            default_actor: Recorded on acknowledge/resolve when no actor is named
        """
        self.config = config or SafetyConfig()
        self.rules = rules
        self.default_actor = default_actor
        self._clock = clock
        self._alerts: dict[str, Alert] = {}
        self._groups: dict[str, _GroupRecord] = {}
        self._lock = threading.RLock()

    @property
    def _window(self) -> timedelta:
        return timedelta(milliseconds=self.config.correlation_window_ms)

    def _within_window(self, a: Alert, b: Alert) -> bool:
        return abs(a.timestamp - b.timestamp) <= self._window

    def _members_locked(self, group_id: str) -> list[Alert]:
        group = self._groups[group_id]
        return [self._alerts[alert_id] for alert_id in group.member_ids]

    def _find_open_group_locked(self, alert: Alert) -> Optional[str]:
        for group_id in self._groups:
            members = self._members_locked(group_id)
            if all(member.resolved for member in members):
                continue
            for member in members:
                if self._within_window(alert, member) and alerts_related(alert, member):
                    return group_id
        return None

    def _find_related_uncorrelated_locked(self, alert: Alert) -> list[Alert]:
        return [
            existing
            for existing in self._alerts.values()
            if existing.id != alert.id
            and existing.correlation_id is None
            and self._within_window(alert, existing)
            and alerts_related(alert, existing)
        ]

    def _recompute_locked(self, group_id: str, touch: bool = True) -> None:
        group = self._groups[group_id]
        members = self._members_locked(group_id)
        group.root_cause = detect_root_cause(members, self.rules)
        if touch:
            group.updated_at = self._clock()
        if group.root_cause is not None:
            logger.debug(
                f"Group {group_id} root cause: {group.root_cause.type.value} "
                f"(confidence={group.root_cause.confidence})"
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_root_cause(
                    group.root_cause.type.value, group.root_cause.confidence
                )

    def _build_group_locked(self, group_id: str) -> CorrelationGroup:
        group = self._groups[group_id]
        return CorrelationGroup(
            id=group.id,
            alerts=[alert.model_copy(deep=True) for alert in self._members_locked(group_id)],
            root_cause=group.root_cause.model_copy(deep=True) if group.root_cause else None,
            created_at=group.created_at,
            updated_at=group.updated_at,
        )

    def add_alert(self, alert_input: AlertInput) -> Alert:
        """
        Ingest an alert and correlate it

        The alert joins the first open group holding a related member within
        the window. Otherwise, if related uncorrelated alerts exist within the
        window, they form a new group together with it. Retention eviction
        runs after every ingestion.
        """
        with trace_operation(
            "correlator.add_alert",
            {
                "alert.type": alert_input.type.value,
                "alert.severity": alert_input.severity.value,
                "alert.source_id": alert_input.source.id,
            },
        ):
            with self._lock:
                alert = Alert(
                    id=generate_id("alert"),
                    source=alert_input.source,
                    type=alert_input.type,
                    severity=alert_input.severity,
                    message=alert_input.message,
                    timestamp=alert_input.timestamp or self._clock(),
                    metadata=dict(alert_input.metadata),
                )

                group_id = self._find_open_group_locked(alert)
                if group_id is not None:
                    group = self._groups[group_id]
                    for member in self._members_locked(group_id):
                        member.related_alert_ids.append(alert.id)
                        alert.related_alert_ids.append(member.id)
                    alert.correlation_id = group_id
                    self._alerts[alert.id] = alert
                    group.member_ids.append(alert.id)
                    self._recompute_locked(group_id)
                    logger.debug(f"Alert {alert.id} joined correlation group {group_id}")
                else:
                    related = self._find_related_uncorrelated_locked(alert)
                    self._alerts[alert.id] = alert
                    if related:
                        now = self._clock()
                        group_id = generate_id("corr")
                        group = _GroupRecord(id=group_id, created_at=now, updated_at=now)
                        for existing in related:
                            existing.correlation_id = group_id
                            existing.related_alert_ids.append(alert.id)
                            alert.related_alert_ids.append(existing.id)
                            group.member_ids.append(existing.id)
                        alert.correlation_id = group_id
                        group.member_ids.append(alert.id)
                        self._groups[group_id] = group
                        self._recompute_locked(group_id)
                        logger.debug(
                            f"Alert {alert.id} opened correlation group {group_id} "
                            f"with {len(related)} related alerts"
                        )

                snapshot = alert.model_copy(deep=True)
                evicted = self._evict_expired_locked()
                group_count = len(self._groups)

            set_attribute("alert.id", snapshot.id)
            if snapshot.correlation_id:
                set_attribute("alert.correlation_id", snapshot.correlation_id)
            logger.info(
                f"Ingested alert {snapshot.id} ({snapshot.type.value}/{snapshot.severity.value}) "
                f"from {snapshot.source.id}"
            )

            metrics = get_metrics()
            if metrics:
                metrics.record_alert_ingested(
                    snapshot.type.value,
                    snapshot.severity.value,
                    snapshot.correlation_id is not None,
                )
                metrics.record_alerts_evicted("retention", evicted)
                metrics.set_correlation_groups(group_count)

            return snapshot

    def _evict_locked(self, predicate: Callable[[Alert], bool]) -> int:
        """Remove matching alerts, prune their groups and drop emptied groups"""
        doomed = {alert_id for alert_id, alert in self._alerts.items() if predicate(alert)}
        if not doomed:
            return 0

        affected = set()
        for alert_id in doomed:
            alert = self._alerts.pop(alert_id)
            if alert.correlation_id is not None:
                affected.add(alert.correlation_id)

        for alert in self._alerts.values():
            if any(related in doomed for related in alert.related_alert_ids):
                alert.related_alert_ids = [
                    related for related in alert.related_alert_ids if related not in doomed
                ]

        for group_id in affected:
            group = self._groups.get(group_id)
            if group is None:
                continue
            group.member_ids = [m for m in group.member_ids if m not in doomed]
            if group.member_ids:
                self._recompute_locked(group_id)
            else:
                del self._groups[group_id]
                logger.debug(f"Removed empty correlation group {group_id}")

        return len(doomed)

    def _evict_expired_locked(self) -> int:
        retention = timedelta(milliseconds=self.config.alert_retention_ms)
        now = self._clock()
        return self._evict_locked(lambda alert: now - alert.timestamp > retention)

    def sweep_expired(self) -> int:
        """Remove alerts older than the retention period; returns how many were removed"""
        with self._lock:
            evicted = self._evict_expired_locked()
            group_count = len(self._groups)

        if evicted:
            logger.info(f"Evicted {evicted} alerts past retention")
        metrics = get_metrics()
        if metrics:
            metrics.record_alerts_evicted("retention", evicted)
            metrics.set_correlation_groups(group_count)
        return evicted

    def clear_resolved_alerts(self) -> int:
        """Remove resolved alerts; returns how many were removed"""
        with self._lock:
            removed = self._evict_locked(lambda alert: alert.resolved)
            group_count = len(self._groups)

        logger.info(f"Cleared {removed} resolved alerts")
        metrics = get_metrics()
        if metrics:
            metrics.record_alerts_evicted("resolved", removed)
            metrics.set_correlation_groups(group_count)
        return removed

    def clear_all(self) -> None:
        with self._lock:
            self._alerts.clear()
            self._groups.clear()
        metrics = get_metrics()
        if metrics:
            metrics.set_correlation_groups(0)

    def _resolve_locked(self, alert: Alert, actor: Optional[str], now: datetime) -> None:
        if alert.resolved:
            return
        alert.resolved = True
        alert.resolved_at = now
        alert.resolved_by = actor

    def resolve_alert(self, alert_id: str, resolved_by: Optional[str] = None) -> Optional[Alert]:
        """Mark an alert resolved; returns None for unknown ids"""
        actor = resolve_actor(resolved_by, self.default_actor)
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            now = self._clock()
            self._resolve_locked(alert, actor, now)
            if alert.correlation_id in self._groups:
                self._groups[alert.correlation_id].updated_at = now
            snapshot = alert.model_copy(deep=True)

        logger.info(f"Alert {alert_id} resolved by {actor or 'unknown'}")
        return snapshot

    def acknowledge_alert(
        self, alert_id: str, acknowledged_by: Optional[str] = None
    ) -> Optional[Alert]:
        """Record that someone is looking at an alert; returns None for unknown ids"""
        actor = resolve_actor(acknowledged_by, self.default_actor)
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            alert.acknowledged_at = self._clock()
            alert.acknowledged_by = actor
            snapshot = alert.model_copy(deep=True)

        logger.info(f"Alert {alert_id} acknowledged by {actor or 'unknown'}")
        return snapshot

    def resolve_correlation_group(
        self, group_id: str, resolved_by: Optional[str] = None
    ) -> Optional[CorrelationGroup]:
        """Resolve every member of a group at once; returns None for unknown ids"""
        actor = resolve_actor(resolved_by, self.default_actor)
        with self._lock:
            if group_id not in self._groups:
                return None
            now = self._clock()
            for member in self._members_locked(group_id):
                self._resolve_locked(member, actor, now)
            self._groups[group_id].updated_at = now
            group = self._build_group_locked(group_id)

        logger.info(
            f"Correlation group {group_id} ({len(group.alerts)} alerts) "
            f"resolved by {actor or 'unknown'}"
        )
        return group

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    def get_all_alerts(self) -> list[Alert]:
        with self._lock:
            return [alert.model_copy(deep=True) for alert in self._alerts.values()]

    def get_unresolved_alerts(self) -> list[Alert]:
        with self._lock:
            return [
                alert.model_copy(deep=True)
                for alert in self._alerts.values()
                if not alert.resolved
            ]

    def get_alerts_by_severity(self, severity: AlertSeverity) -> list[Alert]:
        with self._lock:
            return [
                alert.model_copy(deep=True)
                for alert in self._alerts.values()
                if alert.severity == severity
            ]

    def get_correlation_group(self, group_id: str) -> Optional[CorrelationGroup]:
        with self._lock:
            if group_id not in self._groups:
                return None
            return self._build_group_locked(group_id)

    def get_correlated_alerts(self, alert_id: str) -> list[Alert]:
        """Other members of the alert's group (empty when uncorrelated or unknown)"""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.correlation_id not in self._groups:
                return []
            return [
                member.model_copy(deep=True)
                for member in self._members_locked(alert.correlation_id)
                if member.id != alert_id
            ]

    def correlate_alerts(self) -> list[CorrelationGroup]:
        """All live correlation groups"""
        with self._lock:
            return [self._build_group_locked(group_id) for group_id in self._groups]

    def get_stats(self) -> dict[str, Any]:
        """Alert counts, recomputed on every call"""
        with self._lock:
            by_severity = {severity.value: 0 for severity in AlertSeverity}
            unresolved_by_severity = {severity.value: 0 for severity in AlertSeverity}
            unresolved = 0
            for alert in self._alerts.values():
                by_severity[alert.severity.value] += 1
                if not alert.resolved:
                    unresolved += 1
                    unresolved_by_severity[alert.severity.value] += 1
            return {
                "total": len(self._alerts),
                "unresolved": unresolved,
                "by_severity": by_severity,
                "unresolved_by_severity": unresolved_by_severity,
                "correlation_groups": len(self._groups),
            }

    def export_state(self) -> dict[str, Any]:
        """JSON-safe dump of alerts and groups, for persistence"""
        with self._lock:
            return {
                "alerts": [alert.to_dict() for alert in self._alerts.values()],
                "correlation_groups": [
                    self._build_group_locked(group_id).to_dict() for group_id in self._groups
                ],
            }

    def load_state(
        self,
        alerts: list[dict[str, Any]],
        correlation_groups: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        """
        Replace all alerts and groups with previously exported state

        Group membership is rebuilt from each alert's ``correlation_id``; the
        exported group records only contribute their timestamps. Root causes
        are recomputed.
        """
        self.replace_state(
            [Alert.from_dict(record) for record in alerts],
            [CorrelationGroup.from_dict(record) for record in correlation_groups or []],
        )

    def replace_state(
        self,
        alerts: list[Alert],
        correlation_groups: Optional[list[CorrelationGroup]] = None,
    ) -> None:
        """Replace all alerts and groups with already validated models"""
        loaded = [alert.model_copy(deep=True) for alert in alerts]
        group_times = {group.id: group for group in correlation_groups or []}

        with self._lock:
            self._alerts = {alert.id: alert for alert in loaded}
            self._groups = {}
            now = self._clock()
            for alert in loaded:
                if alert.correlation_id is None:
                    continue
                group = self._groups.get(alert.correlation_id)
                if group is None:
                    saved = group_times.get(alert.correlation_id)
                    group = _GroupRecord(
                        id=alert.correlation_id,
                        created_at=saved.created_at if saved else now,
                        updated_at=saved.updated_at if saved else now,
                    )
                    self._groups[group.id] = group
                group.member_ids.append(alert.id)
            for group_id in self._groups:
                self._recompute_locked(group_id, touch=False)
            group_count = len(self._groups)

        logger.info(f"Loaded {len(loaded)} alerts in {group_count} correlation groups")
        metrics = get_metrics()
        if metrics:
            metrics.set_correlation_groups(group_count)

    def update_config(self, config: SafetyConfig) -> None:
        with self._lock:
            self.config = config
