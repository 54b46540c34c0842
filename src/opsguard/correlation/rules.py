"""
Root-cause inference rules

Rules are small classes registered with a priority; ``detect_root_cause``
evaluates them in priority order and the first match wins. The raw match
carries a base confidence which is then scaled by how well the group
corroborates it.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from ..models import (
    Alert,
    AlertSource,
    AlertType,
    RootCause,
    RootCauseType,
    SourceType,
)

logger = logging.getLogger(__name__)

SUGGESTED_ACTIONS: dict[RootCauseType, list[str]] = {
    RootCauseType.NETWORK: [
        "Check network switch/router status",
        "Check interface and link state",
        "Verify firewall rules",
        "Check for network congestion",
    ],
    RootCauseType.DNS: [
        "Check DNS server health",
        "Verify resolver reachability",
        "Verify DNS configuration",
    ],
    RootCauseType.VM: [
        "Check VM health and status",
        "Verify VM resource usage (CPU, memory, disk)",
        "Check hypervisor status",
        "Consider rebooting the VM",
    ],
    RootCauseType.SERVICE: [
        "Check service logs",
        "Verify service configuration",
        "Check upstream dependencies",
    ],
    RootCauseType.RESOURCE: [
        "Check disk space",
        "Monitor memory usage",
        "Review CPU utilization",
        "Consider scaling resources",
    ],
    RootCauseType.UNKNOWN: [
        "Review individual alert details",
        "Check system logs",
        "Monitor for additional alerts",
    ],
}

ORIGIN_ROOT_CAUSE: dict[AlertType, RootCauseType] = {
    AlertType.NETWORK_ISSUE: RootCauseType.NETWORK,
    AlertType.DNS_ISSUE: RootCauseType.DNS,
    AlertType.VM_ISSUE: RootCauseType.VM,
    AlertType.SERVICE_DOWN: RootCauseType.SERVICE,
    AlertType.SERVICE_DEGRADED: RootCauseType.SERVICE,
    AlertType.CONTAINER_ISSUE: RootCauseType.SERVICE,
    AlertType.RESOURCE_EXHAUSTED: RootCauseType.RESOURCE,
    AlertType.PERFORMANCE: RootCauseType.RESOURCE,
    AlertType.SECURITY: RootCauseType.UNKNOWN,
    AlertType.CUSTOM: RootCauseType.UNKNOWN,
}

# Confidence multiplier by group size; four or more alerts fully corroborate
_SIZE_CORROBORATION = {1: 0.4, 2: 0.6, 3: 0.8}
_ESCALATION_BONUS = 0.1


@dataclass
class RuleMatch:
    """Raw rule verdict before corroboration scaling"""

    type: RootCauseType
    description: str
    base_confidence: float
    affected_sources: list[AlertSource]
    suggested_actions: list[str] = field(default_factory=list)


def find_origin(alerts: list[Alert]) -> Alert:
    """The highest-severity alert, earliest first on ties"""
    return min(alerts, key=lambda alert: (-alert.severity_rank, alert.timestamp))


def corroboration(alerts: list[Alert]) -> float:
    """
    Multiplier in [0, 1] describing how strongly the group backs a verdict

    Grows with group size, is scaled down when severities are mixed, and
    gains a bonus when severity escalates over time.
    """
    size_factor = _SIZE_CORROBORATION.get(len(alerts), 1.0)

    severity_counts = Counter(alert.severity for alert in alerts)
    homogeneity = max(severity_counts.values()) / len(alerts)
    score = size_factor * (0.75 + 0.25 * homogeneity)

    ranks = [alert.severity_rank for alert in sorted(alerts, key=lambda a: a.timestamp)]
    escalating = len(ranks) > 1 and ranks[-1] > ranks[0] and all(
        later >= earlier for earlier, later in zip(ranks, ranks[1:])
    )
    if escalating:
        score += _ESCALATION_BONUS

    return min(1.0, score)


def _unique_sources(sources: list[AlertSource]) -> list[AlertSource]:
    seen = []
    for source in sources:
        if source not in seen:
            seen.append(source)
    return seen


class RootCauseRule(ABC):
    """Base class for root-cause rules"""

    name: str = ""
    # Lower runs first
    priority: int = 100

    @abstractmethod
    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        """Return a match when the rule explains the alerts, else None"""


class RuleRegistry:
    """
    Registry of root-cause rules

    Rules are instantiated once at registration and kept sorted by priority.
    """

    def __init__(self):
        self._rules: dict[str, RootCauseRule] = {}

    def register(self, rule_class: type) -> None:
        """Register a rule class"""
        name = getattr(rule_class, "name", None)
        if not name:
            raise ValueError(
                f"Rule class {rule_class.__name__} must have a 'name' attribute"
            )

        self._rules[name] = rule_class()
        logger.debug(f"Registered root-cause rule: {name}")

    def unregister(self, name: str) -> None:
        self._rules.pop(name, None)

    def get_rule(self, name: str) -> Optional[RootCauseRule]:
        return self._rules.get(name)

    def get_rules(self) -> list[RootCauseRule]:
        """Registered rules in evaluation order"""
        return sorted(self._rules.values(), key=lambda rule: rule.priority)

    def get_available_rules(self) -> list[str]:
        return [rule.name for rule in self.get_rules()]


# Global registry instance
registry = RuleRegistry()


def register_rule(rule_class: type) -> type:
    """Decorator for registering rule classes"""
    registry.register(rule_class)
    return rule_class


@register_rule
class MultiServiceOutageRule(RootCauseRule):
    """Several services down across hosts point at the network or DNS"""

    name = "multi_service_outage"
    priority = 10

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        types = {alert.type for alert in alerts}
        service_down = sum(1 for alert in alerts if alert.type == AlertType.SERVICE_DOWN)
        hosts = {alert.source.host for alert in alerts if alert.source.host}
        if service_down < 2 or len(hosts) <= 1:
            return None

        sources = _unique_sources([alert.source for alert in alerts])
        if AlertType.DNS_ISSUE in types:
            return RuleMatch(
                type=RootCauseType.DNS,
                description="DNS resolution failures detected across multiple services",
                base_confidence=0.85,
                affected_sources=sources,
            )
        if AlertType.NETWORK_ISSUE in types:
            return RuleMatch(
                type=RootCauseType.NETWORK,
                description="Network connectivity issues detected affecting multiple services",
                base_confidence=0.85,
                affected_sources=sources,
            )
        return RuleMatch(
            type=RootCauseType.NETWORK,
            description=(
                "Multiple services became unavailable simultaneously, "
                "suggesting a network issue"
            ),
            base_confidence=0.7,
            affected_sources=sources,
            suggested_actions=[
                "Check network connectivity",
                "Verify DNS resolution",
                "Check upstream services",
            ],
        )


@register_rule
class RepeatingSourceRule(RootCauseRule):
    name = "repeating_source"
    priority = 20

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        counts = Counter(alert.source.id for alert in alerts)
        for source_id, count in counts.items():
            if count < 2:
                continue
            source = next(a.source for a in alerts if a.source.id == source_id)
            return RuleMatch(
                type=RootCauseType.SERVICE,
                description=(
                    f'Service "{source.name}" is repeatedly alerting, '
                    "indicating a specific issue with this service"
                ),
                base_confidence=0.8,
                affected_sources=[source],
                suggested_actions=[
                    f"Check logs for {source.name}",
                    f"Verify {source.name} configuration",
                    f"Consider restarting {source.name}",
                    f"Check resource usage for {source.name}",
                ],
            )
        return None


@register_rule
class SingleVmRule(RootCauseRule):
    name = "single_vm"
    priority = 30

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        vm_sources = [a.source for a in alerts if a.source.type == SourceType.VM]
        if not vm_sources or len({source.id for source in vm_sources}) != 1:
            return None
        return RuleMatch(
            type=RootCauseType.VM,
            description=(
                f'All alerts originate from VM "{vm_sources[0].name}", '
                "indicating a VM-level issue"
            ),
            base_confidence=0.9,
            affected_sources=_unique_sources(vm_sources),
        )


@register_rule
class ContainerIssuesRule(RootCauseRule):
    name = "container_issues"
    priority = 40

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        container_alerts = [a for a in alerts if a.type == AlertType.CONTAINER_ISSUE]
        if len(container_alerts) < 2:
            return None
        return RuleMatch(
            type=RootCauseType.SERVICE,
            description=(
                "Multiple container issues detected, "
                "may indicate orchestration or host issues"
            ),
            base_confidence=0.75,
            affected_sources=_unique_sources([a.source for a in container_alerts]),
            suggested_actions=[
                "Check container orchestration platform",
                "Verify container host resources",
                "Check for image pull issues",
                "Review container logs",
            ],
        )


@register_rule
class ResourceExhaustionRule(RootCauseRule):
    name = "resource_exhaustion"
    priority = 50

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        resource_alerts = [a for a in alerts if a.type == AlertType.RESOURCE_EXHAUSTED]
        if not resource_alerts:
            return None
        return RuleMatch(
            type=RootCauseType.RESOURCE,
            description=(
                "Resource exhaustion detected, "
                "services may be competing for limited resources"
            ),
            base_confidence=0.8,
            affected_sources=_unique_sources([a.source for a in resource_alerts]),
        )


@register_rule
class OriginMappingRule(RootCauseRule):
    """Fallback: classify the group by its probable origin alert"""

    name = "origin_mapping"
    priority = 1000

    def evaluate(self, alerts: list[Alert], origin: Alert) -> Optional[RuleMatch]:
        root_type = ORIGIN_ROOT_CAUSE.get(origin.type, RootCauseType.UNKNOWN)
        sources = _unique_sources([alert.source for alert in alerts])
        if root_type == RootCauseType.UNKNOWN:
            return RuleMatch(
                type=RootCauseType.UNKNOWN,
                description="Unable to determine specific root cause from available alerts",
                base_confidence=0.3,
                affected_sources=sources,
            )
        return RuleMatch(
            type=root_type,
            description=(
                f'Probable {root_type.value} issue originating at '
                f'"{origin.source.name}": {origin.message}'
            ),
            base_confidence=0.6,
            affected_sources=sources,
        )


def detect_root_cause(
    alerts: list[Alert], rules: Optional[RuleRegistry] = None
) -> Optional[RootCause]:
    """
    Infer the most likely root cause for a set of alerts

    Never raises: a failing rule is logged and skipped, and when nothing
    matches the result is an ``unknown`` cause with low confidence.

    Args:
        alerts: Alerts believed to share a cause
        rules: Rule registry to evaluate (defaults to the global registry)

    Returns:
        The inferred root cause, or None for an empty alert list
    """
    if not alerts:
        return None

    rules = rules or registry
    origin = find_origin(alerts)
    match = None

    for rule in rules.get_rules():
        try:
            match = rule.evaluate(alerts, origin)
        except Exception as e:
            logger.error(f"Error in root-cause rule {rule.name}: {e}")
            continue
        if match is not None:
            logger.debug(f"Root-cause rule {rule.name} matched {len(alerts)} alerts")
            break

    if match is None:
        match = RuleMatch(
            type=RootCauseType.UNKNOWN,
            description="Unable to determine specific root cause from available alerts",
            base_confidence=0.3,
            affected_sources=_unique_sources([alert.source for alert in alerts]),
        )

    confidence = max(0.0, min(1.0, match.base_confidence * corroboration(alerts)))
    return RootCause(
        type=match.type,
        description=match.description,
        confidence=round(confidence, 4),
        affected_sources=match.affected_sources,
        suggested_actions=match.suggested_actions or list(SUGGESTED_ACTIONS[match.type]),
        origin_alert_id=origin.id,
    )
