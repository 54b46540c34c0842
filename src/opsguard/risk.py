"""
Risk assessment for infrastructure operations

Pure, deterministic functions classifying an operation's risk from its type
and target, plus table lookups against the SafetyConfig.
"""

import re
from typing import Optional

from .config import SafetyConfig
from .models import OperationTarget, OperationType, RiskLevel, TargetType

RISK_LEVEL_ORDER: dict[RiskLevel, int] = {
    RiskLevel.SAFE: 0,
    RiskLevel.MODERATE: 1,
    RiskLevel.DANGEROUS: 2,
    RiskLevel.CRITICAL: 3,
}

_LEVELS = sorted(RISK_LEVEL_ORDER, key=RISK_LEVEL_ORDER.__getitem__)

# Names that usually indicate production or shared infrastructure
PRODUCTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^prod",
        r"production",
        r"master",
        r"primary",
        r"main",
        r"database",
        r"db-",
        r"gateway",
        r"load-?balancer",
        r"lb-",
    )
]

_VM_ELEVATION = {
    RiskLevel.MODERATE: RiskLevel.DANGEROUS,
    RiskLevel.DANGEROUS: RiskLevel.CRITICAL,
}

_DEFAULT_CONFIG = SafetyConfig()


def _elevate(level: RiskLevel) -> RiskLevel:
    index = RISK_LEVEL_ORDER[level]
    return _LEVELS[min(index + 1, len(_LEVELS) - 1)]


def is_production_target(target: OperationTarget) -> bool:
    """Check whether the target's name or id matches a production-signal pattern"""
    return any(
        pattern.search(target.name) or pattern.search(target.id)
        for pattern in PRODUCTION_PATTERNS
    )


def assess_risk(
    operation_type: OperationType,
    target: OperationTarget,
    config: Optional[SafetyConfig] = None,
) -> RiskLevel:
    """
    Assess the risk level of an operation

    Starts from the configured base risk for the operation type, bumps
    moderate and dangerous operations on VMs one level, then elevates one more
    level for production-looking targets. The result never exceeds critical.

    Args:
        operation_type: The type of operation being performed
        target: The target of the operation
        config: Safety configuration (defaults to the built-in policy)

    Returns:
        The assessed risk level
    """
    config = config or _DEFAULT_CONFIG
    risk_level = config.risk_matrix[operation_type]

    if target.type == TargetType.VM:
        risk_level = _VM_ELEVATION.get(risk_level, risk_level)

    if is_production_target(target):
        risk_level = _elevate(risk_level)

    return risk_level


def requires_confirmation(
    risk_level: RiskLevel, config: Optional[SafetyConfig] = None
) -> bool:
    """Whether an operation at this risk level needs human confirmation"""
    config = config or _DEFAULT_CONFIG
    return config.confirmation_thresholds[risk_level]


def get_cooldown_ms(
    operation_type: OperationType, config: Optional[SafetyConfig] = None
) -> int:
    """Cooldown period for an operation type, in milliseconds"""
    config = config or _DEFAULT_CONFIG
    return config.cooldown_for(operation_type)


def get_max_retries(
    operation_type: OperationType, config: Optional[SafetyConfig] = None
) -> int:
    """Maximum retry count for an operation type"""
    config = config or _DEFAULT_CONFIG
    return config.default_max_retries[operation_type]


def compare_risk_levels(a: RiskLevel, b: RiskLevel) -> int:
    """Negative if a < b, zero if equal, positive if a > b"""
    return RISK_LEVEL_ORDER[a] - RISK_LEVEL_ORDER[b]


def max_risk_level(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if RISK_LEVEL_ORDER[a] >= RISK_LEVEL_ORDER[b] else b


def is_risk_at_or_above(level: RiskLevel, threshold: RiskLevel) -> bool:
    return RISK_LEVEL_ORDER[level] >= RISK_LEVEL_ORDER[threshold]


RISK_DESCRIPTIONS: dict[RiskLevel, str] = {
    RiskLevel.SAFE: "This operation is safe and can be executed without confirmation.",
    RiskLevel.MODERATE: "This operation may have side effects. Consider the impact before proceeding.",
    RiskLevel.DANGEROUS: "This operation is potentially destructive. Human confirmation is required.",
    RiskLevel.CRITICAL: "This operation is highly destructive and irreversible. Exercise extreme caution.",
}


def get_risk_description(risk_level: RiskLevel) -> str:
    return RISK_DESCRIPTIONS[risk_level]


# {target} is substituted with e.g. 'vm "prod-db-01"'
_OPERATION_WARNINGS: dict[OperationType, dict[RiskLevel, str]] = {
    OperationType.QUERY: {
        RiskLevel.SAFE: "Querying {target}.",
        RiskLevel.MODERATE: "Querying {target}. This may take some time.",
        RiskLevel.DANGEROUS: "Querying {target}. This operation is resource-intensive.",
        RiskLevel.CRITICAL: "Querying {target}. This may impact system performance.",
    },
    OperationType.RESTART: {
        RiskLevel.SAFE: "Restarting {target}.",
        RiskLevel.MODERATE: "Restarting {target}. Service will be briefly unavailable.",
        RiskLevel.DANGEROUS: "Restarting {target}. Connected clients will be disconnected.",
        RiskLevel.CRITICAL: "Restarting {target}. This will cause service disruption.",
    },
    OperationType.STOP: {
        RiskLevel.SAFE: "Stopping {target}.",
        RiskLevel.MODERATE: "Stopping {target}. Service will become unavailable.",
        RiskLevel.DANGEROUS: "Stopping {target}. Dependent services may be affected.",
        RiskLevel.CRITICAL: "Stopping {target}. This will cause immediate service outage.",
    },
    OperationType.REBOOT: {
        RiskLevel.SAFE: "Rebooting {target}.",
        RiskLevel.MODERATE: "Rebooting {target}. System will be temporarily offline.",
        RiskLevel.DANGEROUS: "Rebooting {target}. All services will be interrupted.",
        RiskLevel.CRITICAL: "Rebooting {target}. This will cause extended downtime.",
    },
    OperationType.DELETE: {
        RiskLevel.SAFE: "Deleting {target}.",
        RiskLevel.MODERATE: "Deleting {target}. This action cannot be undone.",
        RiskLevel.DANGEROUS: "Deleting {target}. All data will be permanently lost.",
        RiskLevel.CRITICAL: "Deleting {target}. This is irreversible and will cause data loss.",
    },
}


def get_operation_warning(
    operation_type: OperationType, target: OperationTarget, risk_level: RiskLevel
) -> str:
    """Human-readable warning for confirming an operation"""
    target_desc = f'{target.type.value} "{target.name}"'
    return _OPERATION_WARNINGS[operation_type][risk_level].format(target=target_desc)
