"""
Alert correlation and root-cause inference

- AlertCorrelator: ingests alerts and maintains correlation groups
- RuleRegistry: pluggable root-cause rules evaluated in priority order
"""

from .correlator import CAUSALITY, AlertCorrelator, alerts_related
from .rules import (
    SUGGESTED_ACTIONS,
    RootCauseRule,
    RuleMatch,
    RuleRegistry,
    detect_root_cause,
    register_rule,
    registry,
)

__all__ = [
    "AlertCorrelator",
    "alerts_related",
    "CAUSALITY",
    "detect_root_cause",
    "RootCauseRule",
    "RuleMatch",
    "RuleRegistry",
    "register_rule",
    "registry",
    "SUGGESTED_ACTIONS",
]
