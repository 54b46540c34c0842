"""
opsguard - fail-safe operation authorization and alert correlation

Gates destructive infrastructure operations (restart, stop, reboot, delete)
behind risk assessment, human confirmation and cooldowns, and clusters
health alerts into correlation groups with an inferred root cause.
"""

__version__ = "0.1.0"

# Core API exports
from .authorizer import OperationAuthorizer
from .config import OpsguardConfig, SafetyConfig
from .context import ActorContext
from .cooldown import CooldownLimiter
from .correlation import AlertCorrelator
from .engine import SafetyEngine
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    OperationNotFoundError,
    RateLimitedError,
    RetryExhaustedError,
    SafetyError,
)
from .models import (
    AlertInput,
    AlertSource,
    OperationInput,
    OperationResult,
    OperationTarget,
)
from .risk import assess_risk

__all__ = [
    "SafetyEngine",
    "OperationAuthorizer",
    "CooldownLimiter",
    "AlertCorrelator",
    "assess_risk",
    "OpsguardConfig",
    "SafetyConfig",
    "ActorContext",
    "OperationInput",
    "OperationTarget",
    "OperationResult",
    "AlertInput",
    "AlertSource",
    "SafetyError",
    "NotFoundError",
    "OperationNotFoundError",
    "InvalidTransitionError",
    "RateLimitedError",
    "RetryExhaustedError",
    "__version__",
]
