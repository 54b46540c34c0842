"""
Cooldown limiter for infrastructure operations

Keeps a per ``operation_type:target_id`` execution ledger and refuses repeat
executions until the configured cooldown has elapsed. The ledger is purely
in-memory: a restarted process starts with no cooldowns.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .config import SafetyConfig
from .models import OperationType

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRecord:
    """Ledger entry for one operation key"""

    operation_key: str
    last_executed_at: float
    execution_count: int = 0


@dataclass
class CooldownStats:
    """Aggregate limiter diagnostics"""

    total_executions: int = 0
    active_cooldowns: int = 0
    executions_by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "active_cooldowns": self.active_cooldowns,
            "executions_by_type": dict(self.executions_by_type),
        }


class CooldownLimiter:
    """
    Thread-safe cooldown ledger

    All reads and writes go through one lock per instance. ``try_acquire``
    performs the check and the record in a single critical section, so two
    concurrent callers can never both be allowed for the same key.
    Remaining time is computed on query; no timer threads run.
    """

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the limiter

        Args:
            config: Safety configuration providing per-type cooldowns
            clock: Returns the current time in epoch seconds
        """
        self.config = config or SafetyConfig()
        self._clock = clock
        self._executions: dict[str, ExecutionRecord] = {}
        self._lock = threading.RLock()

    @staticmethod
    def generate_key(operation_type: OperationType, target_id: str) -> str:
        return f"{OperationType(operation_type).value}:{target_id}"

    def _cooldown_ms_for_key(self, operation_key: str) -> int:
        type_name = operation_key.split(":", 1)[0]
        try:
            operation_type = OperationType(type_name)
        except ValueError:
            return 0
        return self.config.cooldown_for(operation_type)

    def _remaining_locked(
        self, operation_key: str, now: float, cooldown_ms: Optional[int] = None
    ) -> int:
        record = self._executions.get(operation_key)
        if record is None:
            return 0
        if cooldown_ms is None:
            cooldown_ms = self._cooldown_ms_for_key(operation_key)
        elapsed_ms = (now - record.last_executed_at) * 1000
        remaining = cooldown_ms - elapsed_ms
        # Round up so a key never reports 0 while still cooling down
        return max(0, math.ceil(remaining))

    def _record_locked(self, operation_key: str, now: float) -> None:
        record = self._executions.get(operation_key)
        count = record.execution_count if record else 0
        self._executions[operation_key] = ExecutionRecord(
            operation_key=operation_key,
            last_executed_at=now,
            execution_count=count + 1,
        )

    def can_execute(self, operation_key: str) -> bool:
        """Check whether the cooldown for the key has elapsed"""
        return self.get_cooldown_remaining(operation_key) == 0

    def can_execute_operation(self, operation_type: OperationType, target_id: str) -> bool:
        return self.can_execute(self.generate_key(operation_type, target_id))

    def record_execution(self, operation_key: str) -> None:
        """Record an execution for the key, starting a new cooldown"""
        with self._lock:
            self._record_locked(operation_key, self._clock())

    def record_operation_execution(
        self, operation_type: OperationType, target_id: str
    ) -> None:
        self.record_execution(self.generate_key(operation_type, target_id))

    def try_acquire(self, operation_key: str, cooldown_ms: Optional[int] = None) -> bool:
        """
        Atomically check the cooldown and record an execution

        Args:
            operation_key: The ``type:target`` key
            cooldown_ms: Cooldown to enforce instead of the configured one
                for the operation type

        Returns:
            True if the execution was allowed and recorded, False if the
            key is still cooling down (nothing is recorded in that case)
        """
        with self._lock:
            now = self._clock()
            if self._remaining_locked(operation_key, now, cooldown_ms) > 0:
                return False
            self._record_locked(operation_key, now)
            return True

    def get_cooldown_remaining(
        self, operation_key: str, cooldown_ms: Optional[int] = None
    ) -> int:
        """Remaining cooldown in milliseconds (0 when the key may execute)"""
        with self._lock:
            return self._remaining_locked(operation_key, self._clock(), cooldown_ms)

    def get_operation_cooldown_remaining(
        self, operation_type: OperationType, target_id: str
    ) -> int:
        return self.get_cooldown_remaining(self.generate_key(operation_type, target_id))

    def get_execution_count(self, operation_key: str) -> int:
        with self._lock:
            record = self._executions.get(operation_key)
            return record.execution_count if record else 0

    def get_last_execution_time(self, operation_key: str) -> Optional[float]:
        with self._lock:
            record = self._executions.get(operation_key)
            return record.last_executed_at if record else None

    def reset(self, operation_key: str) -> None:
        """Clear the cooldown for one key"""
        with self._lock:
            self._executions.pop(operation_key, None)
        logger.info(f"Cooldown reset for {operation_key}")

    def reset_operation(self, operation_type: OperationType, target_id: str) -> None:
        self.reset(self.generate_key(operation_type, target_id))

    def clear_target(self, target_id: str) -> int:
        """Clear every cooldown for a target; returns the number of keys removed"""
        with self._lock:
            keys = [
                key for key in self._executions if key.partition(":")[2] == target_id
            ]
            for key in keys:
                del self._executions[key]
        logger.info(f"Cleared {len(keys)} cooldowns for target {target_id}")
        return len(keys)

    def clear_operation_type(self, operation_type: OperationType) -> int:
        """Clear every cooldown for an operation type; returns the number removed"""
        prefix = f"{OperationType(operation_type).value}:"
        with self._lock:
            keys = [key for key in self._executions if key.startswith(prefix)]
            for key in keys:
                del self._executions[key]
        logger.info(f"Cleared {len(keys)} cooldowns for operation type {prefix[:-1]}")
        return len(keys)

    def clear_all(self) -> None:
        with self._lock:
            self._executions.clear()

    def get_active_cooldowns(self) -> dict[str, int]:
        """Map of keys still cooling down to their remaining milliseconds"""
        with self._lock:
            now = self._clock()
            active = {}
            for key in self._executions:
                remaining = self._remaining_locked(key, now)
                if remaining > 0:
                    active[key] = remaining
            return active

    def get_stats(self) -> CooldownStats:
        """Aggregate diagnostics, recomputed on every call"""
        with self._lock:
            now = self._clock()
            stats = CooldownStats()
            for key, record in self._executions.items():
                stats.total_executions += record.execution_count
                if self._remaining_locked(key, now) > 0:
                    stats.active_cooldowns += 1
                type_name = key.split(":", 1)[0]
                stats.executions_by_type[type_name] = (
                    stats.executions_by_type.get(type_name, 0) + record.execution_count
                )
            return stats

    def update_config(self, config: SafetyConfig) -> None:
        """Replace the safety configuration wholesale"""
        with self._lock:
            self.config = config


def format_cooldown_remaining(remaining_ms: int) -> str:
    """
    Format remaining cooldown for display

    Returns:
        "Ready" when nothing remains, otherwise e.g. "45s" or "1m 30s"
    """
    if remaining_ms <= 0:
        return "Ready"

    seconds = math.ceil(remaining_ms / 1000)
    minutes, remaining_seconds = divmod(seconds, 60)

    if minutes > 0:
        return f"{minutes}m {remaining_seconds}s"
    return f"{remaining_seconds}s"
