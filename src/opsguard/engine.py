"""
Safety engine

Composes the cooldown limiter, operation authorizer and alert correlator
from one configuration, and owns snapshot persistence and the periodic
alert retention sweep.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .authorizer import AsyncExecutor, Executor, OperationAuthorizer
from .config import OpsguardConfig, SafetyConfig, get_config
from .cooldown import CooldownLimiter
from .correlation import AlertCorrelator, RuleRegistry
from .errors import StorageError
from .models import (
    Alert,
    AlertInput,
    CorrelationGroup,
    Operation,
    OperationInput,
    OperationResult,
    OperationType,
    RiskLevel,
    utcnow,
)
from .observability.tracer import set_attribute, trace_async, trace_operation, trace_sync
from .storage import StateStore, create_store

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SafetyEngine:
    """
    Entry point wiring the safety components together

    The engine holds no state of its own beyond its components; snapshots
    capture unresolved operations, alerts and correlation groups. The
    cooldown ledger is never persisted and starts empty after a restore.
    """

    def __init__(
        self,
        config: Optional[OpsguardConfig] = None,
        store: Optional[StateStore] = None,
        executor: Optional[Executor] = None,
        async_executor: Optional[AsyncExecutor] = None,
        rules: Optional[RuleRegistry] = None,
        clock: Callable[[], float] = time.time,
        alert_clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine

        Args:
            config: Engine configuration (defaults to the global configuration)
            store: Snapshot store (defaults to the configured backend)
            executor: Optional sync executor for approved operations
            async_executor: Optional async executor for approved operations
            rules: Root-cause rule registry (defaults to the built-in rules)
            clock: Epoch-seconds clock for cooldowns
            alert_clock: Datetime clock for alert timestamps and retention
        """
        self.config = config or get_config()
        self.store = store or create_store(self.config.storage)

        self.limiter = CooldownLimiter(self.config.safety, clock=clock)
        self.authorizer = OperationAuthorizer(
            self.config.safety,
            self.limiter,
            executor=executor,
            async_executor=async_executor,
            default_actor=self.config.actor,
        )
        self.correlator = AlertCorrelator(
            self.config.safety,
            rules=rules,
            clock=alert_clock,
            default_actor=self.config.actor,
        )
        self._sweeper_task: Optional[asyncio.Task] = None

    # Operations

    def queue_operation(self, operation_input: OperationInput) -> Operation:
        return self.authorizer.queue_operation(operation_input)

    def approve_operation(
        self, operation_id: str, approved_by: Optional[str] = None
    ) -> Operation:
        return self.authorizer.approve_operation(operation_id, approved_by)

    def reject_operation(
        self, operation_id: str, rejected_by: Optional[str] = None
    ) -> Operation:
        return self.authorizer.reject_operation(operation_id, rejected_by)

    def execute_operation(self, operation_id: str) -> Operation:
        return self.authorizer.execute_operation(operation_id)

    @trace_async("engine.execute_operation_async", record_args=True)
    async def execute_operation_async(self, operation_id: str) -> Operation:
        return await self.authorizer.execute_operation_async(operation_id)

    def report_result(self, operation_id: str, result: OperationResult) -> Operation:
        return self.authorizer.report_result(operation_id, result)

    def cancel_operation(self, operation_id: str) -> None:
        self.authorizer.cancel_operation(operation_id)

    def retry_operation(self, operation_id: str, strict: bool = False) -> Optional[Operation]:
        return self.authorizer.retry_operation(operation_id, strict=strict)

    def get_pending_operations(
        self, risk_level: Optional[RiskLevel] = None
    ) -> list[Operation]:
        return self.authorizer.get_pending_by_risk(risk_level)

    def get_cooldown_remaining(self, operation_type: OperationType, target_id: str) -> int:
        """Remaining cooldown in milliseconds for a type and target"""
        return self.limiter.get_operation_cooldown_remaining(operation_type, target_id)

    # Alerts

    def add_alert(self, alert_input: AlertInput) -> Alert:
        return self.correlator.add_alert(alert_input)

    def resolve_alert(self, alert_id: str, resolved_by: Optional[str] = None) -> Optional[Alert]:
        return self.correlator.resolve_alert(alert_id, resolved_by)

    def acknowledge_alert(
        self, alert_id: str, acknowledged_by: Optional[str] = None
    ) -> Optional[Alert]:
        return self.correlator.acknowledge_alert(alert_id, acknowledged_by)

    def get_unresolved_alerts(self) -> list[Alert]:
        return self.correlator.get_unresolved_alerts()

    def get_correlation_groups(self) -> list[CorrelationGroup]:
        return self.correlator.correlate_alerts()

    # Configuration and stats

    def update_config(self, safety: SafetyConfig) -> None:
        """Replace the safety policy on every component"""
        self.config.safety = safety
        self.authorizer.update_config(safety)
        self.correlator.update_config(safety)
        logger.info("Safety configuration replaced")

    def get_stats(self) -> dict[str, Any]:
        """Aggregate statistics across all components"""
        return {
            "operations": self.authorizer.get_stats(),
            "cooldowns": self.limiter.get_stats().to_dict(),
            "alerts": self.correlator.get_stats(),
        }

    # Persistence

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe snapshot of unresolved operations, alerts and groups"""
        correlation_state = self.correlator.export_state()
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": utcnow().isoformat(),
            "pending_operations": self.authorizer.export_operations(),
            "alerts": correlation_state["alerts"],
            "correlation_groups": correlation_state["correlation_groups"],
        }

    @trace_sync("engine.restore")
    def restore(self, snapshot: dict[str, Any]) -> None:
        """
        Replace engine state with a snapshot

        Every section is validated before any component is touched, so a
        rejected snapshot leaves the current state in place.

        Raises:
            StorageError: The snapshot version is not supported or a record
                is malformed
        """
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise StorageError(f"Unsupported snapshot version: {version}")

        try:
            operations = [
                Operation.from_dict(record)
                for record in snapshot.get("pending_operations", [])
            ]
            alerts = [Alert.from_dict(record) for record in snapshot.get("alerts", [])]
            groups = [
                CorrelationGroup.from_dict(record)
                for record in snapshot.get("correlation_groups", [])
            ]
        except (ValidationError, TypeError) as e:
            raise StorageError(f"Invalid snapshot: {e}") from e

        self.authorizer.replace_operations(operations)
        self.correlator.replace_state(alerts, groups)
        self.limiter.clear_all()
        logger.info(f"Restored snapshot saved at {snapshot.get('saved_at')}")

    def save(self) -> None:
        """Persist a snapshot to the configured store"""
        key = self.config.storage.key
        with trace_operation("engine.save", {"storage.key": key}):
            snapshot = self.snapshot()
            self.store.save(key, snapshot)
            set_attribute("snapshot.operations", len(snapshot["pending_operations"]))
            set_attribute("snapshot.alerts", len(snapshot["alerts"]))
        logger.info(
            f"Saved snapshot with {len(snapshot['pending_operations'])} operations "
            f"and {len(snapshot['alerts'])} alerts"
        )

    def load(self) -> bool:
        """Restore the stored snapshot; returns False when none exists"""
        key = self.config.storage.key
        with trace_operation("engine.load", {"storage.key": key}):
            snapshot = self.store.load(key)
            if snapshot is None:
                logger.info(f"No stored snapshot under {key}")
                return False
            self.restore(snapshot)
        return True

    # Retention sweep

    async def run_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Evict expired alerts every ``interval_seconds`` until cancelled"""
        logger.info(f"Alert sweeper started (interval={interval_seconds}s)")
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                self.correlator.sweep_expired()
            except asyncio.CancelledError:
                logger.info("Alert sweeper stopped")
                raise
            except Exception as e:
                # Keep sweeping even if one pass fails
                logger.error(f"Alert sweep failed: {e}")

    def start_sweeper(self, interval_seconds: float = 60.0) -> asyncio.Task:
        """Schedule ``run_sweeper`` on the running event loop"""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.get_running_loop().create_task(
                self.run_sweeper(interval_seconds)
            )
        return self._sweeper_task

    async def close(self) -> None:
        """Stop the sweeper and release the store"""
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
        self._sweeper_task = None
        self.store.close()
