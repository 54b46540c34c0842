"""
Operation authorization state machine

Queues infrastructure operations, tags them with a risk level, gates them on
human confirmation and cooldowns, and tracks their lifecycle:

    pending -> approved | rejected
    approved -> executed | failed
    failed -> (new record through retry while budget remains)

Executors are optional. Without one, ``executed`` means "authorized and
dispatched" and callers report the outcome through ``report_result``.
"""

import logging
import threading
from typing import Any, Awaitable, Callable, Optional

from .config import SafetyConfig
from .context import resolve_actor
from .cooldown import CooldownLimiter
from .errors import (
    InvalidTransitionError,
    OperationNotFoundError,
    RateLimitedError,
    RetryExhaustedError,
)
from .models import (
    Operation,
    OperationInput,
    OperationResult,
    OperationStatus,
    RiskLevel,
    generate_id,
    utcnow,
)
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_operation
from .risk import (
    RISK_LEVEL_ORDER,
    assess_risk,
    get_cooldown_ms,
    get_max_retries,
    is_risk_at_or_above,
    requires_confirmation,
)

logger = logging.getLogger(__name__)

Executor = Callable[[Operation], OperationResult]
AsyncExecutor = Callable[[Operation], Awaitable[OperationResult]]

_UNRESOLVED = (OperationStatus.PENDING, OperationStatus.APPROVED)
_TERMINAL = (OperationStatus.EXECUTED, OperationStatus.REJECTED)


def _record_transition(operation: Operation, from_status: OperationStatus) -> None:
    metrics = get_metrics()
    if metrics:
        metrics.record_transition(
            operation.type.value, from_status.value, operation.status.value
        )


class OperationAuthorizer:
    """
    Thread-safe operation lifecycle manager

    Every public method works on deep copies: records held internally are
    never handed out, so callers cannot mutate state behind the lock. The
    authorizer lock may be held while calling into the cooldown limiter,
    never the other way around.
    """

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        limiter: Optional[CooldownLimiter] = None,
        executor: Optional[Executor] = None,
        async_executor: Optional[AsyncExecutor] = None,
        default_actor: Optional[str] = None,
    ):
        """
        Initialize the authorizer

        Args:
            config: Safety policy used to derive risk, confirmation and budgets
            limiter: Cooldown ledger consulted on execution
            executor: Optional callable that performs an executed operation
            async_executor: Optional coroutine function used by
                ``execute_operation_async``
            default_actor: Name recorded on approvals when neither the caller
                nor the actor context supplies one
        """
        self.config = config or SafetyConfig()
        self.limiter = limiter or CooldownLimiter(self.config)
        self.executor = executor
        self.async_executor = async_executor
        self.default_actor = default_actor
        self._operations: dict[str, Operation] = {}
        self._lock = threading.RLock()

    def _get_locked(self, operation_id: str) -> Operation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return operation

    def _require_status(
        self, operation: Operation, status: OperationStatus, action: str
    ) -> None:
        if operation.status != status:
            logger.warning(
                f"Refused to {action} operation {operation.id} in status {operation.status.value}"
            )
            raise InvalidTransitionError(operation.id, operation.status.value, action)

    def queue_operation(self, operation_input: OperationInput) -> Operation:
        """
        Create an operation record

        Unsupplied risk, confirmation, cooldown and retry budget are derived
        from the safety config. Operations that need no confirmation start out
        approved.
        """
        with trace_operation(
            "authorizer.queue_operation",
            {
                "operation.type": operation_input.type.value,
                "operation.target_id": operation_input.target.id,
            },
        ):
            risk_level = operation_input.risk_level or assess_risk(
                operation_input.type, operation_input.target, self.config
            )
            needs_confirmation = operation_input.requires_confirmation
            if needs_confirmation is None:
                needs_confirmation = requires_confirmation(risk_level, self.config)
            cooldown_ms = operation_input.cooldown_ms
            if cooldown_ms is None:
                cooldown_ms = get_cooldown_ms(operation_input.type, self.config)
            max_retries = operation_input.max_retries
            if max_retries is None:
                max_retries = get_max_retries(operation_input.type, self.config)

            now = utcnow()
            status = (
                OperationStatus.PENDING if needs_confirmation else OperationStatus.APPROVED
            )
            operation = Operation(
                id=generate_id("op"),
                type=operation_input.type,
                target=operation_input.target,
                risk_level=risk_level,
                status=status,
                requires_confirmation=needs_confirmation,
                cooldown_ms=cooldown_ms,
                max_retries=max_retries,
                retry_count=operation_input.retry_count,
                created_at=now,
                approved_at=None if needs_confirmation else now,
                idempotency_key=operation_input.idempotency_key,
                metadata=dict(operation_input.metadata),
            )

            with self._lock:
                self._operations[operation.id] = operation
                snapshot = operation.model_copy(deep=True)

            set_attribute("operation.id", operation.id)
            set_attribute("operation.risk_level", risk_level.value)
            logger.info(
                f"Queued {operation.type.value} on {operation.target.id} as {operation.id} "
                f"(risk={risk_level.value}, status={status.value})"
            )

            metrics = get_metrics()
            if metrics:
                metrics.record_operation_queued(
                    operation.type.value, risk_level.value, status.value
                )

            return snapshot

    def approve_operation(
        self, operation_id: str, approved_by: Optional[str] = None
    ) -> Operation:
        """Approve a pending operation"""
        actor = resolve_actor(approved_by, self.default_actor)
        with self._lock:
            operation = self._get_locked(operation_id)
            self._require_status(operation, OperationStatus.PENDING, "approve")
            operation.status = OperationStatus.APPROVED
            operation.approved_at = utcnow()
            operation.approved_by = actor
            snapshot = operation.model_copy(deep=True)

        logger.info(f"Operation {operation_id} approved by {actor or 'unknown'}")
        _record_transition(snapshot, OperationStatus.PENDING)
        return snapshot

    def reject_operation(
        self, operation_id: str, rejected_by: Optional[str] = None
    ) -> Operation:
        """Reject a pending operation"""
        actor = resolve_actor(rejected_by, self.default_actor)
        with self._lock:
            operation = self._get_locked(operation_id)
            self._require_status(operation, OperationStatus.PENDING, "reject")
            operation.status = OperationStatus.REJECTED
            operation.rejected_at = utcnow()
            operation.rejected_by = actor
            snapshot = operation.model_copy(deep=True)

        logger.info(f"Operation {operation_id} rejected by {actor or 'unknown'}")
        _record_transition(snapshot, OperationStatus.PENDING)
        return snapshot

    def _dispatch(self, operation_id: str) -> Operation:
        """Mark an approved operation executed once its cooldown allows it"""
        with self._lock:
            operation = self._get_locked(operation_id)
            self._require_status(operation, OperationStatus.APPROVED, "execute")

            key = operation.operation_key
            if not self.limiter.try_acquire(key, operation.cooldown_ms):
                remaining = self.limiter.get_cooldown_remaining(key, operation.cooldown_ms)
                logger.warning(
                    f"Operation {operation_id} rate limited on {key} ({remaining}ms remaining)"
                )
                add_event("rate_limited", {"operation.key": key, "remaining_ms": remaining})
                metrics = get_metrics()
                if metrics:
                    metrics.record_rate_limited(operation.type.value)
                raise RateLimitedError(key, remaining, operation_id=operation_id)

            operation.status = OperationStatus.EXECUTED
            operation.executed_at = utcnow()
            snapshot = operation.model_copy(deep=True)

        logger.info(f"Operation {operation_id} executed ({key})")
        _record_transition(snapshot, OperationStatus.APPROVED)
        return snapshot

    @staticmethod
    def _apply_result_locked(operation: Operation, result: OperationResult) -> Operation:
        operation.result = result
        if not result.success:
            operation.status = OperationStatus.FAILED
        return operation.model_copy(deep=True)

    def _log_result(self, snapshot: Operation, result: OperationResult) -> None:
        operation_id = snapshot.id
        if result.success:
            logger.info(f"Operation {operation_id} succeeded: {result.message}")
        else:
            logger.warning(
                f"Operation {operation_id} failed: {result.error or result.message}"
            )
            _record_transition(snapshot, OperationStatus.EXECUTED)

    def _store_result(self, dispatched: Operation, result: OperationResult) -> Operation:
        with self._lock:
            operation = self._operations.get(dispatched.id)
            if operation is None:
                logger.warning(
                    f"Operation {dispatched.id} was cleared while its executor ran; "
                    "result not stored"
                )
                operation = dispatched.model_copy(deep=True)
            snapshot = self._apply_result_locked(operation, result)
        self._log_result(snapshot, result)
        return snapshot

    @staticmethod
    def _failure_result(error: Exception) -> OperationResult:
        return OperationResult(
            success=False,
            message="Executor raised an exception",
            error=f"{type(error).__name__}: {error}",
        )

    def execute_operation(self, operation_id: str) -> Operation:
        """
        Execute an approved operation

        Raises:
            OperationNotFoundError: Unknown operation id
            InvalidTransitionError: Operation is not approved
            RateLimitedError: Cooldown for the operation key is still active;
                the record is left untouched
        """
        with trace_operation("authorizer.execute_operation", {"operation.id": operation_id}):
            operation = self._dispatch(operation_id)
            if self.executor is None:
                return operation

            metrics = get_metrics()
            try:
                if metrics:
                    with metrics.time_executor(operation.type.value):
                        result = self.executor(operation)
                else:
                    result = self.executor(operation)
            except Exception as e:
                logger.error(f"Executor failed for operation {operation_id}: {e}")
                result = self._failure_result(e)

            return self._store_result(operation, result)

    async def execute_operation_async(self, operation_id: str) -> Operation:
        """Execute an approved operation, awaiting the async executor if one is set"""
        with trace_operation(
            "authorizer.execute_operation_async", {"operation.id": operation_id}
        ):
            operation = self._dispatch(operation_id)
            if self.async_executor is None:
                return operation

            metrics = get_metrics()
            try:
                if metrics:
                    with metrics.time_executor(operation.type.value):
                        result = await self.async_executor(operation)
                else:
                    result = await self.async_executor(operation)
            except Exception as e:
                logger.error(f"Async executor failed for operation {operation_id}: {e}")
                result = self._failure_result(e)

            return self._store_result(operation, result)

    def report_result(self, operation_id: str, result: OperationResult) -> Operation:
        """Record the outcome of an operation executed by the caller"""
        with self._lock:
            operation = self._get_locked(operation_id)
            self._require_status(operation, OperationStatus.EXECUTED, "report result for")
            if operation.result is not None:
                raise InvalidTransitionError(
                    operation_id, operation.status.value, "report result for"
                )
            snapshot = self._apply_result_locked(operation, result)
        self._log_result(snapshot, result)
        return snapshot

    def cancel_operation(self, operation_id: str) -> None:
        """Delete a pending or approved operation"""
        with self._lock:
            operation = self._get_locked(operation_id)
            if operation.status not in _UNRESOLVED:
                raise InvalidTransitionError(
                    operation_id, operation.status.value, "cancel"
                )
            del self._operations[operation_id]
        logger.info(f"Operation {operation_id} cancelled")

    def retry_operation(self, operation_id: str, strict: bool = False) -> Optional[Operation]:
        """
        Create a retry record for a failed operation

        The new record keeps the type, target, risk, confirmation, cooldown
        and retry budget of the failed one, increments ``retry_count`` and
        carries the idempotency key (the first operation's id when none was
        given). The failed record is marked with ``retried_as`` and cannot be
        retried again, so a chain never forks.

        Args:
            operation_id: Id of the failed operation
            strict: Raise instead of returning None when no retry is possible

        Returns:
            The new operation, or None when the record is unknown, not failed,
            already retried or out of retries

        Raises:
            OperationNotFoundError: Unknown id and ``strict`` is set
            RetryExhaustedError: No retry possible and ``strict`` is set
        """
        with self._lock:
            original = self._operations.get(operation_id)
            if original is None:
                if strict:
                    raise OperationNotFoundError(operation_id)
                return None
            if not original.can_retry():
                logger.warning(
                    f"Operation {operation_id} cannot be retried "
                    f"(status={original.status.value}, "
                    f"retries={original.retry_count}/{original.max_retries}, "
                    f"retried_as={original.retried_as})"
                )
                if strict:
                    raise RetryExhaustedError(
                        operation_id, original.retry_count, original.max_retries
                    )
                return None

            now = utcnow()
            status = (
                OperationStatus.PENDING
                if original.requires_confirmation
                else OperationStatus.APPROVED
            )
            retry = Operation(
                id=generate_id("op"),
                type=original.type,
                target=original.target,
                risk_level=original.risk_level,
                status=status,
                requires_confirmation=original.requires_confirmation,
                cooldown_ms=original.cooldown_ms,
                max_retries=original.max_retries,
                retry_count=original.retry_count + 1,
                created_at=now,
                approved_at=None if original.requires_confirmation else now,
                idempotency_key=original.idempotency_key or original.id,
                metadata=dict(original.metadata),
            )
            original.retried_as = retry.id
            self._operations[retry.id] = retry
            snapshot = retry.model_copy(deep=True)

        logger.info(
            f"Operation {operation_id} retried as {retry.id} "
            f"(attempt {retry.retry_count}/{retry.max_retries})"
        )
        metrics = get_metrics()
        if metrics:
            metrics.record_operation_queued(
                retry.type.value, retry.risk_level.value, status.value
            )
        return snapshot

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation.model_copy(deep=True) if operation else None

    def list_operations(self, status: Optional[OperationStatus] = None) -> list[Operation]:
        """All operations in creation order, optionally filtered by status"""
        with self._lock:
            return [
                op.model_copy(deep=True)
                for op in self._operations.values()
                if status is None or op.status == status
            ]

    def get_pending_by_risk(self, risk_level: Optional[RiskLevel] = None) -> list[Operation]:
        """Pending operations, highest risk first, optionally limited to one level"""
        pending = [
            op
            for op in self.list_operations(OperationStatus.PENDING)
            if risk_level is None or op.risk_level == risk_level
        ]
        pending.sort(key=lambda op: (-RISK_LEVEL_ORDER[op.risk_level], op.created_at))
        return pending

    def get_dangerous_operations(self) -> list[Operation]:
        return [
            op
            for op in self.get_pending_by_risk()
            if is_risk_at_or_above(op.risk_level, RiskLevel.DANGEROUS)
        ]

    def list_terminal(self) -> list[Operation]:
        with self._lock:
            return [
                op.model_copy(deep=True)
                for op in self._operations.values()
                if op.status in _TERMINAL
            ]

    def list_unresolved(self) -> list[Operation]:
        with self._lock:
            return [
                op.model_copy(deep=True)
                for op in self._operations.values()
                if op.status in _UNRESOLVED
            ]

    def clear_executed_operations(self) -> int:
        """Drop executed and rejected records; returns how many were removed"""
        with self._lock:
            terminal = [
                op_id for op_id, op in self._operations.items() if op.status in _TERMINAL
            ]
            for op_id in terminal:
                del self._operations[op_id]
        logger.info(f"Cleared {len(terminal)} terminal operations")
        return len(terminal)

    def get_stats(self) -> dict[str, Any]:
        """Operation counts, recomputed on every call"""
        with self._lock:
            by_status = {status.value: 0 for status in OperationStatus}
            pending_by_risk = {level.value: 0 for level in RiskLevel}
            for op in self._operations.values():
                by_status[op.status.value] += 1
                if op.status == OperationStatus.PENDING:
                    pending_by_risk[op.risk_level.value] += 1
            return {
                "total": len(self._operations),
                "pending_operations": by_status[OperationStatus.PENDING.value],
                "pending_by_risk": pending_by_risk,
                "by_status": by_status,
            }

    def export_operations(self) -> list[dict[str, Any]]:
        """JSON-safe dump of every non-terminal record, for persistence"""
        with self._lock:
            return [
                op.to_dict()
                for op in self._operations.values()
                if op.status not in _TERMINAL
            ]

    def load_operations(self, records: list[dict[str, Any]]) -> int:
        """Replace the operations collection with previously exported records"""
        return self.replace_operations([Operation.from_dict(record) for record in records])

    def replace_operations(self, operations: list[Operation]) -> int:
        """Replace the operations collection with already validated records"""
        with self._lock:
            self._operations = {op.id: op.model_copy(deep=True) for op in operations}
        logger.info(f"Loaded {len(operations)} operations")
        return len(operations)

    def update_config(self, config: SafetyConfig) -> None:
        """Replace the safety policy for subsequently queued operations"""
        with self._lock:
            self.config = config
        self.limiter.update_config(config)
