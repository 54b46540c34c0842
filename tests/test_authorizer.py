"""
Test suite for the operation authorizer

Tests the lifecycle state machine, cooldown gating, executor dispatch,
retries and query surface.
"""

import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from opsguard.authorizer import OperationAuthorizer
from opsguard.config import SafetyConfig
from opsguard.context import ActorContext
from opsguard.cooldown import CooldownLimiter
from opsguard.errors import (
    InvalidTransitionError,
    OperationNotFoundError,
    RateLimitedError,
    RetryExhaustedError,
)
from opsguard.models import (
    OperationInput,
    OperationResult,
    OperationStatus,
    OperationTarget,
    OperationType,
    RiskLevel,
    TargetType,
)


def fail_operation(authorizer: OperationAuthorizer, operation_id: str):
    """Drive an approved operation to failed through a reported result"""
    authorizer.execute_operation(operation_id)
    return authorizer.report_result(
        operation_id, OperationResult(success=False, error="connection refused")
    )


class TestQueueOperation:
    """Test operation creation"""

    def test_confirmation_required_starts_pending(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)

        assert operation.id.startswith("op_")
        assert operation.status == OperationStatus.PENDING
        assert operation.risk_level == RiskLevel.CRITICAL
        assert operation.requires_confirmation is True
        assert operation.cooldown_ms == 300_000
        assert operation.max_retries == 0
        assert operation.approved_at is None

    def test_no_confirmation_starts_approved(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)

        assert operation.status == OperationStatus.APPROVED
        assert operation.risk_level == RiskLevel.MODERATE
        assert operation.requires_confirmation is False
        assert operation.approved_at is not None
        assert operation.approved_by is None

    def test_explicit_overrides_win(self, authorizer, worker_container):
        operation = authorizer.queue_operation(
            OperationInput(
                type=OperationType.RESTART,
                target=worker_container,
                risk_level=RiskLevel.DANGEROUS,
                requires_confirmation=False,
                cooldown_ms=1000,
                max_retries=5,
                idempotency_key="deploy-42",
                metadata={"ticket": "OPS-1"},
            )
        )

        assert operation.risk_level == RiskLevel.DANGEROUS
        assert operation.status == OperationStatus.APPROVED
        assert operation.cooldown_ms == 1000
        assert operation.max_retries == 5
        assert operation.idempotency_key == "deploy-42"
        assert operation.metadata == {"ticket": "OPS-1"}

    def test_risk_override_drives_confirmation(self, authorizer, worker_container):
        operation = authorizer.queue_operation(
            OperationInput(
                type=OperationType.RESTART,
                target=worker_container,
                risk_level=RiskLevel.CRITICAL,
            )
        )

        assert operation.status == OperationStatus.PENDING

    def test_retry_count_over_budget_is_rejected(self, authorizer, prod_vm):
        with pytest.raises(ValueError):
            authorizer.queue_operation(
                OperationInput(type=OperationType.DELETE, target=prod_vm, retry_count=1)
            )

    def test_partial_policy_tables(self, clock, worker_container):
        config = SafetyConfig(
            default_max_retries={"restart": 5}, risk_matrix={"stop": "moderate"}
        )
        authorizer = OperationAuthorizer(config, CooldownLimiter(config, clock=clock))

        query = authorizer.queue_operation(
            OperationInput(type=OperationType.QUERY, target=worker_container)
        )
        stop = authorizer.queue_operation(
            OperationInput(type=OperationType.STOP, target=worker_container)
        )

        assert query.risk_level == RiskLevel.SAFE
        assert query.max_retries == 3
        assert stop.risk_level == RiskLevel.MODERATE
        assert stop.status == OperationStatus.APPROVED

    def test_ids_are_unique(self, authorizer, restart_input):
        ids = {authorizer.queue_operation(restart_input).id for _ in range(50)}
        assert len(ids) == 50

    def test_returned_copy_is_detached(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        operation.status = OperationStatus.EXECUTED

        assert authorizer.get_operation(operation.id).status == OperationStatus.PENDING


class TestApproveReject:
    """Test confirmation transitions"""

    def test_approve_pending(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        approved = authorizer.approve_operation(operation.id, approved_by="alice")

        assert approved.status == OperationStatus.APPROVED
        assert approved.approved_by == "alice"
        assert approved.approved_at is not None

    def test_approve_uses_actor_context(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        with ActorContext("bob"):
            approved = authorizer.approve_operation(operation.id)

        assert approved.approved_by == "bob"

    def test_approve_falls_back_to_default_actor(self, safety_config, limiter, delete_input):
        authorizer = OperationAuthorizer(safety_config, limiter, default_actor="ops-bot")
        operation = authorizer.queue_operation(delete_input)

        assert authorizer.approve_operation(operation.id).approved_by == "ops-bot"

    def test_reject_pending(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        rejected = authorizer.reject_operation(operation.id, rejected_by="carol")

        assert rejected.status == OperationStatus.REJECTED
        assert rejected.rejected_by == "carol"
        assert rejected.rejected_at is not None
        assert rejected.is_terminal

    def test_approve_twice_raises(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        authorizer.approve_operation(operation.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            authorizer.approve_operation(operation.id)

        assert exc_info.value.current == "approved"
        assert exc_info.value.action == "approve"

    def test_reject_auto_approved_raises(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)

        with pytest.raises(InvalidTransitionError):
            authorizer.reject_operation(operation.id)

    def test_approve_rejected_raises(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        authorizer.reject_operation(operation.id)

        with pytest.raises(InvalidTransitionError):
            authorizer.approve_operation(operation.id)

    def test_unknown_id_raises_not_found(self, authorizer):
        with pytest.raises(OperationNotFoundError):
            authorizer.approve_operation("op_missing")
        with pytest.raises(OperationNotFoundError):
            authorizer.reject_operation("op_missing")
        with pytest.raises(OperationNotFoundError):
            authorizer.execute_operation("op_missing")


class TestExecuteOperation:
    """Test execution gating"""

    def test_execute_approved(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        executed = authorizer.execute_operation(operation.id)

        assert executed.status == OperationStatus.EXECUTED
        assert executed.executed_at is not None
        assert executed.result is None

    def test_execute_pending_raises(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)

        with pytest.raises(InvalidTransitionError):
            authorizer.execute_operation(operation.id)

    def test_second_execute_on_same_key_is_rate_limited(
        self, authorizer, restart_input, clock
    ):
        first = authorizer.queue_operation(restart_input)
        second = authorizer.queue_operation(restart_input)

        authorizer.execute_operation(first.id)
        clock.advance(2.5)

        with pytest.raises(RateLimitedError) as exc_info:
            authorizer.execute_operation(second.id)

        error = exc_info.value
        assert error.operation_key == "restart:c1"
        assert error.remaining_ms == 27_500
        assert error.remaining_seconds == 28
        assert error.operation_id == second.id
        # The refused record is left untouched
        assert authorizer.get_operation(second.id).status == OperationStatus.APPROVED

    def test_execute_after_cooldown(self, authorizer, restart_input, clock):
        first = authorizer.queue_operation(restart_input)
        second = authorizer.queue_operation(restart_input)

        authorizer.execute_operation(first.id)
        clock.advance(30)

        assert authorizer.execute_operation(second.id).status == OperationStatus.EXECUTED

    def test_operation_cooldown_override_is_enforced(
        self, authorizer, worker_container, clock
    ):
        def restart(cooldown_ms):
            return authorizer.queue_operation(
                OperationInput(
                    type=OperationType.RESTART,
                    target=worker_container,
                    cooldown_ms=cooldown_ms,
                )
            )

        first = restart(0)
        second = restart(0)
        authorizer.execute_operation(first.id)
        assert authorizer.execute_operation(second.id).status == OperationStatus.EXECUTED

        with pytest.raises(RateLimitedError) as exc_info:
            authorizer.execute_operation(restart(5_000).id)
        assert exc_info.value.remaining_ms == 5_000

        clock.advance(1)
        assert authorizer.execute_operation(restart(1_000).id).status == OperationStatus.EXECUTED

    def test_executed_is_terminal(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        authorizer.execute_operation(operation.id)

        with pytest.raises(InvalidTransitionError):
            authorizer.execute_operation(operation.id)
        with pytest.raises(InvalidTransitionError):
            authorizer.cancel_operation(operation.id)


class TestExecutors:
    """Test injected executor dispatch"""

    def test_successful_executor_result_is_stored(self, safety_config, limiter, restart_input):
        executor = MagicMock(return_value=OperationResult(success=True, message="restarted"))
        authorizer = OperationAuthorizer(safety_config, limiter, executor=executor)

        operation = authorizer.queue_operation(restart_input)
        executed = authorizer.execute_operation(operation.id)

        executor.assert_called_once()
        assert executor.call_args[0][0].status == OperationStatus.EXECUTED
        assert executed.status == OperationStatus.EXECUTED
        assert executed.result.success is True
        assert executed.result.message == "restarted"

    def test_failed_executor_result_marks_failed(self, safety_config, limiter, restart_input):
        executor = MagicMock(return_value=OperationResult(success=False, error="timeout"))
        authorizer = OperationAuthorizer(safety_config, limiter, executor=executor)

        operation = authorizer.queue_operation(restart_input)
        result = authorizer.execute_operation(operation.id)

        assert result.status == OperationStatus.FAILED
        assert result.result.error == "timeout"

    def test_executor_exception_becomes_failed_result(
        self, safety_config, limiter, restart_input
    ):
        executor = MagicMock(side_effect=ConnectionError("api unreachable"))
        authorizer = OperationAuthorizer(safety_config, limiter, executor=executor)

        operation = authorizer.queue_operation(restart_input)
        result = authorizer.execute_operation(operation.id)

        assert result.status == OperationStatus.FAILED
        assert "api unreachable" in result.result.error

    def test_result_returned_when_record_cleared_mid_execution(
        self, safety_config, limiter, restart_input
    ):
        def clearing_executor(operation):
            assert authorizer.clear_executed_operations() == 1
            return OperationResult(success=True, message="restarted")

        authorizer = OperationAuthorizer(safety_config, limiter, executor=clearing_executor)
        operation = authorizer.queue_operation(restart_input)

        executed = authorizer.execute_operation(operation.id)

        assert executed.id == operation.id
        assert executed.status == OperationStatus.EXECUTED
        assert executed.result.message == "restarted"
        assert authorizer.get_operation(operation.id) is None

    @pytest.mark.asyncio
    async def test_async_executor(self, safety_config, limiter, restart_input):
        async_executor = AsyncMock(return_value=OperationResult(success=True))
        authorizer = OperationAuthorizer(safety_config, limiter, async_executor=async_executor)

        operation = authorizer.queue_operation(restart_input)
        executed = await authorizer.execute_operation_async(operation.id)

        async_executor.assert_awaited_once()
        assert executed.status == OperationStatus.EXECUTED
        assert executed.result.success is True

    @pytest.mark.asyncio
    async def test_async_executor_exception(self, safety_config, limiter, restart_input):
        async_executor = AsyncMock(side_effect=RuntimeError("boom"))
        authorizer = OperationAuthorizer(safety_config, limiter, async_executor=async_executor)

        operation = authorizer.queue_operation(restart_input)
        result = await authorizer.execute_operation_async(operation.id)

        assert result.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_async_execute_is_rate_limited(self, authorizer, restart_input):
        first = authorizer.queue_operation(restart_input)
        second = authorizer.queue_operation(restart_input)

        await authorizer.execute_operation_async(first.id)
        with pytest.raises(RateLimitedError):
            await authorizer.execute_operation_async(second.id)


class TestReportResult:
    """Test caller-reported outcomes"""

    def test_report_success(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        authorizer.execute_operation(operation.id)

        reported = authorizer.report_result(operation.id, OperationResult(success=True))
        assert reported.status == OperationStatus.EXECUTED
        assert reported.result.success

    def test_report_failure(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        failed = fail_operation(authorizer, operation.id)

        assert failed.status == OperationStatus.FAILED
        assert failed.can_retry()

    def test_report_twice_raises(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        authorizer.execute_operation(operation.id)
        authorizer.report_result(operation.id, OperationResult(success=True))

        with pytest.raises(InvalidTransitionError):
            authorizer.report_result(operation.id, OperationResult(success=False))

    def test_report_before_execute_raises(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)

        with pytest.raises(InvalidTransitionError):
            authorizer.report_result(operation.id, OperationResult(success=True))


class TestCancelOperation:
    """Test cancellation"""

    def test_cancel_pending(self, authorizer, delete_input):
        operation = authorizer.queue_operation(delete_input)
        authorizer.cancel_operation(operation.id)

        assert authorizer.get_operation(operation.id) is None

    def test_cancel_approved(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        authorizer.cancel_operation(operation.id)

        with pytest.raises(OperationNotFoundError):
            authorizer.execute_operation(operation.id)

    def test_cancel_unknown(self, authorizer):
        with pytest.raises(OperationNotFoundError):
            authorizer.cancel_operation("op_missing")

    def test_cancel_and_execute_race_has_one_winner(self, safety_config, limiter, restart_input):
        for _ in range(20):
            authorizer = OperationAuthorizer(safety_config, limiter)
            limiter.clear_all()
            operation = authorizer.queue_operation(restart_input)
            outcomes = []
            barrier = threading.Barrier(2)

            def cancel():
                barrier.wait()
                try:
                    authorizer.cancel_operation(operation.id)
                    outcomes.append("cancelled")
                except (OperationNotFoundError, InvalidTransitionError):
                    outcomes.append("lost")

            def execute():
                barrier.wait()
                try:
                    authorizer.execute_operation(operation.id)
                    outcomes.append("executed")
                except (OperationNotFoundError, InvalidTransitionError):
                    outcomes.append("lost")

            threads = [threading.Thread(target=cancel), threading.Thread(target=execute)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert sorted(outcomes) in (["cancelled", "lost"], ["executed", "lost"])


class TestRetryOperation:
    """Test retry records and idempotency keys"""

    def test_retry_failed_operation(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        fail_operation(authorizer, operation.id)

        retry = authorizer.retry_operation(operation.id)

        assert retry is not None
        assert retry.id != operation.id
        assert retry.retry_count == 1
        assert retry.status == OperationStatus.APPROVED
        assert retry.idempotency_key == operation.id
        assert retry.type == operation.type
        assert retry.target == operation.target
        assert retry.risk_level == operation.risk_level
        assert retry.result is None
        assert retry.executed_at is None
        # The failed record stays as history
        assert authorizer.get_operation(operation.id).status == OperationStatus.FAILED

    def test_retry_chain_shares_idempotency_key(self, authorizer, restart_input, clock):
        original = authorizer.queue_operation(restart_input)
        fail_operation(authorizer, original.id)

        first_retry = authorizer.retry_operation(original.id)
        clock.advance(30)
        fail_operation(authorizer, first_retry.id)
        second_retry = authorizer.retry_operation(first_retry.id)

        assert second_retry.retry_count == 2
        assert first_retry.idempotency_key == original.id
        assert second_retry.idempotency_key == original.id

    def test_retried_record_cannot_be_retried_again(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)
        fail_operation(authorizer, operation.id)

        retry = authorizer.retry_operation(operation.id)

        assert authorizer.get_operation(operation.id).retried_as == retry.id
        assert authorizer.retry_operation(operation.id) is None
        with pytest.raises(RetryExhaustedError):
            authorizer.retry_operation(operation.id, strict=True)
        chain = [
            op.id
            for op in authorizer.list_operations()
            if op.idempotency_key == operation.id
        ]
        assert chain == [retry.id]

    def test_explicit_idempotency_key_is_carried(self, authorizer, worker_container):
        operation = authorizer.queue_operation(
            OperationInput(
                type=OperationType.RESTART,
                target=worker_container,
                idempotency_key="change-7",
            )
        )
        fail_operation(authorizer, operation.id)

        assert authorizer.retry_operation(operation.id).idempotency_key == "change-7"

    def test_retry_exhausted_returns_none(self, authorizer, restart_input, clock):
        operation = authorizer.queue_operation(restart_input)
        current = operation
        for _ in range(2):
            fail_operation(authorizer, current.id)
            current = authorizer.retry_operation(current.id)
            clock.advance(30)

        fail_operation(authorizer, current.id)
        assert current.retry_count == 2
        assert authorizer.retry_operation(current.id) is None

    def test_retry_exhausted_strict_raises(self, authorizer, restart_input, clock):
        operation = authorizer.queue_operation(restart_input)
        current = operation
        for _ in range(2):
            fail_operation(authorizer, current.id)
            current = authorizer.retry_operation(current.id)
            clock.advance(30)
        fail_operation(authorizer, current.id)

        with pytest.raises(RetryExhaustedError) as exc_info:
            authorizer.retry_operation(current.id, strict=True)

        assert exc_info.value.retry_count == 2
        assert exc_info.value.max_retries == 2

    def test_retry_requires_failed_status(self, authorizer, restart_input):
        operation = authorizer.queue_operation(restart_input)

        assert authorizer.retry_operation(operation.id) is None

        authorizer.execute_operation(operation.id)
        assert authorizer.retry_operation(operation.id) is None

    def test_retry_unknown(self, authorizer):
        assert authorizer.retry_operation("op_missing") is None
        with pytest.raises(OperationNotFoundError):
            authorizer.retry_operation("op_missing", strict=True)

    def test_retry_of_confirmed_operation_needs_confirmation_again(self, authorizer):
        target = OperationTarget(type=TargetType.SERVICE, id="svc-1", name="billing")
        operation = authorizer.queue_operation(
            OperationInput(type=OperationType.STOP, target=target)
        )
        authorizer.approve_operation(operation.id)
        fail_operation(authorizer, operation.id)

        retry = authorizer.retry_operation(operation.id)

        assert retry.status == OperationStatus.PENDING
        assert retry.approved_at is None


class TestQueries:
    """Test listing and stats"""

    @pytest.fixture
    def populated(self, authorizer, worker_container):
        def queue(op_type, name, target_type=TargetType.CONTAINER):
            target = OperationTarget(type=target_type, id=name, name=name)
            return authorizer.queue_operation(OperationInput(type=op_type, target=target))

        ops = {
            "restart": queue(OperationType.RESTART, "worker-1"),
            "stop": queue(OperationType.STOP, "worker-2"),
            "delete": queue(OperationType.DELETE, "worker-3"),
            "reboot_vm": queue(OperationType.REBOOT, "web-1", TargetType.VM),
            "query": queue(OperationType.QUERY, "worker-4"),
        }
        authorizer.reject_operation(ops["stop"].id)
        authorizer.execute_operation(ops["query"].id)
        return ops

    def test_list_operations_by_status(self, authorizer, populated):
        assert len(authorizer.list_operations()) == 5
        pending = authorizer.list_operations(OperationStatus.PENDING)
        assert {op.id for op in pending} == {populated["delete"].id, populated["reboot_vm"].id}

    def test_pending_by_risk_is_sorted_and_filterable(self, authorizer, populated):
        pending = authorizer.get_pending_by_risk()
        assert [op.risk_level for op in pending] == [RiskLevel.CRITICAL, RiskLevel.CRITICAL]

        assert authorizer.get_pending_by_risk(RiskLevel.DANGEROUS) == []
        assert len(authorizer.get_pending_by_risk(RiskLevel.CRITICAL)) == 2

    def test_dangerous_operations(self, authorizer, populated):
        dangerous = authorizer.get_dangerous_operations()
        assert {op.id for op in dangerous} == {populated["delete"].id, populated["reboot_vm"].id}

    def test_terminal_and_unresolved(self, authorizer, populated):
        terminal = {op.id for op in authorizer.list_terminal()}
        unresolved = {op.id for op in authorizer.list_unresolved()}

        assert terminal == {populated["stop"].id, populated["query"].id}
        assert unresolved == {
            populated["restart"].id,
            populated["delete"].id,
            populated["reboot_vm"].id,
        }

    def test_stats(self, authorizer, populated):
        stats = authorizer.get_stats()

        assert stats["total"] == 5
        assert stats["pending_operations"] == 2
        assert stats["pending_by_risk"]["critical"] == 2
        assert stats["pending_by_risk"]["safe"] == 0
        assert stats["by_status"] == {
            "pending": 2,
            "approved": 1,
            "rejected": 1,
            "executed": 1,
            "failed": 0,
        }

    def test_clear_executed_operations(self, authorizer, populated):
        assert authorizer.clear_executed_operations() == 2
        assert authorizer.get_operation(populated["stop"].id) is None
        assert authorizer.get_operation(populated["restart"].id) is not None
        assert authorizer.get_stats()["total"] == 3

    def test_export_and_load(self, authorizer, populated, safety_config):
        exported = authorizer.export_operations()
        assert {record["id"] for record in exported} == {
            populated["restart"].id,
            populated["delete"].id,
            populated["reboot_vm"].id,
        }

        restored = OperationAuthorizer(safety_config)
        assert restored.load_operations(exported) == 3
        assert restored.get_operation(populated["delete"].id).risk_level == RiskLevel.CRITICAL
