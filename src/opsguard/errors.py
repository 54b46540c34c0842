"""
Error taxonomy for opsguard

The authorizer and cooldown limiter surface these typed errors to callers;
risk assessment and alert correlation never raise.
"""

from typing import Optional


class SafetyError(Exception):
    """Base exception for opsguard errors"""

    pass


class NotFoundError(SafetyError):
    """Referenced record does not exist"""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class OperationNotFoundError(NotFoundError):
    def __init__(self, operation_id: str):
        super().__init__("Operation", operation_id)


class InvalidTransitionError(SafetyError):
    """Operation is not in the state the requested action requires"""

    def __init__(self, operation_id: str, current: str, action: str):
        self.operation_id = operation_id
        self.current = current
        self.action = action
        super().__init__(
            f"Cannot {action} operation {operation_id} (status: {current})"
        )


class RateLimitedError(SafetyError):
    """Cooldown for the operation key has not elapsed yet"""

    def __init__(
        self,
        operation_key: str,
        remaining_ms: int,
        operation_id: Optional[str] = None,
    ):
        self.operation_key = operation_key
        self.remaining_ms = remaining_ms
        self.operation_id = operation_id
        super().__init__(
            f"Operation {operation_key} is rate limited. "
            f"Cooldown remaining: {remaining_ms}ms"
        )

    @property
    def remaining_seconds(self) -> int:
        """Remaining cooldown rounded up to whole seconds, for countdown displays"""
        return -(-self.remaining_ms // 1000)


class RetryExhaustedError(SafetyError):
    """No retry is possible for the operation"""

    def __init__(self, operation_id: str, retry_count: int, max_retries: int):
        self.operation_id = operation_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"Operation {operation_id} cannot be retried "
            f"({retry_count}/{max_retries} retries used)"
        )


class StorageError(SafetyError):
    """Persistence backend failure"""

    pass


class ConfigurationError(SafetyError):
    """Configuration file could not be loaded"""

    pass
