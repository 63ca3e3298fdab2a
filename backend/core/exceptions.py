"""Custom exceptions for the bulk action engine."""

from typing import Optional


class BulkActionError(Exception):
    """Base exception for the bulk action engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP-style status code for callers that surface it
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class InvalidConfiguration(BulkActionError):
    """The bulk action configuration cannot be executed."""

    def __init__(self, message: str = "Invalid bulk action configuration"):
        super().__init__(message, 422)


class UnknownAction(InvalidConfiguration):
    """The requested action name is not registered."""

    def __init__(self, name: str):
        self.action_name = name
        super().__init__(f"Action '{name}' is not registered.")
        self.status_code = 404


class Unauthorized(BulkActionError):
    """The actor may not run this bulk action."""

    def __init__(self, message: str = "You are not authorized to perform this action."):
        super().__init__(message, 403)


class RateLimitExceeded(BulkActionError):
    """The actor exceeded a bulk action limit."""

    def __init__(self, message: str = "Too many bulk actions.", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, 429)

    @classmethod
    def too_many_concurrent(cls, current: int, maximum: int) -> "RateLimitExceeded":
        return cls(
            f"You have reached the maximum number of concurrent bulk actions ({maximum}). "
            f"You currently have {current} active actions."
        )

    @classmethod
    def in_cooldown(cls, seconds_remaining: float) -> "RateLimitExceeded":
        return cls(
            f"You must wait {int(seconds_remaining)} seconds before initiating another bulk action.",
            retry_after=seconds_remaining,
        )

    @classmethod
    def too_many_records(cls, count: int, maximum: int) -> "RateLimitExceeded":
        return cls(f"Cannot process {count} records; the limit is {maximum} per action.")


class UndoExpired(BulkActionError):
    """The execution can no longer be undone."""

    def __init__(self, message: str = "The undo period for this action has expired."):
        super().__init__(message, 410)


class InvalidExecutionState(BulkActionError):
    """The execution is not in a state that allows the requested transition."""

    def __init__(self, message: str = "Invalid execution state"):
        super().__init__(message, 409)


class ExecutionNotFound(BulkActionError):
    """No execution exists for the given identifier."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found.", 404)


class ActionChainError(BulkActionError):
    """A chained follow-on action failed."""

    def __init__(self, action: str, step: int, cause: BaseException):
        self.failed_action = action
        self.failed_step = step
        super().__init__(
            f"Action chain failed at step {step} (action: {action}): {cause}", 500
        )


class RecordActionFailed(BulkActionError):
    """A handler reported failure for a single record."""

    def __init__(self, record_id: str, message: str = "Handler reported failure"):
        self.record_id = record_id
        super().__init__(f"{message} (record {record_id})", 500)
