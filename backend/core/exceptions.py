"""Custom exceptions for the workflow engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class UnauthorizedError(WorkflowEngineError):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize UnauthorizedError with 401 status code."""
        super().__init__(message, 401)


class ValidationError(WorkflowEngineError):
    """Structural problem with a workflow definition or request.

    Raised before any execution is accepted; nothing is partially applied.
    """

    def __init__(self, message: str = "Validation failed", step_id: Optional[str] = None):
        """Initialize ValidationError with 422 status code."""
        self.step_id = step_id
        super().__init__(message, 422)


class SchedulingError(WorkflowEngineError):
    """Malformed cron expression or timezone."""

    def __init__(self, message: str = "Invalid schedule"):
        """Initialize SchedulingError with 422 status code."""
        super().__init__(message, 422)


class StepExecutionError(WorkflowEngineError):
    """A step handler failed. Eligible for retry."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message, 500)


class CalculationError(StepExecutionError):
    """An arithmetic expression could not be parsed or evaluated."""


class ExecutionFailure(WorkflowEngineError):
    """An execution reached FAILED after a step exhausted its retries.

    Raised to synchronous callers only after the FAILED state has been
    persisted and logged.
    """

    def __init__(self, message: str, execution_id: str, step_id: Optional[str] = None):
        self.execution_id = execution_id
        self.step_id = step_id
        super().__init__(message, 500)
