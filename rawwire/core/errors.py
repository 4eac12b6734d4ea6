from __future__ import annotations


class RawWireError(Exception):
    """Base error for the scoring, lifecycle and pipeline core."""


class AdapterUnavailable(RawWireError):
    """Raised when an external generation or scheduler adapter cannot be reached."""

    def __init__(self, message: str, *, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


class MalformedResponse(RawWireError):
    """Raised when an adapter returns unparsable or incomplete structured data."""


class ValidationError(RawWireError, ValueError):
    """Raised when input has the wrong shape; never retried."""


class InterpolationError(ValidationError):
    """Raised when a strict template references a path missing from the context."""


class ExecutionTimeout(RawWireError):
    """Raised when a pipeline run exceeds its time budget."""

    def __init__(self, message: str, *, completed_steps: int = 0) -> None:
        super().__init__(message)
        self.completed_steps = completed_steps


class CriticalStepFailure(RawWireError):
    """Raised when a critical pipeline step fails after all retries."""

    def __init__(self, message: str, *, step_index: int) -> None:
        super().__init__(message)
        self.step_index = step_index


class PermissionDenied(RawWireError, PermissionError):
    """Raised when the host capability check refuses a mutating operation."""


class NotFoundError(RawWireError):
    """Raised when the requested entity does not exist."""


class ConflictError(RawWireError):
    """Raised when an operation violates state transition rules."""


class PublishFailed(RawWireError):
    """Raised when the publisher rejects an approved record; safe to retry."""


class StepFailed(RawWireError):
    """Raised when a single pipeline step attempt fails."""
