class PipelineError(Exception):
    """Base error for the job lifecycle and reconciliation core."""


class ValidationError(PipelineError):
    """Raised when input is rejected before anything is persisted."""


class NotFoundError(PipelineError):
    """Raised when a job, listing, catalog entity or dataset does not exist."""


class ConflictError(PipelineError):
    """Raised when an operation violates a state transition rule."""


class AlreadyTerminalError(ConflictError):
    """Raised when a job has already reached completed, failed or timed_out."""


class TransientDependencyError(PipelineError):
    """Raised when a backing store is unavailable; safe to retry externally."""
