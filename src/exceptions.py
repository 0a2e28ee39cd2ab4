"""
Custom exception classes for the scheduled post publishing service.

This module defines all exception classes used throughout the codebase.
Validation failures are raised synchronously at the scheduling boundary;
failures that happen at due time are recorded on the job instead of being
raised to the (long gone) caller.

Hierarchy:
    Exception
    +-- SchedulerError (base for all scheduling errors)
    |   +-- JobNotFoundError
    |   +-- InvalidJobStateError
    |   +-- PublishFailureError
    |   +-- BackendUnavailableError
    +-- ValidationError (ValueError)
    |   +-- InvalidScheduleError
    +-- DatabaseError
    +-- ConfigurationError
"""

from typing import Any, Optional


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


# =============================================================================
# SCHEDULING EXCEPTIONS
# =============================================================================


class SchedulerError(Exception):
    """Base exception for all scheduling errors."""

    pass


class InvalidScheduleError(ValidationError):
    """Raised when a scheduled time is missing, not in the future, or too far ahead."""

    pass


class JobNotFoundError(SchedulerError):
    """Raised when a job id is unknown, already executed, or not owned by the caller.

    Attributes:
        job_id: The job identifier that was looked up.
    """

    def __init__(self, job_id: str, message: str = "Scheduled post not found"):
        self.job_id = job_id
        super().__init__(message)


class InvalidJobStateError(SchedulerError):
    """Raised when an operation is not allowed in the job's current state.

    Attributes:
        job_id: The job identifier.
        status: The state the job was found in.
    """

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Scheduled post {job_id} cannot be cancelled while '{status}'"
        )


class PublishFailureError(SchedulerError):
    """Raised when the post collaborator fails while publishing a due job.

    Attributes:
        job_id: The job being published.
        owner_id: The user the post was being created for.
        cause: The underlying exception.
    """

    def __init__(self, job_id: str, owner_id: Any, cause: Optional[Exception] = None):
        self.job_id = job_id
        self.owner_id = owner_id
        self.cause = cause
        super().__init__(str(cause) if cause is not None else "Publishing failed")


class BackendUnavailableError(SchedulerError):
    """Raised when the durable queue backend cannot be reached at startup."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    # Scheduling
    "SchedulerError",
    "InvalidScheduleError",
    "JobNotFoundError",
    "InvalidJobStateError",
    "PublishFailureError",
    "BackendUnavailableError",
]
