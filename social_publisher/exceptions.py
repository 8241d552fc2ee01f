"""
Custom exception classes for the social publishing pipeline.

This module defines all exception classes used throughout the codebase.
Exceptions follow the fail-fast philosophy: no silent fallbacks, surface
errors immediately with clear context for debugging.  The only place where
errors are deliberately absorbed is the publishing queue's processing loop,
which turns them into post status transitions.

Hierarchy:
    Exception
    +-- PublisherBaseError (base for all pipeline-specific errors)
    |   +-- PlatformError
    |   |   +-- PublishValidationError
    |   +-- TokenRefreshError
    |   +-- InvalidTransitionError
    |   +-- BackendUnavailableError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from social_publisher.platforms.errors import ErrorKind


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PublisherBaseError(Exception):
    """Base exception for all publishing-pipeline errors."""

    pass


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


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# QUEUE / STATE EXCEPTIONS
# =============================================================================


class BackendUnavailableError(PublisherBaseError):
    """Raised when the job store (queue backend) cannot be reached."""

    pass


class InvalidTransitionError(PublisherBaseError):
    """Raised when a post status transition is not allowed.

    Attributes:
        post_id: The post whose transition was rejected.
        from_status: Current status value.
        to_status: Requested status value.
    """

    def __init__(self, post_id: str, from_status: str, to_status: str):
        self.post_id = post_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Post {post_id}: transition {from_status} -> {to_status} is not allowed"
        )


# =============================================================================
# PLATFORM EXCEPTIONS
# =============================================================================


class PlatformError(PublisherBaseError):
    """Normalized error raised by a platform publisher.

    Every publisher maps its platform-specific failure into exactly one
    :class:`~social_publisher.platforms.errors.ErrorKind`.

    Attributes:
        kind: The classified error kind.
        message: Human-readable description (stored on the post).
        platform_code: Raw platform error code, when one was returned.
    """

    def __init__(
        self,
        kind: "ErrorKind",
        message: str,
        platform_code: Optional[str] = None,
    ):
        self.kind = kind
        self.message = message
        self.platform_code = platform_code
        super().__init__(message)


class PublishValidationError(PlatformError):
    """Raised when a post violates a platform's structural rules.

    Structural failures are detected before any network call and are never
    retried.
    """

    pass


class TokenRefreshError(PublisherBaseError):
    """Raised when a credential refresh call fails."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PublisherBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Queue / state
    "BackendUnavailableError",
    "InvalidTransitionError",
    # Platform
    "PlatformError",
    "PublishValidationError",
    "TokenRefreshError",
]
