"""
Publish error taxonomy and retry policy.

Every publisher maps its platform-specific failures into exactly one
``ErrorKind``. The publishing queue never looks at platform codes; it only
asks :func:`is_retryable`.

Policy:
    TOKEN_EXPIRED       retryable only after a successful token refresh
    RATE_LIMITED        retryable
    INVALID_MEDIA       retryable once (first attempt only)
    PERMISSION_DENIED   never retried
    SPAM_OR_QUOTA_RISK  never retried
    UNKNOWN             retryable up to the attempt cap
"""

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from social_publisher.scheduling.jobs import AttemptContext


class ErrorKind(Enum):
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    INVALID_MEDIA = "invalid_media"
    PERMISSION_DENIED = "permission_denied"
    SPAM_OR_QUOTA_RISK = "spam_or_quota_risk"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset({
    ErrorKind.PERMISSION_DENIED,
    ErrorKind.SPAM_OR_QUOTA_RISK,
})


def is_retryable(
    kind: ErrorKind,
    attempt: "AttemptContext",
    token_refreshed: bool = False,
) -> bool:
    """Whether a failure of *kind* on *attempt* may be retried.

    The attempt budget itself is checked by the caller
    (``attempt.has_remaining``); this only encodes per-kind policy.
    """
    if kind in NON_RETRYABLE_KINDS:
        return False
    if kind is ErrorKind.TOKEN_EXPIRED:
        return token_refreshed
    if kind is ErrorKind.INVALID_MEDIA:
        return attempt.attempt_number == 1
    return True


def kind_for_status(status_code: int) -> ErrorKind:
    """Generic HTTP status fallback when a platform body carries no code."""
    if status_code == 401:
        return ErrorKind.TOKEN_EXPIRED
    if status_code == 403:
        return ErrorKind.PERMISSION_DENIED
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 415:
        return ErrorKind.INVALID_MEDIA
    return ErrorKind.UNKNOWN


__all__ = [
    "ErrorKind",
    "NON_RETRYABLE_KINDS",
    "is_retryable",
    "kind_for_status",
]
