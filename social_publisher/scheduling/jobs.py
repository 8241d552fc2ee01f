"""
Publishing queue data types.

Defines the values exchanged between the queue, its job store and its
callers:

- ``QueueJob``: one delayed publish job, keyed ``post-{post_id}``
- ``AttemptContext``: immutable attempt number / budget for one run
- ``BackoffPolicy``: exponential retry delays
- ``Result`` (``Ok`` / ``Err``) with ``QueueError`` / ``QueueErrorKind``
- ``ProcessOutcome``: what a single ``process()`` call decided
- ``QueueStats`` and ``SyncSummary``
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from social_publisher.utils import parse_timestamp, utc_now

T = TypeVar("T")


def job_key(post_id: str) -> str:
    """Queue key for *post_id*; at most one live job exists per key."""
    return f"post-{post_id}"


# =============================================================================
# JOB
# =============================================================================


@dataclass
class QueueJob:
    """A delayed publish job.

    Attributes:
        post_id: Post to publish.
        user_id: Owner of the post, checked again at processing time.
        attempts_made: Attempts already started for this job.
        max_attempts: Attempt budget.
        lease_token: Set by the store while the job is claimed.
    """

    post_id: str
    user_id: str
    max_attempts: int = 3
    attempts_made: int = 0
    created_at: datetime = field(default_factory=utc_now)
    last_error: Optional[str] = None
    lease_token: Optional[str] = None

    @property
    def key(self) -> str:
        return job_key(self.post_id)

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "QueueJob":
        data: Dict[str, Any] = json.loads(raw)
        data["created_at"] = parse_timestamp(data.get("created_at")) or utc_now()
        return cls(**data)


@dataclass(frozen=True)
class AttemptContext:
    """Which attempt this is, out of how many."""

    attempt_number: int
    max_attempts: int

    @property
    def has_remaining(self) -> bool:
        return self.attempt_number < self.max_attempts

    @property
    def label(self) -> str:
        return f"attempt {self.attempt_number}/{self.max_attempts}"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``base * multiplier ** (attempt - 1)`` seconds."""

    base_seconds: float = 2.0
    multiplier: float = 2.0

    def delay_for(self, attempt_number: int) -> float:
        """Delay before the retry that follows failed *attempt_number*."""
        return self.base_seconds * self.multiplier ** (attempt_number - 1)


# =============================================================================
# RESULT
# =============================================================================


class QueueErrorKind(Enum):
    BACKEND_UNAVAILABLE = "backend_unavailable"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"


@dataclass(frozen=True)
class QueueError:
    kind: QueueErrorKind
    message: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: QueueError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


# =============================================================================
# PROCESSING OUTCOME
# =============================================================================


class OutcomeKind(Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"
    RETRY = "retry"
    FAILED = "failed"


@dataclass
class ProcessOutcome:
    """What ``process()`` decided for one job run.

    ``retry_delay`` is set for ``RETRY``; ``message`` carries the error or
    skip reason.
    """

    kind: OutcomeKind
    message: Optional[str] = None
    retry_delay: Optional[float] = None
    platform_post_id: Optional[str] = None

    @classmethod
    def published(cls, platform_post_id: Optional[str], message: Optional[str] = None) -> "ProcessOutcome":
        return cls(OutcomeKind.PUBLISHED, message=message, platform_post_id=platform_post_id)

    @classmethod
    def skipped(cls, reason: str) -> "ProcessOutcome":
        return cls(OutcomeKind.SKIPPED, message=reason)

    @classmethod
    def retry(cls, delay: float, message: str) -> "ProcessOutcome":
        return cls(OutcomeKind.RETRY, message=message, retry_delay=delay)

    @classmethod
    def failed(cls, message: str) -> "ProcessOutcome":
        return cls(OutcomeKind.FAILED, message=message)


# =============================================================================
# STATS
# =============================================================================


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass
class SyncSummary:
    """Result of re-enqueueing scheduled posts."""

    total: int = 0
    added: int = 0
    already_queued: int = 0
    errors: List[str] = field(default_factory=list)


__all__ = [
    "job_key",
    "QueueJob",
    "AttemptContext",
    "BackoffPolicy",
    "QueueErrorKind",
    "QueueError",
    "Ok",
    "Err",
    "Result",
    "OutcomeKind",
    "ProcessOutcome",
    "QueueStats",
    "SyncSummary",
]
