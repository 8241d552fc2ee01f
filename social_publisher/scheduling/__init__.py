"""Scheduling subsystem: post state machine, publishing queue, maintenance loop."""

from social_publisher.scheduling.job_store import JobStore, MemoryJobStore, RedisJobStore
from social_publisher.scheduling.jobs import (
    AttemptContext,
    BackoffPolicy,
    Err,
    Ok,
    OutcomeKind,
    ProcessOutcome,
    QueueError,
    QueueErrorKind,
    QueueJob,
    QueueStats,
    Result,
    SyncSummary,
    job_key,
)
from social_publisher.scheduling.maintenance import MaintenanceScheduler
from social_publisher.scheduling.publishing_queue import PublishingQueue
from social_publisher.scheduling.state_machine import (
    ALLOWED_TRANSITIONS,
    PostStateMachine,
    can_transition,
)

__all__ = [
    "JobStore",
    "MemoryJobStore",
    "RedisJobStore",
    "AttemptContext",
    "BackoffPolicy",
    "Err",
    "Ok",
    "OutcomeKind",
    "ProcessOutcome",
    "QueueError",
    "QueueErrorKind",
    "QueueJob",
    "QueueStats",
    "Result",
    "SyncSummary",
    "job_key",
    "MaintenanceScheduler",
    "PublishingQueue",
    "ALLOWED_TRANSITIONS",
    "PostStateMachine",
    "can_transition",
]
