"""
Post lifecycle state machine.

All post status changes go through ``PostStateMachine``. Each transition
is a conditional write keyed on the post id and its expected current
status, so two workers racing on the same post cannot both win: the loser
gets ``False`` back and the row is left as the winner wrote it.

Allowed transitions::

    DRAFT      -> SCHEDULED
    SCHEDULED  -> PUBLISHING | DRAFT
    PUBLISHING -> PUBLISHED | SCHEDULED | FAILED
    FAILED     -> SCHEDULED
    PUBLISHED  -> (none)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Optional

from social_publisher.exceptions import InvalidTransitionError
from social_publisher.logging.component_logger import ComponentLogger
from social_publisher.logging.models import LogComponent
from social_publisher.models import Post, PostStatus
from social_publisher.scheduling.jobs import AttemptContext
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.SCHEDULED}),
    PostStatus.SCHEDULED: frozenset({PostStatus.PUBLISHING, PostStatus.DRAFT}),
    PostStatus.PUBLISHING: frozenset({
        PostStatus.PUBLISHED,
        PostStatus.SCHEDULED,
        PostStatus.FAILED,
    }),
    PostStatus.FAILED: frozenset({PostStatus.SCHEDULED}),
    PostStatus.PUBLISHED: frozenset(),
}


def can_transition(from_status: PostStatus, to_status: PostStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def _column(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PostStateMachine:
    """Applies status transitions to posts through the database.

    Args:
        db: ``SupabaseDB`` (or any object with ``update_post``).
        log: Structured logger; one entry per applied transition.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        db: Any,
        log: Optional[ComponentLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.log = log or ComponentLogger(LogComponent.STATE_MACHINE)
        self._clock = clock

    async def transition(
        self,
        post: Post,
        to_status: PostStatus,
        changes: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Move *post* to *to_status*, writing *changes* alongside.

        *changes* maps ``Post`` attribute names to values; on success they
        are applied to *post* as well.

        Returns:
            ``True`` if applied, ``False`` if the stored status was no
            longer ``post.status`` (lost race or deleted row).

        Raises:
            InvalidTransitionError: the transition is not allowed.
            DatabaseError: the write failed.
        """
        from_status = post.status
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError(post.id, from_status.value, to_status.value)

        changes = dict(changes or {})
        fields = {name: _column(value) for name, value in changes.items()}
        fields["status"] = to_status.value

        applied = await self.db.update_post(
            post.id, fields, expected_status=from_status.value
        )
        if not applied:
            await self.log.warning(
                f"Transition {from_status.value} -> {to_status.value} not applied, "
                "post changed or was deleted",
                post_id=post.id,
            )
            return False

        post.status = to_status
        for name, value in changes.items():
            setattr(post, name, value)

        await self.log.info(
            f"{from_status.value} -> {to_status.value}",
            post_id=post.id,
            data={
                "from": from_status.value,
                "to": to_status.value,
                "reason": reason,
            },
        )
        return True

    # ------------------------------------------------------------------
    # Named transitions
    # ------------------------------------------------------------------

    async def schedule(self, post: Post, scheduled_at: Optional[datetime] = None) -> bool:
        """DRAFT -> SCHEDULED."""
        changes: Dict[str, Any] = {"error_message": None}
        if scheduled_at is not None:
            changes["scheduled_at"] = scheduled_at
        return await self.transition(post, PostStatus.SCHEDULED, changes, reason="enqueued")

    async def update_schedule(self, post: Post, scheduled_at: datetime) -> bool:
        """Move the due time of a ``SCHEDULED`` post without changing status."""
        if post.status is not PostStatus.SCHEDULED:
            raise InvalidTransitionError(post.id, post.status.value, post.status.value)
        applied = await self.db.update_post(
            post.id,
            {"scheduled_at": scheduled_at.isoformat()},
            expected_status=PostStatus.SCHEDULED.value,
        )
        if applied:
            post.scheduled_at = scheduled_at
        return applied

    async def unschedule(self, post: Post, note: str) -> bool:
        """SCHEDULED -> DRAFT, keeping *note* for the author."""
        return await self.transition(
            post, PostStatus.DRAFT, {"error_message": note}, reason=note
        )

    async def begin_publishing(self, post: Post) -> bool:
        """SCHEDULED -> PUBLISHING. Acts as the claim on the post."""
        return await self.transition(post, PostStatus.PUBLISHING, reason="claimed")

    async def recover_stalled(self, post: Post) -> bool:
        """PUBLISHING -> SCHEDULED for a post left behind by a dead worker."""
        return await self.transition(
            post, PostStatus.SCHEDULED, reason="crash recovery"
        )

    async def mark_published(
        self,
        post: Post,
        platform_post_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """PUBLISHING -> PUBLISHED."""
        merged = dict(post.metadata)
        merged.update(metadata or {})
        return await self.transition(
            post,
            PostStatus.PUBLISHED,
            {
                "published_at": self._clock(),
                "platform_post_id": platform_post_id,
                "metadata": merged,
                "failed_at": None,
                "error_message": None,
            },
            reason="published",
        )

    async def mark_retrying(self, post: Post, message: str, attempt: AttemptContext) -> bool:
        """PUBLISHING -> SCHEDULED after a retryable failure."""
        note = f"{message} ({attempt.label}, retrying...)"
        return await self.transition(
            post, PostStatus.SCHEDULED, {"error_message": note}, reason=note
        )

    async def mark_failed(self, post: Post, message: str) -> bool:
        """PUBLISHING -> FAILED."""
        return await self.transition(
            post,
            PostStatus.FAILED,
            {
                "failed_at": self._clock(),
                "error_message": message,
                "published_at": None,
                "platform_post_id": None,
            },
            reason=message,
        )

    async def reset_for_retry(self, post: Post) -> bool:
        """FAILED -> SCHEDULED on a manual retry."""
        return await self.transition(
            post,
            PostStatus.SCHEDULED,
            {"failed_at": None, "error_message": None},
            reason="manual retry",
        )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "PostStateMachine",
]
