"""
Publishing queue: delayed, retried, bounded-concurrency post publishing.

``PublishingQueue`` is constructed once at process start with its job
store, database, dispatcher and token manager injected, and passed to
whoever needs it. Caller-facing operations (``enqueue``, ``cancel``,
``retry``, ``get_stats``) return ``Ok`` / ``Err`` and never raise for
backend faults. Publish failures are resolved inside ``process()`` into a
post status (``SCHEDULED`` for a retry, ``FAILED`` when terminal).

The worker loop (``start`` / ``stop``) claims due jobs from the store up to
``concurrency`` at a time; the store guarantees a key is never claimed
twice concurrently, and the conditional ``SCHEDULED -> PUBLISHING`` write
guards the post itself.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from social_publisher.config import QueueConfig
from social_publisher.exceptions import (
    BackendUnavailableError,
    DatabaseError,
    PlatformError,
    PublishValidationError,
)
from social_publisher.logging.component_logger import ComponentLogger
from social_publisher.logging.models import LogComponent
from social_publisher.models import Post, PostStatus, Profile
from social_publisher.platforms.dispatch import Dispatcher
from social_publisher.platforms.errors import ErrorKind, is_retryable
from social_publisher.scheduling.job_store import JobStore
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
from social_publisher.scheduling.state_machine import PostStateMachine
from social_publisher.tokens.manager import TokenLifecycleManager
from social_publisher.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ENQUEUABLE_STATUSES = (PostStatus.DRAFT, PostStatus.SCHEDULED)


def _err(kind: QueueErrorKind, message: str) -> Err:
    return Err(QueueError(kind, message))


class PublishingQueue:
    """Durable delayed publishing with automatic retry.

    Args:
        db: ``SupabaseDB`` (posts and profiles).
        store: Job store holding delayed and active jobs.
        dispatcher: Routes posts to platform publishers.
        token_manager: Pre-publish credential check and refresh.
        state_machine: Post transitions; built over *db* when omitted.
        config: Attempt budget, backoff, timeouts and worker sizing.
        log: Structured logger for queue events.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        db: Any,
        store: JobStore,
        dispatcher: Dispatcher,
        token_manager: TokenLifecycleManager,
        state_machine: Optional[PostStateMachine] = None,
        config: Optional[QueueConfig] = None,
        log: Optional[ComponentLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.store = store
        self.dispatcher = dispatcher
        self.token_manager = token_manager
        self.state_machine = state_machine or PostStateMachine(db, clock=clock)
        self.config = config or QueueConfig()
        self.log = log or ComponentLogger(LogComponent.QUEUE)
        self.backoff = BackoffPolicy(
            base_seconds=self.config.backoff_base_seconds,
            multiplier=self.config.backoff_multiplier,
        )
        self._clock = clock
        self._running: bool = False
        self._cycle_count: int = 0
        self._tasks: Set["asyncio.Task[ProcessOutcome]"] = set()

    # ================================================================
    # CALLER OPERATIONS
    # ================================================================

    async def enqueue(
        self,
        post_id: str,
        user_id: str,
        due_at: Optional[datetime] = None,
    ) -> Result[str]:
        """Schedule *post_id* for publishing at *due_at* (now when omitted).

        A ``DRAFT`` post moves to ``SCHEDULED``; an already ``SCHEDULED``
        post has its pending job replaced. If the job store cannot be
        reached the post is reverted to ``DRAFT`` with an error note.

        Returns:
            ``Ok(job_key)`` or ``Err`` with ``NOT_FOUND``, ``FORBIDDEN``,
            ``INVALID_STATE`` or ``BACKEND_UNAVAILABLE``.
        """
        try:
            post = await self._load_post(post_id)
        except DatabaseError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, f"Could not load post: {exc}")

        if post is None:
            return _err(QueueErrorKind.NOT_FOUND, f"Post {post_id} not found")
        if post.user_id != user_id:
            return _err(QueueErrorKind.FORBIDDEN, f"Post {post_id} belongs to another user")
        if post.status not in ENQUEUABLE_STATUSES:
            return _err(
                QueueErrorKind.INVALID_STATE,
                f"Post {post_id} is {post.status.value} and cannot be enqueued",
            )

        due_at = ensure_utc(due_at) if due_at is not None else self._clock()

        try:
            if post.status is PostStatus.DRAFT:
                applied = await self.state_machine.schedule(post, scheduled_at=due_at)
            else:
                applied = await self.state_machine.update_schedule(post, due_at)
        except DatabaseError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, f"Could not schedule post: {exc}")
        if not applied:
            return _err(
                QueueErrorKind.INVALID_STATE,
                f"Post {post_id} changed while being enqueued",
            )

        return await self._submit(post, due_at)

    async def cancel(self, post_id: str) -> Result[bool]:
        """Remove the pending job for *post_id*.

        Returns ``Ok(False)`` when there is no pending job, including when
        the job is already running (its outcome stands).
        """
        key = job_key(post_id)
        try:
            removed = await asyncio.wait_for(
                self.store.remove(key), timeout=self.config.enqueue_timeout_seconds
            )
        except asyncio.TimeoutError:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, "Job store timed out")
        except BackendUnavailableError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, str(exc))

        if removed:
            await self.log.info("Job cancelled", post_id=post_id, data={"key": key})
        return Ok(removed)

    async def retry(self, post_id: str) -> Result[Optional[str]]:
        """Re-enqueue a ``FAILED`` post at its ``scheduled_at`` (or now).

        Returns ``Ok(None)`` when the post is not failed.
        """
        try:
            post = await self._load_post(post_id)
        except DatabaseError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, f"Could not load post: {exc}")

        if post is None:
            return _err(QueueErrorKind.NOT_FOUND, f"Post {post_id} not found")
        if post.status is not PostStatus.FAILED:
            return Ok(None)

        try:
            applied = await self.state_machine.reset_for_retry(post)
        except DatabaseError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, f"Could not reset post: {exc}")
        if not applied:
            return Ok(None)

        result = await self._submit(post, post.scheduled_at or self._clock())
        if result.ok:
            await self.log.info("Manual retry enqueued", post_id=post_id)
        return result

    async def get_stats(self) -> Result[QueueStats]:
        try:
            stats = await asyncio.wait_for(
                self.store.counts(), timeout=self.config.enqueue_timeout_seconds
            )
        except asyncio.TimeoutError:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, "Job store timed out")
        except BackendUnavailableError as exc:
            return _err(QueueErrorKind.BACKEND_UNAVAILABLE, str(exc))
        return Ok(stats)

    async def sync_scheduled_posts(self) -> SyncSummary:
        """Make sure every ``SCHEDULED``, unpublished post has a job.

        Existing jobs are left untouched. Recovers from worker restarts and
        job store data loss.
        """
        summary = SyncSummary()
        try:
            rows = await self.db.get_scheduled_posts()
        except DatabaseError as exc:
            summary.errors.append(f"Could not load scheduled posts: {exc}")
            await self.log.error("Posts sync failed", error=exc)
            return summary

        summary.total = len(rows)
        now = self._clock()
        for row in rows:
            post = Post.from_row(row)
            due_at = post.scheduled_at or now
            job = QueueJob(post.id, post.user_id, max_attempts=self.config.max_attempts)
            try:
                added = await self.store.add(
                    job, self._delay_until(due_at), replace=False
                )
            except BackendUnavailableError as exc:
                summary.errors.append(f"{post.id}: {exc}")
                break
            if added:
                summary.added += 1
            else:
                summary.already_queued += 1

        await self.log.info(
            f"Posts sync: {summary.added} added, {summary.already_queued} already queued "
            f"out of {summary.total}",
            data={
                "total": summary.total,
                "added": summary.added,
                "already_queued": summary.already_queued,
                "errors": len(summary.errors),
            },
        )
        return summary

    # ================================================================
    # PROCESSING
    # ================================================================

    async def process(self, job: QueueJob) -> ProcessOutcome:
        """Run one attempt of *job* and decide what happens next.

        Database faults during the attempt are retryable; the post may be
        left in ``PUBLISHING``, which the next delivery resets. On the last
        attempt the post is marked ``FAILED``.
        """
        attempt = AttemptContext(max(1, job.attempts_made), job.max_attempts)
        try:
            return await self._process(job, attempt)
        except DatabaseError as exc:
            message = f"Database error: {exc}"
            await self.log.error(
                f"Job {job.key} hit a database error on {attempt.label}",
                error=exc,
                post_id=job.post_id,
                job_id=job.key,
            )
            if attempt.has_remaining:
                return ProcessOutcome.retry(
                    self.backoff.delay_for(attempt.attempt_number), message
                )
            await self._fail_post(job, message)
            return ProcessOutcome.failed(message)

    async def _process(self, job: QueueJob, attempt: AttemptContext) -> ProcessOutcome:
        post = await self._load_post(job.post_id)
        if post is None:
            return await self._skip(job, "Post not found, it was deleted")
        if post.user_id != job.user_id:
            return await self._skip(job, "Post owner does not match job")

        if post.status is PostStatus.PUBLISHING:
            await self.log.warning(
                f"Post found in publishing on {attempt.label}, "
                "previous worker did not finish; resetting",
                post_id=post.id,
                job_id=job.key,
            )
            if not await self.state_machine.recover_stalled(post):
                return await self._skip(job, "Post changed during crash recovery")

        if post.status is PostStatus.PUBLISHED or post.published_at is not None:
            return await self._skip(job, "Post already published")
        if post.status is not PostStatus.SCHEDULED:
            return await self._skip(job, f"Post is {post.status.value}, nothing to publish")

        if not await self.state_machine.begin_publishing(post):
            return await self._skip(job, "Post was claimed elsewhere")

        profile: Optional[Profile] = None
        try:
            profile = await self._load_profile(post.profile_id)
            if profile is None or not profile.is_active:
                raise PlatformError(
                    ErrorKind.PERMISSION_DENIED,
                    "Profile is inactive or missing, reconnect the account",
                )

            if not await self.token_manager.ensure_valid(profile.id):
                raise PlatformError(
                    ErrorKind.UNKNOWN, "Profile credential could not be validated"
                )
            # ensure_valid may have stored a refreshed token
            profile = await self._load_profile(post.profile_id) or profile

            result = await asyncio.wait_for(
                self.dispatcher.dispatch(post, profile.credential()),
                timeout=self.config.job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = PlatformError(
                ErrorKind.UNKNOWN,
                f"Publish timed out after {self.config.job_timeout_seconds:.0f}s",
            )
            return await self._handle_failure(job, post, profile, error, attempt)
        except PlatformError as exc:
            return await self._handle_failure(job, post, profile, exc, attempt)

        await self.state_machine.mark_published(
            post, result.platform_post_id, result.metadata
        )
        await self.log.info(
            f"Post published on {attempt.label}",
            post_id=post.id,
            job_id=job.key,
            profile_id=post.profile_id,
            data={
                "platform": post.platform.value,
                "platform_post_id": result.platform_post_id,
            },
        )
        return ProcessOutcome.published(result.platform_post_id)

    async def _handle_failure(
        self,
        job: QueueJob,
        post: Post,
        profile: Optional[Profile],
        error: PlatformError,
        attempt: AttemptContext,
    ) -> ProcessOutcome:
        message = f"{error.kind.value}: {error.message}"

        token_refreshed = False
        if error.kind is ErrorKind.TOKEN_EXPIRED and profile is not None:
            refresh = await self.token_manager.refresh(profile.id)
            token_refreshed = refresh.success
            if not token_refreshed and not refresh.keep_active:
                await self.token_manager.deactivate(
                    profile,
                    f"Token rejected by {post.platform.display_name} and refresh "
                    f"failed: {refresh.message}",
                )

        if isinstance(error, PublishValidationError):
            retryable = False
        else:
            retryable = is_retryable(error.kind, attempt, token_refreshed)

        if retryable and attempt.has_remaining:
            delay = self.backoff.delay_for(attempt.attempt_number)
            await self.state_machine.mark_retrying(post, message, attempt)
            await self.log.warning(
                f"Publish failed on {attempt.label}, retrying in {delay:.0f}s",
                post_id=post.id,
                job_id=job.key,
                data={"kind": error.kind.value, "error": error.message},
            )
            return ProcessOutcome.retry(delay, message)

        await self.state_machine.mark_failed(post, message)
        await self.log.error(
            f"Publish failed permanently on {attempt.label}",
            post_id=post.id,
            job_id=job.key,
            data={
                "kind": error.kind.value,
                "error": error.message,
                "retryable": retryable,
            },
        )
        return ProcessOutcome.failed(message)

    async def _fail_post(self, job: QueueJob, message: str) -> None:
        """Record a terminal failure that escaped ``_handle_failure``.

        The post is re-read because the failed attempt may have stopped
        before or after ``begin_publishing``.
        """
        try:
            post = await self._load_post(job.post_id)
            if post is None or post.status is PostStatus.PUBLISHED:
                return
            if post.status is PostStatus.SCHEDULED:
                if not await self.state_machine.begin_publishing(post):
                    return
            if post.status is not PostStatus.PUBLISHING:
                return
            await self.state_machine.mark_failed(post, message)
        except DatabaseError as exc:
            logger.error(
                "[QUEUE] Could not mark post %s failed: %s", job.post_id, exc
            )
            return
        await self.log.error(
            "Publish failed permanently on an unexpected error",
            post_id=job.post_id,
            job_id=job.key,
            data={"error": message},
        )

    async def _skip(self, job: QueueJob, reason: str) -> ProcessOutcome:
        await self.log.info(f"Job skipped: {reason}", post_id=job.post_id, job_id=job.key)
        return ProcessOutcome.skipped(reason)

    # ================================================================
    # WORKER LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run the worker loop until :meth:`stop` is called.

        Each cycle claims due jobs into free slots; every
        ``recover_every_cycles`` cycles, jobs with expired leases are
        returned to the queue.
        """
        self._running = True
        self._cycle_count = 0
        logger.info(
            "[QUEUE] Publishing worker started (concurrency=%d, poll=%.1fs)",
            self.config.concurrency,
            self.config.poll_interval_seconds,
        )

        while self._running:
            try:
                await self._fill_slots()
                self._cycle_count += 1

                if self._cycle_count % self.config.recover_every_cycles == 0:
                    await self.store.recover_stalled()

            except asyncio.CancelledError:
                logger.info("[QUEUE] Publishing worker cancelled")
                break
            except BackendUnavailableError as exc:
                logger.error("[QUEUE] Job store unavailable: %s", exc)
            except Exception:
                logger.exception("[QUEUE] Unexpected error in publishing worker loop")

            try:
                await asyncio.sleep(self.config.poll_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[QUEUE] Publishing worker sleep cancelled")
                break

        await self._drain()
        logger.info("[QUEUE] Publishing worker stopped")

    async def stop(self) -> None:
        """Ask the worker loop to exit after the current cycle.

        Running jobs finish before :meth:`start` returns.
        """
        self._running = False
        logger.info("[QUEUE] Publishing worker stop requested")

    async def run_pending(self) -> List[ProcessOutcome]:
        """Process every job that is due now, then return.

        Jobs rescheduled with a backoff delay are not due yet and are left
        for a later call.
        """
        outcomes: List[ProcessOutcome] = []
        while True:
            jobs = await self.store.claim_due(
                self.config.concurrency, self.config.lease_seconds
            )
            if not jobs:
                return outcomes
            outcomes.extend(await asyncio.gather(*(self._run_job(job) for job in jobs)))

    async def _fill_slots(self) -> None:
        free = self.config.concurrency - len(self._tasks)
        if free <= 0:
            return
        jobs = await self.store.claim_due(free, self.config.lease_seconds)
        for job in jobs:
            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _drain(self) -> None:
        if self._tasks:
            logger.info("[QUEUE] Waiting for %d running job(s)", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _run_job(self, job: QueueJob) -> ProcessOutcome:
        try:
            outcome = await self.process(job)
        except Exception as exc:
            logger.exception("[QUEUE] Job %s crashed", job.key)
            attempt = AttemptContext(max(1, job.attempts_made), job.max_attempts)
            message = f"Unexpected error: {exc}"
            if attempt.has_remaining:
                outcome = ProcessOutcome.retry(
                    self.backoff.delay_for(attempt.attempt_number), message
                )
            else:
                await self._fail_post(job, message)
                outcome = ProcessOutcome.failed(message)

        await self._settle(job, outcome)
        return outcome

    async def _settle(self, job: QueueJob, outcome: ProcessOutcome) -> None:
        """Record *outcome* in the job store."""
        job.last_error = outcome.message if outcome.kind in (
            OutcomeKind.RETRY, OutcomeKind.FAILED
        ) else None
        try:
            if outcome.kind is OutcomeKind.RETRY:
                settled = await self.store.reschedule(job, outcome.retry_delay or 0.0)
            elif outcome.kind is OutcomeKind.FAILED:
                settled = await self.store.fail(job)
            else:
                settled = await self.store.complete(job)
        except BackendUnavailableError as exc:
            # The lease expires and the job is redelivered
            logger.error("[QUEUE] Could not settle job %s: %s", job.key, exc)
            return
        if not settled:
            logger.warning("[QUEUE] Lease on job %s was lost before settling", job.key)

    # ================================================================
    # INTERNALS
    # ================================================================

    async def _submit(self, post: Post, due_at: datetime) -> Result[str]:
        """Add the job for *post*, reverting it to ``DRAFT`` on backend failure."""
        job = QueueJob(post.id, post.user_id, max_attempts=self.config.max_attempts)
        delay = self._delay_until(due_at)

        try:
            added = await asyncio.wait_for(
                self.store.add(job, delay), timeout=self.config.enqueue_timeout_seconds
            )
        except asyncio.TimeoutError:
            return await self._revert(
                post,
                f"Queue did not respond within {self.config.enqueue_timeout_seconds:.0f}s",
            )
        except BackendUnavailableError as exc:
            return await self._revert(post, f"Queue unavailable: {exc}")

        if not added:
            await self._revert_status(post, "A publish for this post is already running")
            return _err(
                QueueErrorKind.INVALID_STATE,
                f"Post {post.id} is already being published",
            )

        await self.log.info(
            f"Job enqueued with {delay:.0f}s delay",
            post_id=post.id,
            job_id=job.key,
            data={"due_at": due_at.isoformat(), "delay_seconds": delay},
        )
        return Ok(job.key)

    async def _revert(self, post: Post, reason: str) -> Err:
        await self.log.error(f"Enqueue failed: {reason}", post_id=post.id)
        await self._revert_status(post, f"Scheduling failed, please try again ({reason})")
        return _err(QueueErrorKind.BACKEND_UNAVAILABLE, reason)

    async def _revert_status(self, post: Post, note: str) -> None:
        try:
            await self.state_machine.unschedule(post, note)
        except DatabaseError as exc:
            await self.log.error(
                "Could not revert post to draft", error=exc, post_id=post.id
            )

    def _delay_until(self, due_at: datetime) -> float:
        return max(0.0, (ensure_utc(due_at) - self._clock()).total_seconds())

    async def _load_post(self, post_id: str) -> Optional[Post]:
        row = await self.db.get_post(post_id)
        return Post.from_row(row) if row else None

    async def _load_profile(self, profile_id: str) -> Optional[Profile]:
        row = await self.db.get_profile(profile_id)
        return Profile.from_row(row) if row else None


__all__ = [
    "PublishingQueue",
]
