"""Tests for social_publisher.scheduling.publishing_queue.

Covers:
- enqueue / cancel / retry / get_stats results and error kinds
- the per-job processing algorithm (skip, crash recovery, duplicate guard,
  profile checks, dispatch, failure classification)
- retry budget and backoff through the memory job store
- posts sync and the worker loop
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ScriptedPublisher, no_sleep
from social_publisher.config import QueueConfig
from social_publisher.exceptions import (
    BackendUnavailableError,
    DatabaseError,
    PlatformError,
)
from social_publisher.models import Platform, PostFormat
from social_publisher.platforms.base import PublishResult
from social_publisher.platforms.dispatch import Dispatcher
from social_publisher.platforms.errors import ErrorKind
from social_publisher.scheduling.job_store import MemoryJobStore
from social_publisher.scheduling.jobs import OutcomeKind, QueueErrorKind, QueueJob
from social_publisher.scheduling.publishing_queue import PublishingQueue
from social_publisher.tokens.manager import TokenLifecycleManager
from social_publisher.tokens.refreshers import TokenGrant


def rate_limited():
    return PlatformError(ErrorKind.RATE_LIMITED, "Too many requests")


@pytest.fixture
def build_queue(fake_db, clock, queue_config):
    def _build(publisher=None, refreshers=None, store=None, config=None):
        publisher = publisher or ScriptedPublisher()
        dispatcher = Dispatcher([publisher], sleep=no_sleep, jitter=lambda low, high: low)
        tokens = TokenLifecycleManager(
            fake_db, refreshers or {}, clock=clock, sleep=no_sleep
        )
        return PublishingQueue(
            fake_db,
            store or MemoryJobStore(clock=clock.time),
            dispatcher,
            tokens,
            config=config or queue_config,
            clock=clock,
        )

    return _build


@pytest.fixture
def seeded(fake_db):
    fake_db.add_profile()
    fake_db.add_post()
    return fake_db


async def drain(queue, clock, rounds=5, step=60):
    """Run due jobs repeatedly, advancing past each backoff delay."""
    outcomes = []
    for _ in range(rounds):
        outcomes.extend(await queue.run_pending())
        clock.advance(step)
    return outcomes


# =============================================================================
# enqueue
# =============================================================================


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_draft_schedules_now(self, build_queue, seeded, sample_utc_now):
        queue = build_queue()

        result = await queue.enqueue("post-1", "user-1")

        assert result.ok
        assert result.value == "post-post-1"
        row = seeded.posts["post-1"]
        assert row["status"] == "scheduled"
        assert row["scheduled_at"] == sample_utc_now.isoformat()
        assert await queue.store.has_job("post-post-1")

    @pytest.mark.asyncio
    async def test_future_due_time_delays_job(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher()
        queue = build_queue(publisher)

        await queue.enqueue("post-1", "user-1", due_at=clock() + timedelta(hours=1))

        assert await queue.run_pending() == []
        clock.advance(3600)
        [outcome] = await queue.run_pending()
        assert outcome.kind is OutcomeKind.PUBLISHED
        assert len(publisher.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_post(self, build_queue, fake_db):
        result = await build_queue().enqueue("nope", "user-1")
        assert result.error.kind is QueueErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_post(self, build_queue, seeded):
        result = await build_queue().enqueue("post-1", "intruder")

        assert result.error.kind is QueueErrorKind.FORBIDDEN
        assert seeded.posts["post-1"]["status"] == "draft"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["publishing", "published", "failed"])
    async def test_invalid_state(self, build_queue, fake_db, status):
        fake_db.add_post(status=status)
        result = await build_queue().enqueue("post-1", "user-1")
        assert result.error.kind is QueueErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_backend_error_reverts_to_draft(self, build_queue, seeded):
        store = MagicMock()
        store.add = AsyncMock(side_effect=BackendUnavailableError("redis down"))
        queue = build_queue(store=store)

        result = await queue.enqueue("post-1", "user-1")

        assert not result.ok
        assert result.error.kind is QueueErrorKind.BACKEND_UNAVAILABLE
        row = seeded.posts["post-1"]
        assert row["status"] == "draft"
        assert "redis down" in row["error_message"]

    @pytest.mark.asyncio
    async def test_backend_timeout_reverts_to_draft(self, build_queue, seeded):
        async def hang(*_args, **_kwargs):
            await asyncio.sleep(10)

        store = MagicMock()
        store.add = hang
        queue = build_queue(
            store=store,
            config=QueueConfig(backend="memory", enqueue_timeout_seconds=0.01),
        )

        result = await queue.enqueue("post-1", "user-1")

        assert result.error.kind is QueueErrorKind.BACKEND_UNAVAILABLE
        assert seeded.posts["post-1"]["status"] == "draft"
        assert "did not respond" in seeded.posts["post-1"]["error_message"]

    @pytest.mark.asyncio
    async def test_concurrent_enqueues_publish_once(self, build_queue, seeded):
        publisher = ScriptedPublisher()
        queue = build_queue(publisher)

        results = await asyncio.gather(
            queue.enqueue("post-1", "user-1"),
            queue.enqueue("post-1", "user-1"),
        )
        outcomes = await queue.run_pending()

        assert all(r.ok for r in results)
        assert len(outcomes) == 1
        assert len(publisher.calls) == 1
        assert seeded.posts["post-1"]["status"] == "published"


# =============================================================================
# cancel / retry / stats
# =============================================================================


class TestCallerOperations:
    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher()
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1", due_at=clock() + timedelta(minutes=5))

        result = await queue.cancel("post-1")

        assert result.ok and result.value is True
        clock.advance(600)
        assert await queue.run_pending() == []
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_cancel_absent_job(self, build_queue, seeded):
        result = await build_queue().cancel("post-1")
        assert result.ok and result.value is False

    @pytest.mark.asyncio
    async def test_cancel_backend_down(self, build_queue, seeded):
        store = MagicMock()
        store.remove = AsyncMock(side_effect=BackendUnavailableError("down"))

        result = await build_queue(store=store).cancel("post-1")

        assert result.error.kind is QueueErrorKind.BACKEND_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_retry_failed_post(self, build_queue, fake_db):
        fake_db.add_profile()
        fake_db.add_post(
            status="failed",
            failed_at="2025-06-15T11:00:00+00:00",
            error_message="unknown: boom",
        )
        publisher = ScriptedPublisher()
        queue = build_queue(publisher)

        result = await queue.retry("post-1")

        assert result.ok and result.value == "post-post-1"
        row = fake_db.posts["post-1"]
        assert row["status"] == "scheduled"
        assert row["failed_at"] is None
        assert row["error_message"] is None

        await queue.run_pending()
        assert fake_db.posts["post-1"]["status"] == "published"

    @pytest.mark.asyncio
    async def test_retry_non_failed_post_is_noop(self, build_queue, seeded):
        result = await build_queue().retry("post-1")

        assert result.ok and result.value is None
        assert seeded.posts["post-1"]["status"] == "draft"

    @pytest.mark.asyncio
    async def test_get_stats(self, build_queue, seeded, clock):
        queue = build_queue()
        await queue.enqueue("post-1", "user-1", due_at=clock() + timedelta(minutes=1))

        result = await queue.get_stats()

        assert result.ok
        assert result.value.delayed == 1
        assert result.value.to_dict() == {
            "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 1, "total": 1,
        }

    @pytest.mark.asyncio
    async def test_get_stats_backend_down(self, build_queue):
        store = MagicMock()
        store.counts = AsyncMock(side_effect=BackendUnavailableError("down"))

        result = await build_queue(store=store).get_stats()

        assert result.error.kind is QueueErrorKind.BACKEND_UNAVAILABLE


# =============================================================================
# process
# =============================================================================


class TestProcess:
    @pytest.mark.asyncio
    async def test_deleted_post_is_skipped(self, build_queue, fake_db):
        outcome = await build_queue().process(QueueJob("gone", "user-1", attempts_made=1))
        assert outcome.kind is OutcomeKind.SKIPPED

    @pytest.mark.asyncio
    async def test_already_published_is_noop(self, build_queue, fake_db):
        fake_db.add_profile()
        fake_db.add_post(
            status="published",
            published_at="2025-06-15T11:00:00+00:00",
            platform_post_id="tw-1",
        )
        publisher = ScriptedPublisher()

        outcome = await build_queue(publisher).process(
            QueueJob("post-1", "user-1", attempts_made=2)
        )

        assert outcome.kind is OutcomeKind.SKIPPED
        assert publisher.calls == []
        assert fake_db.posts["post-1"]["platform_post_id"] == "tw-1"

    @pytest.mark.asyncio
    async def test_draft_post_is_skipped(self, build_queue, seeded):
        publisher = ScriptedPublisher()
        outcome = await build_queue(publisher).process(
            QueueJob("post-1", "user-1", attempts_made=1)
        )

        assert outcome.kind is OutcomeKind.SKIPPED
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_crash_recovery_completes_same_invocation(self, build_queue, fake_db):
        fake_db.add_profile()
        fake_db.add_post(status="publishing")
        publisher = ScriptedPublisher(outcomes=[PublishResult("tw-42", {"thread_ids": ["tw-42"]})])

        outcome = await build_queue(publisher).process(
            QueueJob("post-1", "user-1", attempts_made=2)
        )

        assert outcome.kind is OutcomeKind.PUBLISHED
        row = fake_db.posts["post-1"]
        assert row["status"] == "published"
        assert row["platform_post_id"] == "tw-42"
        assert row["metadata"]["thread_ids"] == ["tw-42"]

    @pytest.mark.asyncio
    async def test_inactive_profile_fails_without_dispatch(self, build_queue, fake_db):
        fake_db.add_profile(is_active=False)
        fake_db.add_post(status="scheduled")
        publisher = ScriptedPublisher()

        outcome = await build_queue(publisher).process(
            QueueJob("post-1", "user-1", attempts_made=1)
        )

        assert outcome.kind is OutcomeKind.FAILED
        assert publisher.calls == []
        assert fake_db.posts["post-1"]["error_message"].startswith("permission_denied")

    @pytest.mark.asyncio
    async def test_instagram_without_media_fails_before_publisher(self, build_queue, fake_db):
        fake_db.add_profile(platform="instagram")
        fake_db.add_post(status="scheduled", platform="instagram", media_urls=[])
        publisher = ScriptedPublisher(Platform.INSTAGRAM, requires_media=True)

        outcome = await build_queue(publisher).process(
            QueueJob("post-1", "user-1", attempts_made=1)
        )

        assert outcome.kind is OutcomeKind.FAILED
        assert publisher.calls == []
        row = fake_db.posts["post-1"]
        assert row["status"] == "failed"
        assert row["error_message"].startswith("invalid_media")

    @pytest.mark.asyncio
    async def test_spam_risk_fails_immediately(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(
            outcomes=[PlatformError(ErrorKind.SPAM_OR_QUOTA_RISK, "Duplicate content")]
        )
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.FAILED]
        assert len(publisher.calls) == 1
        assert seeded.posts["post-1"]["status"] == "failed"
        assert (await queue.get_stats()).value.failed == 1

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(outcomes=[
            rate_limited(),
            rate_limited(),
            PlatformError(ErrorKind.RATE_LIMITED, "Still too many requests"),
        ])
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [
            OutcomeKind.RETRY,
            OutcomeKind.RETRY,
            OutcomeKind.FAILED,
        ]
        assert len(publisher.calls) == 3
        row = seeded.posts["post-1"]
        assert row["status"] == "failed"
        assert row["error_message"] == "rate_limited: Still too many requests"

    @pytest.mark.asyncio
    async def test_backoff_delays(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(outcomes=[rate_limited(), rate_limited()])
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        [first] = await queue.run_pending()
        clock.advance(1.9)
        assert await queue.run_pending() == []
        clock.advance(0.1)
        [second] = await queue.run_pending()

        assert first.retry_delay == 2.0
        assert second.retry_delay == 4.0

    @pytest.mark.asyncio
    async def test_rate_limited_twice_then_published(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(
            outcomes=[rate_limited(), rate_limited(), PublishResult("tw-3")]
        )
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert outcomes[-1].kind is OutcomeKind.PUBLISHED
        assert len(publisher.calls) == 3
        row = seeded.posts["post-1"]
        assert row["status"] == "published"
        assert row["platform_post_id"] == "tw-3"
        assert row["error_message"] is None

    @pytest.mark.asyncio
    async def test_invalid_media_retried_once(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(outcomes=[
            PlatformError(ErrorKind.INVALID_MEDIA, "CDN timeout"),
            PlatformError(ErrorKind.INVALID_MEDIA, "CDN timeout"),
        ])
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.RETRY, OutcomeKind.FAILED]
        assert len(publisher.calls) == 2

    @pytest.mark.asyncio
    async def test_token_expired_refreshed_then_retried(self, build_queue, seeded, clock):
        refresher = MagicMock()
        refresher.refresh = AsyncMock(return_value=TokenGrant("fresh-token", expires_in=3600))
        publisher = ScriptedPublisher(outcomes=[
            PlatformError(ErrorKind.TOKEN_EXPIRED, "Invalid OAuth token"),
            PublishResult("tw-7"),
        ])
        queue = build_queue(publisher, refreshers={Platform.TWITTER: refresher})
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.RETRY, OutcomeKind.PUBLISHED]
        assert publisher.calls[1]["credential"].access_token == "fresh-token"
        assert seeded.profiles["profile-1"]["is_active"] is True

    @pytest.mark.asyncio
    async def test_token_expired_without_refresh_deactivates(self, build_queue, seeded, clock):
        publisher = ScriptedPublisher(
            outcomes=[PlatformError(ErrorKind.TOKEN_EXPIRED, "Invalid OAuth token")]
        )
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.FAILED]
        profile = seeded.profiles["profile-1"]
        assert profile["is_active"] is False
        assert "deactivation_reason" in profile["metadata"]

    @pytest.mark.asyncio
    async def test_ensure_valid_false_is_retryable(self, build_queue, fake_db, clock):
        fake_db.add_profile(token_expires_at=(clock() - timedelta(hours=1)).isoformat())
        fake_db.add_post()
        publisher = ScriptedPublisher()
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        [first] = await queue.run_pending()

        # Expired token with no refresher: profile deactivated, attempt retried
        assert first.kind is OutcomeKind.RETRY
        assert fake_db.profiles["profile-1"]["is_active"] is False
        clock.advance(2)
        [second] = await queue.run_pending()
        assert second.kind is OutcomeKind.FAILED
        assert fake_db.posts["post-1"]["error_message"].startswith("permission_denied")
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_publish_timeout_is_retryable(self, build_queue, seeded):
        class SlowPublisher(ScriptedPublisher):
            async def publish(self, credential, content, media_urls, post_format):
                await asyncio.sleep(10)

        queue = build_queue(
            SlowPublisher(),
            config=QueueConfig(backend="memory", job_timeout_seconds=0.01),
        )
        await queue.enqueue("post-1", "user-1")

        [outcome] = await queue.run_pending()

        assert outcome.kind is OutcomeKind.RETRY
        assert "timed out" in outcome.message
        assert seeded.posts["post-1"]["status"] == "scheduled"

    @pytest.mark.asyncio
    async def test_unexpected_error_on_last_attempt_marks_failed(
        self, build_queue, seeded, clock
    ):
        publisher = ScriptedPublisher(outcomes=[KeyError("id")] * 3)
        queue = build_queue(publisher)
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [
            OutcomeKind.RETRY,
            OutcomeKind.RETRY,
            OutcomeKind.FAILED,
        ]
        row = seeded.posts["post-1"]
        assert row["status"] == "failed"
        assert row["error_message"].startswith("Unexpected error")
        assert row["failed_at"] is not None
        assert not await queue.store.has_job("post-post-1")

    @pytest.mark.asyncio
    async def test_database_error_on_last_attempt_marks_failed(
        self, build_queue, seeded, clock
    ):
        async def broken(_profile_id):
            raise DatabaseError("connection reset")

        seeded.get_profile = broken
        queue = build_queue()
        await queue.enqueue("post-1", "user-1")

        outcomes = await drain(queue, clock)

        assert outcomes[-1].kind is OutcomeKind.FAILED
        row = seeded.posts["post-1"]
        assert row["status"] == "failed"
        assert row["error_message"] == "Database error: connection reset"

    @pytest.mark.asyncio
    async def test_failed_write_of_terminal_failure_is_logged(
        self, build_queue, seeded, clock
    ):
        queue = build_queue(ScriptedPublisher(outcomes=[KeyError("id")] * 3))
        await queue.enqueue("post-1", "user-1")
        await drain(queue, clock, rounds=2)

        async def broken(*_args, **_kwargs):
            raise DatabaseError("write failed")

        seeded.update_post = broken
        outcomes = await drain(queue, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.FAILED]
        assert seeded.posts["post-1"]["status"] == "publishing"

    @pytest.mark.asyncio
    async def test_short_form_video_is_staggered(self, fake_db, clock, queue_config):
        fake_db.add_profile(platform="instagram")
        fake_db.add_post(
            status="scheduled",
            platform="instagram",
            media_urls=["https://cdn.example.com/clip.mp4"],
            post_format=PostFormat.REEL.value,
        )
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        publisher = ScriptedPublisher(Platform.INSTAGRAM, requires_media=True)
        dispatcher = Dispatcher([publisher], sleep=record_sleep, jitter=lambda low, high: 2.5)
        queue = PublishingQueue(
            fake_db,
            MemoryJobStore(clock=clock.time),
            dispatcher,
            TokenLifecycleManager(fake_db, {}, clock=clock, sleep=no_sleep),
            config=queue_config,
            clock=clock,
        )

        outcome = await queue.process(QueueJob("post-1", "user-1", attempts_made=1))

        assert outcome.kind is OutcomeKind.PUBLISHED
        assert sleeps == [2.5]


# =============================================================================
# sync and worker loop
# =============================================================================


class TestSyncAndWorker:
    @pytest.mark.asyncio
    async def test_sync_adds_missing_jobs_only(self, build_queue, fake_db, clock):
        fake_db.add_profile()
        fake_db.add_post(id="a", status="scheduled", scheduled_at=clock().isoformat())
        fake_db.add_post(id="b", status="scheduled", scheduled_at=clock().isoformat())
        fake_db.add_post(id="c", status="draft")
        queue = build_queue()
        await queue.store.add(QueueJob("a", "user-1"), delay_seconds=0)

        summary = await queue.sync_scheduled_posts()

        assert summary.total == 2
        assert summary.added == 1
        assert summary.already_queued == 1
        assert summary.errors == []
        assert await queue.store.has_job("post-b")
        assert not await queue.store.has_job("post-c")

    @pytest.mark.asyncio
    async def test_sync_stops_on_backend_error(self, build_queue, fake_db, clock):
        fake_db.add_post(id="a", status="scheduled")
        store = MagicMock()
        store.add = AsyncMock(side_effect=BackendUnavailableError("down"))

        summary = await build_queue(store=store).sync_scheduled_posts()

        assert summary.added == 0
        assert len(summary.errors) == 1

    @pytest.mark.asyncio
    async def test_worker_loop_publishes_and_stops(self, build_queue, seeded):
        publisher = ScriptedPublisher()
        queue = build_queue(
            publisher,
            config=QueueConfig(backend="memory", poll_interval_seconds=0.01),
        )
        await queue.enqueue("post-1", "user-1")

        task = asyncio.create_task(queue.start())
        for _ in range(100):
            if seeded.posts["post-1"]["status"] == "published":
                break
            await asyncio.sleep(0.01)
        await queue.stop()
        await asyncio.wait_for(task, timeout=1)

        assert seeded.posts["post-1"]["status"] == "published"
        assert len(publisher.calls) == 1
        assert (await queue.get_stats()).value.completed == 1
