"""Shared fixtures for the publishing pipeline test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from social_publisher.config import DispatchConfig, QueueConfig, TokenConfig
from social_publisher.exceptions import PlatformError
from social_publisher.models import Platform, PostFormat, PostStatus
from social_publisher.platforms.base import Publisher, PublishResult
from social_publisher.platforms.errors import kind_for_status
from social_publisher.utils import parse_timestamp


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear credentials and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "REDIS_URL",
        "APP_ENV",
        "LOG_LEVEL",
        "QUEUE_BACKEND",
        "QUEUE_KEY_PREFIX",
        "QUEUE_MAX_ATTEMPTS",
        "QUEUE_CONCURRENCY",
        "QUEUE_JOB_TIMEOUT",
        "TOKEN_REFRESH_THRESHOLD_HOURS",
        "TOKEN_REFRESH_HOUR_UTC",
        "GRAPH_API_VERSION",
        "FACEBOOK_APP_ID",
        "FACEBOOK_APP_SECRET",
        "TIKTOK_CLIENT_KEY",
        "TIKTOK_CLIENT_SECRET",
        "TWITTER_CLIENT_ID",
        "TWITTER_CLIENT_SECRET",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------
class FakeClock:
    """Manually advanced clock; ``clock()`` for datetimes, ``clock.time()`` for epoch."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# In-memory database
# ---------------------------------------------------------------------------
class FakeDB:
    """In-memory stand-in for ``SupabaseDB`` with the same conditional writes."""

    def __init__(self) -> None:
        self.posts: Dict[str, Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.logs: List[Dict[str, Any]] = []

    async def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
        row = self.posts.get(post_id)
        return dict(row) if row else None

    async def update_post(
        self,
        post_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        row = self.posts.get(post_id)
        if row is None:
            return False
        if expected_status is not None and row["status"] != expected_status:
            return False
        row.update(fields)
        return True

    async def get_scheduled_posts(self) -> List[Dict[str, Any]]:
        rows = [
            dict(r) for r in self.posts.values()
            if r["status"] == "scheduled" and not r.get("published_at")
        ]
        return sorted(rows, key=lambda r: r.get("scheduled_at") or "")

    async def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        row = self.profiles.get(profile_id)
        return dict(row) if row else None

    async def update_profile(self, profile_id: str, fields: Dict[str, Any]) -> bool:
        row = self.profiles.get(profile_id)
        if row is None:
            return False
        row.update(fields)
        return True

    async def get_expiring_profiles(self, before: datetime) -> List[Dict[str, Any]]:
        rows = []
        for row in self.profiles.values():
            expires_at = parse_timestamp(row.get("token_expires_at"))
            if row.get("is_active") and expires_at is not None and expires_at <= before:
                rows.append(dict(row))
        return rows

    async def save_agent_log(self, log_entry: Dict[str, Any]) -> str:
        self.logs.append(log_entry)
        return str(len(self.logs))

    def add_post(self, **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": "post-1",
            "user_id": "user-1",
            "profile_id": "profile-1",
            "platform": Platform.TWITTER.value,
            "content": "Hello world",
            "media_urls": [],
            "media_type": None,
            "post_format": PostFormat.STANDARD.value,
            "status": PostStatus.DRAFT.value,
            "scheduled_at": None,
            "published_at": None,
            "failed_at": None,
            "error_message": None,
            "platform_post_id": None,
            "metadata": {},
        }
        row.update(overrides)
        self.posts[row["id"]] = row
        return row

    def add_profile(self, **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": "profile-1",
            "user_id": "user-1",
            "platform": Platform.TWITTER.value,
            "platform_user_id": "12345",
            "platform_username": "brand",
            "access_token": "token-abc",
            "refresh_token": "refresh-abc",
            "token_expires_at": None,
            "is_active": True,
            "metadata": {},
        }
        row.update(overrides)
        self.profiles[row["id"]] = row
        return row


@pytest.fixture
def fake_db():
    return FakeDB()


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------
class ScriptedPublisher(Publisher):
    """Publisher that replays scripted results or exceptions, in order."""

    platform = Platform.TWITTER

    def __init__(
        self,
        platform: Platform = Platform.TWITTER,
        outcomes: Optional[List[Any]] = None,
        requires_media: bool = False,
        max_videos: Optional[int] = None,
    ) -> None:
        super().__init__(config=DispatchConfig())
        self.platform = platform
        self.requires_media = requires_media
        self.max_videos = max_videos
        self.outcomes = list(outcomes or [])
        self.calls: List[Dict[str, Any]] = []

    async def publish(self, credential, content, media_urls, post_format):
        self.calls.append({
            "credential": credential,
            "content": content,
            "media_urls": list(media_urls),
            "post_format": post_format,
        })
        outcome = self.outcomes.pop(0) if self.outcomes else PublishResult("platform-post-1")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def classify_error(self, status_code, body):
        return PlatformError(kind_for_status(status_code), f"HTTP {status_code}")


@pytest.fixture
def queue_config():
    return QueueConfig(backend="memory")


@pytest.fixture
def token_config():
    return TokenConfig()


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client recording the query chain."""
    client = MagicMock()
    table_mock = MagicMock()
    table_mock.select.return_value = table_mock
    table_mock.insert.return_value = table_mock
    table_mock.update.return_value = table_mock
    table_mock.delete.return_value = table_mock
    table_mock.eq.return_value = table_mock
    table_mock.is_.return_value = table_mock
    table_mock.gte.return_value = table_mock
    table_mock.lte.return_value = table_mock
    table_mock.order.return_value = table_mock
    table_mock.limit.return_value = table_mock
    table_mock.execute = AsyncMock(return_value=MagicMock(data=[], count=0))
    client.table.return_value = table_mock
    return client
