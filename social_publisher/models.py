"""
Shared data types for the social publishing pipeline.

This module is the single source of truth for the records the pipeline
reads and mutates:

- **Enums**: ``Platform``, ``PostStatus``, ``MediaType``, ``PostFormat``
- **Records**: ``Post`` (a unit of content bound to one profile) and
  ``Profile`` (a connected social account and its credential)
- **Credential**: the subset of a profile handed to a publisher

Rows are exchanged with the database as plain dicts; ``from_row`` /
``to_row`` convert between the two representations.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from social_publisher.utils import parse_timestamp, utc_now


# =============================================================================
# ENUMS
# =============================================================================


class Platform(Enum):
    """Supported social platforms.

    Adding a platform means adding a member here plus a ``Publisher``
    subclass (and, if its tokens expire, a ``TokenRefresher``).
    """

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"

    @property
    def display_name(self) -> str:
        names = {
            Platform.FACEBOOK: "Facebook",
            Platform.INSTAGRAM: "Instagram",
            Platform.TWITTER: "Twitter",
            Platform.TIKTOK: "TikTok",
            Platform.YOUTUBE: "YouTube",
        }
        return names[self]


class PostStatus(Enum):
    """Lifecycle status of a post.

    Transitions:
        DRAFT -> SCHEDULED -> PUBLISHING -> PUBLISHED
                                         -> FAILED -> SCHEDULED (manual retry)
                              PUBLISHING -> SCHEDULED (retry / crash recovery)
                 SCHEDULED -> DRAFT (queue backend unavailable)
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal for the current attempt cycle (FAILED until manual retry)."""
        return self in {PostStatus.PUBLISHED, PostStatus.FAILED}


class MediaType(Enum):
    IMAGE = "image"
    VIDEO = "video"
    CAROUSEL = "carousel"


class PostFormat(Enum):
    """Platform presentation format of a post."""

    STANDARD = "standard"
    REEL = "reel"
    SHORT = "short"
    STORY = "story"

    @property
    def is_short_form_video(self) -> bool:
        return self in {PostFormat.REEL, PostFormat.SHORT}


VIDEO_EXTENSIONS = (".mp4", ".mov", ".m4v", ".webm", ".avi", ".wmv", ".flv", ".mkv")


def is_video_url(url: str) -> bool:
    """Guess whether a media URL points at a video from its extension."""
    path = url.split("?", 1)[0].lower()
    return path.endswith(VIDEO_EXTENSIONS)


def _parse_media_urls(value: Any) -> List[str]:
    """Accept a list, a JSON array string, or a legacy comma-separated string."""
    if not value:
        return []
    if isinstance(value, list):
        return [str(url) for url in value if url]
    text = str(value).strip()
    if text.startswith("["):
        return [str(url) for url in json.loads(text) if url]
    return [part.strip() for part in text.split(",") if part.strip()]


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# =============================================================================
# POST
# =============================================================================


@dataclass
class Post:
    """A unit of content scheduled for one social profile.

    Invariants (maintained by the state machine):
        - at most one of ``published_at`` / ``failed_at`` is set;
        - ``platform_post_id`` is set iff ``status`` is ``PUBLISHED``.
    """

    id: str
    user_id: str
    profile_id: str
    platform: Platform
    content: str

    media_urls: List[str] = field(default_factory=list)
    media_type: Optional[MediaType] = None
    post_format: PostFormat = PostFormat.STANDARD

    # Scheduling
    status: PostStatus = PostStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    platform_post_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        """Build a ``Post`` from a ``posts`` table row."""
        media_type = row.get("media_type")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            profile_id=row["profile_id"],
            platform=Platform(row["platform"]),
            content=row.get("content") or "",
            media_urls=_parse_media_urls(row.get("media_urls")),
            media_type=MediaType(media_type) if media_type else None,
            post_format=PostFormat(row.get("post_format") or PostFormat.STANDARD.value),
            status=PostStatus(row.get("status") or PostStatus.DRAFT.value),
            scheduled_at=parse_timestamp(row.get("scheduled_at")),
            published_at=parse_timestamp(row.get("published_at")),
            failed_at=parse_timestamp(row.get("failed_at")),
            error_message=row.get("error_message"),
            platform_post_id=row.get("platform_post_id"),
            metadata=row.get("metadata") or {},
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a ``posts`` table row."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "profile_id": self.profile_id,
            "platform": self.platform.value,
            "content": self.content,
            "media_urls": list(self.media_urls),
            "media_type": self.media_type.value if self.media_type else None,
            "post_format": self.post_format.value,
            "status": self.status.value,
            "scheduled_at": _iso(self.scheduled_at),
            "published_at": _iso(self.published_at),
            "failed_at": _iso(self.failed_at),
            "error_message": self.error_message,
            "platform_post_id": self.platform_post_id,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# PROFILE
# =============================================================================


@dataclass
class Credential:
    """What a publisher needs to act on behalf of an account."""

    access_token: str
    account_id: str
    username: Optional[str] = None


@dataclass
class Profile:
    """A connected social account and its stored credential.

    ``token_expires_at`` of ``None`` means the token does not expire
    (e.g. Facebook page tokens).
    """

    id: str
    user_id: str
    platform: Platform
    platform_user_id: str
    access_token: str

    platform_username: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        """Build a ``Profile`` from a ``profiles`` table row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=Platform(row["platform"]),
            platform_user_id=row["platform_user_id"],
            access_token=row.get("access_token") or "",
            platform_username=row.get("platform_username"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=parse_timestamp(row.get("token_expires_at")),
            is_active=bool(row.get("is_active", True)),
            metadata=row.get("metadata") or {},
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform.value,
            "platform_user_id": self.platform_user_id,
            "platform_username": self.platform_username,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expires_at": _iso(self.token_expires_at),
            "is_active": self.is_active,
            "metadata": self.metadata,
        }

    def credential(self) -> Credential:
        return Credential(
            access_token=self.access_token,
            account_id=self.platform_user_id,
            username=self.platform_username,
        )

    @property
    def label(self) -> str:
        """Short human label for log lines."""
        return self.platform_username or self.platform_user_id


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "Platform",
    "PostStatus",
    "MediaType",
    "PostFormat",
    "VIDEO_EXTENSIONS",
    "is_video_url",
    "Post",
    "Credential",
    "Profile",
]
