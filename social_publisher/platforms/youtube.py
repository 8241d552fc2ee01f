"""
YouTube publisher (Data API v3 resumable upload).

The video is downloaded from its media URL, a resumable session is opened
with the snippet/status metadata, and the bytes are sent in one PUT to
the session URL. SHORT posts get a ``#Shorts`` title tag.
"""

import logging
from typing import Any, Dict, List

from social_publisher.exceptions import PlatformError, PublishValidationError
from social_publisher.models import Credential, Platform, PostFormat, is_video_url
from social_publisher.platforms.base import Publisher, PublishResult, decode_body, error_message
from social_publisher.platforms.errors import ErrorKind, kind_for_status

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"

TITLE_LIMIT = 100
SHORTS_TAG = "#Shorts"
DEFAULT_TITLE = "Untitled Video"
# People & Blogs
DEFAULT_CATEGORY_ID = "22"

REASON_KINDS: Dict[str, ErrorKind] = {
    "authError": ErrorKind.TOKEN_EXPIRED,
    "invalid_grant": ErrorKind.TOKEN_EXPIRED,
    "quotaExceeded": ErrorKind.SPAM_OR_QUOTA_RISK,
    "dailyLimitExceeded": ErrorKind.SPAM_OR_QUOTA_RISK,
    "uploadLimitExceeded": ErrorKind.SPAM_OR_QUOTA_RISK,
    "rateLimitExceeded": ErrorKind.RATE_LIMITED,
    "userRateLimitExceeded": ErrorKind.RATE_LIMITED,
    "forbidden": ErrorKind.PERMISSION_DENIED,
    "insufficientPermissions": ErrorKind.PERMISSION_DENIED,
    "youtubeSignupRequired": ErrorKind.PERMISSION_DENIED,
    "invalidVideoFormat": ErrorKind.INVALID_MEDIA,
    "mediaBodyRequired": ErrorKind.INVALID_MEDIA,
    "invalidTitle": ErrorKind.INVALID_MEDIA,
}


def build_title(content: str, post_format: PostFormat) -> str:
    """First line of *content*, capped at 100 chars, tagged for Shorts."""
    first_line = content.strip().split("\n", 1)[0].strip() if content.strip() else ""
    title = first_line or DEFAULT_TITLE
    if post_format is PostFormat.SHORT and SHORTS_TAG.lower() not in title.lower():
        room = TITLE_LIMIT - len(SHORTS_TAG) - 1
        title = f"{title[:room].rstrip()} {SHORTS_TAG}"
    return title[:TITLE_LIMIT]


class YouTubePublisher(Publisher):
    """Uploads a single video to the authenticated channel."""

    platform = Platform.YOUTUBE
    requires_media = True
    max_videos = 1

    def classify_error(self, status_code: int, body: Any) -> PlatformError:
        reason = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            errors = error.get("errors") or []
            if errors:
                reason = errors[0].get("reason")
        elif isinstance(error, str):
            reason = error

        kind = REASON_KINDS.get(reason) if reason else None
        if kind is None:
            kind = kind_for_status(status_code)
        message = error_message(body, f"YouTube HTTP {status_code}")
        return PlatformError(kind, message, platform_code=reason or str(status_code))

    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        if not media_urls or not is_video_url(media_urls[0]):
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA, "YouTube requires a video file to upload"
            )

        title = build_title(content, post_format)
        description = content.strip() or title
        video, content_type = await self._fetch_media(media_urls[0])

        session_url = await self._open_session(
            credential.access_token, title, description, content_type, len(video)
        )
        body = await self._request(
            "PUT",
            session_url,
            headers={
                "Authorization": f"Bearer {credential.access_token}",
                "Content-Type": content_type,
            },
            content=video,
            timeout=self.config.upload_timeout_seconds,
        )
        video_id = body.get("id")
        if not video_id:
            raise PlatformError(ErrorKind.UNKNOWN, "YouTube upload response carried no video id")

        return PublishResult(
            platform_post_id=str(video_id),
            metadata={
                "video_url": f"https://www.youtube.com/watch?v={video_id}",
                "title": title,
                "channel_id": credential.account_id,
            },
        )

    async def _open_session(
        self,
        token: str,
        title: str,
        description: str,
        content_type: str,
        length: int,
    ) -> str:
        response = await self._send(
            "POST",
            UPLOAD_URL,
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                "Authorization": f"Bearer {token}",
                "X-Upload-Content-Type": content_type,
                "X-Upload-Content-Length": str(length),
            },
            json={
                "snippet": {
                    "title": title,
                    "description": description,
                    "categoryId": DEFAULT_CATEGORY_ID,
                },
                "status": {"privacyStatus": "public", "selfDeclaredMadeForKids": False},
            },
        )
        if response.is_error:
            raise self.classify_error(response.status_code, decode_body(response))
        location = response.headers.get("location")
        if not location:
            raise PlatformError(ErrorKind.UNKNOWN, "YouTube did not return an upload session URL")
        return location


__all__ = ["YouTubePublisher", "build_title"]
