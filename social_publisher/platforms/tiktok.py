"""
TikTok publisher (Content Posting API, direct post).

Video posts are initialised with ``PULL_FROM_URL`` so TikTok fetches the
file itself; the publish status is then polled (bounded) until
``PUBLISH_COMPLETE``. TikTok reports most errors inside a 200 body as
``{"error": {"code": "...", "message": "..."}}`` with ``code == "ok"`` on
success.
"""

import logging
from typing import Any, Dict, List, Optional

from social_publisher.exceptions import PlatformError, PublishValidationError
from social_publisher.models import Credential, Platform, PostFormat, is_video_url
from social_publisher.platforms.base import Publisher, PublishResult, error_message
from social_publisher.platforms.errors import ErrorKind, kind_for_status

logger = logging.getLogger(__name__)

API_URL = "https://open.tiktokapis.com/v2"

SUPPORTED_VIDEO_FORMATS = (".mp4", ".mov", ".webm")
TITLE_LIMIT = 2200
MIN_VIDEO_SECONDS = 3
MAX_VIDEO_SECONDS = 600

# Unaudited clients may only post privately
DEFAULT_PRIVACY_LEVEL = "SELF_ONLY"

ERROR_CODE_KINDS: Dict[str, ErrorKind] = {
    "access_token_invalid": ErrorKind.TOKEN_EXPIRED,
    "token_not_authorized_for_specified_user": ErrorKind.TOKEN_EXPIRED,
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "spam_risk_too_many_posts": ErrorKind.SPAM_OR_QUOTA_RISK,
    "spam_risk_too_many_pending_share": ErrorKind.SPAM_OR_QUOTA_RISK,
    "spam_risk_user_banned_from_posting": ErrorKind.SPAM_OR_QUOTA_RISK,
    "reached_active_user_cap": ErrorKind.SPAM_OR_QUOTA_RISK,
    "video_upload_failed": ErrorKind.INVALID_MEDIA,
    "file_format_check_failed": ErrorKind.INVALID_MEDIA,
    "invalid_file_upload": ErrorKind.INVALID_MEDIA,
    "url_ownership_unverified": ErrorKind.INVALID_MEDIA,
    "scope_not_authorized": ErrorKind.PERMISSION_DENIED,
    "unaudited_client_can_only_post_to_private_accounts": ErrorKind.PERMISSION_DENIED,
    "privacy_level_option_mismatch": ErrorKind.PERMISSION_DENIED,
}

FAIL_REASON_KINDS: Dict[str, ErrorKind] = {
    "file_format_check_failed": ErrorKind.INVALID_MEDIA,
    "duration_check_failed": ErrorKind.INVALID_MEDIA,
    "frame_rate_check_failed": ErrorKind.INVALID_MEDIA,
    "picture_size_check_failed": ErrorKind.INVALID_MEDIA,
    "video_pull_failed": ErrorKind.INVALID_MEDIA,
    "photo_pull_failed": ErrorKind.INVALID_MEDIA,
    "spam_risk_too_many_posts": ErrorKind.SPAM_OR_QUOTA_RISK,
    "spam_risk_user_banned_from_posting": ErrorKind.SPAM_OR_QUOTA_RISK,
    "auth_removed": ErrorKind.TOKEN_EXPIRED,
}


class TikTokPublisher(Publisher):
    """Publishes videos and photo posts to TikTok."""

    platform = Platform.TIKTOK
    requires_media = True
    max_videos = 1

    def classify_error(self, status_code: int, body: Any) -> PlatformError:
        error = body.get("error") if isinstance(body, dict) else None
        code = error.get("code") if isinstance(error, dict) else None
        message = error_message(body, f"TikTok HTTP {status_code}")
        kind = ERROR_CODE_KINDS.get(code) if code else None
        if kind is None:
            kind = kind_for_status(status_code)
        return PlatformError(kind, message, platform_code=code or str(status_code))

    def check_body(self, body: Any) -> None:
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("code") not in (None, "ok"):
            raise self.classify_error(200, body)

    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        if not media_urls:
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA, "TikTok requires a video or photos"
            )

        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json; charset=UTF-8",
        }
        title = content[:TITLE_LIMIT]

        if is_video_url(media_urls[0]):
            publish_id = await self._init_video(media_urls[0], title, headers)
        else:
            publish_id = await self._init_photos(media_urls, title, headers)

        status = await self._poll(
            lambda: self._publish_status(publish_id, headers),
            f"publish {publish_id}",
        )
        metadata: Dict[str, Any] = {"publish_id": publish_id}
        post_ids = status.get("publicaly_available_post_id") or []
        if post_ids:
            metadata["video_id"] = str(post_ids[0])
        return PublishResult(platform_post_id=publish_id, metadata=metadata)

    async def _init_video(self, url: str, title: str, headers: Dict[str, str]) -> str:
        path = url.split("?", 1)[0].lower()
        if not path.endswith(SUPPORTED_VIDEO_FORMATS):
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA,
                f"TikTok supports {', '.join(SUPPORTED_VIDEO_FORMATS)} videos only",
            )
        body = await self._request(
            "POST",
            f"{API_URL}/post/publish/video/init/",
            headers=headers,
            json={
                "post_info": {
                    "title": title,
                    "privacy_level": DEFAULT_PRIVACY_LEVEL,
                    "disable_comment": False,
                },
                "source_info": {"source": "PULL_FROM_URL", "video_url": url},
            },
        )
        return str(body["data"]["publish_id"])

    async def _init_photos(self, urls: List[str], title: str, headers: Dict[str, str]) -> str:
        body = await self._request(
            "POST",
            f"{API_URL}/post/publish/content/init/",
            headers=headers,
            json={
                "post_info": {"title": title[:90], "description": title, "privacy_level": DEFAULT_PRIVACY_LEVEL},
                "source_info": {
                    "source": "PULL_FROM_URL",
                    "photo_cover_index": 0,
                    "photo_images": urls,
                },
                "post_mode": "DIRECT_POST",
                "media_type": "PHOTO",
            },
        )
        return str(body["data"]["publish_id"])

    async def _publish_status(self, publish_id: str, headers: Dict[str, str]) -> Optional[Dict[str, Any]]:
        body = await self._request(
            "POST",
            f"{API_URL}/post/publish/status/fetch/",
            headers=headers,
            json={"publish_id": publish_id},
        )
        data = body.get("data") or {}
        status = data.get("status")
        if status == "PUBLISH_COMPLETE":
            return data
        if status == "FAILED":
            reason = data.get("fail_reason") or "unknown"
            raise PlatformError(
                FAIL_REASON_KINDS.get(reason, ErrorKind.UNKNOWN),
                f"TikTok publish {publish_id} failed: {reason}",
                platform_code=reason,
            )
        return None


__all__ = ["TikTokPublisher", "SUPPORTED_VIDEO_FORMATS"]
