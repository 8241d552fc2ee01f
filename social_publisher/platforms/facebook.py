"""
Facebook Page publisher (Graph API).

Also provides ``GraphApiPublisher``, the shared base for Facebook and
Instagram: both speak the Graph API and report failures as
``{"error": {"code", "type", "message", "error_subcode"}}``.

Post shapes:
    - text only            -> ``/{page_id}/feed``
    - one image            -> ``/{page_id}/photos``
    - one video            -> ``/{page_id}/videos`` (``video_format_type=reels`` for REEL)
    - several images       -> unpublished ``/photos`` uploads, then ``/feed``
                              with ``attached_media``
"""

import logging
from typing import Any, Dict, List

from social_publisher.exceptions import PlatformError
from social_publisher.models import Credential, Platform, PostFormat, is_video_url
from social_publisher.platforms.base import Publisher, PublishResult, error_message
from social_publisher.platforms.errors import ErrorKind, kind_for_status

logger = logging.getLogger(__name__)

GRAPH_HOST = "https://graph.facebook.com"

RATE_LIMIT_CODES = {4, 17, 32, 613}
SPAM_CODES = {368}


class GraphApiPublisher(Publisher):
    """Shared Graph API plumbing and error classification."""

    @property
    def graph_url(self) -> str:
        return f"{GRAPH_HOST}/{self.config.graph_api_version}"

    def classify_error(self, status_code: int, body: Any) -> PlatformError:
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return PlatformError(
                kind_for_status(status_code),
                error_message(body, f"Graph API HTTP {status_code}"),
            )

        code = error.get("code")
        subcode = error.get("error_subcode")
        message = str(error.get("message") or f"Graph API HTTP {status_code}")
        lowered = message.lower()
        platform_code = str(code) if code is not None else None

        kind = self._classify_subcode(subcode)
        if kind is None:
            if code == 190:
                kind = ErrorKind.TOKEN_EXPIRED
            elif code in RATE_LIMIT_CODES:
                kind = ErrorKind.RATE_LIMITED
            elif code in SPAM_CODES:
                kind = ErrorKind.SPAM_OR_QUOTA_RISK
            elif code == 10 or (isinstance(code, int) and 200 <= code <= 299) or "permission" in lowered:
                kind = ErrorKind.PERMISSION_DENIED
            elif code == 1 or "media" in lowered:
                kind = ErrorKind.INVALID_MEDIA
            elif error.get("type") == "OAuthException":
                kind = ErrorKind.TOKEN_EXPIRED
            else:
                kind = kind_for_status(status_code)

        return PlatformError(kind, message, platform_code=platform_code)

    def _classify_subcode(self, subcode: Any) -> Any:
        """Platform-specific subcode overrides. ``None`` = not decisive."""
        if subcode in (463, 467):
            return ErrorKind.TOKEN_EXPIRED
        return None


class FacebookPublisher(GraphApiPublisher):
    """Publishes to a Facebook Page with a page access token."""

    platform = Platform.FACEBOOK

    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        page_id = credential.account_id
        token = credential.access_token

        if not media_urls:
            body = await self._post(f"{page_id}/feed", {"message": content}, token)
            return self._result(body)

        if len(media_urls) == 1:
            url = media_urls[0]
            if is_video_url(url):
                return await self._publish_video(page_id, token, url, content, post_format)
            body = await self._post(
                f"{page_id}/photos", {"url": url, "message": content}, token
            )
            return self._result(body)

        # Several images: upload unpublished, then attach to one feed post
        photo_ids = []
        for url in media_urls:
            uploaded = await self._post(
                f"{page_id}/photos", {"url": url, "published": False}, token
            )
            photo_ids.append(uploaded["id"])

        body = await self._post(
            f"{page_id}/feed",
            {
                "message": content,
                "attached_media": [{"media_fbid": pid} for pid in photo_ids],
            },
            token,
        )
        result = self._result(body)
        result.metadata["photo_ids"] = photo_ids
        return result

    async def _publish_video(
        self,
        page_id: str,
        token: str,
        video_url: str,
        description: str,
        post_format: PostFormat,
    ) -> PublishResult:
        data: Dict[str, Any] = {"file_url": video_url, "description": description}
        if post_format is PostFormat.REEL:
            data["video_format_type"] = "reels"
            try:
                body = await self._post(f"{page_id}/videos", data, token)
            except PlatformError as exc:
                # Pages without reels support reject the format flag
                if exc.platform_code != "100" or "video_format_type" not in exc.message:
                    raise
                logger.warning(
                    "[DISPATCH] Facebook page %s rejected reels format, "
                    "publishing as regular video",
                    page_id,
                )
                data.pop("video_format_type")
                body = await self._post(f"{page_id}/videos", data, token)
        else:
            body = await self._post(f"{page_id}/videos", data, token)
        return self._result(body)

    async def _post(self, path: str, data: Dict[str, Any], token: str) -> Dict[str, Any]:
        payload = dict(data)
        payload["access_token"] = token
        return await self._request("POST", f"{self.graph_url}/{path}", json=payload)

    @staticmethod
    def _result(body: Dict[str, Any]) -> PublishResult:
        # /photos returns both ``id`` (photo) and ``post_id`` (feed story)
        post_id = body.get("post_id") or body.get("id")
        if not post_id:
            raise PlatformError(ErrorKind.UNKNOWN, "Facebook response carried no post id")
        return PublishResult(platform_post_id=str(post_id), metadata={})


__all__ = ["GraphApiPublisher", "FacebookPublisher"]
