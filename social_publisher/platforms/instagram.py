"""
Instagram publisher (Graph API content publishing).

Flow:
    1. create a media container (``/{ig_user_id}/media``)
    2. poll the container until ``status_code == FINISHED`` (bounded)
    3. publish it (``/{ig_user_id}/media_publish``)
    4. read back the shortcode for the permalink

Carousels create one child container per item, then a ``CAROUSEL``
parent container. Instagram always requires media.
"""

import logging
from typing import Any, Dict, List, Optional

from social_publisher.exceptions import PlatformError, PublishValidationError
from social_publisher.models import Credential, Platform, PostFormat, is_video_url
from social_publisher.platforms.base import PublishResult
from social_publisher.platforms.errors import ErrorKind
from social_publisher.platforms.facebook import GraphApiPublisher

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 2200
CAROUSEL_LIMIT = 10

# Media could not be fetched / has an unsupported format
MEDIA_SUBCODES = {2207026, 2207052, 2207004, 2207009}
# Account hit the 24h content publishing limit
PUBLISH_LIMIT_SUBCODES = {2207042}


def truncate_caption(content: str, limit: int = CAPTION_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[: limit - 3] + "..."


class InstagramPublisher(GraphApiPublisher):
    """Publishes to an Instagram professional account."""

    platform = Platform.INSTAGRAM
    requires_media = True

    def _classify_subcode(self, subcode: Any) -> Any:
        if subcode in MEDIA_SUBCODES:
            return ErrorKind.INVALID_MEDIA
        if subcode in PUBLISH_LIMIT_SUBCODES:
            return ErrorKind.SPAM_OR_QUOTA_RISK
        return super()._classify_subcode(subcode)

    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        if not media_urls:
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA, "Instagram requires at least one media file"
            )
        if len(media_urls) > CAROUSEL_LIMIT:
            logger.warning(
                "[DISPATCH] Instagram carousel trimmed from %d to %d items",
                len(media_urls),
                CAROUSEL_LIMIT,
            )
            media_urls = media_urls[:CAROUSEL_LIMIT]

        ig_user_id = credential.account_id
        token = credential.access_token
        caption = truncate_caption(content)
        if caption != content:
            logger.warning(
                "[DISPATCH] Instagram caption truncated from %d to %d chars",
                len(content),
                len(caption),
            )

        if len(media_urls) == 1:
            container = self._single_container(media_urls[0], post_format)
            if post_format is not PostFormat.STORY:
                container["caption"] = caption
            container_id = await self._create_container(ig_user_id, token, container)
        else:
            children = []
            for url in media_urls:
                child = self._single_container(url, PostFormat.STANDARD)
                child["is_carousel_item"] = True
                children.append(await self._create_container(ig_user_id, token, child))
            container_id = await self._create_container(
                ig_user_id,
                token,
                {
                    "media_type": "CAROUSEL",
                    "children": ",".join(children),
                    "caption": caption,
                },
            )

        body = await self._graph(
            "POST",
            f"{ig_user_id}/media_publish",
            token,
            json={"creation_id": container_id},
        )
        media_id = str(body["id"])
        # The post is live from here on; a failed lookup must not fail the publish
        try:
            metadata = await self._media_info(media_id, token)
        except PlatformError as exc:
            logger.warning(
                "[DISPATCH] Instagram media %s published but lookup failed: %s",
                media_id,
                exc,
            )
            metadata = {}
        return PublishResult(platform_post_id=media_id, metadata=metadata)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def _single_container(self, url: str, post_format: PostFormat) -> Dict[str, Any]:
        if not is_video_url(url):
            container: Dict[str, Any] = {"image_url": url}
            if post_format is PostFormat.STORY:
                container["media_type"] = "STORIES"
            return container

        if not url.startswith("https://"):
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA,
                f"Instagram video URL must use HTTPS: {url[:50]}",
            )
        if post_format is PostFormat.REEL:
            media_type = "REELS"
        elif post_format is PostFormat.STORY:
            media_type = "STORIES"
        else:
            media_type = "VIDEO"
        return {"video_url": url, "media_type": media_type}

    async def _create_container(
        self, ig_user_id: str, token: str, data: Dict[str, Any]
    ) -> str:
        body = await self._graph("POST", f"{ig_user_id}/media", token, json=data)
        container_id = str(body["id"])
        await self._poll(
            lambda: self._container_ready(container_id, token),
            f"container {container_id}",
        )
        return container_id

    async def _container_ready(self, container_id: str, token: str) -> Optional[bool]:
        body = await self._graph(
            "GET", container_id, token, params={"fields": "status_code,status"}
        )
        status = body.get("status_code") or body.get("status")
        if status == "FINISHED":
            return True
        if status in ("ERROR", "EXPIRED"):
            raise PlatformError(
                ErrorKind.INVALID_MEDIA,
                f"Instagram container {container_id} processing failed: "
                f"{body.get('status') or status}",
            )
        return None

    async def _media_info(self, media_id: str, token: str) -> Dict[str, Any]:
        body = await self._graph(
            "GET", media_id, token, params={"fields": "shortcode,media_type,permalink"}
        )
        metadata: Dict[str, Any] = {}
        if body.get("shortcode"):
            metadata["shortcode"] = body["shortcode"]
            metadata["permalink"] = body.get("permalink") or (
                f"https://www.instagram.com/p/{body['shortcode']}/"
            )
        if body.get("media_type"):
            metadata["media_type"] = body["media_type"]
        return metadata

    async def _graph(self, method: str, path: str, token: str, **kwargs: Any) -> Dict[str, Any]:
        if method == "GET":
            params = dict(kwargs.pop("params", {}))
            params["access_token"] = token
            kwargs["params"] = params
        else:
            payload = dict(kwargs.pop("json", {}))
            payload["access_token"] = token
            kwargs["json"] = payload
        return await self._request(method, f"{self.graph_url}/{path}", **kwargs)


__all__ = ["InstagramPublisher", "truncate_caption", "CAPTION_LIMIT"]
