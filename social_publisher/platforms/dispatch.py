"""
Dispatch layer: route a post to its platform publisher.

Provides:
    - Dispatcher: ``Platform -> Publisher`` registry with structural
      validation, short-form stagger and error normalization
    - build_dispatcher(): registry with every built-in publisher

Structural rules checked before any network call:
    - publishers with ``requires_media`` reject posts without media
      (``INVALID_MEDIA``, never retried);
    - publishers with ``max_videos`` keep only that many items, preferring
      videos, and log a warning for the dropped ones;
    - REEL / SHORT posts wait a random stagger before dispatch.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from social_publisher.config import DispatchConfig
from social_publisher.exceptions import PlatformError, PublishValidationError
from social_publisher.logging.component_logger import ComponentLogger
from social_publisher.logging.models import LogComponent
from social_publisher.models import Credential, Platform, Post, is_video_url
from social_publisher.platforms.base import Publisher, PublishResult
from social_publisher.platforms.errors import ErrorKind
from social_publisher.platforms.facebook import FacebookPublisher
from social_publisher.platforms.instagram import InstagramPublisher
from social_publisher.platforms.tiktok import TikTokPublisher
from social_publisher.platforms.twitter import TwitterPublisher
from social_publisher.platforms.youtube import YouTubePublisher

logger = logging.getLogger(__name__)


class Dispatcher:
    """Routes posts to publishers keyed by ``Platform``."""

    def __init__(
        self,
        publishers: Iterable[Publisher],
        config: Optional[DispatchConfig] = None,
        log: Optional[ComponentLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.config = config or DispatchConfig()
        self.log = log or ComponentLogger(LogComponent.DISPATCH)
        self._sleep = sleep
        self._jitter = jitter
        self._registry: Dict[Platform, Publisher] = {}
        for publisher in publishers:
            self.register(publisher)

    def register(self, publisher: Publisher) -> None:
        self._registry[publisher.platform] = publisher

    @property
    def platforms(self) -> List[Platform]:
        return list(self._registry)

    def publisher_for(self, platform: Platform) -> Publisher:
        publisher = self._registry.get(platform)
        if publisher is None:
            raise PublishValidationError(
                ErrorKind.UNKNOWN,
                f"No publisher registered for {platform.display_name}",
            )
        return publisher

    async def prepare_media(self, post: Post, publisher: Publisher) -> List[str]:
        """Apply structural media rules for *publisher*.

        Raises:
            PublishValidationError: media required but absent.
        """
        media = list(post.media_urls)
        platform_name = publisher.platform.display_name

        if publisher.requires_media and not media:
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA,
                f"{platform_name} requires at least one media file",
            )

        # Photo-only posts are not capped
        cap = publisher.max_videos
        videos = [url for url in media if is_video_url(url)]
        if cap is not None and videos and len(media) > cap:
            kept = videos[:cap]
            await self.log.warning(
                f"{platform_name} accepts {cap} video per post, "
                f"dropping {len(media) - len(kept)} media item(s)",
                post_id=post.id,
                data={"kept": kept, "received": len(media)},
            )
            media = kept

        return media

    async def dispatch(self, post: Post, credential: Credential) -> PublishResult:
        """Publish *post* with *credential* through its platform publisher.

        Raises:
            PlatformError: classified publish failure. Transport errors that
                escape a publisher are normalized to ``UNKNOWN``.
        """
        publisher = self.publisher_for(post.platform)
        media = await self.prepare_media(post, publisher)

        if post.post_format.is_short_form_video:
            delay = self._jitter(
                self.config.stagger_min_seconds, self.config.stagger_max_seconds
            )
            logger.debug(
                "[DISPATCH] Staggering %s %s by %.2fs",
                post.platform.value,
                post.post_format.value,
                delay,
            )
            await self._sleep(delay)

        try:
            result = await publisher.publish(
                credential, post.content, media, post.post_format
            )
        except PlatformError:
            raise
        except httpx.HTTPError as exc:
            raise PlatformError(
                ErrorKind.UNKNOWN,
                f"{post.platform.display_name} HTTP error: {exc}",
            ) from exc

        await self.log.info(
            f"Published to {post.platform.display_name}",
            post_id=post.id,
            data={"platform_post_id": result.platform_post_id},
        )
        return result

    async def aclose(self) -> None:
        for publisher in self._registry.values():
            await publisher.aclose()


def build_dispatcher(
    config: Optional[DispatchConfig] = None,
    log: Optional[ComponentLogger] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dispatcher:
    """Dispatcher with every built-in publisher registered."""
    config = config or DispatchConfig()
    publishers = [
        cls(config=config, client=client)
        for cls in (
            FacebookPublisher,
            InstagramPublisher,
            TwitterPublisher,
            TikTokPublisher,
            YouTubePublisher,
        )
    ]
    return Dispatcher(publishers, config=config, log=log)


__all__ = ["Dispatcher", "build_dispatcher"]
