"""Platform publishers, error taxonomy and dispatch."""

from social_publisher.platforms.base import Publisher, PublishResult
from social_publisher.platforms.dispatch import Dispatcher, build_dispatcher
from social_publisher.platforms.errors import ErrorKind, is_retryable
from social_publisher.platforms.facebook import FacebookPublisher
from social_publisher.platforms.instagram import InstagramPublisher
from social_publisher.platforms.tiktok import TikTokPublisher
from social_publisher.platforms.twitter import TwitterPublisher
from social_publisher.platforms.youtube import YouTubePublisher

__all__ = [
    "Publisher",
    "PublishResult",
    "Dispatcher",
    "build_dispatcher",
    "ErrorKind",
    "is_retryable",
    "FacebookPublisher",
    "InstagramPublisher",
    "TikTokPublisher",
    "TwitterPublisher",
    "YouTubePublisher",
]
