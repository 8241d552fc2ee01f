"""
X/Twitter publisher (API v2, OAuth 2.0 user context).

Long content is split into a numbered reply thread at 280 characters.
Media (up to 4 images or 1 video) is attached to the first tweet only.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from social_publisher.exceptions import PlatformError, PublishValidationError
from social_publisher.models import Credential, Platform, PostFormat, is_video_url
from social_publisher.platforms.base import Publisher, PublishResult, error_message
from social_publisher.platforms.errors import ErrorKind, kind_for_status

logger = logging.getLogger(__name__)

API_URL = "https://api.twitter.com/2"

TWEET_LIMIT = 280
MAX_IMAGES = 4
MAX_VIDEOS = 1

# Room for the "12/12 " thread prefix
_PREFIX_RESERVE = 8
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def split_into_tweets(content: str, limit: int = TWEET_LIMIT) -> List[str]:
    """Split *content* into tweets of at most *limit* characters.

    Splits on sentence boundaries first, then on words, and hard-slices
    any single word longer than a tweet. Multi-tweet threads are
    numbered ``"1/3 ..."``.
    """
    content = content.strip()
    if len(content) <= limit:
        return [content]

    budget = limit - _PREFIX_RESERVE
    chunks: List[str] = []
    current = ""

    for sentence in _SENTENCE_BOUNDARY.split(content):
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= budget:
            current = candidate
            continue

        if current:
            chunks.append(current)
        current = ""
        if len(sentence) <= budget:
            current = sentence
            continue

        for word in sentence.split():
            while len(word) > budget:
                if current:
                    chunks.append(current)
                    current = ""
                chunks.append(word[:budget])
                word = word[budget:]
            if not word:
                continue
            candidate = f"{current} {word}" if current else word
            if len(candidate) <= budget:
                current = candidate
            else:
                chunks.append(current)
                current = word

    if current:
        chunks.append(current)

    total = len(chunks)
    return [f"{index}/{total} {chunk}" for index, chunk in enumerate(chunks, start=1)]


class TwitterPublisher(Publisher):
    """Publishes tweets and threads."""

    platform = Platform.TWITTER

    def classify_error(self, status_code: int, body: Any) -> PlatformError:
        message = error_message(body, f"Twitter HTTP {status_code}")
        if isinstance(body, dict) and isinstance(body.get("errors"), list) and body["errors"]:
            message = str(body["errors"][0].get("message") or message)
        lowered = message.lower()

        if status_code == 401:
            kind = ErrorKind.TOKEN_EXPIRED
        elif status_code == 429:
            kind = ErrorKind.RATE_LIMITED
        elif status_code == 403 and "duplicate" in lowered:
            kind = ErrorKind.SPAM_OR_QUOTA_RISK
        elif status_code == 403:
            kind = ErrorKind.PERMISSION_DENIED
        elif status_code == 400 and "media" in lowered:
            kind = ErrorKind.INVALID_MEDIA
        else:
            kind = kind_for_status(status_code)
        return PlatformError(kind, message, platform_code=str(status_code))

    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        self._validate_media(media_urls)
        headers = {"Authorization": f"Bearer {credential.access_token}"}

        media_ids = [await self._upload_media(url, headers) for url in media_urls]
        tweets = split_into_tweets(content)

        tweet_ids: List[str] = []
        for index, text in enumerate(tweets):
            payload: Dict[str, Any] = {"text": text}
            if index == 0 and media_ids:
                payload["media"] = {"media_ids": media_ids}
            if tweet_ids:
                payload["reply"] = {"in_reply_to_tweet_id": tweet_ids[-1]}
                await self._sleep(self.config.thread_delay_seconds)
            body = await self._request("POST", f"{API_URL}/tweets", headers=headers, json=payload)
            tweet_ids.append(str(body["data"]["id"]))

        metadata: Dict[str, Any] = {}
        if len(tweet_ids) > 1:
            metadata["thread_ids"] = tweet_ids
        if credential.username:
            metadata["url"] = f"https://twitter.com/{credential.username}/status/{tweet_ids[0]}"
        return PublishResult(platform_post_id=tweet_ids[0], metadata=metadata)

    @staticmethod
    def _validate_media(media_urls: List[str]) -> None:
        videos = [url for url in media_urls if is_video_url(url)]
        if videos and len(media_urls) > MAX_VIDEOS:
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA,
                "Twitter accepts a single video, or up to 4 images, per tweet",
            )
        if len(media_urls) > MAX_IMAGES:
            raise PublishValidationError(
                ErrorKind.INVALID_MEDIA,
                f"Twitter accepts at most {MAX_IMAGES} images, got {len(media_urls)}",
            )

    # ------------------------------------------------------------------
    # Media upload
    # ------------------------------------------------------------------

    async def _upload_media(self, url: str, headers: Dict[str, str]) -> str:
        content, content_type = await self._fetch_media(url)

        if not is_video_url(url):
            body = await self._request(
                "POST",
                f"{API_URL}/media/upload",
                headers=headers,
                data={"media_category": "tweet_image"},
                files={"media": ("media", content, content_type)},
            )
            return str(body["data"]["id"])

        init = await self._request(
            "POST",
            f"{API_URL}/media/upload/initialize",
            headers=headers,
            json={
                "media_type": content_type,
                "total_bytes": len(content),
                "media_category": "tweet_video",
            },
        )
        media_id = str(init["data"]["id"])
        await self._request(
            "POST",
            f"{API_URL}/media/upload/{media_id}/append",
            headers=headers,
            data={"segment_index": "0"},
            files={"media": ("media", content, content_type)},
        )
        final = await self._request(
            "POST", f"{API_URL}/media/upload/{media_id}/finalize", headers=headers
        )
        if final.get("data", {}).get("processing_info"):
            await self._poll(
                lambda: self._processing_done(media_id, headers),
                f"video processing for media {media_id}",
            )
        return media_id

    async def _processing_done(self, media_id: str, headers: Dict[str, str]) -> Optional[bool]:
        body = await self._request(
            "GET",
            f"{API_URL}/media/upload",
            headers=headers,
            params={"command": "STATUS", "media_id": media_id},
        )
        info = body.get("data", {}).get("processing_info") or {}
        state = info.get("state", "succeeded")
        if state == "succeeded":
            return True
        if state == "failed":
            error = info.get("error") or {}
            raise PlatformError(
                ErrorKind.INVALID_MEDIA,
                f"Twitter video processing failed: {error.get('message', 'unknown reason')}",
            )
        return None


__all__ = ["TwitterPublisher", "split_into_tweets", "TWEET_LIMIT"]
