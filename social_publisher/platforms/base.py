"""
Publisher contract shared by every platform adapter.

A publisher turns ``(credential, content, media_urls, post_format)`` into a
``PublishResult`` or raises ``PlatformError``. Subclasses implement
``publish()`` and ``classify_error()``; the HTTP plumbing, media download
and bounded status polling live here.

Fail-fast philosophy: publishers do not retry. Retries are a queue
decision driven by the classified ``ErrorKind``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx

from social_publisher.config import DispatchConfig
from social_publisher.exceptions import PlatformError
from social_publisher.models import Credential, Platform, PostFormat
from social_publisher.platforms.errors import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PublishResult:
    """Outcome of a successful publish.

    Attributes:
        platform_post_id: The platform's identifier for the new post.
        metadata: Extra platform data (permalink, shortcode, thread ids).
    """

    platform_post_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class Publisher(ABC):
    """Base class for platform adapters.

    Class attributes consulted by the dispatcher before any network call:
        requires_media: Reject posts without media.
        max_videos: Keep at most this many media items (``None`` = no cap).
    """

    platform: Platform
    requires_media: bool = False
    max_videos: Optional[int] = None

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or DispatchConfig()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.request_timeout_seconds
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def publish(
        self,
        credential: Credential,
        content: str,
        media_urls: List[str],
        post_format: PostFormat,
    ) -> PublishResult:
        """Publish to the platform or raise ``PlatformError``."""

    @abstractmethod
    def classify_error(self, status_code: int, body: Any) -> PlatformError:
        """Map an error response into a ``PlatformError`` of exactly one kind."""

    def check_body(self, body: Any) -> None:
        """Hook for APIs that report errors inside a 2xx body."""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            PlatformError: classified from the error response, or
                ``UNKNOWN`` for timeouts and transport failures.
        """
        response = await self._send(method, url, **kwargs)
        body = decode_body(response)
        if response.is_error:
            raise self.classify_error(response.status_code, body)
        self.check_body(body)
        return body

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise PlatformError(
                ErrorKind.UNKNOWN,
                f"{self.platform.display_name} request timed out: {method} {url}",
            ) from exc
        except httpx.TransportError as exc:
            raise PlatformError(
                ErrorKind.UNKNOWN,
                f"{self.platform.display_name} transport error: {exc}",
            ) from exc

    async def _fetch_media(self, url: str) -> Tuple[bytes, str]:
        """Download a media file for platforms that require byte uploads.

        Returns:
            ``(content, content_type)``.
        """
        response = await self._send(
            "GET", url, timeout=self.config.upload_timeout_seconds
        )
        if response.is_error:
            raise PlatformError(
                ErrorKind.INVALID_MEDIA,
                f"Could not download media {url}: HTTP {response.status_code}",
                platform_code=str(response.status_code),
            )
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type.split(";")[0].strip()

    async def _poll(
        self,
        check: Callable[[], Awaitable[Optional[T]]],
        what: str,
    ) -> T:
        """Poll *check* until it returns a value, bounded by ``max_polls``.

        *check* returns ``None`` while the remote operation is still in
        progress, and raises ``PlatformError`` when it has failed.
        """
        for poll in range(1, self.config.max_polls + 1):
            result = await check()
            if result is not None:
                return result
            logger.debug(
                "[DISPATCH] %s: %s pending (poll %d/%d)",
                self.platform.display_name,
                what,
                poll,
                self.config.max_polls,
            )
            await self._sleep(self.config.poll_interval_seconds)

        raise PlatformError(
            ErrorKind.UNKNOWN,
            f"{self.platform.display_name}: {what} did not finish after "
            f"{self.config.max_polls} polls",
        )


def decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


def error_message(body: Any, default: str) -> str:
    """Pull a human-readable message out of a typical error body."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("detail", "message", "error_description", "title"):
            if body.get(key):
                return str(body[key])
        if isinstance(error, str):
            return error
    return default


__all__ = [
    "PublishResult",
    "Publisher",
    "decode_body",
    "error_message",
]
