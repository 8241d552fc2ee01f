"""
Per-platform credential refresh strategies.

Provides:
    - TokenGrant: access token (+ optional rotated refresh token) and lifetime
    - TokenRefresher: strategy interface
    - LongLivedTokenRefresher: Graph API ``fb_exchange_token`` (Facebook,
      Instagram); defaults to a 60-day lifetime when none is reported
    - OAuthRefreshTokenRefresher: OAuth 2.0 ``refresh_token`` grant
      (TikTok, Twitter, YouTube)
    - build_refreshers(): registry for every platform with app credentials

Transient transport errors are retried with exponential backoff; anything
else surfaces as ``TokenRefreshError``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from social_publisher.config import PlatformCredentials, TokenConfig
from social_publisher.exceptions import RetryExhaustedError, TokenRefreshError
from social_publisher.models import Platform, Profile
from social_publisher.utils import with_retry

logger = logging.getLogger(__name__)

GRAPH_HOST = "https://graph.facebook.com"
TIKTOK_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass
class TokenGrant:
    """Result of a successful refresh.

    Attributes:
        access_token: The new access token.
        refresh_token: A rotated refresh token, or ``None`` to keep the
            stored one.
        expires_in: Lifetime in seconds, or ``None`` when not reported.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class TokenRefresher(ABC):
    """Strategy that obtains a fresh access token for one platform."""

    platform: Platform
    # Lifetime assumed when the provider does not report ``expires_in``
    default_expires_in: Optional[int] = None

    def __init__(
        self,
        config: Optional[TokenConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or TokenConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.http_timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def refresh(self, profile: Profile) -> TokenGrant:
        """Refresh *profile*'s credential.

        Raises:
            TokenRefreshError: the provider rejected the refresh or could
                not be reached.
        """

    async def _call(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """Send a token request, retrying transient transport failures."""
        send = with_retry(
            max_attempts=self.config.refresh_retry_attempts,
            base_delay=2.0,
            retryable_exceptions=(httpx.TransportError,),
            operation_name=f"{self.platform.value}_token_refresh",
        )(self.client.request)

        try:
            response = await send(method, url, **kwargs)
        except RetryExhaustedError as exc:
            raise TokenRefreshError(
                f"{self.platform.display_name} token endpoint unreachable: {exc.last_error}"
            ) from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text}

        # Some providers report errors inside a 200 body
        if response.is_error or (isinstance(body, dict) and body.get("error") and not body.get("access_token")):
            raise TokenRefreshError(
                f"{self.platform.display_name} token refresh failed "
                f"(HTTP {response.status_code}): {_describe(body)}"
            )
        if not isinstance(body, dict) or not body.get("access_token"):
            raise TokenRefreshError(
                f"{self.platform.display_name} token response carried no access_token"
            )
        return body


def _describe(body: Any) -> str:
    if not isinstance(body, dict):
        return str(body)
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or error)
    description = body.get("error_description") or body.get("message")
    if error and description:
        return f"{error}: {description}"
    return str(error or description or body)


# =============================================================================
# LONG-LIVED TOKEN EXCHANGE (Graph API)
# =============================================================================


class LongLivedTokenRefresher(TokenRefresher):
    """Exchanges the current token for a new long-lived one."""

    def __init__(
        self,
        platform: Platform,
        app_id: str,
        app_secret: str,
        graph_api_version: str = "v19.0",
        config: Optional[TokenConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config=config, client=client)
        self.platform = platform
        self.app_id = app_id
        self.app_secret = app_secret
        self.graph_api_version = graph_api_version
        self.default_expires_in = self.config.long_lived_default_days * 24 * 3600

    async def refresh(self, profile: Profile) -> TokenGrant:
        if not profile.access_token:
            raise TokenRefreshError(f"Profile {profile.id} has no access token")

        body = await self._call(
            "GET",
            f"{GRAPH_HOST}/{self.graph_api_version}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": profile.access_token,
            },
        )
        return TokenGrant(
            access_token=body["access_token"],
            expires_in=body.get("expires_in") or self.default_expires_in,
        )


# =============================================================================
# OAUTH 2.0 REFRESH-TOKEN GRANT
# =============================================================================


class OAuthRefreshTokenRefresher(TokenRefresher):
    """Standard ``grant_type=refresh_token`` exchange.

    Args:
        client_id_param: Form field carrying the client id
            (``client_key`` for TikTok).
        basic_auth: Send client credentials as HTTP Basic auth instead of
            form fields (Twitter confidential clients).
    """

    def __init__(
        self,
        platform: Platform,
        token_url: str,
        client_id: str,
        client_secret: str,
        client_id_param: str = "client_id",
        basic_auth: bool = False,
        config: Optional[TokenConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config=config, client=client)
        self.platform = platform
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_id_param = client_id_param
        self.basic_auth = basic_auth

    async def refresh(self, profile: Profile) -> TokenGrant:
        if not profile.refresh_token:
            raise TokenRefreshError(
                f"Profile {profile.id} has no refresh token, reconnect required"
            )

        form = {
            "grant_type": "refresh_token",
            "refresh_token": profile.refresh_token,
            self.client_id_param: self.client_id,
        }
        kwargs: Dict[str, Any] = {}
        if self.basic_auth:
            kwargs["auth"] = (self.client_id, self.client_secret)
        else:
            form["client_secret"] = self.client_secret

        body = await self._call("POST", self.token_url, data=form, **kwargs)
        expires_in = body.get("expires_in")
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )


# =============================================================================
# REGISTRY
# =============================================================================


def build_refreshers(
    credentials: PlatformCredentials,
    config: Optional[TokenConfig] = None,
    graph_api_version: str = "v19.0",
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[Platform, TokenRefresher]:
    """Refreshers for every platform whose app credentials are configured."""
    config = config or TokenConfig()
    refreshers: Dict[Platform, TokenRefresher] = {}

    if credentials.facebook_app_id and credentials.facebook_app_secret:
        for platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
            refreshers[platform] = LongLivedTokenRefresher(
                platform,
                credentials.facebook_app_id,
                credentials.facebook_app_secret,
                graph_api_version=graph_api_version,
                config=config,
                client=client,
            )

    if credentials.tiktok_client_key and credentials.tiktok_client_secret:
        refreshers[Platform.TIKTOK] = OAuthRefreshTokenRefresher(
            Platform.TIKTOK,
            TIKTOK_TOKEN_URL,
            credentials.tiktok_client_key,
            credentials.tiktok_client_secret,
            client_id_param="client_key",
            config=config,
            client=client,
        )

    if credentials.twitter_client_id and credentials.twitter_client_secret:
        refreshers[Platform.TWITTER] = OAuthRefreshTokenRefresher(
            Platform.TWITTER,
            TWITTER_TOKEN_URL,
            credentials.twitter_client_id,
            credentials.twitter_client_secret,
            basic_auth=True,
            config=config,
            client=client,
        )

    if credentials.google_client_id and credentials.google_client_secret:
        refreshers[Platform.YOUTUBE] = OAuthRefreshTokenRefresher(
            Platform.YOUTUBE,
            GOOGLE_TOKEN_URL,
            credentials.google_client_id,
            credentials.google_client_secret,
            config=config,
            client=client,
        )

    missing = [p.display_name for p in Platform if p not in refreshers]
    if missing:
        logger.warning(
            "[TOKENS] No app credentials for %s; their tokens cannot be refreshed",
            ", ".join(missing),
        )
    return refreshers


__all__ = [
    "TokenGrant",
    "TokenRefresher",
    "LongLivedTokenRefresher",
    "OAuthRefreshTokenRefresher",
    "build_refreshers",
]
