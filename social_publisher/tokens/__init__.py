"""Credential lifecycle: refresh strategies and the token manager."""

from social_publisher.tokens.manager import (
    ExpiringProfile,
    RefreshOutcome,
    RefreshSummary,
    TokenLifecycleManager,
)
from social_publisher.tokens.refreshers import (
    LongLivedTokenRefresher,
    OAuthRefreshTokenRefresher,
    TokenGrant,
    TokenRefresher,
    build_refreshers,
)

__all__ = [
    "ExpiringProfile",
    "RefreshOutcome",
    "RefreshSummary",
    "TokenLifecycleManager",
    "LongLivedTokenRefresher",
    "OAuthRefreshTokenRefresher",
    "TokenGrant",
    "TokenRefresher",
    "build_refreshers",
]
