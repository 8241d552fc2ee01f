"""
Token lifecycle manager.

Keeps each profile's access token usable:

- ``ensure_valid(profile_id)`` runs before every publish. An expired token
  is refreshed, and the profile is deactivated if that fails. A token
  expiring within the lookahead window is refreshed proactively; a failure
  there is only logged because the token still works.
- ``refresh_expiring()`` is the scheduled sweep over every active profile
  inside the lookahead window. Failures deactivate, except database faults.
- ``refresh(profile_id)`` is the manual/admin refresh. It never
  deactivates.

Refreshes of one profile are serialized with a per-profile lock.

Profiles are never deleted here; deactivation sets ``is_active = False``
and records ``deactivated_at`` / ``deactivation_reason`` in metadata.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from social_publisher.config import TokenConfig
from social_publisher.exceptions import DatabaseError, TokenRefreshError
from social_publisher.logging.component_logger import ComponentLogger
from social_publisher.logging.models import LogComponent
from social_publisher.models import Platform, Profile
from social_publisher.tokens.refreshers import TokenRefresher
from social_publisher.utils import hours_until, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class RefreshOutcome:
    """Result of refreshing one profile."""

    profile_id: str
    success: bool
    message: str
    platform: Optional[Platform] = None
    username: Optional[str] = None
    expires_at: Optional[datetime] = None
    deactivated: bool = False
    # Failed for a reason other than the provider rejecting the credential
    keep_active: bool = False


@dataclass
class RefreshSummary:
    """Result of a refresh sweep."""

    total: int = 0
    refreshed: int = 0
    failed: int = 0
    results: List[RefreshOutcome] = field(default_factory=list)

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0


@dataclass
class ExpiringProfile:
    """A profile inside the refresh window, for admin views."""

    profile_id: str
    user_id: str
    platform: Platform
    username: Optional[str]
    token_expires_at: Optional[datetime]
    hours_until_expiry: Optional[int]


# =============================================================================
# MANAGER
# =============================================================================


class TokenLifecycleManager:
    """Validates, refreshes and deactivates profile credentials.

    Args:
        db: ``SupabaseDB`` (or any object with the same profile methods).
        refreshers: ``Platform -> TokenRefresher`` registry.
        config: Lookahead window and sweep pacing.
        log: Structured logger for refresh outcomes.
        clock: Returns the current aware UTC time.
        sleep: Awaitable used for the pause between sweep refreshes.
    """

    def __init__(
        self,
        db: Any,
        refreshers: Dict[Platform, TokenRefresher],
        config: Optional[TokenConfig] = None,
        log: Optional[ComponentLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.refreshers = refreshers
        self.config = config or TokenConfig()
        self.log = log or ComponentLogger(LogComponent.TOKEN_MANAGER)
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def threshold(self) -> timedelta:
        return timedelta(hours=self.config.refresh_threshold_hours)

    # ------------------------------------------------------------------
    # Expiry helpers
    # ------------------------------------------------------------------

    def is_expired(self, expires_at: Optional[datetime]) -> bool:
        """``None`` means non-expiring."""
        return expires_at is not None and expires_at <= self._clock()

    def is_expiring_soon(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is not None and expires_at - self._clock() <= self.threshold

    def hours_until_expiry(self, expires_at: Optional[datetime]) -> Optional[int]:
        return hours_until(expires_at, self._clock())

    # ------------------------------------------------------------------
    # Pre-publish check
    # ------------------------------------------------------------------

    async def ensure_valid(self, profile_id: str) -> bool:
        """Whether *profile_id* can publish right now, refreshing if needed."""
        try:
            profile = await self._load(profile_id)
        except DatabaseError as exc:
            await self.log.error(
                "Could not load profile for token check", error=exc, profile_id=profile_id
            )
            return False

        if profile is None:
            await self.log.warning("Profile not found", profile_id=profile_id)
            return False
        if not profile.is_active:
            await self.log.warning("Profile is not active", profile_id=profile_id)
            return False

        expires_at = profile.token_expires_at
        if expires_at is None:
            return True

        if self.is_expired(expires_at):
            await self.log.warning("Token expired, refreshing", profile_id=profile_id)
            outcome = await self._refresh_serialized(profile)
            if not outcome.success:
                if not outcome.keep_active:
                    await self._deactivate_logged(
                        profile, f"Token expired and refresh failed: {outcome.message}"
                    )
                return False
            return True

        if self.is_expiring_soon(expires_at):
            hours = self.hours_until_expiry(expires_at)
            outcome = await self._refresh_serialized(profile)
            if not outcome.success:
                # Still valid, so the post goes ahead on the current token
                await self.log.warning(
                    f"Proactive refresh failed, token still valid for {hours}h",
                    profile_id=profile_id,
                    data={"reason": outcome.message},
                )
            return True

        return True

    # ------------------------------------------------------------------
    # Manual refresh
    # ------------------------------------------------------------------

    async def refresh(self, profile_id: str) -> RefreshOutcome:
        """Refresh one profile on demand. Never deactivates."""
        try:
            profile = await self._load(profile_id)
        except DatabaseError as exc:
            return RefreshOutcome(
                profile_id=profile_id,
                success=False,
                message=f"Could not load profile: {exc}",
                keep_active=True,
            )
        if profile is None:
            return RefreshOutcome(
                profile_id=profile_id,
                success=False,
                message=f"Profile {profile_id} not found",
                keep_active=True,
            )
        return await self._refresh_serialized(profile, force=True)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def refresh_expiring(self) -> RefreshSummary:
        """Refresh every active profile expiring within the lookahead.

        Profiles are handled one at a time with a short pause between them.
        A failed refresh deactivates the profile unless the failure was a
        database fault. One profile's failure never stops the sweep.
        """
        profiles = await self._expiring_profiles()
        summary = RefreshSummary(total=len(profiles))
        await self.log.info(
            f"Token sweep found {len(profiles)} expiring profile(s)",
            data={"threshold_hours": self.config.refresh_threshold_hours},
        )

        for index, profile in enumerate(profiles):
            outcome = await self._refresh_serialized(profile)
            if outcome.success:
                summary.refreshed += 1
            else:
                summary.failed += 1
                if not outcome.keep_active:
                    outcome.deactivated = await self._deactivate_logged(
                        profile, f"Token refresh failed: {outcome.message}"
                    )
            summary.results.append(outcome)

            if index < len(profiles) - 1:
                await self._sleep(self.config.sweep_delay_seconds)

        await self.log.info(
            f"Token sweep completed: {summary.refreshed} refreshed, "
            f"{summary.failed} failed out of {summary.total}",
            data={
                "total": summary.total,
                "refreshed": summary.refreshed,
                "failed": summary.failed,
            },
        )
        return summary

    async def get_profiles_needing_refresh(self) -> List[ExpiringProfile]:
        """Active profiles inside the lookahead, soonest expiry first."""
        profiles = await self._expiring_profiles()
        return [
            ExpiringProfile(
                profile_id=p.id,
                user_id=p.user_id,
                platform=p.platform,
                username=p.platform_username,
                token_expires_at=p.token_expires_at,
                hours_until_expiry=self.hours_until_expiry(p.token_expires_at),
            )
            for p in profiles
        ]

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def deactivate(self, profile: Profile, reason: str) -> None:
        """Mark *profile* inactive, keeping its row and existing metadata."""
        metadata = dict(profile.metadata)
        metadata["deactivated_at"] = self._clock().isoformat()
        metadata["deactivation_reason"] = reason

        await self.db.update_profile(
            profile.id, {"is_active": False, "metadata": metadata}
        )
        profile.is_active = False
        profile.metadata = metadata
        await self.log.error(
            f"Profile deactivated: {reason}",
            profile_id=profile.id,
            data={"platform": profile.platform.value, "username": profile.platform_username},
        )

    async def _deactivate_logged(self, profile: Profile, reason: str) -> bool:
        """Deactivate *profile*, logging instead of raising on a database fault."""
        try:
            await self.deactivate(profile, reason)
        except DatabaseError as exc:
            await self.log.error(
                f"Could not deactivate profile: {reason}",
                error=exc,
                profile_id=profile.id,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, profile_id: str) -> Optional[Profile]:
        row = await self.db.get_profile(profile_id)
        return Profile.from_row(row) if row else None

    async def _expiring_profiles(self) -> List[Profile]:
        before = self._clock() + self.threshold
        rows = await self.db.get_expiring_profiles(before)
        profiles = [Profile.from_row(row) for row in rows]
        profiles = [p for p in profiles if p.is_active and p.token_expires_at is not None]
        profiles.sort(key=lambda p: p.token_expires_at)
        return profiles

    def _lock_for(self, profile_id: str) -> asyncio.Lock:
        lock = self._locks.get(profile_id)
        if lock is None:
            lock = self._locks[profile_id] = asyncio.Lock()
        return lock

    async def _refresh_serialized(self, profile: Profile, force: bool = False) -> RefreshOutcome:
        """Refresh *profile* while holding its lock.

        Rotating refresh tokens are single use, so concurrent refreshes of
        one profile would make all but one fail. The profile is re-read
        under the lock; unless *force* is set, the refresh is skipped when
        another caller already replaced the token or it is no longer
        inside the lookahead window.
        """
        async with self._lock_for(profile.id):
            try:
                current = await self._load(profile.id)
            except DatabaseError as exc:
                message = f"Could not reload profile before refresh: {exc}"
                await self.log.error(message, error=exc, profile_id=profile.id)
                return RefreshOutcome(
                    profile_id=profile.id,
                    success=False,
                    message=message,
                    platform=profile.platform,
                    username=profile.platform_username,
                    keep_active=True,
                )

            if current is None or not current.is_active:
                return RefreshOutcome(
                    profile_id=profile.id,
                    success=False,
                    message="Profile is missing or no longer active",
                    platform=profile.platform,
                    username=profile.platform_username,
                    keep_active=True,
                )

            replaced = current.access_token != profile.access_token
            if not force and (replaced or not self.is_expiring_soon(current.token_expires_at)):
                self._adopt(profile, current)
                return RefreshOutcome(
                    profile_id=profile.id,
                    success=True,
                    message="Token already refreshed",
                    platform=current.platform,
                    username=current.platform_username,
                    expires_at=current.token_expires_at,
                )

            outcome = await self._refresh_profile(current)
            self._adopt(profile, current)
            return outcome

    @staticmethod
    def _adopt(profile: Profile, current: Profile) -> None:
        profile.access_token = current.access_token
        profile.refresh_token = current.refresh_token
        profile.token_expires_at = current.token_expires_at

    async def _refresh_profile(self, profile: Profile) -> RefreshOutcome:
        outcome = RefreshOutcome(
            profile_id=profile.id,
            success=False,
            message="",
            platform=profile.platform,
            username=profile.platform_username,
        )

        refresher = self.refreshers.get(profile.platform)
        if refresher is None:
            outcome.message = (
                f"Token refresh not supported for platform: {profile.platform.display_name}"
            )
            await self.log.warning(outcome.message, profile_id=profile.id)
            return outcome

        try:
            grant = await refresher.refresh(profile)
        except TokenRefreshError as exc:
            outcome.message = str(exc)
            await self.log.warning(
                f"Token refresh failed for {profile.platform.display_name} "
                f"profile {profile.label}",
                profile_id=profile.id,
                data={"reason": outcome.message},
            )
            return outcome

        fields: Dict[str, Any] = {"access_token": grant.access_token}
        if grant.expires_in is not None:
            outcome.expires_at = self._clock() + timedelta(seconds=grant.expires_in)
            fields["token_expires_at"] = outcome.expires_at.isoformat()
        if grant.refresh_token:
            # Rotated refresh token; otherwise the stored one stays valid
            fields["refresh_token"] = grant.refresh_token

        try:
            await self.db.update_profile(profile.id, fields)
        except DatabaseError as exc:
            outcome.message = f"Refreshed token could not be saved: {exc}"
            outcome.keep_active = True
            await self.log.error(outcome.message, error=exc, profile_id=profile.id)
            return outcome

        profile.access_token = grant.access_token
        if outcome.expires_at is not None:
            profile.token_expires_at = outcome.expires_at
        if grant.refresh_token:
            profile.refresh_token = grant.refresh_token

        outcome.success = True
        outcome.message = f"Refreshed {profile.platform.display_name} token"
        await self.log.info(
            f"Refreshed {profile.platform.display_name} token for {profile.label}",
            profile_id=profile.id,
            data={"expires_at": outcome.expires_at.isoformat() if outcome.expires_at else None},
        )
        return outcome


__all__ = [
    "RefreshOutcome",
    "RefreshSummary",
    "ExpiringProfile",
    "TokenLifecycleManager",
]
