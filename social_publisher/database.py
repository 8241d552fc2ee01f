"""
Unified async database client for the publishing pipeline.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Tables:
    - ``posts``: content bound to one profile, with its lifecycle status
    - ``profiles``: connected social accounts and their credentials
    - ``agent_logs``: structured log sink (optional)

Every status change is a conditional single-row write: the update is
filtered on the post id *and* the expected current status, so a writer
that lost a race gets ``False`` back instead of overwriting.

Usage::

    from social_publisher.database import SupabaseDB

    # In async context:
    db = await SupabaseDB.create()
    row = await db.get_post(post_id)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from social_publisher.exceptions import DatabaseError, ValidationError
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Args:
        value: The value to check.
        name: Human-readable field name used in error messages.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** database client for posts and profiles.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    async def _execute(self, query: Any, operation: str) -> Any:
        """Run a query, wrapping client and transport failures."""
        try:
            return await query.execute()
        except (APIError, httpx.HTTPError) as exc:
            raise DatabaseError(f"{operation} failed: {exc}") from exc

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
        """Get a post by ID.

        Returns:
            Post row or ``None`` if not found.
        """
        validate_not_empty(post_id, "post_id")

        result = await self._execute(
            self.client.table("posts").select("*").eq("id", post_id),
            f"get_post({post_id})",
        )
        return result.data[0] if result.data else None

    async def update_post(
        self,
        post_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """Update fields on a post, optionally conditional on its status.

        Args:
            post_id: UUID of the post.
            fields: Column values to write.  ``updated_at`` is added.
            expected_status: When given, the write only applies if the
                row's current ``status`` equals this value.

        Returns:
            ``True`` if a row was updated, ``False`` if no row matched
            (post deleted, or its status moved on).

        Raises:
            ValidationError: If *post_id* or *fields* is empty.
            DatabaseError: On client or transport failure.
        """
        validate_not_empty(post_id, "post_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        payload = dict(fields)
        payload["updated_at"] = utc_now().isoformat()

        query = self.client.table("posts").update(payload).eq("id", post_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)

        result = await self._execute(query, f"update_post({post_id})")
        # If data is returned, the update matched
        return bool(result.data)

    async def get_scheduled_posts(self) -> List[Dict[str, Any]]:
        """Get every ``scheduled`` post that has not been published.

        Returns:
            List of post rows ordered by ``scheduled_at`` ascending.
        """
        result = await self._execute(
            self.client.table("posts")
            .select("*")
            .eq("status", "scheduled")
            .is_("published_at", "null")
            .order("scheduled_at", desc=False),
            "get_scheduled_posts",
        )
        return result.data or []

    # -----------------------------------------------------------------
    # PROFILES
    # -----------------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        """Get a social profile by ID.

        Returns:
            Profile row or ``None`` if not found.
        """
        validate_not_empty(profile_id, "profile_id")

        result = await self._execute(
            self.client.table("profiles").select("*").eq("id", profile_id),
            f"get_profile({profile_id})",
        )
        return result.data[0] if result.data else None

    async def update_profile(
        self, profile_id: str, fields: Dict[str, Any]
    ) -> bool:
        """Update fields on a profile.

        Returns:
            ``True`` if a row was updated.
        """
        validate_not_empty(profile_id, "profile_id")
        if not fields:
            raise ValidationError("fields cannot be None or empty")

        payload = dict(fields)
        payload["updated_at"] = utc_now().isoformat()

        result = await self._execute(
            self.client.table("profiles").update(payload).eq("id", profile_id),
            f"update_profile({profile_id})",
        )
        return bool(result.data)

    async def get_expiring_profiles(
        self, before: datetime
    ) -> List[Dict[str, Any]]:
        """Get active profiles whose token expires at or before *before*.

        Profiles with a null ``token_expires_at`` (non-expiring) never
        match.

        Returns:
            List of profile rows ordered by ``token_expires_at`` ascending.
        """
        result = await self._execute(
            self.client.table("profiles")
            .select("*")
            .eq("is_active", True)
            .lte("token_expires_at", before.isoformat())
            .order("token_expires_at", desc=False),
            "get_expiring_profiles",
        )
        return result.data or []

    # -----------------------------------------------------------------
    # AGENT LOGS
    # -----------------------------------------------------------------

    async def save_agent_log(self, log_entry: Dict[str, Any]) -> str:
        """Save a structured log entry.

        Args:
            log_entry: Log entry dict.  Must contain ``timestamp``
                and ``level``.

        Returns:
            UUID of the inserted log row.

        Raises:
            ValidationError: On missing / invalid fields.
            DatabaseError: When the insert fails or returns no data.
        """
        if not log_entry:
            raise ValidationError("log_entry cannot be None or empty")
        if "timestamp" not in log_entry or "level" not in log_entry:
            raise ValidationError(
                "log_entry must have 'timestamp' and 'level'"
            )

        result = await self._execute(
            self.client.table("agent_logs").insert(log_entry),
            "save_agent_log",
        )
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "SupabaseConfig",
    "SupabaseDB",
    "validate_not_empty",
]
