"""Logging data models: LogLevel, LogComponent, LogEntry."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Structured log severity.

    Values are the stdlib ``logging`` levels, so an entry can be mirrored
    to a module logger as ``logger.log(level.value, ...)`` and severities
    compare numerically.
    """

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @property
    def name_str(self) -> str:
        """Lowercase name stored in the ``level_name`` column."""
        return self.name.lower()


class LogComponent(Enum):
    """All pipeline components that can produce logs."""

    QUEUE = "queue"
    STATE_MACHINE = "state_machine"
    DISPATCH = "dispatch"
    TOKEN_MANAGER = "token_manager"
    MAINTENANCE = "maintenance"

    # Infrastructure
    DATABASE = "database"
    STARTUP = "startup"
    CONFIG = "config"


@dataclass
class LogEntry:
    """Structured log entry.

    Represents a single log event with context, optional error details,
    and performance timing. Supports serialization to JSON, dict, and
    human-readable text formats.
    """

    # Required fields
    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    # Context
    job_id: Optional[str] = None
    post_id: Optional[str] = None
    profile_id: Optional[str] = None

    # Additional data
    data: Dict[str, Any] = field(default_factory=dict)

    # Error details
    error_type: Optional[str] = None
    error_traceback: Optional[str] = None

    # Performance
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for Supabase insertion."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
            "job_id": self.job_id,
            "post_id": self.post_id,
            "profile_id": self.profile_id,
            "data": self.data,
            "error_type": self.error_type,
            "error_traceback": self.error_traceback,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        """Serialize to JSON string for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable format for console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        level_indicators = {
            LogLevel.DEBUG: "[DEBUG]",
            LogLevel.INFO: "[INFO]",
            LogLevel.WARNING: "[WARN]",
            LogLevel.ERROR: "[ERROR]",
            LogLevel.CRITICAL: "[CRIT]",
        }
        indicator = level_indicators.get(self.level, "[???]")
        msg = f"{indicator} [{time_str}] [{self.component.value}] {self.message}"
        if self.post_id:
            msg += f" post={self.post_id}"
        if self.duration_ms:
            msg += f" ({self.duration_ms}ms)"
        return msg
