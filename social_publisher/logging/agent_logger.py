"""Central structured logger with file and Supabase outputs.

Provides the ``AgentLogger`` class that dispatches structured log entries
to local JSON files (via ``aiofiles``) and an optional Supabase table.
A lightweight in-memory ring buffer allows fast ``get_recent()`` queries
without hitting the database.

One ``AgentLogger`` is created by the entry point and handed to every
component through its ``ComponentLogger``; there is no module-level
instance.
"""

import asyncio
import logging
import traceback
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import aiofiles

from social_publisher.exceptions import DatabaseError
from social_publisher.logging.models import LogComponent, LogEntry, LogLevel
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)


class AgentLogger:
    """Central logging system for the publishing pipeline.

    Parameters:
        log_dir: Directory for log files (created if missing).
        db: Optional ``SupabaseDB`` with ``save_agent_log()``.
        min_level: Minimum level for Supabase writes.
        max_recent: Size of the in-memory ring buffer.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        db: Any = None,
        min_level: LogLevel = LogLevel.INFO,
        max_recent: int = 1000,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.db = db
        self.min_level = min_level

        # Log file paths
        self._main_log = self.log_dir / "pipeline.log"
        self._error_log = self.log_dir / "errors.log"
        self._debug_log = self.log_dir / "debug.log"

        # In-memory ring buffer for quick access
        self._recent_logs: List[LogEntry] = []
        self._max_recent = max_recent

        # Custom handlers registered via add_handler()
        self._handlers: List[Callable[[LogEntry], None]] = []

        # Track pending async tasks to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        """Register a custom synchronous log handler."""
        self._handlers.append(handler)

    # ------------------------------------------------------------------
    # Core log method
    # ------------------------------------------------------------------

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[int] = None,
        job_id: Optional[str] = None,
        post_id: Optional[str] = None,
        profile_id: Optional[str] = None,
    ) -> LogEntry:
        """Log a structured message.

        Context (job, post, profile) is passed per call because many jobs
        are processed concurrently through one logger.

        Writes to the log files always, and to Supabase when connected
        and the severity threshold is met.
        """
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            job_id=job_id,
            post_id=post_id,
            profile_id=profile_id,
            data=data or {},
            duration_ms=duration_ms,
        )

        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_traceback = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        # Append to ring buffer
        self._recent_logs.append(entry)
        if len(self._recent_logs) > self._max_recent:
            self._recent_logs.pop(0)

        # Write to file (awaited so file I/O completes before return)
        await self._write_to_file(entry)

        # Write to Supabase (fire-and-forget but tracked)
        if self.db is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._write_to_supabase(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        for handler in self._handlers:
            handler(entry)

        return entry

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.ERROR, component, message, **kwargs)

    async def critical(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.CRITICAL, component, message, **kwargs)

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        post_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Return recent logs from the in-memory ring buffer.

        Filters are applied in-memory (fast, no I/O).
        """
        logs = self._recent_logs.copy()

        if level is not None:
            logs = [entry for entry in logs if entry.level == level]
        if component is not None:
            logs = [entry for entry in logs if entry.component == component]
        if post_id is not None:
            logs = [entry for entry in logs if entry.post_id == post_id]

        return logs[-limit:]

    async def flush(self) -> None:
        """Wait for all pending Supabase writes.

        Call this before application shutdown to ensure every log entry
        has been written.
        """
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    # ------------------------------------------------------------------
    # Private output methods
    # ------------------------------------------------------------------

    async def _write_to_file(self, entry: LogEntry) -> None:
        """Write log entry to JSON log files using async I/O.

        - ``pipeline.log`` -- all entries
        - ``errors.log``   -- ERROR and CRITICAL only
        - ``debug.log``    -- DEBUG only
        """
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self._main_log, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self._error_log, "a", encoding="utf-8") as f:
                await f.write(json_line)

        if entry.level == LogLevel.DEBUG:
            async with aiofiles.open(self._debug_log, "a", encoding="utf-8") as f:
                await f.write(json_line)

    async def _write_to_supabase(self, entry: LogEntry) -> None:
        """Write log entry to the ``agent_logs`` table."""
        try:
            await self.db.save_agent_log(entry.to_dict())
        except DatabaseError as exc:
            # The file log already holds this entry
            logger.warning("[LOGGING] Failed to write to Supabase: %s", exc)
