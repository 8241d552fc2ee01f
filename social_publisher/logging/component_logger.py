"""Per-component logger wrapper and timed-operation context manager.

``ComponentLogger`` binds a fixed ``LogComponent`` to an injected
``AgentLogger`` so that every subsystem can log without repeatedly
specifying its component. Without a sink, entries go to the standard
``logging`` module only, which keeps components usable in tests and
one-off scripts.

``TimedOperation`` is an async context manager returned by
``ComponentLogger.timed()`` that automatically logs the start time,
elapsed duration, and success/failure of a block of code.
"""

import logging
import time
from typing import Any, Optional

from social_publisher.logging.agent_logger import AgentLogger
from social_publisher.logging.models import LogComponent, LogLevel


class ComponentLogger:
    """Wrapper that binds a fixed ``LogComponent`` to an ``AgentLogger``.

    Each component creates its own ``ComponentLogger`` at ``__init__`` time::

        self.log = ComponentLogger(LogComponent.QUEUE, agent_logger)
        await self.log.info("Job enqueued", post_id=post.id, data={"delay_ms": 0})

    Every entry is mirrored to the stdlib logger
    ``social_publisher.<component>`` so console output keeps working.
    """

    def __init__(
        self, component: LogComponent, sink: Optional[AgentLogger] = None
    ) -> None:
        self.component = component
        self.sink = sink
        self._stdlib = logging.getLogger(f"social_publisher.{component.value}")

    async def _emit(
        self,
        level: LogLevel,
        message: str,
        error: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        post_id = kwargs.get("post_id")
        suffix = f" post={post_id}" if post_id else ""
        self._stdlib.log(
            level.value,
            "[%s] %s%s",
            self.component.value.upper(),
            message,
            suffix,
            exc_info=error if level.value >= LogLevel.ERROR.value else None,
        )
        if self.sink is not None:
            await self.sink.log(level, self.component, message, error=error, **kwargs)

    async def debug(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.DEBUG, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.INFO, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.WARNING, message, **kwargs)

    async def error(
        self, message: str, error: Optional[Exception] = None, **kwargs: Any
    ) -> None:
        """Log at ERROR level for this component."""
        await self._emit(LogLevel.ERROR, message, error=error, **kwargs)

    async def critical(
        self, message: str, error: Optional[Exception] = None, **kwargs: Any
    ) -> None:
        """Log at CRITICAL level for this component."""
        await self._emit(LogLevel.CRITICAL, message, error=error, **kwargs)

    def timed(self, message: str, **kwargs: Any) -> "TimedOperation":
        """Return an async context manager that logs start/end with duration.

        Usage::

            async with self.log.timed("Token sweep"):
                summary = await self._sweep()
        """
        return TimedOperation(self, message, **kwargs)


class TimedOperation:
    """Async context manager that measures and logs operation duration.

    On entry, logs a DEBUG message (``"Starting: <message>"``).
    On successful exit, logs an INFO message with ``duration_ms``.
    On exception, logs an ERROR message with ``duration_ms`` and the error,
    then re-raises the exception (does **not** suppress it).
    """

    def __init__(self, logger: ComponentLogger, message: str, **kwargs: Any) -> None:
        self.logger = logger
        self.message = message
        self.kwargs = kwargs
        self.start_time: Optional[float] = None

    async def __aenter__(self) -> "TimedOperation":
        self.start_time = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}", **self.kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self.start_time is not None
        duration_ms = int((time.monotonic() - self.start_time) * 1000)

        if exc_type is not None:
            await self.logger.error(
                f"Failed: {self.message}",
                error=exc_val if isinstance(exc_val, Exception) else None,
                duration_ms=duration_ms,
                **self.kwargs,
            )
        else:
            await self.logger.info(
                f"Completed: {self.message}",
                duration_ms=duration_ms,
                **self.kwargs,
            )
        # Return None (falsy) so exceptions propagate
