"""
Entry point: run the publishing worker and the maintenance loop.

Usage::

    python run.py

Reads ``config/settings.yaml`` and ``.env``. The queue backend is Redis
unless ``QUEUE_BACKEND=memory`` (single process, development only).
"""

import asyncio
import logging
import signal
import sys

import httpx

from social_publisher.config import get_settings, validate_env
from social_publisher.database import SupabaseDB
from social_publisher.logging import AgentLogger, ComponentLogger, LogComponent
from social_publisher.platforms import build_dispatcher
from social_publisher.scheduling import (
    JobStore,
    MaintenanceScheduler,
    MemoryJobStore,
    PostStateMachine,
    PublishingQueue,
    RedisJobStore,
)
from social_publisher.tokens import TokenLifecycleManager, build_refreshers

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


def build_store() -> JobStore:
    queue = settings.queue
    if queue.backend == "memory":
        logger.warning("[STARTUP] Using in-memory job store; jobs do not survive restarts")
        return MemoryJobStore()
    return RedisJobStore.from_url(
        queue.redis_url,
        prefix=queue.key_prefix,
        completed_ttl_seconds=queue.completed_ttl_seconds,
    )


async def main() -> None:
    validate_env(strict=True, settings=settings)

    db = await SupabaseDB.create()
    agent_logger = AgentLogger(log_dir=settings.log_dir, db=db)

    def component(name: LogComponent) -> ComponentLogger:
        return ComponentLogger(name, agent_logger)

    http = httpx.AsyncClient(timeout=settings.dispatch.request_timeout_seconds)
    store = build_store()

    dispatcher = build_dispatcher(
        settings.dispatch, log=component(LogComponent.DISPATCH), client=http
    )
    token_manager = TokenLifecycleManager(
        db,
        build_refreshers(
            settings.platforms,
            settings.tokens,
            graph_api_version=settings.dispatch.graph_api_version,
            client=http,
        ),
        config=settings.tokens,
        log=component(LogComponent.TOKEN_MANAGER),
    )
    queue = PublishingQueue(
        db,
        store,
        dispatcher,
        token_manager,
        state_machine=PostStateMachine(db, log=component(LogComponent.STATE_MACHINE)),
        config=settings.queue,
        log=component(LogComponent.QUEUE),
    )
    maintenance = MaintenanceScheduler(
        queue,
        token_manager,
        settings=settings,
        log=component(LogComponent.MAINTENANCE),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig, lambda: asyncio.ensure_future(_shutdown(queue, maintenance))
            )
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still stops the process
            logger.debug("Signal handlers not supported on this event loop")

    await component(LogComponent.STARTUP).info(
        f"Publishing pipeline starting ({settings.environment}, "
        f"backend={settings.queue.backend})",
        data={"platforms": [p.value for p in dispatcher.platforms]},
    )

    try:
        await asyncio.gather(queue.start(), maintenance.start())
    finally:
        await store.aclose()
        await dispatcher.aclose()
        await http.aclose()
        await agent_logger.flush()
        logger.info("Shutdown complete")


async def _shutdown(queue: PublishingQueue, maintenance: MaintenanceScheduler) -> None:
    logger.info("Shutdown requested")
    await queue.stop()
    await maintenance.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
