"""
Worker resource lifecycle.

Opens only the resources a job asks for, in order, and closes them in
reverse order. A failure during startup closes whatever was already opened
before the error propagates.
"""

import asyncio
import signal
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from app.config import Settings, settings
from app.db.pool import DatabasePoolManager, create_radius_pool, create_supabase_pool
from app.features.billing_reminders.services.message_transport import WebhookMessageTransport
from app.infrastructure.observability.logging import get_logger, log_health_check, setup_logging
from app.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


@dataclass
class WorkerRuntime:
    config: Settings
    supabase_pool: DatabasePoolManager | None = None
    radius_pool: DatabasePoolManager | None = None
    redis: RedisClient | None = None
    transport: WebhookMessageTransport | None = None


async def _check_pool(pool: DatabasePoolManager) -> None:
    health = await pool.health_check()
    log_health_check(
        pool.name,
        health["healthy"],
        health.get("connection_time_ms", 0.0),
        error=health.get("error"),
    )


async def _shutdown(runtime: WorkerRuntime, started: list[str]) -> list[str]:
    errors: list[str] = []

    if "transport" in started and runtime.transport is not None:
        try:
            await runtime.transport.close()
        except Exception as e:
            logger.error("Error closing message transport", error=str(e))
            errors.append(f"Transport: {e}")

    if "redis" in started and runtime.redis is not None:
        try:
            await runtime.redis.close()
        except Exception as e:
            logger.error("Error closing Redis", error=str(e))
            errors.append(f"Redis: {e}")

    for name, pool in (("radius_pool", runtime.radius_pool), ("supabase_pool", runtime.supabase_pool)):
        if name in started and pool is not None:
            try:
                await pool.close()
            except Exception as e:
                logger.error("Error closing database pool", pool=name, error=str(e))
                errors.append(f"{name}: {e}")

    return errors


@asynccontextmanager
async def worker_runtime(
    *,
    supabase: bool = False,
    radius: bool = False,
    redis: bool = False,
    transport: bool = False,
    config: Settings = settings,
) -> AsyncIterator[WorkerRuntime]:
    """Initialize the requested services for the duration of a job."""
    setup_logging(log_level=config.LOG_LEVEL)
    logger.info("Worker starting", environment=config.environment)

    runtime = WorkerRuntime(config=config)
    started: list[str] = []

    try:
        if supabase:
            runtime.supabase_pool = create_supabase_pool(config)
            await runtime.supabase_pool.initialize()
            started.append("supabase_pool")
            await _check_pool(runtime.supabase_pool)

        if radius:
            runtime.radius_pool = create_radius_pool(config)
            await runtime.radius_pool.initialize()
            started.append("radius_pool")
            await _check_pool(runtime.radius_pool)

        if redis:
            start_time = time.time()
            runtime.redis = RedisClient(config.redis_url())
            await runtime.redis.initialize()
            started.append("redis")
            log_health_check("redis", True, round((time.time() - start_time) * 1000, 2))

        if transport:
            runtime.transport = WebhookMessageTransport(
                config.MESSAGE_WEBHOOK_URL,
                token=config.MESSAGE_WEBHOOK_TOKEN,
                timeout=config.MESSAGE_WEBHOOK_TIMEOUT,
            )
            started.append("transport")

        logger.info("Worker services initialized", services=started)

    except Exception as e:
        logger.error("Failed to initialize worker services", error=str(e), completed_tasks=started)
        await _shutdown(runtime, started)
        raise

    try:
        yield runtime
    finally:
        logger.info("Worker shutting down")
        shutdown_errors = await _shutdown(runtime, started)
        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")


def install_stop_signals(stop_event: asyncio.Event) -> None:
    """Set `stop_event` on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))
