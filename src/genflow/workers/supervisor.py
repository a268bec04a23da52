"""Timer-driven loops with automatic restart."""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

RESTART_DELAY = 1  # Fixed 1 second delay between restarts
ERROR_BACKOFF = 5  # Seconds to wait after an unexpected error inside the loop


async def wait_for_event(event: asyncio.Event, timeout: float) -> bool:
    """Wait until event is set or timeout passes. Returns True if set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def run_periodic(
    name: str,
    step: Callable[[], Awaitable[int]],
    interval: float,
    shutdown_event: asyncio.Event,
    wake_event: Optional[asyncio.Event] = None,
) -> None:
    """Run step every interval seconds until shutdown_event is set.

    When step reports work done it is run again immediately so a backlog
    drains without waiting. wake_event, when given, cuts the idle wait short.
    The current iteration always finishes before shutdown is observed.
    """
    logger.info("worker.started", worker=name, interval=interval)
    try:
        while not shutdown_event.is_set():
            try:
                processed = await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error",
                    worker=name,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await wait_for_event(shutdown_event, ERROR_BACKOFF)
                continue

            if processed:
                continue

            if wake_event is None:
                await wait_for_event(shutdown_event, interval)
                continue

            waiters = [
                asyncio.ensure_future(shutdown_event.wait()),
                asyncio.ensure_future(wake_event.wait()),
            ]
            try:
                await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
            wake_event.clear()
    except asyncio.CancelledError:
        logger.info("worker.cancelled", worker=name)
        raise
    logger.info("worker.stopped", worker=name)


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    on_spawn: Optional[Callable[[asyncio.Task], None]] = None,
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Zero-argument coroutine function running the worker loop
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        on_spawn: Called with every task created, including restarts, so the
            owner can track the live task

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """

    def spawn() -> asyncio.Task:
        task = asyncio.create_task(coro_func(), name=worker_name)
        task.add_done_callback(on_worker_done)
        if on_spawn is not None:
            on_spawn(task)
        return task

    def on_worker_done(task: asyncio.Task):
        # Check if shutdown was requested
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Check if task was cancelled (normal shutdown)
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            spawn()

        asyncio.create_task(restart_worker())

    return spawn()
