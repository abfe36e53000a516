import asyncio
import logging
import signal

from common.config import settings
from common.database import AsyncSessionLocal, engine
from common.logging_config import configure_logging
from scheduler_worker.processor import SchedulerProcessor


logger = logging.getLogger("scheduler_worker")

# Set by SIGINT/SIGTERM, the loop finishes the current tick and exits
shutdown_event = asyncio.Event()

ERROR_BACKOFF_SECONDS = 5.0


async def main_loop(processor: SchedulerProcessor) -> None:
    """Runs a tick every SCHEDULER_INTERVAL_SECONDS until shutdown is requested."""
    logger.info(
        "Starting scheduler: interval=%ss batch_size=%d",
        settings.SCHEDULER_INTERVAL_SECONDS, processor.batch_size,
    )
    while not shutdown_event.is_set():
        delay = settings.SCHEDULER_INTERVAL_SECONDS
        try:
            await processor.run_tick()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Scheduler loop error, retrying in %ss", ERROR_BACKOFF_SECONDS)
            delay = ERROR_BACKOFF_SECONDS

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    logger.info("Scheduler stopped")


def handle_shutdown(signum, frame):
    """Signal handler for graceful shutdown."""
    logger.info("Received signal %s, shutting down", signum)
    shutdown_event.set()


async def main():
    configure_logging()
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    processor = SchedulerProcessor(AsyncSessionLocal)
    try:
        await main_loop(processor)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
