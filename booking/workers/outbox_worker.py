"""
Outbox Worker - retries Google Calendar side effects left pending.

Every OUTBOX_POLL_SECONDS the worker claims due outbox events (FOR UPDATE
SKIP LOCKED, so several replicas can run) and dispatches each once. Failed
events are rescheduled with exponential backoff by the outbox service and
marked failed after OUTBOX_MAX_ATTEMPTS.

Run:
    python -m booking.workers.outbox_worker
"""

import asyncio
import logging
import signal

from sqlalchemy.exc import SQLAlchemyError

from booking.services.outbox_service import process_due
from booking.workers.health import update_health_check
from shared.config import get_settings
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

WORKER_NAME = "outbox_worker"
BATCH_SIZE = 50

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def run_outbox_cycle() -> dict[str, int]:
    """
    Drain due events in batches until a batch comes back short.
    """
    totals = {"claimed": 0, "succeeded": 0, "failed": 0, "errors": 0}

    while not shutdown_requested:
        try:
            stats = await process_due(limit=BATCH_SIZE)
        except SQLAlchemyError as e:
            logger.error(f"Outbox cycle failed: {e}", exc_info=True)
            totals["errors"] += 1
            break
        except Exception as e:
            logger.error(f"Unexpected error in outbox cycle: {e}", exc_info=True)
            totals["errors"] += 1
            break

        for key in ("claimed", "succeeded", "failed"):
            totals[key] += stats[key]
        if stats["claimed"] < BATCH_SIZE:
            break

    if totals["claimed"]:
        logger.info(
            f"Outbox cycle: claimed={totals['claimed']} "
            f"succeeded={totals['succeeded']} failed={totals['failed']}"
        )

    update_health_check(
        WORKER_NAME,
        status="healthy" if totals["errors"] == 0 else "unhealthy",
        stats=totals,
    )
    return totals


async def async_main() -> None:
    """
    Poll the outbox until SIGTERM/SIGINT, on a single event loop.
    """
    settings = get_settings()
    poll_seconds = settings.OUTBOX_POLL_SECONDS

    logger.info(f"Outbox worker starting (poll every {poll_seconds}s)")
    update_health_check(WORKER_NAME, status="starting", stats={})

    while not shutdown_requested:
        await run_outbox_cycle()

        # Sleep in 1s steps so shutdown is noticed promptly
        for _ in range(poll_seconds):
            if shutdown_requested:
                break
            await asyncio.sleep(1)

    logger.info("Outbox worker shutting down gracefully...")


def run_outbox_worker() -> None:
    configure_logging(WORKER_NAME)
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_outbox_worker()
