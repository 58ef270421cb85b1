"""
Instance Status Worker - keeps WhatsApp connection state fresh.

Disconnected instances are polled every INSTANCE_POLL_DISCONNECTED_SECONDS
(the user is probably scanning a QR code), connected ones every
INSTANCE_POLL_CONNECTED_SECONDS. Gateway failures back off exponentially
per instance, capped at INSTANCE_POLL_MAX_BACKOFF_SECONDS.

Run:
    python -m booking.workers.instance_status_worker
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from booking.services.instance_service import GATEWAY_ERRORS, refresh_status
from booking.workers.health import update_health_check
from database.connection import get_async_session
from database.models import InstanceStatus, MessagingInstance
from shared.config import get_settings
from shared.evolution_client import EvolutionClient
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

WORKER_NAME = "instance_status_worker"
TICK_SECONDS = 1

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def poll_interval(status: InstanceStatus, failures: int = 0) -> float:
    """Seconds until the next check of an instance."""
    settings = get_settings()
    if status == InstanceStatus.CONNECTED:
        base = settings.INSTANCE_POLL_CONNECTED_SECONDS
    else:
        base = settings.INSTANCE_POLL_DISCONNECTED_SECONDS
    if failures <= 0:
        return float(base)
    return float(min(base * (2 ** failures), settings.INSTANCE_POLL_MAX_BACKOFF_SECONDS))


@dataclass
class PollSchedule:
    """Next check time (monotonic seconds) and failure streak per instance."""

    next_check: dict[UUID, float] = field(default_factory=dict)
    failures: dict[UUID, int] = field(default_factory=dict)

    def due(self, instance_ids: list[UUID], now: float) -> list[UUID]:
        """Instances never checked, or whose next check time has passed."""
        return [i for i in instance_ids if self.next_check.get(i, now) <= now]

    def record_success(self, instance_id: UUID, status: InstanceStatus, now: float) -> None:
        self.failures.pop(instance_id, None)
        self.next_check[instance_id] = now + poll_interval(status)

    def record_failure(self, instance_id: UUID, status: InstanceStatus, now: float) -> None:
        failures = self.failures.get(instance_id, 0) + 1
        self.failures[instance_id] = failures
        self.next_check[instance_id] = now + poll_interval(status, failures)

    def forget(self, instance_id: UUID) -> None:
        self.next_check.pop(instance_id, None)
        self.failures.pop(instance_id, None)

    def prune(self, live_ids: set[UUID]) -> None:
        """Forget instances that no longer exist."""
        for instance_id in list(self.next_check):
            if instance_id not in live_ids:
                self.forget(instance_id)


async def check_instance(
    instance_id: UUID, schedule: PollSchedule, client: EvolutionClient
) -> None:
    """Refresh one instance and reschedule it."""
    async with get_async_session() as session:
        instance = await session.get(MessagingInstance, instance_id)
        if instance is None:
            schedule.forget(instance_id)
            return

        previous = instance.status
        try:
            exists = await refresh_status(session, instance, client)
        except GATEWAY_ERRORS as e:
            schedule.record_failure(instance_id, previous, time.monotonic())
            logger.warning(
                f"Status check failed for {instance.instance_name} "
                f"(failures={schedule.failures[instance_id]}): {e}",
                extra={"instance_name": instance.instance_name},
            )
            return

        await session.commit()

    if not exists:
        schedule.forget(instance_id)
        return

    if instance.status != previous:
        logger.info(
            f"Instance {instance.instance_name}: {previous.value} -> {instance.status.value}",
            extra={"instance_name": instance.instance_name, "user_id": instance.user_id},
        )
    schedule.record_success(instance_id, instance.status, time.monotonic())


async def run_poll_cycle(schedule: PollSchedule, client: EvolutionClient) -> int:
    """Check every due instance. Returns how many were checked."""
    async with get_async_session() as session:
        result = await session.execute(select(MessagingInstance.id))
        instance_ids = list(result.scalars().all())

    schedule.prune(set(instance_ids))
    due = schedule.due(instance_ids, time.monotonic())
    for instance_id in due:
        if shutdown_requested:
            break
        await check_instance(instance_id, schedule, client)
    return len(due)


async def async_main() -> None:
    """
    Poll instance status until SIGTERM/SIGINT, on a single event loop.
    """
    schedule = PollSchedule()
    client = EvolutionClient()
    checked_total = 0
    errors = 0

    logger.info("Instance status worker starting...")
    update_health_check(WORKER_NAME, status="starting", stats={})

    while not shutdown_requested:
        cycle_ok = True
        try:
            checked_total += await run_poll_cycle(schedule, client)
        except SQLAlchemyError as e:
            cycle_ok = False
            errors += 1
            logger.error(f"Instance poll cycle failed: {e}", exc_info=True)

        update_health_check(
            WORKER_NAME,
            status="healthy" if cycle_ok else "unhealthy",
            stats={
                "instances_tracked": len(schedule.next_check),
                "instances_backing_off": len(schedule.failures),
                "checks": checked_total,
                "errors": errors,
            },
        )
        await asyncio.sleep(TICK_SECONDS)

    logger.info("Instance status worker shutting down gracefully...")


def run_instance_status_worker() -> None:
    configure_logging(WORKER_NAME)
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_instance_status_worker()
