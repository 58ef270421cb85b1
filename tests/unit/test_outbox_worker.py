"""Tests for the outbox worker cycle."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from booking.workers.outbox_worker import BATCH_SIZE, run_outbox_cycle

MODULE = "booking.workers.outbox_worker"


@pytest.mark.asyncio
async def test_drains_full_batches_until_short_batch():
    batches = [
        {"claimed": BATCH_SIZE, "succeeded": BATCH_SIZE - 1, "failed": 1},
        {"claimed": 3, "succeeded": 3, "failed": 0},
    ]

    with patch(f"{MODULE}.process_due", AsyncMock(side_effect=batches)) as mock_process, \
         patch(f"{MODULE}.update_health_check") as mock_health:
        totals = await run_outbox_cycle()

    assert mock_process.await_count == 2
    assert totals == {"claimed": BATCH_SIZE + 3, "succeeded": BATCH_SIZE + 2, "failed": 1, "errors": 0}
    assert mock_health.call_args.kwargs["status"] == "healthy"


@pytest.mark.asyncio
async def test_database_error_reported_unhealthy():
    error = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with patch(f"{MODULE}.process_due", AsyncMock(side_effect=error)), \
         patch(f"{MODULE}.update_health_check") as mock_health:
        totals = await run_outbox_cycle()

    assert totals["errors"] == 1
    assert mock_health.call_args.kwargs["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_unexpected_error_does_not_escape_cycle():
    with patch(f"{MODULE}.process_due", AsyncMock(side_effect=RuntimeError("boom"))), \
         patch(f"{MODULE}.update_health_check") as mock_health:
        totals = await run_outbox_cycle()

    assert totals["errors"] == 1
    assert mock_health.call_args.kwargs["status"] == "unhealthy"
