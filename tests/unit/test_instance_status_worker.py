"""Tests for the instance status worker scheduling."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest

from booking.workers.instance_status_worker import PollSchedule, check_instance, poll_interval
from database.models import InstanceStatus

MODULE = "booking.workers.instance_status_worker"


class TestPollInterval:
    def test_connected_polls_slowly(self):
        assert poll_interval(InstanceStatus.CONNECTED) == 30.0

    def test_disconnected_polls_fast(self):
        assert poll_interval(InstanceStatus.DISCONNECTED) == 5.0

    def test_failures_back_off_exponentially(self):
        assert poll_interval(InstanceStatus.DISCONNECTED, failures=1) == 10.0
        assert poll_interval(InstanceStatus.DISCONNECTED, failures=3) == 40.0

    def test_backoff_capped(self):
        assert poll_interval(InstanceStatus.CONNECTED, failures=10) == 300.0


class TestPollSchedule:
    def test_unknown_instances_are_due(self):
        schedule = PollSchedule()
        a, b = uuid4(), uuid4()

        assert schedule.due([a, b], now=100.0) == [a, b]

    def test_success_schedules_by_status(self):
        schedule = PollSchedule()
        instance_id = uuid4()

        schedule.record_success(instance_id, InstanceStatus.CONNECTED, now=100.0)

        assert schedule.due([instance_id], now=129.0) == []
        assert schedule.due([instance_id], now=130.0) == [instance_id]

    def test_failure_streak_grows_and_resets(self):
        schedule = PollSchedule()
        instance_id = uuid4()

        schedule.record_failure(instance_id, InstanceStatus.DISCONNECTED, now=0.0)
        schedule.record_failure(instance_id, InstanceStatus.DISCONNECTED, now=0.0)
        assert schedule.failures[instance_id] == 2
        assert schedule.next_check[instance_id] == 20.0

        schedule.record_success(instance_id, InstanceStatus.DISCONNECTED, now=0.0)
        assert instance_id not in schedule.failures
        assert schedule.next_check[instance_id] == 5.0

    def test_prune_drops_deleted_instances(self):
        schedule = PollSchedule()
        kept, gone = uuid4(), uuid4()
        schedule.record_failure(kept, InstanceStatus.CONNECTED, now=0.0)
        schedule.record_failure(gone, InstanceStatus.CONNECTED, now=0.0)

        schedule.prune({kept})

        assert set(schedule.next_check) == {kept}
        assert set(schedule.failures) == {kept}


class TestCheckInstance:
    @pytest.mark.asyncio
    async def test_gateway_error_records_failure(self, mock_session, session_factory):
        instance_id = uuid4()
        mock_session.get.return_value = SimpleNamespace(
            instance_name="agendapro-ana-550e84", status=InstanceStatus.CONNECTED, user_id=uuid4()
        )
        schedule = PollSchedule()
        refresh = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.refresh_status", refresh):
            await check_instance(instance_id, schedule, MagicMock())

        assert schedule.failures[instance_id] == 1
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_commits_and_reschedules(self, mock_session, session_factory):
        instance_id = uuid4()
        instance = SimpleNamespace(
            instance_name="agendapro-ana-550e84", status=InstanceStatus.DISCONNECTED, user_id=uuid4()
        )
        mock_session.get.return_value = instance

        async def connect(session, row, client):
            row.status = InstanceStatus.CONNECTED
            return True

        schedule = PollSchedule()
        schedule.failures[instance_id] = 2

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.refresh_status", AsyncMock(side_effect=connect)):
            await check_instance(instance_id, schedule, MagicMock())

        mock_session.commit.assert_awaited_once()
        assert instance_id not in schedule.failures
        assert instance_id in schedule.next_check

    @pytest.mark.asyncio
    async def test_instance_removed_on_gateway_is_forgotten(self, mock_session, session_factory):
        instance_id = uuid4()
        mock_session.get.return_value = SimpleNamespace(
            instance_name="x", status=InstanceStatus.DISCONNECTED, user_id=uuid4()
        )
        schedule = PollSchedule()
        schedule.record_failure(instance_id, InstanceStatus.DISCONNECTED, now=0.0)

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.refresh_status", AsyncMock(return_value=False)):
            await check_instance(instance_id, schedule, MagicMock())

        assert instance_id not in schedule.next_check
        assert instance_id not in schedule.failures
