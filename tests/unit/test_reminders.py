"""Unit tests for reminder scheduling and execution."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from session_relay.config import RelayConfig
from session_relay.errors import (
    DeliveryFailedError,
    InvalidRecurrenceError,
    ReminderNotFoundError,
)
from session_relay.models import Reminder, ReminderStatus, RunStatus
from session_relay.reminders import (
    ReminderExecutor,
    ReminderService,
    next_occurrence,
    run_reminder_loop,
)


def _reminder(recurrence=None, attempts=0, session_id="ws_1", run_at=None):
    return Reminder(
        id=uuid4(),
        owner_id="tenant-1",
        session_id=session_id,
        recipient="123@c.us",
        message="Your appointment is tomorrow",
        run_at=run_at or datetime.now(timezone.utc) - timedelta(minutes=1),
        status=ReminderStatus.RUNNING,
        recurrence=recurrence,
        attempts=attempts,
    )


def _mock_reminder_store():
    store = MagicMock()
    for name in (
        "record_run",
        "mark_completed",
        "schedule_next",
        "schedule_retry",
        "mark_failed",
        "insert_reminder",
        "cancel_reminder",
        "claim_due",
    ):
        setattr(store, name, AsyncMock())
    return store


@pytest.fixture
def ready_supervisor():
    supervisor = MagicMock()
    supervisor.send = AsyncMock(return_value="msg-1")
    return supervisor


def _executor(config, mock_db_pool, supervisor):
    executor = ReminderExecutor(config, mock_db_pool, lambda session_id: supervisor)
    executor.store = _mock_reminder_store()
    return executor


def test_next_occurrence_daily_keeps_local_time_across_dst():
    """09:00 in Berlin stays 09:00 local when the clocks change."""
    run_at = datetime(2024, 3, 30, 8, 0, tzinfo=timezone.utc)  # 09:00 CET

    nxt = next_occurrence("FREQ=DAILY", run_at, "Europe/Berlin")

    assert nxt == datetime(2024, 3, 31, 7, 0, tzinfo=timezone.utc)  # 09:00 CEST


def test_next_occurrence_skips_past_occurrences():
    run_at = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    after = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)

    nxt = next_occurrence("RRULE:FREQ=DAILY", run_at, None, after=after)

    assert nxt == datetime(2024, 1, 11, 9, 0, tzinfo=timezone.utc)


def test_next_occurrence_exhausted_rule():
    run_at = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    assert next_occurrence("FREQ=DAILY;COUNT=2", run_at, after=run_at + timedelta(days=2)) is None


def test_next_occurrence_rejects_bad_input():
    run_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

    with pytest.raises(InvalidRecurrenceError):
        next_occurrence("FREQ=SOMETIMES", run_at)
    with pytest.raises(InvalidRecurrenceError):
        next_occurrence("FREQ=DAILY", run_at, "Mars/Olympus_Mons")


@pytest.mark.asyncio
async def test_create_reminder_reads_naive_time_in_timezone(relay_config, mock_db_pool):
    service = ReminderService(relay_config, mock_db_pool)
    service.store = _mock_reminder_store()
    service.store.insert_reminder.return_value = _reminder()

    await service.create_reminder(
        owner_id="tenant-1",
        recipient="123@c.us",
        message="hi",
        run_at=datetime(2024, 7, 1, 9, 0),
        timezone_name="Europe/Berlin",
        recurrence="FREQ=WEEKLY",
    )

    kwargs = service.store.insert_reminder.await_args.kwargs
    assert kwargs["run_at"] == datetime(2024, 7, 1, 7, 0, tzinfo=timezone.utc)
    assert kwargs["timezone"] == "Europe/Berlin"
    assert kwargs["recurrence"] == "FREQ=WEEKLY"


@pytest.mark.asyncio
async def test_create_reminder_rejects_bad_recurrence(relay_config, mock_db_pool):
    service = ReminderService(relay_config, mock_db_pool)
    service.store = _mock_reminder_store()

    with pytest.raises(InvalidRecurrenceError):
        await service.create_reminder(
            owner_id="tenant-1",
            recipient="123@c.us",
            message="hi",
            run_at=datetime.now(timezone.utc),
            recurrence="NOT A RULE",
        )
    service.store.insert_reminder.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_missing_reminder(relay_config, mock_db_pool):
    service = ReminderService(relay_config, mock_db_pool)
    service.store = _mock_reminder_store()
    service.store.cancel_reminder.return_value = False

    with pytest.raises(ReminderNotFoundError):
        await service.cancel_reminder(uuid4(), "tenant-1")


@pytest.mark.asyncio
async def test_execute_one_off_completes(relay_config, mock_db_pool, ready_supervisor):
    executor = _executor(relay_config, mock_db_pool, ready_supervisor)
    reminder = _reminder()

    assert await executor.execute(reminder) == RunStatus.SUCCESS

    ready_supervisor.send.assert_awaited_once_with("123@c.us", "Your appointment is tomorrow")
    executor.store.record_run.assert_awaited_once_with(reminder.id, RunStatus.SUCCESS)
    executor.store.mark_completed.assert_awaited_once_with(reminder.id)
    executor.store.schedule_next.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_recurring_schedules_next(relay_config, mock_db_pool, ready_supervisor):
    executor = _executor(relay_config, mock_db_pool, ready_supervisor)
    reminder = _reminder(recurrence="FREQ=HOURLY")

    await executor.execute(reminder)

    reminder_id, next_run_at = executor.store.schedule_next.await_args.args
    assert reminder_id == reminder.id
    assert next_run_at > datetime.now(timezone.utc)
    executor.store.mark_completed.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_without_local_session_fails(relay_config, mock_db_pool):
    """Default policy: a send failure is recorded and the reminder fails."""
    executor = _executor(relay_config, mock_db_pool, None)
    reminder = _reminder()

    assert await executor.execute(reminder) == RunStatus.FAILED

    assert executor.store.record_run.await_args.args[:2] == (reminder.id, RunStatus.FAILED)
    executor.store.mark_failed.assert_awaited_once()
    executor.store.schedule_retry.assert_not_awaited()


@pytest.mark.asyncio
async def test_retry_policy_backs_off(mock_db_pool, ready_supervisor):
    config = RelayConfig(
        "dsn", "redis://", "queue", reminder_failure_policy="retry", reminder_max_attempts=3
    )
    ready_supervisor.send.side_effect = DeliveryFailedError("ws_1", "socket closed")
    executor = _executor(config, mock_db_pool, ready_supervisor)

    await executor.execute(_reminder(attempts=0))
    executor.store.schedule_retry.assert_awaited_once()
    executor.store.mark_failed.assert_not_awaited()

    await executor.execute(_reminder(attempts=2))
    executor.store.mark_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_recurring_failure_moves_to_next_occurrence(relay_config, mock_db_pool):
    executor = _executor(relay_config, mock_db_pool, None)
    reminder = _reminder(recurrence="FREQ=DAILY")

    await executor.execute(reminder)

    args = executor.store.schedule_next.await_args.args
    assert args[0] == reminder.id
    assert args[2]["type"] == "NotReadyError"
    executor.store.mark_failed.assert_not_awaited()


@pytest.mark.asyncio
async def test_reminder_loop_skips_claim_without_ready_sessions(relay_config):
    """With the owned scope nothing is claimed until a session is ready here."""
    manager = MagicMock()
    manager.ready_sessions.return_value = ()
    shutdown_event = asyncio.Event()

    with patch("session_relay.reminders.ReminderService") as service_cls:
        service = service_cls.return_value
        service.claim_due = AsyncMock(return_value=[])
        service.revert_stale_running = AsyncMock(return_value=0)

        async def stop_soon():
            await asyncio.sleep(0.05)
            shutdown_event.set()

        await asyncio.gather(
            run_reminder_loop(
                relay_config,
                MagicMock(),
                manager,
                logging.getLogger("test"),
                shutdown_event=shutdown_event,
            ),
            stop_soon(),
        )

    service.claim_due.assert_not_awaited()


@pytest.mark.asyncio
async def test_reminder_loop_claims_for_ready_sessions(relay_config):
    manager = MagicMock()
    manager.ready_sessions.return_value = ("ws_1",)
    shutdown_event = asyncio.Event()
    reminder = _reminder()

    with patch("session_relay.reminders.ReminderService") as service_cls, patch(
        "session_relay.reminders.ReminderExecutor"
    ) as executor_cls:
        service = service_cls.return_value
        service.revert_stale_running = AsyncMock(return_value=0)

        async def claim_once(limit, session_ids):
            shutdown_event.set()
            return [reminder]

        service.claim_due = AsyncMock(side_effect=claim_once)
        executor_cls.return_value.execute = AsyncMock()

        await run_reminder_loop(
            relay_config,
            MagicMock(),
            manager,
            logging.getLogger("test"),
            shutdown_event=shutdown_event,
        )

    service.claim_due.assert_awaited_once_with(relay_config.reminder_batch_size, ("ws_1",))
    executor_cls.return_value.execute.assert_awaited_once_with(reminder)
