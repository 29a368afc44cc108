"""Unit tests for the database store layer, against a mocked connection."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from session_relay.errors import ReminderNotFoundError, SessionNotFoundError
from session_relay.models import ReminderStatus, RunStatus, SessionStatus
from session_relay.store import ReminderStore, SessionStore, WebhookStore, _rowcount


def _session_row(**overrides):
    row = {
        "id": "ws_1",
        "name": "Shop",
        "status": "pending",
        "api_key": "key",
        "webhook_url": "https://tenant.example.com/hook",
        "webhook_secret": None,
        "owner_id": "tenant-1",
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def _reminder_row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": uuid4(),
        "owner_id": "tenant-1",
        "session_id": "ws_1",
        "recipient": "123@c.us",
        "message": "hi",
        "run_at": now,
        "status": "running",
        "timezone": None,
        "recurrence": None,
        "attempts": 0,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_rowcount_parses_command_tag():
    assert _rowcount("UPDATE 3") == 3
    assert _rowcount("DELETE 0") == 0
    assert _rowcount(None) == 0


@pytest.mark.asyncio
async def test_upsert_coalesces_nullable_fields(mock_db_pool):
    """Re-registration never overwrites stored secrets with null."""
    mock_db_pool.conn.fetchrow = AsyncMock(return_value=_session_row())
    store = SessionStore(mock_db_pool)

    session = await store.upsert_session("ws_1", "Shop", SessionStatus.PENDING)

    query = mock_db_pool.conn.fetchrow.await_args.args[0]
    assert "ON CONFLICT (id) DO UPDATE" in query
    for column in ("api_key", "webhook_url", "webhook_secret", "owner_id"):
        assert f"{column} = COALESCE(excluded.{column}, sessions.{column})" in query
    assert "status = excluded.status" in query
    assert session.api_key == "key"
    assert session.status is SessionStatus.PENDING


@pytest.mark.asyncio
async def test_get_session_not_found(mock_db_pool):
    mock_db_pool.conn.fetchrow = AsyncMock(return_value=None)
    store = SessionStore(mock_db_pool)

    with pytest.raises(SessionNotFoundError):
        await store.get_session("ws_missing")


@pytest.mark.asyncio
async def test_set_status_reports_missing_row(mock_db_pool):
    mock_db_pool.conn.execute = AsyncMock(return_value="UPDATE 0")
    store = SessionStore(mock_db_pool)

    assert await store.set_status("ws_1", SessionStatus.READY) is False

    mock_db_pool.conn.execute.return_value = "UPDATE 1"
    assert await store.set_status("ws_1", SessionStatus.READY) is True
    assert mock_db_pool.conn.execute.await_args.args[1:] == ("ready", "ws_1")


@pytest.mark.asyncio
async def test_set_webhook_missing_session(mock_db_pool):
    mock_db_pool.conn.execute = AsyncMock(return_value="UPDATE 0")
    store = SessionStore(mock_db_pool)

    with pytest.raises(SessionNotFoundError):
        await store.set_webhook("ws_1", "https://x", None)


@pytest.mark.asyncio
async def test_list_sessions_by_status_orders_by_creation(mock_db_pool):
    mock_db_pool.conn.fetch = AsyncMock(return_value=[_session_row()])
    store = SessionStore(mock_db_pool)

    sessions = await store.list_sessions_by_status(
        [SessionStatus.PENDING, SessionStatus.DISCONNECTED]
    )

    query, statuses = mock_db_pool.conn.fetch.await_args.args
    assert "ORDER BY created_at ASC" in query
    assert statuses == ["pending", "disconnected"]
    assert [s.id for s in sessions] == ["ws_1"]


@pytest.mark.asyncio
async def test_existing_ids_short_circuits_empty(mock_db_pool):
    mock_db_pool.conn.fetch = AsyncMock()
    store = SessionStore(mock_db_pool)

    assert await store.existing_ids([]) == set()
    mock_db_pool.conn.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_claim_due_uses_skip_locked(mock_db_pool):
    first = _reminder_row(run_at=datetime(2024, 1, 1, 10, tzinfo=timezone.utc))
    second = _reminder_row(run_at=datetime(2024, 1, 1, 9, tzinfo=timezone.utc))
    mock_db_pool.conn.fetch = AsyncMock(return_value=[first, second])
    store = ReminderStore(mock_db_pool)
    now = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    reminders = await store.claim_due(3, now)

    query, *params = mock_db_pool.conn.fetch.await_args.args
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "session_id = ANY" not in query
    assert params == ["running", "planned", now, 3]
    # Earliest first regardless of RETURNING order
    assert [r.id for r in reminders] == [second["id"], first["id"]]
    assert all(r.status is ReminderStatus.RUNNING for r in reminders)


@pytest.mark.asyncio
async def test_claim_due_scoped_to_sessions(mock_db_pool):
    mock_db_pool.conn.fetch = AsyncMock(return_value=[])
    store = ReminderStore(mock_db_pool)

    await store.claim_due(5, datetime.now(timezone.utc), ("ws_1", "ws_2"))

    query, *params = mock_db_pool.conn.fetch.await_args.args
    assert "session_id = ANY($5::text[])" in query
    assert params[-1] == ["ws_1", "ws_2"]


@pytest.mark.asyncio
async def test_record_run_numbers_attempts(mock_db_pool):
    reminder_id = uuid4()
    mock_db_pool.conn.fetchrow = AsyncMock(
        return_value={
            "id": 1,
            "reminder_id": reminder_id,
            "attempt": 2,
            "status": "failed",
            "error": "boom",
            "run_at": datetime.now(timezone.utc),
        }
    )
    store = ReminderStore(mock_db_pool)

    run = await store.record_run(reminder_id, RunStatus.FAILED, error="boom")

    query = mock_db_pool.conn.fetchrow.await_args.args[0]
    assert "COALESCE(MAX(attempt), 0) + 1" in query
    assert run.attempt == 2
    assert run.status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_get_reminder_not_found(mock_db_pool):
    mock_db_pool.conn.fetchrow = AsyncMock(return_value=None)
    store = ReminderStore(mock_db_pool)

    with pytest.raises(ReminderNotFoundError):
        await store.get_reminder(uuid4())


@pytest.mark.asyncio
async def test_reminder_row_parses_json_error(mock_db_pool):
    mock_db_pool.conn.fetchrow = AsyncMock(
        return_value=_reminder_row(last_error=json.dumps({"error": "boom"}))
    )
    store = ReminderStore(mock_db_pool)

    reminder = await store.get_reminder(uuid4())

    assert reminder.last_error == {"error": "boom"}


@pytest.mark.asyncio
async def test_update_dead_only_from_running(mock_db_pool):
    mock_db_pool.conn.execute = AsyncMock(return_value="UPDATE 1")
    store = WebhookStore(mock_db_pool)
    delivery_id = uuid4()

    assert await store.update_dead(delivery_id, {"error": "boom"}) is True

    query = mock_db_pool.conn.execute.await_args.args[0]
    assert "WHERE id = $3 AND status = $4" in query
    assert mock_db_pool.conn.execute.await_args.args[-1] == "running"

    mock_db_pool.conn.execute.return_value = "UPDATE 0"
    assert await store.update_dead(delivery_id, {"error": "boom"}) is False


@pytest.mark.asyncio
async def test_revert_expired_leases_counts_both_updates(mock_db_pool):
    mock_db_pool.conn.execute = AsyncMock(side_effect=["UPDATE 2", "UPDATE 1"])
    store = WebhookStore(mock_db_pool)

    assert await store.revert_expired_leases(datetime.now(timezone.utc)) == 3
