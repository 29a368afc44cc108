"""Database store layer for sessions, reminders and webhook deliveries."""

import json
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

import asyncpg

from session_relay.errors import ReminderNotFoundError, SessionNotFoundError
from session_relay.models import (
    DeliveryStatus,
    Reminder,
    ReminderRun,
    ReminderStatus,
    RunStatus,
    Session,
    SessionStatus,
    WebhookDelivery,
)


def _rowcount(result: Optional[str]) -> int:
    # asyncpg returns command tags like "UPDATE 5"
    return int(result.split()[-1]) if result else 0


def _json_field(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class SessionStore:
    """Session registry backed by the ``sessions`` table."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def upsert_session(
        self,
        id: str,
        name: Optional[str],
        status: SessionStatus = SessionStatus.PENDING,
        api_key: Optional[str] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        owner_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Session:
        """
        Insert or re-register a session.

        Nullable secrets and the webhook target are coalesced on conflict, so
        a re-registration that passes None keeps previously issued values.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sessions (
                    id, name, status, api_key, webhook_url, webhook_secret,
                    owner_id, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, now()))
                ON CONFLICT (id) DO UPDATE SET
                    name = COALESCE(excluded.name, sessions.name),
                    status = excluded.status,
                    api_key = COALESCE(excluded.api_key, sessions.api_key),
                    webhook_url = COALESCE(excluded.webhook_url, sessions.webhook_url),
                    webhook_secret = COALESCE(excluded.webhook_secret, sessions.webhook_secret),
                    owner_id = COALESCE(excluded.owner_id, sessions.owner_id)
                RETURNING *
                """,
                id,
                name,
                SessionStatus(status).value,
                api_key,
                webhook_url,
                webhook_secret,
                owner_id,
                created_at,
            )

        return self._row_to_session(row)

    async def get_session(self, session_id: str) -> Session:
        """Get a session by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM sessions WHERE id = $1", session_id)

        if not row:
            raise SessionNotFoundError(session_id)

        return self._row_to_session(row)

    async def list_sessions(self, owner_id: Optional[str] = None) -> list[Session]:
        """List sessions, newest first, optionally for one owner."""
        async with self.db_pool.acquire() as conn:
            if owner_id is None:
                rows = await conn.fetch("SELECT * FROM sessions ORDER BY created_at DESC")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM sessions WHERE owner_id = $1 ORDER BY created_at DESC",
                    owner_id,
                )

        return [self._row_to_session(row) for row in rows]

    async def list_sessions_by_status(
        self, statuses: Iterable[SessionStatus]
    ) -> list[Session]:
        """List sessions in the given states, in registry (creation) order."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM sessions
                WHERE status = ANY($1::text[])
                ORDER BY created_at ASC, id ASC
                """,
                [SessionStatus(s).value for s in statuses],
            )

        return [self._row_to_session(row) for row in rows]

    async def existing_ids(self, session_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``session_ids`` that still exist."""
        ids = list(session_ids)
        if not ids:
            return set()
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id FROM sessions WHERE id = ANY($1::text[])", ids
            )
        return {row["id"] for row in rows}

    async def is_owned_by(self, session_id: str, owner_id: str) -> bool:
        """Check whether a session belongs to a tenant."""
        async with self.db_pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM sessions WHERE id = $1 AND owner_id = $2",
                session_id,
                owner_id,
            )
        return found is not None

    async def set_status(self, session_id: str, status: SessionStatus) -> bool:
        """Persist a lifecycle status. Returns False if the row is gone."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE sessions SET status = $1 WHERE id = $2",
                SessionStatus(status).value,
                session_id,
            )
        return _rowcount(result) > 0

    async def set_webhook(
        self, session_id: str, url: Optional[str], secret: Optional[str]
    ) -> None:
        """Replace the webhook target and secret."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE sessions SET webhook_url = $1, webhook_secret = $2 WHERE id = $3",
                url,
                secret,
                session_id,
            )
        if _rowcount(result) == 0:
            raise SessionNotFoundError(session_id)

    async def set_api_key(self, session_id: str, api_key: str) -> None:
        """Replace the tenant-facing API key."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE sessions SET api_key = $1 WHERE id = $2", api_key, session_id
            )
        if _rowcount(result) == 0:
            raise SessionNotFoundError(session_id)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session row. Returns False if it did not exist."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("DELETE FROM sessions WHERE id = $1", session_id)
        return _rowcount(result) > 0

    def _row_to_session(self, row: asyncpg.Record) -> Session:
        """Convert a database row to a Session model."""
        return Session(
            id=row["id"],
            name=row["name"],
            status=SessionStatus(row["status"]),
            api_key=row["api_key"],
            webhook_url=row["webhook_url"],
            webhook_secret=row["webhook_secret"],
            owner_id=row["owner_id"],
            created_at=row["created_at"],
        )


class ReminderStore:
    """Reminder table, claim protocol and append-only run log."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_reminder(
        self,
        id: UUID,
        owner_id: str,
        session_id: Optional[str],
        recipient: str,
        message: str,
        run_at: datetime,
        timezone: Optional[str] = None,
        recurrence: Optional[str] = None,
    ) -> Reminder:
        """Insert a new planned reminder."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO reminders (
                    id, owner_id, session_id, recipient, message,
                    run_at, status, timezone, recurrence
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
                """,
                id,
                owner_id,
                session_id,
                recipient,
                message,
                run_at,
                ReminderStatus.PLANNED.value,
                timezone,
                recurrence,
            )

        return self._row_to_reminder(row)

    async def get_reminder(self, reminder_id: UUID) -> Reminder:
        """Get a reminder by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM reminders WHERE id = $1", reminder_id)

        if not row:
            raise ReminderNotFoundError(reminder_id)

        return self._row_to_reminder(row)

    async def list_reminders(
        self,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Reminder]:
        """List reminders with optional filters."""
        query = "SELECT * FROM reminders WHERE 1=1"
        params = []
        param_idx = 1

        if owner_id:
            query += f" AND owner_id = ${param_idx}"
            params.append(owner_id)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY run_at ASC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_reminder(row) for row in rows]

    async def claim_due(
        self,
        limit: int,
        now: datetime,
        session_ids: Optional[Iterable[str]] = None,
    ) -> list[Reminder]:
        """
        Atomically claim due reminders for execution.

        Selects up to ``limit`` planned reminders with ``run_at <= now``,
        earliest first, locking them with FOR UPDATE SKIP LOCKED so rows
        held by a concurrent claimer are skipped instead of waited on, and
        flips them to running in the same statement.

        When ``session_ids`` is given only reminders for those sessions are
        considered.
        """
        session_filter = ""
        params: list[Any] = [
            ReminderStatus.RUNNING.value,
            ReminderStatus.PLANNED.value,
            now,
            limit,
        ]
        if session_ids is not None:
            session_filter = "AND session_id = ANY($5::text[])"
            params.append(list(session_ids))

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE reminders
                SET status = $1, updated_at = now()
                WHERE id IN (
                    SELECT id FROM reminders
                    WHERE status = $2
                      AND run_at <= $3
                      {session_filter}
                    ORDER BY run_at ASC
                    LIMIT $4
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                *params,
            )

        reminders = [self._row_to_reminder(row) for row in rows]
        # RETURNING does not preserve the subquery order
        reminders.sort(key=lambda r: r.run_at)
        return reminders

    async def record_run(
        self,
        reminder_id: UUID,
        status: RunStatus,
        error: Optional[str] = None,
        run_at: Optional[datetime] = None,
    ) -> ReminderRun:
        """Append a run record; the attempt number is the next one for this reminder."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO reminder_runs (reminder_id, attempt, status, error, run_at)
                SELECT $1, COALESCE(MAX(attempt), 0) + 1, $2, $3, COALESCE($4, now())
                FROM reminder_runs
                WHERE reminder_id = $1
                RETURNING *
                """,
                reminder_id,
                RunStatus(status).value,
                error,
                run_at,
            )

        return ReminderRun(
            id=row["id"],
            reminder_id=row["reminder_id"],
            attempt=row["attempt"],
            status=RunStatus(row["status"]),
            error=row["error"],
            run_at=row["run_at"],
        )

    async def list_runs(self, reminder_id: UUID) -> list[ReminderRun]:
        """List run records for a reminder in attempt order."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM reminder_runs WHERE reminder_id = $1 ORDER BY attempt ASC",
                reminder_id,
            )
        return [
            ReminderRun(
                id=row["id"],
                reminder_id=row["reminder_id"],
                attempt=row["attempt"],
                status=RunStatus(row["status"]),
                error=row["error"],
                run_at=row["run_at"],
            )
            for row in rows
        ]

    async def mark_completed(self, reminder_id: UUID) -> None:
        """Mark a running reminder as completed."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reminders
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = NULL,
                    updated_at = now()
                WHERE id = $2 AND status = $3
                """,
                ReminderStatus.COMPLETED.value,
                reminder_id,
                ReminderStatus.RUNNING.value,
            )

    async def schedule_next(
        self,
        reminder_id: UUID,
        next_run_at: datetime,
        error: Optional[dict[str, Any]] = None,
    ) -> None:
        """Return a recurring reminder to planned for its next occurrence."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reminders
                SET status = $1,
                    run_at = $2,
                    attempts = 0,
                    last_error = $3,
                    updated_at = now()
                WHERE id = $4 AND status = $5
                """,
                ReminderStatus.PLANNED.value,
                next_run_at,
                json.dumps(error) if error else None,
                reminder_id,
                ReminderStatus.RUNNING.value,
            )

    async def schedule_retry(
        self, reminder_id: UUID, error: dict[str, Any], next_run_at: datetime
    ) -> None:
        """Return a failed reminder to planned with incremented attempts."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reminders
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    run_at = $3,
                    updated_at = now()
                WHERE id = $4 AND status = $5
                """,
                ReminderStatus.PLANNED.value,
                json.dumps(error),
                next_run_at,
                reminder_id,
                ReminderStatus.RUNNING.value,
            )

    async def mark_failed(self, reminder_id: UUID, error: dict[str, Any]) -> None:
        """Mark a running reminder as permanently failed."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reminders
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    updated_at = now()
                WHERE id = $3 AND status = $4
                """,
                ReminderStatus.FAILED.value,
                json.dumps(error),
                reminder_id,
                ReminderStatus.RUNNING.value,
            )

    async def cancel_reminder(self, reminder_id: UUID, owner_id: Optional[str] = None) -> bool:
        """Delete a planned reminder. Running or finished reminders are kept."""
        async with self.db_pool.acquire() as conn:
            if owner_id is None:
                result = await conn.execute(
                    "DELETE FROM reminders WHERE id = $1 AND status = $2",
                    reminder_id,
                    ReminderStatus.PLANNED.value,
                )
            else:
                result = await conn.execute(
                    "DELETE FROM reminders WHERE id = $1 AND status = $2 AND owner_id = $3",
                    reminder_id,
                    ReminderStatus.PLANNED.value,
                    owner_id,
                )
        return _rowcount(result) > 0

    async def revert_stale_running(self, older_than: datetime) -> int:
        """
        Return reminders stuck in running back to planned.

        A reminder stays running only while an executor holds it; one that
        has not been touched since ``older_than`` belonged to a crashed
        executor.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE reminders
                SET status = $1,
                    last_error = jsonb_build_object(
                        'error', 'Executor stopped before finishing',
                        'timestamp', $3::text
                    ),
                    updated_at = now()
                WHERE status = $2
                  AND updated_at < $4
                """,
                ReminderStatus.PLANNED.value,
                ReminderStatus.RUNNING.value,
                older_than.isoformat(),
                older_than,
            )
        return _rowcount(result)

    def _row_to_reminder(self, row: asyncpg.Record) -> Reminder:
        """Convert a database row to a Reminder model."""
        return Reminder(
            id=row["id"],
            owner_id=row["owner_id"],
            session_id=row["session_id"],
            recipient=row["recipient"],
            message=row["message"],
            run_at=row["run_at"],
            status=ReminderStatus(row["status"]),
            timezone=row["timezone"],
            recurrence=row["recurrence"],
            attempts=row["attempts"],
            last_error=_json_field(row["last_error"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class WebhookStore:
    """Durable queue of webhook deliveries."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_delivery(
        self,
        id: UUID,
        session_id: str,
        event_kind: str,
        data: dict[str, Any],
        event_ts: int,
        max_attempts: int,
        backoff_policy: dict[str, Any],
        run_at: datetime,
    ) -> None:
        """Insert a pending delivery."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO webhook_deliveries (
                    id, session_id, event_kind, data, event_ts, status,
                    attempts, max_attempts, backoff_policy, run_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                id,
                session_id,
                event_kind,
                json.dumps(data),
                event_ts,
                DeliveryStatus.PENDING.value,
                0,
                max_attempts,
                json.dumps(backoff_policy),
                run_at,
            )

    async def get_delivery(self, delivery_id: UUID) -> Optional[WebhookDelivery]:
        """Get a delivery by ID, or None if it no longer exists."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id
            )
        return self._row_to_delivery(row) if row else None

    async def lease_pending_deliveries_atomically(
        self, limit: int, now: datetime, lease_expires_at: datetime
    ) -> list[WebhookDelivery]:
        """
        Atomically lease due deliveries for dispatch.

        Uses FOR UPDATE SKIP LOCKED so concurrent dispatchers never lease the
        same delivery.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE webhook_deliveries
                SET status = $1, lease_expires_at = $2, updated_at = now()
                WHERE id IN (
                    SELECT id FROM webhook_deliveries
                    WHERE status = $3
                      AND run_at <= $4
                    ORDER BY run_at ASC
                    LIMIT $5
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                DeliveryStatus.RUNNING.value,
                lease_expires_at,
                DeliveryStatus.PENDING.value,
                now,
                limit,
            )

        return [self._row_to_delivery(row) for row in rows]

    async def update_delivered(self, delivery_id: UUID) -> None:
        """Mark a delivery as delivered."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    attempts = attempts + 1,
                    lease_expires_at = NULL,
                    updated_at = now()
                WHERE id = $2 AND status = $3
                """,
                DeliveryStatus.DELIVERED.value,
                delivery_id,
                DeliveryStatus.RUNNING.value,
            )

    async def update_retry(
        self, delivery_id: UUID, error: dict[str, Any], next_run_at: datetime
    ) -> None:
        """Update delivery for retry with incremented attempts."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    run_at = $3,
                    lease_expires_at = NULL,
                    updated_at = now()
                WHERE id = $4 AND status = $5
                """,
                DeliveryStatus.PENDING.value,
                json.dumps(error),
                next_run_at,
                delivery_id,
                DeliveryStatus.RUNNING.value,
            )

    async def update_dead(self, delivery_id: UUID, error: dict[str, Any]) -> bool:
        """
        Mark a delivery as dead.

        Only a running delivery transitions, so a duplicate call reports
        False instead of recording a second terminal failure.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    lease_expires_at = NULL,
                    updated_at = now()
                WHERE id = $3 AND status = $4
                """,
                DeliveryStatus.DEAD.value,
                json.dumps(error),
                delivery_id,
                DeliveryStatus.RUNNING.value,
            )
        return _rowcount(result) > 0

    async def revert_expired_leases(self, now: datetime) -> int:
        """
        Revert deliveries with expired leases back to pending or mark them dead.

        Returns the number of deliveries touched.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    attempts = attempts + 1,
                    lease_expires_at = NULL,
                    last_error = jsonb_build_object(
                        'error', 'Lease expired - worker may have crashed',
                        'timestamp', $3::text
                    ),
                    updated_at = now()
                WHERE status = $2
                  AND lease_expires_at < $4
                  AND attempts + 1 < max_attempts
                """,
                DeliveryStatus.PENDING.value,
                DeliveryStatus.RUNNING.value,
                now.isoformat(),
                now,
            )
            reverted_count = _rowcount(result)

            dead_result = await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    attempts = attempts + 1,
                    lease_expires_at = NULL,
                    last_error = jsonb_build_object(
                        'error', 'Lease expired after max attempts',
                        'timestamp', $3::text
                    ),
                    updated_at = now()
                WHERE status = $2
                  AND lease_expires_at < $4
                  AND attempts + 1 >= max_attempts
                """,
                DeliveryStatus.DEAD.value,
                DeliveryStatus.RUNNING.value,
                now.isoformat(),
                now,
            )
            dead_count = _rowcount(dead_result)

        return reverted_count + dead_count

    async def mark_enqueue_failed(self, delivery_id: UUID, error: dict[str, Any]) -> None:
        """Return a leased delivery to pending after SQS rejected it."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE webhook_deliveries
                SET status = $1,
                    lease_expires_at = NULL,
                    last_error = $2,
                    updated_at = now()
                WHERE id = $3
                """,
                DeliveryStatus.PENDING.value,
                json.dumps(error),
                delivery_id,
            )

    def _row_to_delivery(self, row: asyncpg.Record) -> WebhookDelivery:
        """Convert a database row to a WebhookDelivery model."""
        return WebhookDelivery(
            id=row["id"],
            session_id=row["session_id"],
            event_kind=row["event_kind"],
            data=_json_field(row["data"]),
            event_ts=row["event_ts"],
            status=DeliveryStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff_policy=_json_field(row["backoff_policy"]),
            run_at=row["run_at"],
            lease_expires_at=row["lease_expires_at"],
            last_error=_json_field(row["last_error"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
