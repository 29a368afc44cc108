"""Scheduled outbound messages: creation, claiming and execution."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import asyncpg
from dateutil import tz
from dateutil.rrule import rrulestr

from session_relay.backoff import calculate_backoff_with_jitter
from session_relay.config import RelayConfig
from session_relay.errors import (
    DeliveryFailedError,
    InvalidRecurrenceError,
    NotReadyError,
    ReminderNotFoundError,
)
from session_relay.models import Reminder, RunStatus
from session_relay.store import ReminderStore
from session_relay.supervisor import SessionSupervisor

SupervisorLookup = Callable[[str], Optional[SessionSupervisor]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_timezone(name: Optional[str]):
    if not name:
        return timezone.utc
    zone = tz.gettz(name)
    if zone is None:
        raise InvalidRecurrenceError(f"Unknown timezone {name!r}")
    return zone


def next_occurrence(
    recurrence: str,
    run_at: datetime,
    timezone_name: Optional[str] = None,
    after: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Next run time of an RRULE strictly after ``after`` (default: ``run_at``).

    The rule is evaluated in the reminder's timezone, so "every day at 09:00"
    stays at 09:00 local time across DST changes. Returns None when the rule
    is exhausted.

    Raises:
        InvalidRecurrenceError: If the rule or timezone cannot be parsed
    """
    zone = _resolve_timezone(timezone_name)
    if run_at.tzinfo is None:
        run_at = run_at.replace(tzinfo=timezone.utc)
    dtstart = run_at.astimezone(zone)
    try:
        rule = rrulestr(recurrence, dtstart=dtstart)
    except (ValueError, TypeError) as e:
        raise InvalidRecurrenceError(f"Invalid recurrence rule {recurrence!r}: {e}") from e

    reference = max(after or run_at, run_at).astimezone(zone)
    occurrence = rule.after(reference, inc=False)
    if occurrence is None:
        return None
    return occurrence.astimezone(timezone.utc)


class ReminderService:
    """High-level API for reminder operations."""

    def __init__(
        self,
        config: RelayConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = ReminderStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def create_reminder(
        self,
        *,
        owner_id: str,
        recipient: str,
        message: str,
        run_at: datetime,
        session_id: Optional[str] = None,
        timezone_name: Optional[str] = None,
        recurrence: Optional[str] = None,
    ) -> Reminder:
        """
        Create a planned reminder.

        Naive ``run_at`` values are read in ``timezone_name`` (UTC if unset).

        Raises:
            InvalidRecurrenceError: If the recurrence rule or timezone is invalid
        """
        zone = _resolve_timezone(timezone_name)
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=zone)
        run_at = run_at.astimezone(timezone.utc)

        if recurrence:
            # Parse once up front so bad rules are rejected at creation
            next_occurrence(recurrence, run_at, timezone_name)

        reminder = await self.store.insert_reminder(
            id=uuid4(),
            owner_id=owner_id,
            session_id=session_id,
            recipient=recipient,
            message=message,
            run_at=run_at,
            timezone=timezone_name,
            recurrence=recurrence,
        )
        self.logger.info(f"Created reminder {reminder.id} for owner {owner_id} at {run_at}")
        return reminder

    async def get_reminder(self, reminder_id: UUID, owner_id: Optional[str] = None) -> Reminder:
        reminder = await self.store.get_reminder(reminder_id)
        if owner_id is not None and reminder.owner_id != owner_id:
            raise ReminderNotFoundError(reminder_id)
        return reminder

    async def list_reminders(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Reminder]:
        return await self.store.list_reminders(owner_id=owner_id, status=status, limit=limit)

    async def cancel_reminder(self, reminder_id: UUID, owner_id: Optional[str] = None) -> None:
        """
        Cancel a planned reminder.

        Raises:
            ReminderNotFoundError: If no planned reminder matches
        """
        if not await self.store.cancel_reminder(reminder_id, owner_id):
            raise ReminderNotFoundError(reminder_id)
        self.logger.info(f"Cancelled reminder {reminder_id}")

    async def claim_due(
        self, limit: int, session_ids: Optional[Iterable[str]] = None
    ) -> list[Reminder]:
        """Atomically claim due reminders."""
        return await self.store.claim_due(limit, _now(), session_ids)

    async def revert_stale_running(self, stale_after: timedelta) -> int:
        count = await self.store.revert_stale_running(_now() - stale_after)
        if count > 0:
            self.logger.warning(f"Reverted {count} reminders stuck in running")
        return count


class ReminderExecutor:
    """Executes claimed reminders through the local session supervisors."""

    def __init__(
        self,
        config: RelayConfig,
        db_pool: asyncpg.Pool,
        supervisor_lookup: SupervisorLookup,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = ReminderStore(db_pool)
        self.supervisor_lookup = supervisor_lookup
        self.logger = logger or logging.getLogger(__name__)

    async def execute(self, reminder: Reminder) -> RunStatus:
        """
        Send one claimed reminder and record the outcome.

        A successful one-off reminder completes; a recurring one returns to
        planned at its next occurrence. Failures are logged as a failed run
        and then handled by the configured failure policy.
        """
        try:
            await self._send(reminder)
        except (NotReadyError, DeliveryFailedError) as e:
            await self.store.record_run(reminder.id, RunStatus.FAILED, error=str(e))
            self.logger.warning(f"Reminder {reminder.id} failed: {e}")
            await self._handle_failure(reminder, e)
            return RunStatus.FAILED

        await self.store.record_run(reminder.id, RunStatus.SUCCESS)

        next_run_at = self._next_run_at(reminder)
        if next_run_at is not None:
            await self.store.schedule_next(reminder.id, next_run_at)
            self.logger.info(f"Reminder {reminder.id} sent, next run at {next_run_at}")
        else:
            await self.store.mark_completed(reminder.id)
            self.logger.info(f"Reminder {reminder.id} completed")
        return RunStatus.SUCCESS

    async def _send(self, reminder: Reminder) -> None:
        if reminder.session_id is None:
            raise NotReadyError("<none>", "no session")
        supervisor = self.supervisor_lookup(reminder.session_id)
        if supervisor is None:
            raise NotReadyError(reminder.session_id, "not driven by this worker")
        await supervisor.send(reminder.recipient, reminder.message)

    def _next_run_at(self, reminder: Reminder) -> Optional[datetime]:
        if not reminder.is_recurring:
            return None
        try:
            return next_occurrence(
                reminder.recurrence, reminder.run_at, reminder.timezone, after=_now()
            )
        except InvalidRecurrenceError as e:
            self.logger.error(f"Reminder {reminder.id} has an invalid recurrence: {e}")
            return None

    async def _handle_failure(self, reminder: Reminder, exc: Exception) -> None:
        error = {
            "error": str(exc),
            "type": type(exc).__name__,
            "timestamp": _now().isoformat(),
        }
        next_attempt = reminder.attempts + 1

        if (
            self.config.reminder_failure_policy == "retry"
            and next_attempt < self.config.reminder_max_attempts
        ):
            backoff_seconds = calculate_backoff_with_jitter(
                self.config.reminder_backoff_policy, next_attempt
            )
            await self.store.schedule_retry(
                reminder.id, error, _now() + timedelta(seconds=backoff_seconds)
            )
            self.logger.info(
                f"Reminder {reminder.id} will retry (attempt {next_attempt}/"
                f"{self.config.reminder_max_attempts}) after {backoff_seconds}s"
            )
            return

        # A recurring reminder gives up on this occurrence, not on the series
        next_run_at = self._next_run_at(reminder)
        if next_run_at is not None:
            await self.store.schedule_next(reminder.id, next_run_at, error)
            self.logger.warning(
                f"Reminder {reminder.id} skipped this occurrence, next run at {next_run_at}"
            )
            return

        await self.store.mark_failed(reminder.id, error)
        self.logger.error(f"Reminder {reminder.id} marked as failed")


async def run_reminder_loop(
    config: RelayConfig,
    db_pool: asyncpg.Pool,
    manager,
    logger: logging.Logger,
    stale_after: timedelta = timedelta(minutes=10),
    reaper_interval_seconds: int = 60,
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Run the loop that claims due reminders and executes them.

    Args:
        config: Relay configuration
        db_pool: Database connection pool
        manager: The worker's SessionLeaseManager, used to reach supervisors
        logger: Logger instance
        stale_after: Age after which a running reminder is considered abandoned
        reaper_interval_seconds: Time between stale-reminder reaper runs
        shutdown_event: Optional event to signal shutdown
    """
    service = ReminderService(config, db_pool, logger)
    executor = ReminderExecutor(config, db_pool, manager.get_supervisor, logger)

    logger.info(f"Starting reminder loop (claim scope: {config.reminder_claim_scope})")

    last_reaper_run = _now()

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting reminder loop")
            break

        try:
            now = _now()
            if (now - last_reaper_run).total_seconds() >= reaper_interval_seconds:
                try:
                    await service.revert_stale_running(stale_after)
                    last_reaper_run = now
                except Exception as e:
                    logger.error(f"Error in reminder reaper: {str(e)}", exc_info=True)

            session_ids = None
            if config.reminder_claim_scope == "owned":
                session_ids = manager.ready_sessions()

            if session_ids is None or session_ids:
                reminders = await service.claim_due(config.reminder_batch_size, session_ids)
                if reminders:
                    logger.info(f"Claimed {len(reminders)} due reminders")

                for reminder in reminders:
                    try:
                        await executor.execute(reminder)
                    except Exception as e:
                        logger.error(
                            f"Error executing reminder {reminder.id}: {str(e)}", exc_info=True
                        )

        except Exception as e:
            logger.error(f"Error in reminder loop: {str(e)}", exc_info=True)

        await asyncio.sleep(config.reminder_poll_interval_seconds)
