"""Multi-tenant session relay: leased session drivers, webhooks and reminders."""

from session_relay.config import RelayConfig
from session_relay.ddl import ALL_TABLES_DDL
from session_relay.drivers import Driver, DriverRegistry, driver_registry
from session_relay.errors import (
    AuthTokenError,
    DeliveryFailedError,
    InvalidRecurrenceError,
    NotReadyError,
    RelayError,
    ReminderNotFoundError,
    SessionNotFoundError,
    WebhookDeliveryError,
)
from session_relay.fanout import EventHub
from session_relay.lease import InMemoryLeaseStore, QrCache, RedisLeaseStore
from session_relay.manager import SessionLeaseManager
from session_relay.models import (
    Reminder,
    ReminderStatus,
    Session,
    SessionStatus,
    WebhookEvent,
)
from session_relay.reminders import ReminderExecutor, ReminderService, run_reminder_loop
from session_relay.service import SessionService
from session_relay.store import ReminderStore, SessionStore, WebhookStore
from session_relay.supervisor import SessionSupervisor
from session_relay.webhooks import (
    WebhookDeliveryService,
    WebhookProducer,
    run_webhook_dispatcher_loop,
    run_webhook_worker_pool,
    sign_payload,
)

__version__ = "0.1.0"

__all__ = [
    "RelayConfig",
    "ALL_TABLES_DDL",
    "Driver",
    "DriverRegistry",
    "driver_registry",
    "AuthTokenError",
    "DeliveryFailedError",
    "InvalidRecurrenceError",
    "NotReadyError",
    "RelayError",
    "ReminderNotFoundError",
    "SessionNotFoundError",
    "WebhookDeliveryError",
    "EventHub",
    "InMemoryLeaseStore",
    "QrCache",
    "RedisLeaseStore",
    "SessionLeaseManager",
    "Reminder",
    "ReminderStatus",
    "Session",
    "SessionStatus",
    "WebhookEvent",
    "ReminderExecutor",
    "ReminderService",
    "run_reminder_loop",
    "SessionService",
    "ReminderStore",
    "SessionStore",
    "WebhookStore",
    "SessionSupervisor",
    "WebhookDeliveryService",
    "WebhookProducer",
    "run_webhook_dispatcher_loop",
    "run_webhook_worker_pool",
    "sign_payload",
]
