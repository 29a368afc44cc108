"""Data models for sessions, reminders and webhook deliveries."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class SessionStatus(str, Enum):
    """Session lifecycle status values."""

    PENDING = "pending"
    READY = "ready"
    DISCONNECTED = "disconnected"


class ReminderStatus(str, Enum):
    """Reminder status values."""

    PLANNED = "planned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Outcome of a single reminder attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Webhook delivery status values."""

    PENDING = "pending"
    RUNNING = "running"
    DELIVERED = "delivered"
    DEAD = "dead"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Session:
    """Represents a session registry row."""

    def __init__(
        self,
        id: str,
        name: Optional[str],
        status: SessionStatus,
        api_key: Optional[str] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        owner_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.name = name
        self.status = SessionStatus(status) if isinstance(status, str) else status
        self.api_key = api_key
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.owner_id = owner_id
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to a dictionary, without exposing secrets."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "webhook_url": self.webhook_url,
            "has_api_key": bool(self.api_key),
            "has_webhook_secret": bool(self.webhook_secret),
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
        }


class Reminder:
    """Represents a scheduled outbound message."""

    def __init__(
        self,
        id: UUID,
        owner_id: str,
        session_id: Optional[str],
        recipient: str,
        message: str,
        run_at: datetime,
        status: ReminderStatus,
        timezone: Optional[str] = None,
        recurrence: Optional[str] = None,
        attempts: int = 0,
        last_error: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.owner_id = owner_id
        self.session_id = session_id
        self.recipient = recipient
        self.message = message
        self.run_at = run_at
        self.status = ReminderStatus(status) if isinstance(status, str) else status
        self.timezone = timezone
        self.recurrence = recurrence
        self.attempts = attempts
        self.last_error = last_error
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence)

    def to_dict(self) -> Dict[str, Any]:
        """Convert reminder to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "recipient": self.recipient,
            "message": self.message,
            "run_at": _iso(self.run_at),
            "status": self.status.value,
            "timezone": self.timezone,
            "recurrence": self.recurrence,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ReminderRun:
    """Append-only record of one reminder attempt."""

    def __init__(
        self,
        reminder_id: UUID,
        attempt: int,
        status: RunStatus,
        error: Optional[str] = None,
        run_at: Optional[datetime] = None,
        id: Optional[int] = None,
    ):
        self.id = id
        self.reminder_id = reminder_id
        self.attempt = attempt
        self.status = RunStatus(status) if isinstance(status, str) else status
        self.error = error
        self.run_at = run_at


class WebhookEvent:
    """Payload delivered to a tenant's webhook endpoint."""

    def __init__(
        self,
        session_id: str,
        event_kind: str,
        data: Dict[str, Any],
        timestamp: int,
        event_id: str,
    ):
        self.session_id = session_id
        self.event_kind = event_kind
        self.data = data
        self.timestamp = timestamp
        self.event_id = event_id

    def to_wire(self) -> Dict[str, Any]:
        """Field names as posted to webhook endpoints."""
        return {
            "sessionId": self.session_id,
            "event": self.event_kind,
            "data": self.data,
            "ts": self.timestamp,
            "eventId": self.event_id,
        }


class WebhookDelivery:
    """Durable queue row backing one webhook event."""

    def __init__(
        self,
        id: UUID,
        session_id: str,
        event_kind: str,
        data: Dict[str, Any],
        event_ts: int,
        status: DeliveryStatus,
        attempts: int,
        max_attempts: int,
        backoff_policy: Dict[str, Any],
        run_at: datetime,
        lease_expires_at: Optional[datetime] = None,
        last_error: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.session_id = session_id
        self.event_kind = event_kind
        self.data = data
        self.event_ts = event_ts
        self.status = DeliveryStatus(status) if isinstance(status, str) else status
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.backoff_policy = backoff_policy
        self.run_at = run_at
        self.lease_expires_at = lease_expires_at
        self.last_error = last_error
        self.created_at = created_at
        self.updated_at = updated_at

    def to_event(self) -> WebhookEvent:
        return WebhookEvent(
            session_id=self.session_id,
            event_kind=self.event_kind,
            data=self.data,
            timestamp=self.event_ts,
            event_id=str(self.id),
        )
