"""FastAPI router for the session relay HTTP API."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from session_relay.errors import (
    DeliveryFailedError,
    InvalidRecurrenceError,
    NotReadyError,
    ReminderNotFoundError,
    SessionNotFoundError,
)
from session_relay.fanout import TOPICS, EventHub, FanoutEvent, Subscription
from session_relay.reminders import ReminderService
from session_relay.service import SessionService

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class CreateSessionRequest(BaseModel):
    """Request model for registering a session."""

    name: str
    session_id: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class SessionResponse(BaseModel):
    """Response model for session details. Secrets are never returned."""

    id: str
    name: Optional[str] = None
    status: str
    webhook_url: Optional[str] = None
    has_api_key: bool
    has_webhook_secret: bool
    owner_id: Optional[str] = None
    created_at: Optional[str] = None


class SetWebhookRequest(BaseModel):
    url: Optional[str] = None
    secret: Optional[str] = None


class ApiKeyResponse(BaseModel):
    api_key: str


class QrResponse(BaseModel):
    qr: Optional[str] = None


class SendMessageRequest(BaseModel):
    to: str
    body: str


class SendMessageResponse(BaseModel):
    message_id: Optional[str] = None


class CreateReminderRequest(BaseModel):
    """Request model for scheduling a reminder."""

    recipient: str
    message: str
    run_at: str  # ISO8601 datetime string
    session_id: Optional[str] = None
    timezone: Optional[str] = None
    recurrence: Optional[str] = None  # RRULE, e.g. "FREQ=DAILY;COUNT=5"


class ReminderResponse(BaseModel):
    """Response model for reminder details."""

    id: str
    owner_id: str
    session_id: Optional[str] = None
    recipient: str
    message: str
    run_at: Optional[str] = None
    status: str
    timezone: Optional[str] = None
    recurrence: Optional[str] = None
    attempts: int
    last_error: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def format_sse(event_type: str, data: Dict[str, Any]) -> str:
    """Format a single SSE event payload."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def format_sse_comment(comment: str = "ping") -> str:
    return f": {comment}\n\n"


async def sse_events(
    subscription: Subscription, keepalive_seconds: float = 15.0
) -> AsyncIterator[str]:
    """Render a fan-out subscription as SSE frames, with keepalive comments."""
    while True:
        # Only the queue read is timed; a slow ownership check must not drop the event
        try:
            event: FanoutEvent = await asyncio.wait_for(
                subscription.queue.get(), timeout=keepalive_seconds
            )
        except asyncio.TimeoutError:
            yield format_sse_comment()
            continue
        if await subscription.is_visible(event):
            yield format_sse(event.kind, event.to_dict())


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (SessionNotFoundError, ReminderNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, NotReadyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, DeliveryFailedError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, (InvalidRecurrenceError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception("Unhandled error in relay API")
    return HTTPException(status_code=500, detail="Internal server error")


def create_relay_router(
    session_service_factory: Callable[[], SessionService],
    reminder_service_factory: Callable[[], ReminderService],
    hub: Optional[EventHub] = None,
    auth_token: Optional[str] = None,
    keepalive_seconds: float = 15.0,
) -> APIRouter:
    """
    Create FastAPI router for the session relay API.

    Args:
        session_service_factory: Callable that returns a SessionService instance
        reminder_service_factory: Callable that returns a ReminderService instance
        hub: Event hub backing the ``/events`` stream; the route is omitted without one
        auth_token: Optional shared token required in ``X-Relay-Token``
        keepalive_seconds: Idle time before an SSE keepalive comment is sent

    Returns:
        APIRouter instance
    """

    async def verify_auth_token(
        x_relay_token: Optional[str] = Header(None, alias="X-Relay-Token")
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_relay_token or x_relay_token != auth_token:
                raise HTTPException(status_code=401, detail="Invalid or missing auth token")

    async def get_tenant(
        x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id")
    ) -> Optional[str]:
        return x_tenant_id or None

    async def require_tenant(tenant: Optional[str] = Depends(get_tenant)) -> str:
        if not tenant:
            raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
        return tenant

    async def get_session_service() -> SessionService:
        return session_service_factory()

    async def get_reminder_service() -> ReminderService:
        return reminder_service_factory()

    router = APIRouter(dependencies=[Depends(verify_auth_token)])

    @router.post("/sessions", response_model=SessionResponse)
    async def create_session(
        request: CreateSessionRequest,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        """Register a session; a worker picks it up on its next poll."""
        try:
            session = await service.create_session(
                name=request.name,
                owner_id=tenant,
                session_id=request.session_id,
                webhook_url=request.webhook_url,
                webhook_secret=request.webhook_secret,
            )
        except Exception as e:
            raise _http_error(e) from e
        return SessionResponse(**session.to_dict())

    @router.get("/sessions", response_model=List[SessionResponse])
    async def list_sessions(
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            sessions = await service.list_sessions(tenant)
        except Exception as e:
            raise _http_error(e) from e
        return [SessionResponse(**s.to_dict()) for s in sessions]

    @router.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(
        session_id: str,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            session = await service.get_session(session_id, tenant)
        except Exception as e:
            raise _http_error(e) from e
        return SessionResponse(**session.to_dict())

    @router.delete("/sessions/{session_id}", status_code=204)
    async def delete_session(
        session_id: str,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            await service.delete_session(session_id, tenant)
        except Exception as e:
            raise _http_error(e) from e

    @router.put("/sessions/{session_id}/webhook", status_code=204)
    async def set_webhook(
        session_id: str,
        request: SetWebhookRequest,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            await service.set_webhook(session_id, request.url, request.secret, tenant)
        except Exception as e:
            raise _http_error(e) from e

    @router.post("/sessions/{session_id}/api-key", response_model=ApiKeyResponse)
    async def rotate_api_key(
        session_id: str,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            api_key = await service.rotate_api_key(session_id, tenant)
        except Exception as e:
            raise _http_error(e) from e
        return ApiKeyResponse(api_key=api_key)

    @router.get("/sessions/{session_id}/qr", response_model=QrResponse)
    async def get_qr(
        session_id: str,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        try:
            code = await service.get_qr(session_id, tenant)
        except Exception as e:
            raise _http_error(e) from e
        return QrResponse(qr=code)

    @router.post("/sessions/{session_id}/send", response_model=SendMessageResponse)
    async def send_message(
        session_id: str,
        request: SendMessageRequest,
        tenant: Optional[str] = Depends(get_tenant),
        service: SessionService = Depends(get_session_service),
    ):
        """Send a message through a session driven by this process."""
        try:
            message_id = await service.send_message(session_id, request.to, request.body, tenant)
        except Exception as e:
            raise _http_error(e) from e
        return SendMessageResponse(message_id=None if message_id is None else str(message_id))

    @router.post("/reminders", response_model=ReminderResponse)
    async def create_reminder(
        request: CreateReminderRequest,
        tenant: str = Depends(require_tenant),
        service: ReminderService = Depends(get_reminder_service),
    ):
        """Schedule a one-off or recurring reminder."""
        try:
            run_at = datetime.fromisoformat(request.run_at.replace("Z", "+00:00"))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid run_at format: {e}") from e

        try:
            reminder = await service.create_reminder(
                owner_id=tenant,
                recipient=request.recipient,
                message=request.message,
                run_at=run_at,
                session_id=request.session_id,
                timezone_name=request.timezone,
                recurrence=request.recurrence,
            )
        except Exception as e:
            raise _http_error(e) from e
        return ReminderResponse(**reminder.to_dict())

    @router.get("/reminders", response_model=List[ReminderResponse])
    async def list_reminders(
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        tenant: Optional[str] = Depends(get_tenant),
        service: ReminderService = Depends(get_reminder_service),
    ):
        try:
            reminders = await service.list_reminders(owner_id=tenant, status=status, limit=limit)
        except Exception as e:
            raise _http_error(e) from e
        return [ReminderResponse(**r.to_dict()) for r in reminders]

    @router.delete("/reminders/{reminder_id}", status_code=204)
    async def cancel_reminder(
        reminder_id: str,
        tenant: Optional[str] = Depends(get_tenant),
        service: ReminderService = Depends(get_reminder_service),
    ):
        try:
            reminder_uuid = UUID(reminder_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid reminder ID format") from e

        try:
            await service.cancel_reminder(reminder_uuid, tenant)
        except Exception as e:
            raise _http_error(e) from e

    if hub is not None:

        @router.get("/events")
        async def stream_events(
            topic: Optional[List[str]] = Query(None),
            tenant: Optional[str] = Depends(get_tenant),
        ) -> StreamingResponse:
            """Stream live session events as server-sent events."""
            topics = topic or list(TOPICS)
            unknown = set(topics) - set(TOPICS)
            if unknown:
                raise HTTPException(status_code=400, detail=f"Unknown topics: {sorted(unknown)}")

            async def event_generator() -> AsyncIterator[str]:
                async with hub.subscribe(topics, owner_id=tenant) as subscription:
                    async for frame in sse_events(subscription, keepalive_seconds):
                        yield frame

            return StreamingResponse(
                event_generator(), media_type="text/event-stream", headers=STREAM_HEADERS
            )

    return router
