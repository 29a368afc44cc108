"""High-level service layer for tenant session operations."""

import logging
import secrets
from typing import Any, Optional
from uuid import uuid4

import asyncpg

from session_relay.config import RelayConfig
from session_relay.errors import NotReadyError, SessionNotFoundError
from session_relay.models import Session, SessionStatus
from session_relay.store import SessionStore


def generate_key() -> str:
    """Random hex token for API keys and webhook secrets."""
    return secrets.token_hex(24)


class SessionService:
    """High-level API for session operations.

    ``manager`` is the lease manager of the current process, when there is
    one; it is used to tear down a locally driven session on deletion and to
    send messages through local supervisors. Sessions driven by another
    worker are stopped by that worker's next poll once their row is gone.
    """

    def __init__(
        self,
        config: RelayConfig,
        db_pool: asyncpg.Pool,
        manager: Any = None,
        qr_cache: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = SessionStore(db_pool)
        self.manager = manager
        self.qr_cache = qr_cache
        self.logger = logger or logging.getLogger(__name__)

    async def create_session(
        self,
        *,
        name: str,
        owner_id: Optional[str] = None,
        session_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> Session:
        """
        Register a session in pending state.

        Re-registering an existing id keeps its API key and webhook settings
        unless new values are given.
        """
        session = await self.store.upsert_session(
            id=session_id or f"ws_{uuid4().hex[:12]}",
            name=name,
            status=SessionStatus.PENDING,
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            owner_id=owner_id,
        )
        self.logger.info(f"Registered session {session.id} for owner {owner_id}")
        return session

    async def get_session(self, session_id: str, owner_id: Optional[str] = None) -> Session:
        """Get a session, hiding sessions of other tenants."""
        session = await self.store.get_session(session_id)
        if owner_id is not None and session.owner_id != owner_id:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(self, owner_id: Optional[str] = None) -> list[Session]:
        return await self.store.list_sessions(owner_id)

    async def delete_session(self, session_id: str, owner_id: Optional[str] = None) -> None:
        """
        Delete the row, then tear down the live driver if local and release its lease.

        The row goes first so no poll cycle can pick the session up again once
        its lease is released.
        """
        await self.get_session(session_id, owner_id)

        await self.store.delete_session(session_id)

        if self.manager is not None:
            await self.manager.stop_session(session_id)
        if self.qr_cache is not None:
            await self.qr_cache.clear_qr(session_id)
        self.logger.info(f"Deleted session {session_id}")

    async def set_webhook(
        self,
        session_id: str,
        url: Optional[str],
        secret: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        await self.get_session(session_id, owner_id)
        await self.store.set_webhook(session_id, url, secret)
        self.logger.info(f"Updated webhook for session {session_id}")

    async def rotate_api_key(self, session_id: str, owner_id: Optional[str] = None) -> str:
        """Issue a new API key and return it; only its presence is stored visibly."""
        await self.get_session(session_id, owner_id)
        api_key = generate_key()
        await self.store.set_api_key(session_id, api_key)
        self.logger.info(f"Issued new API key for session {session_id}")
        return api_key

    async def get_qr(self, session_id: str, owner_id: Optional[str] = None) -> Optional[str]:
        await self.get_session(session_id, owner_id)
        if self.qr_cache is None:
            return None
        return await self.qr_cache.get_qr(session_id)

    async def send_message(
        self,
        session_id: str,
        target: str,
        content: Any,
        owner_id: Optional[str] = None,
    ) -> Any:
        """
        Send through a session driven by this process.

        Raises:
            NotReadyError: If the session is not driven here or not ready
        """
        await self.get_session(session_id, owner_id)
        supervisor = self.manager.get_supervisor(session_id) if self.manager else None
        if supervisor is None:
            raise NotReadyError(session_id, "not driven by this worker")
        return await supervisor.send(target, content)
