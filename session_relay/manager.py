"""Session lease manager.

Every worker runs one manager. Each poll cycle it reads sessions that need
a live driver, renews leases on the ones it already drives and tries to
acquire the rest up to ``max_sessions``. A lease that fails to renew means
another worker may own the session now, so the local supervisor is stopped
before the cycle moves on.

The table of owned sessions is only touched from the manager's own event
loop: the poll and heartbeat loops and the supervisor exit callbacks.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from session_relay.config import RelayConfig
from session_relay.lease import LeaseStore, session_lease_key
from session_relay.models import SessionStatus
from session_relay.store import SessionStore
from session_relay.supervisor import SessionSupervisor

CANDIDATE_STATUSES = (SessionStatus.PENDING, SessionStatus.DISCONNECTED)

SupervisorFactory = Callable[[str], SessionSupervisor]


class _OwnedSession:
    def __init__(self, supervisor: SessionSupervisor, task: asyncio.Task):
        self.supervisor = supervisor
        self.task = task


class SessionLeaseManager:
    """Acquires session leases and supervises one driver per owned session."""

    def __init__(
        self,
        config: RelayConfig,
        session_store: SessionStore,
        lease_store: LeaseStore,
        supervisor_factory: SupervisorFactory,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.session_store = session_store
        self.lease_store = lease_store
        self.supervisor_factory = supervisor_factory
        self.logger = logger or logging.getLogger(__name__)
        self.worker_name = config.worker_name
        self._owned: Dict[str, _OwnedSession] = {}
        self._pending_releases: set[asyncio.Task] = set()

    def owned_sessions(self) -> tuple[str, ...]:
        """Snapshot of session ids driven by this worker."""
        return tuple(self._owned)

    def ready_sessions(self) -> tuple[str, ...]:
        """Snapshot of owned session ids whose driver is ready."""
        return tuple(sid for sid, entry in self._owned.items() if entry.supervisor.is_ready)

    def get_supervisor(self, session_id: str) -> Optional[SessionSupervisor]:
        entry = self._owned.get(session_id)
        return entry.supervisor if entry else None

    async def poll_once(self) -> None:
        """Run one acquisition cycle."""
        candidates = await self.session_store.list_sessions_by_status(CANDIDATE_STATUSES)

        for session in candidates:
            if session.id in self._owned:
                await self._renew_or_stop(session.id)
                continue
            await self._try_claim(session.id)

        await self._recover_orphaned_ready()
        await self._stop_deleted_sessions()

    async def heartbeat_once(self) -> None:
        """Renew every owned lease, including sessions that are already ready."""
        for session_id in list(self._owned):
            await self._renew_or_stop(session_id)

    async def stop_session(self, session_id: str) -> bool:
        """Destroy the local supervisor and release its lease."""
        entry = self._owned.pop(session_id, None)
        if entry is None:
            return False
        await self._teardown(entry)
        await self.lease_store.release(session_lease_key(session_id), self.worker_name)
        self.logger.info(f"Stopped session {session_id} and released its lease")
        return True

    async def shutdown(self) -> None:
        """Stop every supervisor and release every lease."""
        for session_id in list(self._owned):
            await self.stop_session(session_id)
        if self._pending_releases:
            await asyncio.gather(*self._pending_releases, return_exceptions=True)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run the poll and heartbeat loops until shutdown."""
        self.logger.info(
            f"[manager] boot {self.worker_name} max={self.config.max_sessions}"
        )
        try:
            await asyncio.gather(
                self._loop(
                    self.poll_once, self.config.poll_interval_seconds, "poll", shutdown_event
                ),
                self._loop(
                    self.heartbeat_once,
                    self.config.heartbeat_interval_seconds,
                    "heartbeat",
                    shutdown_event,
                ),
            )
        finally:
            await self.shutdown()

    async def _loop(self, step, interval: float, name: str, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await step()
            except Exception as e:
                self.logger.error(f"Error in lease manager {name}: {str(e)}", exc_info=True)

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def _start_supervisor(self, session_id: str) -> None:
        supervisor = self.supervisor_factory(session_id)
        task = asyncio.create_task(supervisor.start(), name=f"session:{session_id}")
        entry = _OwnedSession(supervisor, task)
        self._owned[session_id] = entry
        task.add_done_callback(lambda t: self._on_supervisor_exit(session_id, entry, t))

    def _on_supervisor_exit(self, session_id: str, entry: _OwnedSession, task: asyncio.Task) -> None:
        if task.cancelled():
            self.logger.info(f"[child-exit] {session_id} cancelled")
        elif task.exception() is not None:
            self.logger.error(
                f"[child-exit] {session_id} crashed: {task.exception()!r}",
                exc_info=task.exception(),
            )
        else:
            self.logger.info(f"[child-exit] {session_id} exited")

        # stop_session and lease loss remove the entry themselves
        if self._owned.get(session_id) is not entry:
            return
        del self._owned[session_id]

        release = asyncio.ensure_future(
            self.lease_store.release(session_lease_key(session_id), self.worker_name)
        )
        self._pending_releases.add(release)
        release.add_done_callback(self._pending_releases.discard)

    async def _renew_or_stop(self, session_id: str) -> None:
        renewed = await self.lease_store.renew(
            session_lease_key(session_id), self.worker_name, self.config.lease_ttl_seconds
        )
        if renewed:
            return

        entry = self._owned.pop(session_id, None)
        if entry is None:
            return
        self.logger.warning(f"Lost lease on session {session_id}, stopping local supervisor")
        await self._teardown(entry)

    async def _try_claim(self, session_id: str) -> bool:
        if len(self._owned) >= self.config.max_sessions:
            return False

        acquired = await self.lease_store.try_acquire(
            session_lease_key(session_id), self.worker_name, self.config.lease_ttl_seconds
        )
        if not acquired:
            return False

        self.logger.info(f"[claim] {session_id} by {self.worker_name}")
        self._start_supervisor(session_id)
        return True

    async def _recover_orphaned_ready(self) -> None:
        """
        Claim ``ready`` rows whose owner died without updating the registry.

        A live owner keeps renewing its lease, so acquisition only succeeds
        once the dead owner's lease has expired.
        """
        if len(self._owned) >= self.config.max_sessions:
            return
        ready = await self.session_store.list_sessions_by_status([SessionStatus.READY])
        for session in ready:
            if session.id in self._owned:
                continue
            if await self._try_claim(session.id):
                self.logger.warning(
                    f"Recovered session {session.id} left ready by an expired owner"
                )

    async def _stop_deleted_sessions(self) -> None:
        if not self._owned:
            return
        existing = await self.session_store.existing_ids(self._owned)
        for session_id in [sid for sid in self._owned if sid not in existing]:
            self.logger.info(f"Session {session_id} was deleted, stopping it")
            await self.stop_session(session_id)

    async def _teardown(self, entry: _OwnedSession) -> None:
        await entry.supervisor.destroy()
        if not entry.task.done():
            try:
                await entry.task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.debug(f"Supervisor ended with error during teardown: {e}")
