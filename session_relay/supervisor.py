"""Supervisor for one session driver.

The driver pushes events through callbacks; the supervisor queues them on a
bounded per-session channel and a single consumer applies them to the state
machine in arrival order::

    pending --ready--> ready --disconnected--> disconnected --reinitialize--> pending

Each transition persists the new status, then enqueues the webhook event and
publishes to the fan-out without either waiting on the other.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from session_relay.drivers import DRIVER_EVENTS, Driver, DriverFactory
from session_relay.errors import DeliveryFailedError, NotReadyError
from session_relay.fanout import TOPIC_MESSAGE, TOPIC_STATUS, EventHub
from session_relay.models import SessionStatus
from session_relay.store import SessionStore
from session_relay.webhooks import WebhookProducer

MESSAGE_FIELDS = ("from", "to", "body", "isGroup", "timestamp")


def _envelope_to_dict(envelope: Any) -> Dict[str, Any]:
    if isinstance(envelope, dict):
        return {field: envelope.get(field) for field in MESSAGE_FIELDS}
    return {field: getattr(envelope, field, None) for field in MESSAGE_FIELDS}


class SessionSupervisor:
    """Owns one driver instance, its lifecycle state and reconnects."""

    def __init__(
        self,
        session_id: str,
        driver_factory: DriverFactory,
        session_store: SessionStore,
        producer: Optional[WebhookProducer] = None,
        hub: Optional[EventHub] = None,
        qr_cache: Any = None,
        channel_size: int = 1000,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_id = session_id
        self.driver_factory = driver_factory
        self.session_store = session_store
        self.producer = producer
        self.hub = hub
        self.qr_cache = qr_cache
        self.logger = logger or logging.getLogger(__name__)

        self.state = SessionStatus.PENDING
        self._channel: asyncio.Queue = asyncio.Queue(maxsize=channel_size)
        self._driver: Optional[Driver] = None
        self._destroyed = False
        self._task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Future] = None
        self._closed = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self.state == SessionStatus.READY and not self._destroyed

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def start(self) -> None:
        """
        Create the driver, initialize it and process its events until destroyed.

        ``initialize`` runs alongside the event consumer, since a driver may
        only return from it after a login that needs its ``qr`` event shown.

        Raises whatever the driver's ``initialize`` raises; the caller treats
        that like a crashed session process.
        """
        if self._destroyed:
            self._closed.set()
            return
        self._task = asyncio.current_task()
        try:
            self._driver = self.driver_factory(self.session_id)
            for event in DRIVER_EVENTS:
                self._driver.on(event, self._make_callback(event))

            await self._persist_status(SessionStatus.PENDING)
            self.state = SessionStatus.PENDING
            self.logger.info(f"Starting driver for session {self.session_id}")
            self._begin_initialize()

            while not self._destroyed:
                event, args = await self._next_event()
                await self._handle(event, args)
        finally:
            self._cancel_initialize()
            self._closed.set()
            if self._destroyed is False:
                # Crashed or returned on its own; make sure the driver is gone
                self._destroyed = True
                await self._dispose_driver()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def destroy(self) -> None:
        """Stop reconnecting and dispose the driver. Safe to call twice."""
        if self._destroyed:
            return
        self._destroyed = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._cancel_initialize()
        await self._dispose_driver()
        self.logger.info(f"Destroyed supervisor for session {self.session_id}")

    async def send(self, target: str, content: Any) -> Any:
        """
        Send a message through the driver.

        Returns:
            The driver's message id

        Raises:
            NotReadyError: If the driver has not reached ready
            DeliveryFailedError: If the driver reports a transport error
        """
        if not self.is_ready or self._driver is None:
            raise NotReadyError(self.session_id, self.state.value)
        try:
            result = await self._driver.send_message(target, content)
        except Exception as e:
            raise DeliveryFailedError(self.session_id, str(e)) from e
        return getattr(result, "id", result)

    def _make_callback(self, event: str):
        def callback(*args):
            try:
                self._channel.put_nowait((event, args))
            except asyncio.QueueFull:
                self.logger.error(
                    f"Event channel full for session {self.session_id}, dropped {event}"
                )

        return callback

    async def _handle(self, event: str, args: tuple) -> None:
        if event == "qr":
            await self._on_qr(args[0] if args else "")
        elif event == "ready":
            await self._on_ready()
        elif event == "disconnected":
            await self._on_disconnected(args[0] if args else None)
        elif event == "message":
            await self._emit("message", _envelope_to_dict(args[0] if args else {}), TOPIC_MESSAGE)

    async def _on_qr(self, code: str) -> None:
        if self.qr_cache is not None:
            await self.qr_cache.set_qr(self.session_id, code)
        if self.hub is not None:
            self.hub.publish(TOPIC_STATUS, self.session_id, "qr", {"qr": code})
        if self.state != SessionStatus.PENDING:
            await self._transition(SessionStatus.PENDING, {})

    async def _on_ready(self) -> None:
        if self.qr_cache is not None:
            await self.qr_cache.clear_qr(self.session_id)
        await self._transition(SessionStatus.READY, {})

    async def _on_disconnected(self, reason: Any) -> None:
        await self._transition(SessionStatus.DISCONNECTED, {"reason": reason})
        if self._destroyed:
            return
        await self._transition(SessionStatus.PENDING, {})
        self.logger.info(f"Reinitializing driver for session {self.session_id}")
        self._cancel_initialize()
        self._begin_initialize()

    def _begin_initialize(self) -> None:
        self._init_task = asyncio.ensure_future(self._driver.initialize())

    def _cancel_initialize(self) -> None:
        init_task, self._init_task = self._init_task, None
        if init_task is not None and not init_task.done():
            init_task.cancel()

    def _raise_initialize_error(self) -> None:
        init_task = self._init_task
        if init_task is None or not init_task.done():
            return
        self._init_task = None
        if not init_task.cancelled() and init_task.exception() is not None:
            raise init_task.exception()

    async def _next_event(self):
        """Wait for the next driver event; raise if ``initialize`` fails first."""
        getter = asyncio.ensure_future(self._channel.get())
        try:
            while True:
                self._raise_initialize_error()
                if self._init_task is None:
                    return await getter
                await asyncio.wait(
                    {getter, self._init_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter.done():
                    return getter.result()
        finally:
            if not getter.done():
                getter.cancel()

    async def _transition(self, status: SessionStatus, data: Dict[str, Any]) -> None:
        self.state = status
        await self._persist_status(status)
        self.logger.info(f"Session {self.session_id} is now {status.value}")
        await self._emit(status.value, data, TOPIC_STATUS)

    async def _persist_status(self, status: SessionStatus) -> None:
        try:
            found = await self.session_store.set_status(self.session_id, status)
        except Exception as e:
            self.logger.error(
                f"Failed to persist status {status.value} for session {self.session_id}: {e}",
                exc_info=True,
            )
            return
        if not found:
            self.logger.warning(f"Session {self.session_id} no longer exists in the registry")

    async def _emit(self, kind: str, data: Dict[str, Any], topic: str) -> None:
        ts = int(time.time() * 1000)
        webhook_task = None
        if self.producer is not None:
            webhook_task = asyncio.ensure_future(
                self.producer.enqueue(self.session_id, kind, data, ts)
            )
        if self.hub is not None:
            self.hub.publish(topic, self.session_id, kind, data)
        if webhook_task is not None:
            try:
                await webhook_task
            except Exception as e:
                self.logger.error(
                    f"Failed to enqueue {kind} webhook for session {self.session_id}: {e}",
                    exc_info=True,
                )

    async def _dispose_driver(self) -> None:
        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            await driver.destroy()
        except Exception as e:
            self.logger.warning(f"Error destroying driver for session {self.session_id}: {e}")
