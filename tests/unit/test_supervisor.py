"""Unit tests for the session supervisor state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_relay.errors import DeliveryFailedError, NotReadyError
from session_relay.fanout import TOPIC_MESSAGE, TOPIC_STATUS, EventHub
from session_relay.lease import InMemoryQrCache
from session_relay.models import SessionStatus
from session_relay.supervisor import SessionSupervisor


@pytest.fixture
def producer():
    producer = MagicMock()
    producer.enqueue = AsyncMock()
    return producer


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def qr_cache():
    return InMemoryQrCache()


@pytest.fixture
def supervisor(driver_factory, fake_session_store, producer, hub, qr_cache):
    fake_session_store.add("ws_1")
    return SessionSupervisor(
        "ws_1",
        driver_factory,
        fake_session_store,
        producer=producer,
        hub=hub,
        qr_cache=qr_cache,
    )


def _drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def _enqueued_kinds(producer):
    return [c.args[1] for c in producer.enqueue.await_args_list]


@pytest.mark.asyncio
async def test_full_lifecycle(
    supervisor, driver_factory, fake_session_store, producer, hub, settle
):
    """pending -> ready -> disconnected -> pending with one update and event each."""
    async with hub.subscribe([TOPIC_STATUS]) as subscription:
        task = asyncio.create_task(supervisor.start())
        await settle()

        driver = driver_factory.latest("ws_1")
        assert driver.initialize_calls == 1
        assert supervisor.state == SessionStatus.PENDING

        driver.emit("ready")
        await settle()
        assert supervisor.is_ready

        driver.emit("disconnected", "LOGOUT")
        await settle()

        assert supervisor.state == SessionStatus.PENDING
        assert driver.initialize_calls == 2

        assert fake_session_store.status_updates == [
            ("ws_1", SessionStatus.PENDING),
            ("ws_1", SessionStatus.READY),
            ("ws_1", SessionStatus.DISCONNECTED),
            ("ws_1", SessionStatus.PENDING),
        ]
        assert _enqueued_kinds(producer) == ["ready", "disconnected", "pending"]
        assert [e.kind for e in _drain(subscription)] == ["ready", "disconnected", "pending"]

        disconnected_call = producer.enqueue.await_args_list[1]
        assert disconnected_call.args[2] == {"reason": "LOGOUT"}

        await supervisor.destroy()
        await asyncio.gather(task, return_exceptions=True)

    assert driver.destroyed


@pytest.mark.asyncio
async def test_qr_is_cached_and_published_not_webhooked(
    supervisor, driver_factory, producer, hub, qr_cache, settle
):
    async with hub.subscribe([TOPIC_STATUS]) as subscription:
        task = asyncio.create_task(supervisor.start())
        await settle()
        driver = driver_factory.latest("ws_1")

        driver.emit("qr", "2@login-code")
        await settle()

        assert await qr_cache.get_qr("ws_1") == "2@login-code"
        events = _drain(subscription)
        assert [e.kind for e in events] == ["qr"]
        assert events[0].data == {"qr": "2@login-code"}
        producer.enqueue.assert_not_awaited()

        driver.emit("ready")
        await settle()
        assert await qr_cache.get_qr("ws_1") is None

        await supervisor.destroy()
        await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_message_events_keep_state(
    supervisor, driver_factory, fake_session_store, producer, hub, settle
):
    async with hub.subscribe([TOPIC_MESSAGE]) as subscription:
        task = asyncio.create_task(supervisor.start())
        await settle()
        driver = driver_factory.latest("ws_1")
        driver.emit("ready")
        await settle()
        updates_before = len(fake_session_store.status_updates)

        driver.emit(
            "message",
            {"from": "1@c.us", "to": "2@c.us", "body": "hi", "isGroup": False, "timestamp": 1},
        )
        await settle()

        assert len(fake_session_store.status_updates) == updates_before
        assert supervisor.is_ready
        events = _drain(subscription)
        assert events[0].kind == "message"
        assert events[0].data["body"] == "hi"
        assert producer.enqueue.await_args_list[-1].args[1] == "message"

        await supervisor.destroy()
        await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_send_requires_ready(supervisor, driver_factory, settle):
    task = asyncio.create_task(supervisor.start())
    await settle()

    with pytest.raises(NotReadyError):
        await supervisor.send("1@c.us", "hello")

    driver = driver_factory.latest("ws_1")
    driver.emit("ready")
    await settle()

    assert await supervisor.send("1@c.us", "hello") == "msg-1"
    assert driver.sent == [("1@c.us", "hello")]

    await supervisor.destroy()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_send_wraps_driver_errors(supervisor, driver_factory, settle):
    task = asyncio.create_task(supervisor.start())
    await settle()
    driver = driver_factory.latest("ws_1")
    driver.emit("ready")
    await settle()

    driver.send_error = RuntimeError("socket closed")
    with pytest.raises(DeliveryFailedError):
        await supervisor.send("1@c.us", "hello")

    await supervisor.destroy()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_destroy_is_idempotent_and_stops_reconnects(
    supervisor, driver_factory, settle
):
    task = asyncio.create_task(supervisor.start())
    await settle()
    driver = driver_factory.latest("ws_1")

    await supervisor.destroy()
    await supervisor.destroy()
    await asyncio.gather(task, return_exceptions=True)

    assert supervisor.destroyed
    assert not supervisor.is_ready
    assert driver.destroyed
    assert driver.initialize_calls == 1
    assert task.done()


@pytest.mark.asyncio
async def test_destroy_before_start(supervisor, driver_factory):
    await supervisor.destroy()
    await supervisor.start()

    assert driver_factory.drivers == []


@pytest.mark.asyncio
async def test_initialize_failure_disposes_driver(supervisor, driver_factory):
    driver_factory.fail_initialize = RuntimeError("browser crashed")

    with pytest.raises(RuntimeError):
        await supervisor.start()

    assert driver_factory.latest("ws_1").destroyed
    assert supervisor.destroyed


@pytest.mark.asyncio
async def test_enqueue_failure_is_logged_not_raised(
    supervisor, driver_factory, producer, hub, settle
):
    producer.enqueue.side_effect = RuntimeError("db down")

    async with hub.subscribe([TOPIC_STATUS]) as subscription:
        task = asyncio.create_task(supervisor.start())
        await settle()
        driver_factory.latest("ws_1").emit("ready")
        await settle()

        # Fan-out still sees the event and the consumer keeps going
        assert [e.kind for e in _drain(subscription)] == ["ready"]
        assert supervisor.is_ready
        assert not task.done()

        await supervisor.destroy()
        await asyncio.gather(task, return_exceptions=True)


class LoginBlockingDriver:
    """Driver whose ``initialize`` only returns once the login completes."""

    def __init__(self, session_id):
        self.session_id = session_id
        self.callbacks = {}
        self.initialize_calls = 0
        self.logged_in = asyncio.Event()
        self.destroyed = False

    def on(self, event, callback):
        self.callbacks[event] = callback

    async def initialize(self):
        self.initialize_calls += 1
        self.logged_in.clear()
        self.callbacks["qr"](f"2@scan-me-{self.initialize_calls}")
        await self.logged_in.wait()
        self.callbacks["ready"]()

    async def send_message(self, target, content):
        return "msg-1"

    async def destroy(self):
        self.destroyed = True


@pytest.mark.asyncio
async def test_qr_surfaces_while_initialize_waits_for_login(
    fake_session_store, qr_cache, settle
):
    fake_session_store.add("ws_1")
    drivers = []

    def factory(session_id):
        drivers.append(LoginBlockingDriver(session_id))
        return drivers[-1]

    supervisor = SessionSupervisor("ws_1", factory, fake_session_store, qr_cache=qr_cache)
    task = asyncio.create_task(supervisor.start())
    await settle()

    assert await qr_cache.get_qr("ws_1") == "2@scan-me-1"
    assert supervisor.state == SessionStatus.PENDING

    drivers[0].logged_in.set()
    await settle()
    assert supervisor.is_ready
    assert await qr_cache.get_qr("ws_1") is None

    # Reconnect goes through the same blocking initialize
    drivers[0].callbacks["disconnected"]("NAVIGATION")
    await settle()
    assert drivers[0].initialize_calls == 2
    assert await qr_cache.get_qr("ws_1") == "2@scan-me-2"

    drivers[0].logged_in.set()
    await settle()
    assert supervisor.is_ready

    await supervisor.destroy()
    await asyncio.gather(task, return_exceptions=True)
    assert drivers[0].destroyed
    assert task.done()


@pytest.mark.asyncio
async def test_destroy_cancels_pending_initialize(fake_session_store, settle):
    fake_session_store.add("ws_1")
    driver = LoginBlockingDriver("ws_1")
    supervisor = SessionSupervisor("ws_1", lambda _: driver, fake_session_store)

    task = asyncio.create_task(supervisor.start())
    await settle()
    await supervisor.destroy()
    await asyncio.gather(task, return_exceptions=True)

    assert driver.destroyed
    assert not supervisor.is_ready
