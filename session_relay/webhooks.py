"""Webhook delivery pipeline: signing, durable enqueue, dispatch and delivery.

Events are written to the ``webhook_deliveries`` table by the producer.
The dispatcher loop leases due rows with FOR UPDATE SKIP LOCKED and pushes
their ids to SQS; a pool of consumers receives the ids, resolves the
session's webhook target at delivery time and POSTs the signed body.
Failures go back to pending with backoff until ``max_attempts`` and are then
marked dead.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import aiohttp
import asyncpg

from session_relay.backoff import calculate_backoff_with_jitter
from session_relay.config import RelayConfig
from session_relay.errors import SessionNotFoundError, WebhookDeliveryError
from session_relay.models import DeliveryStatus, WebhookDelivery, WebhookEvent
from session_relay.store import SessionStore, WebhookStore

SIGNATURE_HEADER = "X-Signature"


def sign_payload(body: bytes, secret: Optional[str]) -> str:
    """Hex HMAC-SHA-256 of ``body`` keyed by ``secret``; empty without a secret."""
    if not secret:
        return ""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def canonical_body(event: WebhookEvent) -> bytes:
    """Serialize an event exactly as it is posted and signed."""
    return json.dumps(
        event.to_wire(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookProducer:
    """Enqueues events into the durable delivery queue."""

    def __init__(
        self,
        config: RelayConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = WebhookStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def enqueue(
        self,
        session_id: str,
        event_kind: str,
        data: dict[str, Any],
        ts: Optional[int] = None,
    ) -> UUID:
        """Persist an event for delivery; never touches the webhook endpoint."""
        delivery_id = uuid4()
        await self.store.insert_delivery(
            id=delivery_id,
            session_id=session_id,
            event_kind=event_kind,
            data=data,
            event_ts=ts if ts is not None else int(time.time() * 1000),
            max_attempts=self.config.webhook_max_attempts,
            backoff_policy=self.config.webhook_backoff_policy,
            run_at=_now(),
        )
        self.logger.debug(f"Enqueued webhook {delivery_id} ({event_kind}) for session {session_id}")
        return delivery_id


class WebhookSender:
    """POSTs signed bodies to webhook endpoints."""

    def __init__(self, timeout: float = 10.0):
        """
        Initialize the sender.

        Args:
            timeout: Total request timeout in seconds
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def post(self, url: str, body: bytes, signature: str = "") -> int:
        """
        POST ``body`` to ``url``.

        Returns:
            The response status code

        Raises:
            WebhookDeliveryError: On transport errors, timeouts or non-2xx responses
        """
        headers = {"Content-Type": "application/json"}
        if signature:
            headers[SIGNATURE_HEADER] = signature

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, data=body, headers=headers) as resp:
                    if not 200 <= resp.status < 300:
                        response_body = await resp.text()
                        raise WebhookDeliveryError(
                            status_code=resp.status,
                            message=f"Webhook endpoint rejected delivery: {response_body[:200]}",
                            response_body=response_body,
                        )
                    return resp.status

            except aiohttp.ClientError as e:
                raise WebhookDeliveryError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e
            except asyncio.TimeoutError as e:
                raise WebhookDeliveryError(status_code=0, message="Request timed out") from e


class WebhookDeliveryService:
    """High-level API over the delivery queue."""

    def __init__(
        self,
        config: RelayConfig,
        db_pool: asyncpg.Pool,
        sender: Optional[WebhookSender] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = WebhookStore(db_pool)
        self.session_store = SessionStore(db_pool)
        self.sender = sender or WebhookSender(timeout=config.webhook_timeout_seconds)
        self.logger = logger or logging.getLogger(__name__)

    async def lease_due(self, max_count: int, lease_duration: timedelta) -> list[WebhookDelivery]:
        """Atomically lease due deliveries for dispatch."""
        now = _now()
        return await self.store.lease_pending_deliveries_atomically(
            max_count, now, now + lease_duration
        )

    async def revert_expired_leases(self) -> int:
        """
        Revert deliveries whose lease expired.

        Recovers deliveries held by a consumer that crashed mid-flight.
        """
        count = await self.store.revert_expired_leases(_now())
        if count > 0:
            self.logger.info(f"Reverted {count} webhook deliveries with expired leases")
        return count

    async def mark_enqueue_failed(self, delivery_id: UUID, error: dict[str, Any]) -> None:
        await self.store.mark_enqueue_failed(delivery_id, error)
        self.logger.error(f"Webhook delivery {delivery_id} failed to enqueue to SQS")

    async def deliver(self, delivery_id: UUID) -> str:
        """
        Attempt one delivery.

        Returns a short outcome label: ``missing``, ``stale``, ``no_url``,
        ``delivered``, ``retry`` or ``dead``. Store errors propagate so the
        queue message is redelivered.
        """
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            self.logger.warning(f"Webhook delivery {delivery_id} not found")
            return "missing"

        if delivery.status != DeliveryStatus.RUNNING:
            self.logger.warning(
                f"Webhook delivery {delivery_id} is not running "
                f"(status={delivery.status.value}), skipping"
            )
            return "stale"

        # Resolve the target now so a URL change before delivery is honored
        try:
            session = await self.session_store.get_session(delivery.session_id)
        except SessionNotFoundError:
            session = None

        if session is None or not session.webhook_url:
            await self.store.update_delivered(delivery.id)
            self.logger.debug(
                f"No webhook configured for session {delivery.session_id}, "
                f"dropping delivery {delivery.id}"
            )
            return "no_url"

        body = canonical_body(delivery.to_event())
        signature = sign_payload(body, session.webhook_secret)

        try:
            await self.sender.post(session.webhook_url, body, signature)
        except WebhookDeliveryError as e:
            return await self._handle_failure(delivery, e)

        await self.store.update_delivered(delivery.id)
        self.logger.info(
            f"[webhook][ok] {delivery.id} ({delivery.event_kind}) for session {delivery.session_id}"
        )
        return "delivered"

    async def _handle_failure(self, delivery: WebhookDelivery, exc: WebhookDeliveryError) -> str:
        error = {
            "error": str(exc),
            "status_code": exc.status_code,
            "timestamp": _now().isoformat(),
        }
        next_attempt = delivery.attempts + 1

        if next_attempt < delivery.max_attempts:
            backoff_seconds = calculate_backoff_with_jitter(delivery.backoff_policy, next_attempt)
            next_run_at = _now() + timedelta(seconds=backoff_seconds)
            await self.store.update_retry(delivery.id, error, next_run_at)
            self.logger.warning(
                f"Webhook delivery {delivery.id} failed (attempt {next_attempt}/"
                f"{delivery.max_attempts}), retrying after {backoff_seconds}s: {exc}"
            )
            return "retry"

        if await self.store.update_dead(delivery.id, error):
            self.logger.error(
                f"[webhook][fail] {delivery.id} for session {delivery.session_id} "
                f"marked as dead after {delivery.max_attempts} attempts: {exc}"
            )
        return "dead"


async def run_webhook_dispatcher_loop(
    config: RelayConfig,
    db_pool: asyncpg.Pool,
    sqs_client: Any,
    logger: logging.Logger,
    batch_size: int = 100,
    loop_interval_seconds: float = 1,
    lease_reaper_interval_seconds: int = 60,
    lease_duration: timedelta = timedelta(minutes=5),
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Run the loop that leases due deliveries and sends their ids to SQS.

    Args:
        config: Relay configuration
        db_pool: Database connection pool
        sqs_client: Awaitable SQS client (see ``session_relay.sqs.SqsClient``)
        logger: Logger instance
        batch_size: Maximum deliveries leased per iteration
        loop_interval_seconds: Time to sleep between iterations
        lease_reaper_interval_seconds: Time between lease reaper runs
        lease_duration: How long a consumer may hold a delivery
        shutdown_event: Optional event to signal shutdown
    """
    service = WebhookDeliveryService(config, db_pool, logger=logger)
    queue_url = config.sqs_queue_webhooks

    logger.info("Starting webhook dispatcher loop")

    last_reaper_run = _now()

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting webhook dispatcher loop")
            break

        try:
            now = _now()
            if (now - last_reaper_run).total_seconds() >= lease_reaper_interval_seconds:
                try:
                    await service.revert_expired_leases()
                    last_reaper_run = now
                except Exception as e:
                    logger.error(f"Error in webhook lease reaper: {str(e)}", exc_info=True)

            deliveries = await service.lease_due(batch_size, lease_duration)
            if deliveries:
                logger.info(f"Leased {len(deliveries)} webhook deliveries")

            for delivery in deliveries:
                message_body = json.dumps({"delivery_id": str(delivery.id)})
                try:
                    await sqs_client.send_message(QueueUrl=queue_url, MessageBody=message_body)
                    logger.debug(f"Sent delivery {delivery.id} to SQS queue {queue_url}")
                except Exception as e:
                    logger.error(f"Failed to send delivery {delivery.id} to SQS: {str(e)}")
                    error = {
                        "error": f"Failed to send to SQS: {str(e)}",
                        "timestamp": _now().isoformat(),
                    }
                    await service.mark_enqueue_failed(delivery.id, error)

        except Exception as e:
            logger.error(f"Error in webhook dispatcher loop: {str(e)}", exc_info=True)

        await asyncio.sleep(loop_interval_seconds)


async def process_webhook_message(
    service: WebhookDeliveryService,
    sqs_client: Any,
    queue_url: str,
    message: dict[str, Any],
    logger: logging.Logger,
) -> None:
    """Deliver one SQS message and delete it unless processing raised."""
    receipt_handle = message["ReceiptHandle"]
    try:
        body = json.loads(message["Body"])
        delivery_id = UUID(body["delivery_id"])
    except (KeyError, ValueError) as e:
        logger.error(f"Discarding malformed webhook message: {e}")
        await sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        return

    try:
        await service.deliver(delivery_id)
    except Exception as e:
        logger.error(f"Error processing webhook delivery {delivery_id}: {str(e)}", exc_info=True)
        # Don't delete message - it will become visible again
        return

    await sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)


async def _consume_loop(
    consumer_id: int,
    service: WebhookDeliveryService,
    sqs_client: Any,
    queue_url: str,
    logger: logging.Logger,
    max_messages: int,
    wait_time_seconds: int,
    shutdown_event: asyncio.Event,
) -> None:
    logger.info(f"Webhook consumer {consumer_id} started for queue {queue_url}")

    while not shutdown_event.is_set():
        try:
            response = await sqs_client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=wait_time_seconds,
                AttributeNames=["All"],
            )
            messages = response.get("Messages", [])
            if not messages:
                continue

            for message in messages:
                await process_webhook_message(service, sqs_client, queue_url, message, logger)

        except Exception as e:
            logger.error(f"Error in webhook consumer {consumer_id}: {str(e)}", exc_info=True)
            await asyncio.sleep(5)

    logger.info(f"Webhook consumer {consumer_id} stopped")


async def run_webhook_worker_pool(
    config: RelayConfig,
    db_pool: asyncpg.Pool,
    sqs_client: Any,
    logger: logging.Logger,
    sender: Optional[WebhookSender] = None,
    max_messages: int = 1,
    wait_time_seconds: int = 20,
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Run ``config.webhook_concurrency`` consumers against the webhook queue.

    Each consumer handles one delivery at a time, so at most
    ``webhook_concurrency`` POSTs are in flight per process.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    service = WebhookDeliveryService(config, db_pool, sender=sender, logger=logger)
    queue_url = config.sqs_queue_webhooks

    await asyncio.gather(
        *(
            _consume_loop(
                i,
                service,
                sqs_client,
                queue_url,
                logger,
                max_messages,
                wait_time_seconds,
                shutdown_event,
            )
            for i in range(config.webhook_concurrency)
        )
    )
