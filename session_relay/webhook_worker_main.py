"""CLI entrypoint and programmatic interface for the webhook delivery worker."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from session_relay.config import RelayConfig
from session_relay.manager_main import create_db_pool, setup_logging
from session_relay.sqs import SqsClient
from session_relay.webhooks import WebhookSender, run_webhook_worker_pool


async def run_webhook_worker(
    config: Optional[RelayConfig] = None,
    db_pool=None,
    sqs_client=None,
    sender: Optional[WebhookSender] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    max_messages: int = 1,
    wait_time_seconds: int = 20,
):
    """
    Run the webhook consumer pool programmatically.

    Args:
        config: RelayConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        sqs_client: Awaitable SQS client. If None, wraps a default boto3 client.
        sender: WebhookSender. If None, one is built from the configured timeout.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        max_messages: Max messages each consumer receives per poll.
        wait_time_seconds: Long poll wait time in seconds.
    """
    if config is None:
        config = RelayConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if sqs_client is None:
        sqs_client = SqsClient()

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        await run_webhook_worker_pool(
            config=config,
            db_pool=db_pool,
            sqs_client=sqs_client,
            logger=logger,
            sender=sender,
            max_messages=max_messages,
            wait_time_seconds=wait_time_seconds,
            shutdown_event=shutdown_event,
        )
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for the webhook worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Session Relay Webhook Worker")
    parser.add_argument(
        "--max-messages",
        type=int,
        default=1,
        help="Max messages each consumer receives per poll (default: 1)",
    )
    parser.add_argument(
        "--wait-time-seconds",
        type=int,
        default=20,
        help="Long poll wait time in seconds (default: 20)",
    )

    args = parser.parse_args()

    try:
        config = RelayConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info(
                f"Starting {config.webhook_concurrency} webhook consumers "
                f"on {config.sqs_queue_webhooks}"
            )
            await run_webhook_worker(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                max_messages=args.max_messages,
                wait_time_seconds=args.wait_time_seconds,
            )
        except Exception as e:
            logger.error(f"Fatal error in webhook worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
