"""CLI entrypoint for a session manager worker.

A manager process drives leased sessions and, alongside them, runs the
reminder loop and the webhook dispatcher. With ``RELAY_HTTP_PORT`` set it
also serves the HTTP API, which is then able to send through the sessions
this process drives.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

import asyncpg
import redis.asyncio as aioredis

from session_relay.config import RelayConfig
from session_relay.drivers import DriverFactory, DriverRegistry, driver_registry
from session_relay.fanout import EventHub
from session_relay.lease import QrCache, RedisLeaseStore
from session_relay.manager import SessionLeaseManager
from session_relay.reminders import ReminderService, run_reminder_loop
from session_relay.service import SessionService
from session_relay.sqs import SqsClient
from session_relay.store import SessionStore
from session_relay.supervisor import SessionSupervisor
from session_relay.webhooks import WebhookProducer, run_webhook_dispatcher_loop


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: RelayConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def load_driver_factory(
    config: RelayConfig,
    registry: Optional[DriverRegistry] = None,
    logger: Optional[logging.Logger] = None,
) -> DriverFactory:
    """
    Import the configured drivers module and look up the configured driver.

    Raises:
        ValueError: If no driver is registered under ``config.driver_name``
    """
    logger = logger or logging.getLogger(__name__)
    registry = registry or driver_registry

    if config.drivers_module:
        importlib.import_module(config.drivers_module)
        logger.info(f"Loaded drivers from {config.drivers_module}")
    else:
        logger.warning("RELAY_DRIVERS_MODULE not set, only built-in drivers are available")

    factory = registry.get_factory(config.driver_name)
    if factory is None:
        raise ValueError(
            f"No driver registered as {config.driver_name!r} "
            f"(available: {sorted(registry.all_factories())})"
        )
    return factory


async def _serve_http(app, config: RelayConfig, shutdown_event: asyncio.Event, logger):
    import uvicorn

    server = uvicorn.Server(
        uvicorn.Config(app, host=config.http_host, port=config.http_port, log_config=None)
    )

    async def stop_on_shutdown():
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(stop_on_shutdown())
    logger.info(f"Serving HTTP API on {config.http_host}:{config.http_port}")
    try:
        await server.serve()
    finally:
        watcher.cancel()


def build_app(
    config: RelayConfig,
    db_pool,
    manager: SessionLeaseManager,
    qr_cache,
    hub: EventHub,
    logger: logging.Logger,
):
    """Build the FastAPI app serving the relay router for this process."""
    from fastapi import FastAPI

    from session_relay.fastapi_router import create_relay_router

    router = create_relay_router(
        session_service_factory=lambda: SessionService(
            config, db_pool, manager=manager, qr_cache=qr_cache, logger=logger
        ),
        reminder_service_factory=lambda: ReminderService(config, db_pool, logger),
        hub=hub,
        auth_token=config.api_token,
    )
    app = FastAPI(title="Session Relay")
    app.include_router(router)
    return app


async def run_manager(
    config: RelayConfig,
    shutdown_event: asyncio.Event,
    logger: Optional[logging.Logger] = None,
    driver_factory: Optional[DriverFactory] = None,
    sqs_client=None,
) -> None:
    """
    Run a manager worker until ``shutdown_event`` is set.

    Args:
        config: Relay configuration
        shutdown_event: Event that stops every loop when set
        logger: Logger instance. If None, will create default logger.
        driver_factory: Driver factory. If None, looked up from the driver registry.
        sqs_client: Awaitable SQS client. If None, wraps a default boto3 client.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if driver_factory is None:
        driver_factory = load_driver_factory(config, logger=logger)
    if sqs_client is None:
        sqs_client = SqsClient()

    logger.info("Creating database connection pool...")
    db_pool = await create_db_pool(config)
    redis_client = aioredis.Redis.from_url(config.redis_url)

    try:
        session_store = SessionStore(db_pool)
        lease_store = RedisLeaseStore(redis_client, logger=logger)
        qr_cache = QrCache(redis_client, logger=logger)
        hub = EventHub(session_store, logger=logger)
        producer = WebhookProducer(config, db_pool, logger=logger)

        def supervisor_factory(session_id: str) -> SessionSupervisor:
            return SessionSupervisor(
                session_id,
                driver_factory,
                session_store,
                producer=producer,
                hub=hub,
                qr_cache=qr_cache,
                logger=logger,
            )

        manager = SessionLeaseManager(
            config, session_store, lease_store, supervisor_factory, logger=logger
        )

        tasks = [
            manager.run(shutdown_event),
            run_reminder_loop(
                config=config,
                db_pool=db_pool,
                manager=manager,
                logger=logger,
                shutdown_event=shutdown_event,
            ),
            run_webhook_dispatcher_loop(
                config=config,
                db_pool=db_pool,
                sqs_client=sqs_client,
                logger=logger,
                shutdown_event=shutdown_event,
            ),
        ]
        if config.http_port:
            app = build_app(config, db_pool, manager, qr_cache, hub, logger)
            tasks.append(_serve_http(app, config, shutdown_event, logger))

        await asyncio.gather(*tasks)
    finally:
        logger.info("Closing Redis and database connections...")
        await redis_client.aclose()
        await db_pool.close()


def main():
    """Main entrypoint for the session manager."""
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = RelayConfig.from_env()
        driver_factory = load_driver_factory(config, logger=logger)
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
            await run_manager(config, shutdown_event, logger, driver_factory)
        except Exception as e:
            logger.error(f"Fatal error in session manager: {e}", exc_info=True)
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
