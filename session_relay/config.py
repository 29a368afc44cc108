"""Configuration for the session relay."""

import json
import os
import socket
from typing import Any, Dict, Optional

FAILURE_POLICIES = ("fail", "retry")
CLAIM_SCOPES = ("owned", "all")


def _json_env(name: str) -> Optional[Dict[str, Any]]:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {name}: {e}") from e


class RelayConfig:
    """Configuration object for the session relay."""

    def __init__(
        self,
        db_dsn: str,
        redis_url: str,
        sqs_queue_webhooks: str,
        worker_name: Optional[str] = None,
        max_sessions: int = 5,
        lease_ttl_seconds: int = 60,
        poll_interval_seconds: int = 5,
        heartbeat_interval_seconds: int = 20,
        webhook_concurrency: int = 5,
        webhook_timeout_seconds: float = 10.0,
        webhook_max_attempts: int = 5,
        webhook_backoff_policy: Optional[Dict[str, Any]] = None,
        reminder_batch_size: int = 20,
        reminder_poll_interval_seconds: int = 5,
        reminder_failure_policy: str = "fail",
        reminder_max_attempts: int = 3,
        reminder_claim_scope: str = "owned",
        reminder_backoff_policy: Optional[Dict[str, Any]] = None,
        driver_name: str = "default",
        drivers_module: Optional[str] = None,
        api_token: Optional[str] = None,
        http_host: str = "0.0.0.0",
        http_port: Optional[int] = None,
    ):
        if reminder_failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"reminder_failure_policy must be one of {FAILURE_POLICIES}, "
                f"got {reminder_failure_policy!r}"
            )
        if reminder_claim_scope not in CLAIM_SCOPES:
            raise ValueError(
                f"reminder_claim_scope must be one of {CLAIM_SCOPES}, "
                f"got {reminder_claim_scope!r}"
            )
        if heartbeat_interval_seconds >= lease_ttl_seconds:
            raise ValueError("heartbeat interval must be shorter than the lease TTL")

        self.db_dsn = db_dsn
        self.redis_url = redis_url
        self.sqs_queue_webhooks = sqs_queue_webhooks
        self.worker_name = worker_name or f"{socket.gethostname()}-{os.getpid()}"
        self.max_sessions = max_sessions
        self.lease_ttl_seconds = lease_ttl_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.webhook_concurrency = webhook_concurrency
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self.webhook_max_attempts = webhook_max_attempts
        self.webhook_backoff_policy = webhook_backoff_policy or {
            "type": "exponential",
            "base_seconds": 10,
        }
        self.reminder_batch_size = reminder_batch_size
        self.reminder_poll_interval_seconds = reminder_poll_interval_seconds
        self.reminder_failure_policy = reminder_failure_policy
        self.reminder_max_attempts = reminder_max_attempts
        self.reminder_claim_scope = reminder_claim_scope
        self.reminder_backoff_policy = reminder_backoff_policy or {
            "type": "exponential",
            "base_seconds": 60,
        }
        self.driver_name = driver_name
        self.drivers_module = drivers_module
        self.api_token = api_token
        self.http_host = http_host
        self.http_port = http_port

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("RELAY_DB_DSN")
        if not db_dsn:
            raise ValueError("RELAY_DB_DSN environment variable is required")

        redis_url = os.getenv("RELAY_REDIS_URL")
        if not redis_url:
            raise ValueError("RELAY_REDIS_URL environment variable is required")

        sqs_queue_webhooks = os.getenv("RELAY_SQS_QUEUE_WEBHOOKS")
        if not sqs_queue_webhooks:
            raise ValueError("RELAY_SQS_QUEUE_WEBHOOKS environment variable is required")

        http_port = os.getenv("RELAY_HTTP_PORT")

        return cls(
            db_dsn=db_dsn,
            redis_url=redis_url,
            sqs_queue_webhooks=sqs_queue_webhooks,
            worker_name=os.getenv("RELAY_WORKER_NAME"),
            max_sessions=int(os.getenv("RELAY_MAX_SESSIONS", "5")),
            lease_ttl_seconds=int(os.getenv("RELAY_LEASE_TTL_SECONDS", "60")),
            poll_interval_seconds=int(os.getenv("RELAY_POLL_INTERVAL_SECONDS", "5")),
            heartbeat_interval_seconds=int(
                os.getenv("RELAY_HEARTBEAT_INTERVAL_SECONDS", "20")
            ),
            webhook_concurrency=int(os.getenv("RELAY_WEBHOOK_CONCURRENCY", "5")),
            webhook_timeout_seconds=float(
                os.getenv("RELAY_WEBHOOK_TIMEOUT_SECONDS", "10")
            ),
            webhook_max_attempts=int(os.getenv("RELAY_WEBHOOK_MAX_ATTEMPTS", "5")),
            webhook_backoff_policy=_json_env("RELAY_WEBHOOK_BACKOFF_POLICY"),
            reminder_batch_size=int(os.getenv("RELAY_REMINDER_BATCH_SIZE", "20")),
            reminder_poll_interval_seconds=int(
                os.getenv("RELAY_REMINDER_POLL_INTERVAL_SECONDS", "5")
            ),
            reminder_failure_policy=os.getenv("RELAY_REMINDER_FAILURE_POLICY", "fail"),
            reminder_max_attempts=int(os.getenv("RELAY_REMINDER_MAX_ATTEMPTS", "3")),
            reminder_claim_scope=os.getenv("RELAY_REMINDER_CLAIM_SCOPE", "owned"),
            reminder_backoff_policy=_json_env("RELAY_REMINDER_BACKOFF_POLICY"),
            driver_name=os.getenv("RELAY_DRIVER", "default"),
            drivers_module=os.getenv("RELAY_DRIVERS_MODULE"),
            api_token=os.getenv("RELAY_API_TOKEN"),
            http_host=os.getenv("RELAY_HTTP_HOST", "0.0.0.0"),
            http_port=int(http_port) if http_port else None,
        )
