"""Lease store: atomic create-if-absent locks with owner-checked renewal.

A lease is a Redis key ``lock:session:<id>`` whose value is the owning worker
name and whose TTL bounds how long a crashed owner can hold it. Acquisition
is a single ``SET NX EX``; renewal and release run as Lua scripts so the
ownership check and the mutation happen in one server-side step.

Store failures never propagate: acquisition and renewal report ``False``
and the caller retries on its next poll cycle.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

LEASE_KEY_PREFIX = "lock:session:"
QR_KEY_PREFIX = "qr:session:"
DEFAULT_QR_TTL_SECONDS = 120

# Extend the TTL only while the stored owner still matches
RENEW_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return 0
"""

RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def session_lease_key(session_id: str) -> str:
    """Lease key for a session id."""
    return f"{LEASE_KEY_PREFIX}{session_id}"


class LeaseStore(Protocol):
    """Operations every lease backend provides."""

    async def try_acquire(self, key: str, owner: str, ttl: int) -> bool: ...

    async def renew(self, key: str, owner: str, ttl: int) -> bool: ...

    async def release(self, key: str, owner: str) -> None: ...


class RedisLeaseStore:
    """Lease store backed by a shared Redis instance."""

    def __init__(self, client: aioredis.Redis, logger: Optional[logging.Logger] = None):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self._renew_script = client.register_script(RENEW_SCRIPT)
        self._release_script = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, logger: Optional[logging.Logger] = None) -> "RedisLeaseStore":
        return cls(aioredis.Redis.from_url(url), logger=logger)

    async def try_acquire(self, key: str, owner: str, ttl: int) -> bool:
        """Set ``key=owner`` with expiry only if the key is absent."""
        try:
            result = await self.client.set(key, owner, nx=True, ex=ttl)
        except STORE_ERRORS as e:
            self.logger.error(f"Lease store unavailable acquiring {key}: {e}")
            return False
        return bool(result)

    async def renew(self, key: str, owner: str, ttl: int) -> bool:
        """Extend the lease if ``owner`` still holds it."""
        try:
            result = await self._renew_script(keys=[key], args=[owner, ttl])
        except STORE_ERRORS as e:
            self.logger.error(f"Lease store unavailable renewing {key}: {e}")
            return False
        return int(result or 0) == 1

    async def release(self, key: str, owner: str) -> None:
        """Delete the lease if ``owner`` holds it; no-op otherwise."""
        try:
            await self._release_script(keys=[key], args=[owner])
        except STORE_ERRORS as e:
            # The key expires on its own once the TTL runs out
            self.logger.warning(f"Lease store unavailable releasing {key}: {e}")


class InMemoryLeaseStore:
    """Single-process lease store with the same semantics as the Redis one.

    Useful for running one worker locally and for tests. ``clock`` returns
    seconds and defaults to ``time.monotonic``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}

    def _current(self, key: str) -> Optional[str]:
        entry = self._leases.get(key)
        if entry is None:
            return None
        owner, expires_at = entry
        if expires_at <= self._clock():
            del self._leases[key]
            return None
        return owner

    async def try_acquire(self, key: str, owner: str, ttl: int) -> bool:
        if self._current(key) is not None:
            return False
        self._leases[key] = (owner, self._clock() + ttl)
        return True

    async def renew(self, key: str, owner: str, ttl: int) -> bool:
        if self._current(key) != owner:
            return False
        self._leases[key] = (owner, self._clock() + ttl)
        return True

    async def release(self, key: str, owner: str) -> None:
        if self._current(key) == owner:
            del self._leases[key]

    def holder(self, key: str) -> Optional[str]:
        """Current owner of ``key``, if any."""
        return self._current(key)


class QrCache:
    """Latest scannable login code per session, kept in Redis with a TTL."""

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = DEFAULT_QR_TTL_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.logger = logger or logging.getLogger(__name__)

    async def set_qr(self, session_id: str, code: str) -> None:
        try:
            await self.client.set(f"{QR_KEY_PREFIX}{session_id}", code, ex=self.ttl_seconds)
        except STORE_ERRORS as e:
            self.logger.warning(f"Could not cache QR code for session {session_id}: {e}")

    async def get_qr(self, session_id: str) -> Optional[str]:
        try:
            value = await self.client.get(f"{QR_KEY_PREFIX}{session_id}")
        except STORE_ERRORS as e:
            self.logger.warning(f"Could not read QR code for session {session_id}: {e}")
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def clear_qr(self, session_id: str) -> None:
        try:
            await self.client.delete(f"{QR_KEY_PREFIX}{session_id}")
        except STORE_ERRORS as e:
            self.logger.warning(f"Could not clear QR code for session {session_id}: {e}")


class InMemoryQrCache:
    """Process-local QR cache."""

    def __init__(self):
        self._codes: Dict[str, str] = {}

    async def set_qr(self, session_id: str, code: str) -> None:
        self._codes[session_id] = code

    async def get_qr(self, session_id: str) -> Optional[str]:
        return self._codes.get(session_id)

    async def clear_qr(self, session_id: str) -> None:
        self._codes.pop(session_id, None)
