"""Per-address in-flight markers backed by Redis.

A marker is held while an address is being recomputed, so a cache-miss
read and a scheduled job never both compute the same address. Markers
carry a TTL so a crashed holder cannot block an address forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import RedisError

from peer_benchmarking.exceptions import PersistenceError

logger = logging.getLogger(__name__)

# Default values
DEFAULT_TTL_SECONDS = 120
DEFAULT_KEY_PREFIX = "benchmark:inflight:"
DEFAULT_POLL_INTERVAL_SECONDS = 0.1


class InFlightRegistry:
    """Tracks which addresses are currently being recomputed.

    Acquisition uses ``SET NX EX``. Release deletes the key only when the
    stored token is the one handed out by ``acquire``, so a holder whose
    marker expired cannot release a marker taken over by someone else.

    Example:
        ```python
        registry = InFlightRegistry(Redis.from_url("redis://localhost:6379"))
        async with registry.hold(address) as acquired:
            if acquired:
                ...  # recompute
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the registry.

        Args:
            redis: Redis async client.
            ttl_seconds: Marker lifetime.
            key_prefix: Prefix for marker keys.
            poll_interval_seconds: Poll interval used by wait_released.
        """
        self._redis = redis
        self._ttl = ttl_seconds
        self._key_prefix = key_prefix
        self._poll_interval = poll_interval_seconds

    def _key(self, address: str) -> str:
        return f"{self._key_prefix}{address.lower()}"

    async def acquire(self, address: str) -> str | None:
        """Try to take the marker.

        Returns:
            A release token, or None if another holder has the marker.
        """
        token = uuid.uuid4().hex
        try:
            was_set = await self._redis.set(self._key(address), token, nx=True, ex=self._ttl)
        except RedisError as e:
            raise PersistenceError(f"In-flight marker acquire failed: {e}") from e
        return token if was_set else None

    async def release(self, address: str, token: str) -> bool:
        """Release the marker if ``token`` still owns it."""
        key = self._key(address)
        try:
            current = await self._redis.get(key)
            if isinstance(current, bytes):
                current = current.decode()
            if current != token:
                return False
            deleted = await self._redis.delete(key)
        except RedisError as e:
            raise PersistenceError(f"In-flight marker release failed: {e}") from e
        return int(deleted) > 0

    async def is_held(self, address: str) -> bool:
        try:
            return int(await self._redis.exists(self._key(address))) > 0
        except RedisError as e:
            raise PersistenceError(f"In-flight marker lookup failed: {e}") from e

    async def wait_released(self, address: str, timeout_seconds: float) -> bool:
        """Poll until the marker is gone or ``timeout_seconds`` elapse.

        Returns:
            True if the marker was released within the timeout.
        """
        deadline = time.monotonic() + timeout_seconds
        while await self.is_held(address):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self._poll_interval)
        return True

    @asynccontextmanager
    async def hold(self, address: str) -> AsyncIterator[bool]:
        """Hold the marker for the duration of the block.

        Yields:
            True if the marker was acquired, False if it is held elsewhere.
        """
        token = await self.acquire(address)
        try:
            yield token is not None
        finally:
            if token is not None:
                try:
                    await self.release(address, token)
                except PersistenceError as e:
                    # The TTL clears the marker eventually
                    logger.warning("Failed to release in-flight marker for %s: %s", address, e)
