"""Tests for per-address in-flight markers."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from peer_benchmarking.exceptions import PersistenceError
from peer_benchmarking.inflight import DEFAULT_KEY_PREFIX, InFlightRegistry


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    return redis


class TestAcquireRelease:
    """Tests for taking and releasing markers."""

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self, inflight: InFlightRegistry, address: str) -> None:
        token = await inflight.acquire(address)

        assert token is not None
        assert await inflight.acquire(address) is None
        assert await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_marker_set_with_nx_and_ttl(self, mock_redis: AsyncMock, address: str) -> None:
        registry = InFlightRegistry(mock_redis, ttl_seconds=60)

        token = await registry.acquire(address)

        mock_redis.set.assert_awaited_once_with(f"{DEFAULT_KEY_PREFIX}{address}", token, nx=True, ex=60)

    @pytest.mark.asyncio
    async def test_acquire_returns_none_when_set_refused(self, mock_redis: AsyncMock, address: str) -> None:
        mock_redis.set.return_value = None
        registry = InFlightRegistry(mock_redis)

        assert await registry.acquire(address) is None

    @pytest.mark.asyncio
    async def test_keys_are_case_insensitive(self, inflight: InFlightRegistry, address: str) -> None:
        await inflight.acquire(address.upper())
        assert await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_release_with_token(self, inflight: InFlightRegistry, address: str) -> None:
        token = await inflight.acquire(address)
        assert token is not None

        assert await inflight.release(address, token)
        assert not await inflight.is_held(address)
        assert await inflight.acquire(address) is not None

    @pytest.mark.asyncio
    async def test_release_with_wrong_token_keeps_marker(self, inflight: InFlightRegistry, address: str) -> None:
        await inflight.acquire(address)

        assert not await inflight.release(address, "someone-else")
        assert await inflight.is_held(address)


class TestHold:
    """Tests for the hold context manager."""

    @pytest.mark.asyncio
    async def test_hold_acquires_and_releases(self, inflight: InFlightRegistry, address: str) -> None:
        async with inflight.hold(address) as acquired:
            assert acquired
            assert await inflight.is_held(address)
        assert not await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_hold_when_taken(self, inflight: InFlightRegistry, address: str) -> None:
        await inflight.acquire(address)

        async with inflight.hold(address) as acquired:
            assert not acquired
        assert await inflight.is_held(address)

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, inflight: InFlightRegistry, address: str) -> None:
        with pytest.raises(RuntimeError):
            async with inflight.hold(address):
                raise RuntimeError("boom")
        assert not await inflight.is_held(address)


class TestWaitReleased:
    """Tests for waiting on another holder."""

    @pytest.mark.asyncio
    async def test_returns_immediately_when_free(self, inflight: InFlightRegistry, address: str) -> None:
        assert await inflight.wait_released(address, timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_times_out(self, inflight: InFlightRegistry, address: str) -> None:
        await inflight.acquire(address)
        assert not await inflight.wait_released(address, timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_sees_release(self, inflight: InFlightRegistry, address: str) -> None:
        token = await inflight.acquire(address)
        assert token is not None

        async def release_later() -> None:
            await asyncio.sleep(0.03)
            await inflight.release(address, token)

        task = asyncio.create_task(release_later())
        assert await inflight.wait_released(address, timeout_seconds=2)
        await task


class TestRedisFailures:
    """Tests for Redis error mapping."""

    @pytest.mark.asyncio
    async def test_acquire_failure(self, mock_redis: AsyncMock, address: str) -> None:
        mock_redis.set.side_effect = RedisConnectionError("refused")
        registry = InFlightRegistry(mock_redis)

        with pytest.raises(PersistenceError):
            await registry.acquire(address)

    @pytest.mark.asyncio
    async def test_lookup_failure(self, mock_redis: AsyncMock, address: str) -> None:
        mock_redis.exists.side_effect = RedisConnectionError("refused")
        registry = InFlightRegistry(mock_redis)

        with pytest.raises(PersistenceError):
            await registry.is_held(address)

    @pytest.mark.asyncio
    async def test_hold_swallows_release_failure(self, mock_redis: AsyncMock, address: str) -> None:
        mock_redis.get.side_effect = RedisConnectionError("refused")
        registry = InFlightRegistry(mock_redis)

        async with registry.hold(address) as acquired:
            assert acquired
        mock_redis.delete.assert_not_awaited()
