"""
ScanMaster - Session Store and Store Call Helper Tests

Run with: pytest tests/test_session_store.py -v
"""

import asyncio
import time
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from scanmaster.auth.sessions import (
    MemorySessionStore,
    RedisSessionStore,
    SessionData,
    create_session_store,
    ttl_seconds,
)
from scanmaster.concurrency import best_effort, bounded, run_blocking
from scanmaster.errors import NotFound, Timeout, Unavailable
from tests.conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemorySessionStore(clock=clock)


def session_for(principal_id: int = 7) -> SessionData:
    return SessionData(principal_id=principal_id, username="alice", roles=["viewer"], access_jti="jti-1")


# =============================================================================
# MEMORY BACKEND
# =============================================================================

class TestMemorySessions:
    """Session records keyed by principal id."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, memory_store):
        await memory_store.store_session(7, session_for(), 60)
        data = await memory_store.get_session(7)

        assert data.username == "alice"
        assert data.roles == ["viewer"]

    @pytest.mark.asyncio
    async def test_missing_session(self, memory_store):
        with pytest.raises(NotFound):
            await memory_store.get_session(7)

    @pytest.mark.asyncio
    async def test_session_expires(self, memory_store, clock):
        await memory_store.store_session(7, session_for(), 10)
        clock.advance(11)

        with pytest.raises(NotFound):
            await memory_store.get_session(7)

    @pytest.mark.asyncio
    async def test_touch_extends_ttl(self, memory_store, clock):
        await memory_store.store_session(7, session_for(), 10)
        clock.advance(8)
        await memory_store.touch_session(7, 10)
        clock.advance(8)

        assert (await memory_store.get_session(7)).principal_id == 7

    @pytest.mark.asyncio
    async def test_touch_missing_session(self, memory_store):
        with pytest.raises(NotFound):
            await memory_store.touch_session(7, 10)

    @pytest.mark.asyncio
    async def test_new_session_replaces_old(self, memory_store):
        await memory_store.store_session(7, session_for(), 60)
        replacement = session_for()
        replacement.access_jti = "jti-2"
        await memory_store.store_session(7, replacement, 60)

        sessions = await memory_store.list_sessions(7)
        assert [s.access_jti for s in sessions] == ["jti-2"]

    @pytest.mark.asyncio
    async def test_delete_all_sessions(self, memory_store):
        await memory_store.store_session(7, session_for(), 60)
        await memory_store.delete_all_sessions_for(7)

        assert await memory_store.list_sessions(7) == []

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, memory_store):
        await memory_store.store_session(7, session_for(), 60)
        data = await memory_store.get_session(7)
        data.roles.append("admin")

        assert (await memory_store.get_session(7)).roles == ["viewer"]


class TestMemoryPasswordVersions:
    """Cached password versions never go backwards."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, memory_store):
        assert await memory_store.store_password_version(7, 2, 60) == 2
        assert await memory_store.get_password_version(7) == 2

    @pytest.mark.asyncio
    async def test_lower_version_is_ignored(self, memory_store):
        await memory_store.store_password_version(7, 3, 60)

        assert await memory_store.store_password_version(7, 2, 60) == 3
        assert await memory_store.get_password_version(7) == 3

    @pytest.mark.asyncio
    async def test_missing_version(self, memory_store):
        with pytest.raises(NotFound):
            await memory_store.get_password_version(7)

    @pytest.mark.asyncio
    async def test_delete_version(self, memory_store):
        await memory_store.store_password_version(7, 3, 60)
        await memory_store.delete_password_version(7)

        with pytest.raises(NotFound):
            await memory_store.get_password_version(7)


class TestMemoryRevocation:
    """Per-credential revocation markers."""

    @pytest.mark.asyncio
    async def test_mark_and_check(self, memory_store):
        assert await memory_store.is_revoked("jti-1") is False
        await memory_store.mark_revoked("jti-1", timedelta(minutes=5))

        assert await memory_store.is_revoked("jti-1") is True
        assert await memory_store.is_revoked("jti-2") is False

    @pytest.mark.asyncio
    async def test_marker_expires(self, memory_store, clock):
        await memory_store.mark_revoked("jti-1", 30)
        clock.advance(31)

        assert await memory_store.is_revoked("jti-1") is False

    @pytest.mark.asyncio
    async def test_unread_markers_are_swept_on_write(self, memory_store, clock):
        for jti in ("jti-1", "jti-2", "jti-3"):
            await memory_store.mark_revoked(jti, 30)
        clock.advance(31)
        await memory_store.mark_revoked("jti-4", 30)

        # Sweep interval not reached yet
        assert memory_store.size() == 4

        clock.advance(29)
        await memory_store.mark_revoked("jti-5", 30)

        assert memory_store.size() == 2
        assert await memory_store.is_revoked("jti-4") is True
        assert await memory_store.is_revoked("jti-5") is True

    def test_ttl_has_one_second_floor(self):
        assert ttl_seconds(timedelta(seconds=0.2)) == 1
        assert ttl_seconds(0) == 1
        assert ttl_seconds(30) == 30
        assert ttl_seconds(timedelta(minutes=2)) == 120


class TestStoreFactory:

    def test_memory_backend(self):
        assert isinstance(create_session_store("memory"), MemorySessionStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_session_store("carrier-pigeon")


# =============================================================================
# REDIS BACKEND
# =============================================================================

@pytest.fixture
def redis_client():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=3)
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=0)
    return client


class TestRedisSessionStore:
    """Key layout and error mapping with a mocked client."""

    @pytest.mark.asyncio
    async def test_session_key_layout(self, redis_client):
        store = RedisSessionStore(client=redis_client, key_prefix="scanmaster:")
        await store.store_session(7, session_for(), 60)

        args, kwargs = redis_client.set.call_args
        assert args[0] == "scanmaster:session:principal:7"
        assert kwargs["ex"] == 60
        assert SessionData.model_validate_json(args[1]).username == "alice"

    @pytest.mark.asyncio
    async def test_revocation_key_layout(self, redis_client):
        store = RedisSessionStore(client=redis_client, key_prefix="scanmaster:")
        await store.mark_revoked("abc", 30)

        assert redis_client.set.call_args.args[0] == "scanmaster:revoked:token:abc"

    @pytest.mark.asyncio
    async def test_version_goes_through_script(self, redis_client):
        store = RedisSessionStore(client=redis_client, key_prefix="scanmaster:")

        assert await store.store_password_version(7, 2, 60) == 3
        script = redis_client.register_script.return_value
        assert script.call_args.kwargs["keys"] == ["scanmaster:password_version:7"]

    @pytest.mark.asyncio
    async def test_missing_session(self, redis_client):
        store = RedisSessionStore(client=redis_client)

        with pytest.raises(NotFound):
            await store.get_session(7)

    @pytest.mark.asyncio
    async def test_touch_does_not_resurrect(self, redis_client):
        redis_client.get.return_value = session_for().model_dump_json()
        redis_client.set.return_value = None
        store = RedisSessionStore(client=redis_client)

        with pytest.raises(NotFound):
            await store.touch_session(7, 60)
        assert redis_client.set.call_args.kwargs["xx"] is True

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        store = RedisSessionStore(client=redis_client)

        with pytest.raises(Unavailable):
            await store.get_session(7)

    @pytest.mark.asyncio
    async def test_timeout_is_timeout(self, redis_client):
        redis_client.exists.side_effect = RedisTimeoutError("timed out")
        store = RedisSessionStore(client=redis_client)

        with pytest.raises(Timeout):
            await store.is_revoked("abc")


# =============================================================================
# STORE CALL HELPERS
# =============================================================================

class TestStoreCallHelpers:
    """Deadlines, best-effort side effects and cancellation."""

    @pytest.mark.asyncio
    async def test_bounded_timeout(self):
        with pytest.raises(Timeout):
            await bounded(asyncio.sleep(1), "sleep", timeout=0.01)

    @pytest.mark.asyncio
    async def test_run_blocking_returns_result(self):
        assert await run_blocking(sum, [1, 2, 3]) == 6

    @pytest.mark.asyncio
    async def test_run_blocking_timeout(self):
        with pytest.raises(Timeout):
            await run_blocking(time.sleep, 0.3, timeout=0.01)

    @pytest.mark.asyncio
    async def test_best_effort_swallows_store_errors(self):
        async def failing():
            raise Unavailable("down")

        assert await best_effort(failing(), "side effect") is False

    @pytest.mark.asyncio
    async def test_best_effort_success(self, memory_store):
        assert await best_effort(memory_store.mark_revoked("jti", 10), "mark") is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        task = asyncio.ensure_future(bounded(asyncio.sleep(10), "sleep"))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
