"""
Tests for the Redis-backed room store.

These tests cover:
- WATCH/MULTI compare-and-set under contention
- Versioned snapshots over pub/sub, across two gateway processes
- Deferred writes, heartbeat sessions and the expired-session reaper
- RedisError translation into TransportError

Tests use fakeredis for isolated Redis testing.
"""

import asyncio
from unittest.mock import patch

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from exceptions import TransportError
from stores.pubsub import RoomChange
from stores.redis_store import RedisStore
from stores.sync import Increment


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def server():
    return fakeredis.FakeServer()


async def open_store(server) -> RedisStore:
    store = RedisStore(aioredis.FakeRedis(server=server))
    await store.pubsub.start()
    return store


@pytest_asyncio.fixture
async def store(server):
    store = await open_store(server)
    yield store
    await store.close()


async def wait_until(predicate, timeout: float = 3.0):
    """Poll until predicate() is true (pub/sub delivery is asynchronous)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Writes
# =============================================================================

class TestRedisWrites:

    @pytest.mark.asyncio
    async def test_create_read_delete(self, store):
        assert await store.create("R1", {"host": "a"}) is True
        assert await store.create("R1", {"host": "b"}) is False
        assert await store.read_once("R1") == {"host": "a"}
        assert await store.read_once("R1", "host") == "a"

        await store.delete("R1")
        assert await store.read_once("R1") is None

    @pytest.mark.asyncio
    async def test_write_atomic(self, store):
        assert await store.write_atomic("R1", {"a": 1}) is False
        await store.create("R1", {"players": {"p1": {"score": 1}}})
        assert await store.write_atomic("R1", {"players/p1/score": Increment(2), "winner": "p1"})
        assert await store.read_once("R1") == {"players": {"p1": {"score": 3}}, "winner": "p1"}

    @pytest.mark.asyncio
    async def test_concurrent_claims_one_winner(self, store):
        await store.create("R1", {"winner": None, "roundNumber": 1, "score": 0})

        async def claim(pid):
            return await store.conditional_write(
                "R1",
                {"winner": None, "roundNumber": 1},
                {"winner": pid, "score": Increment(1)},
            )

        results = await asyncio.gather(*[claim(f"p{i}") for i in range(8)])
        assert results.count(True) == 1
        assert await store.read_once("R1", "score") == 1

    @pytest.mark.asyncio
    async def test_versions_increase_per_write(self, store):
        await store.create("R1", {"n": 0})
        await store.write_atomic("R1", {"n": 1})
        await store.conditional_write("R1", {"n": 9}, {"n": 2})  # not applied
        raw = await store.redis.get(RedisStore.VERSION_KEY.format(room_code="R1"))
        assert int(raw) == 2

    @pytest.mark.asyncio
    async def test_redis_errors_become_transport_errors(self, store):
        with patch.object(store.redis, "get", side_effect=RedisConnectionError("down")):
            with pytest.raises(TransportError) as exc_info:
                await store.read_once("R1")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True


# =============================================================================
# Subscriptions
# =============================================================================

class TestRedisSubscriptions:

    @pytest.mark.asyncio
    async def test_snapshots_in_order(self, store):
        await store.create("R1", {"n": 0})
        seen = []

        async def on_change(doc):
            seen.append(doc)

        sub = await store.subscribe("R1", on_change)
        assert seen == [{"n": 0}]

        await store.write_atomic("R1", {"n": 1})
        await store.write_atomic("R1", {"n": 2})
        await store.delete("R1")
        await wait_until(lambda: len(seen) == 4)
        assert seen == [{"n": 0}, {"n": 1}, {"n": 2}, None]
        await sub.close()

    @pytest.mark.asyncio
    async def test_stale_versions_are_dropped(self, store):
        await store.create("R1", {"n": 0})
        seen = []

        async def on_change(doc):
            seen.append(doc)

        sub = await store.subscribe("R1", on_change)
        await store.write_atomic("R1", {"n": 1})
        await wait_until(lambda: len(seen) == 2)

        await sub.deliver(RoomChange(room_code="R1", version=1, doc={"n": 0}))
        assert seen == [{"n": 0}, {"n": 1}]
        await sub.close()

    @pytest.mark.asyncio
    async def test_changes_cross_gateways(self, server, store):
        other = await open_store(server)
        try:
            await store.create("R1", {"n": 0})
            seen = []

            async def on_change(doc):
                seen.append(doc)

            await other.subscribe("R1", on_change)
            await store.write_atomic("R1", {"n": 1})
            await wait_until(lambda: seen[-1] == {"n": 1})
        finally:
            await other.close()


# =============================================================================
# Deferred writes and sessions
# =============================================================================

class TestRedisDeferred:

    @pytest.mark.asyncio
    async def test_fire_once(self, store):
        await store.create("R1", {"players": {"p1": {"id": "p1"}, "p2": {"id": "p2"}}, "host": "p1"})
        await store.open_session("conn-1")
        await store.register_deferred("conn-1", "R1", "players/p1", None)
        await store.register_deferred("conn-1", "R1", "host", "p2")
        await store.register_deferred("conn-1", "R1", "scoreHistory/Ann", 4)

        assert await store.fire_deferred("conn-1") == 1
        assert await store.fire_deferred("conn-1") == 0
        assert await store.read_once("R1") == {
            "players": {"p2": {"id": "p2"}},
            "host": "p2",
            "scoreHistory": {"Ann": 4},
        }

    @pytest.mark.asyncio
    async def test_cancel(self, store):
        await store.create("R1", {"players": {"p1": {"id": "p1"}}})
        await store.register_deferred("conn-1", "R1", "players/p1", None)
        await store.register_deferred("conn-1", "R1", "scoreHistory/Ann", 4)
        await store.cancel_deferred("conn-1", "R1", "players/p1")
        await store.fire_deferred("conn-1")
        doc = await store.read_once("R1")
        assert doc["players"] == {"p1": {"id": "p1"}}
        assert doc["scoreHistory"] == {"Ann": 4}

    @pytest.mark.asyncio
    async def test_cancel_room(self, store):
        await store.create("R1", {"players": {"p1": {"id": "p1"}}})
        await store.register_deferred("conn-1", "R1", "players/p1", None)
        await store.register_deferred("conn-1", "R1", "scoreHistory/Ann", 4)
        await store.cancel_deferred("conn-1", "R1")
        assert await store.fire_deferred("conn-1") == 0

    @pytest.mark.asyncio
    async def test_reaper_fires_dead_gateway_sessions(self, server, store):
        survivor = await open_store(server)
        try:
            await store.create("R1", {"players": {"p1": {"id": "p1"}}})
            await store.open_session("conn-1")
            await store.register_deferred("conn-1", "R1", "players/p1", None)

            # Live session is left alone
            assert await survivor.reap_expired_sessions() == 0

            # Gateway dies: heartbeat stops and the session key expires
            store._heartbeats.pop("conn-1").cancel()
            await store.redis.delete(RedisStore.SESSION_KEY.format(owner="conn-1"))

            assert await survivor.reap_expired_sessions() == 1
            assert await survivor.read_once("R1", "players") is None
            assert await survivor.reap_expired_sessions() == 0
        finally:
            await survivor.close()

    @pytest.mark.asyncio
    async def test_session_context_fires_on_exit(self, store):
        await store.create("R1", {"players": {"p1": {"id": "p1"}}})
        async with store.session("conn-1"):
            await store.register_deferred("conn-1", "R1", "players/p1", None)
            assert "conn-1" in store._heartbeats
        assert "conn-1" not in store._heartbeats
        assert await store.read_once("R1", "players") is None
