"""
Redis-backed replicated room store.

Lets several gateway processes share rooms. Each room document is one JSON
value; every write runs as an optimistic WATCH/MULTI transaction, bumps the
room's version counter and publishes the new document on the room channel.

Key patterns:
- tf:room:{room_code}            -> String (JSON room document)
- tf:room:{room_code}:version    -> Integer (monotonic write counter)
- tf:deferred:{owner}            -> Hash ("{room_code}|{path}" -> JSON value)
- tf:session:{owner}             -> String (heartbeat, expires when the gateway dies)
- tf:sessions                    -> Set (owners with an open session)

Deferred writes are fired by the gateway when a WebSocket drops. If the
gateway itself dies its heartbeat keys expire, and reap_expired_sessions()
on any surviving gateway fires them instead.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from exceptions import TransportError
from .pubsub import RoomChange, RoomPubSub
from .sync import (
    ChangeHandler,
    Subscription,
    SyncStore,
    apply_update,
    get_path,
    matches,
)

logger = logging.getLogger(__name__)

_UNCHANGED = object()

Mutation = Callable[[Optional[dict]], tuple[Any, Any]]


class _RedisSubscription(Subscription):
    """Delivers versioned room snapshots to one handler, dropping stale ones."""

    def __init__(self, store: "RedisStore", room_id: str, handler: ChangeHandler):
        self.store = store
        self.room_id = room_id
        self.handler = handler
        self.version = -1
        self._lock = asyncio.Lock()
        self._closed = False

    async def deliver(self, change: RoomChange) -> None:
        async with self._lock:
            if self._closed or change.version <= self.version:
                return
            self.version = change.version
            await self.handler(change.doc)

    async def close(self) -> None:
        self._closed = True
        await self.store.pubsub.remove_listener(self.room_id, self.deliver)


class RedisStore(SyncStore):
    """SyncStore on Redis with WATCH/MULTI compare-and-set."""

    ROOM_KEY = "tf:room:{room_code}"
    VERSION_KEY = "tf:room:{room_code}:version"
    DEFERRED_KEY = "tf:deferred:{owner}"
    SESSION_KEY = "tf:session:{owner}"
    SESSIONS_KEY = "tf:sessions"

    ROOM_TTL = timedelta(hours=24)
    SESSION_TTL = timedelta(seconds=30)

    def __init__(
        self,
        redis_client: redis.Redis,
        room_ttl: Optional[timedelta] = None,
        session_ttl: Optional[timedelta] = None,
    ):
        """
        Initialize the store with a Redis client.

        Args:
            redis_client: Async Redis client.
            room_ttl: Expiry for idle rooms.
            session_ttl: Heartbeat expiry for gateway sessions.
        """
        self.redis = redis_client
        self.pubsub = RoomPubSub(redis_client)
        self.room_ttl = room_ttl or self.ROOM_TTL
        self.session_ttl = session_ttl or self.SESSION_TTL
        self._heartbeats: dict[str, asyncio.Task] = {}

    @classmethod
    async def connect(
        cls,
        redis_url: str,
        room_ttl: Optional[timedelta] = None,
        session_ttl: Optional[timedelta] = None,
    ) -> "RedisStore":
        """
        Create a RedisStore with a new Redis connection.

        Args:
            redis_url: Redis connection URL.

        Returns:
            Connected store with its pub/sub listener running.
        """
        client = redis.from_url(redis_url, decode_responses=False)
        await client.ping()
        logger.info("RedisStore connected to Redis")
        store = cls(client, room_ttl=room_ttl, session_ttl=session_ttl)
        await store.pubsub.start()
        return store

    async def close(self) -> None:
        for task in self._heartbeats.values():
            task.cancel()
        self._heartbeats.clear()
        await self.pubsub.stop()
        await self.redis.close()

    @asynccontextmanager
    async def _transport(self, action: str) -> AsyncIterator[None]:
        """Translate Redis failures into TransportError."""
        try:
            yield
        except RedisError as e:
            logger.warning(f"Redis {action} failed: {e}")
            raise TransportError(f"Store {action} failed, please retry") from e

    @staticmethod
    def _decode(raw: Optional[bytes]) -> Optional[dict]:
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return json.loads(raw)

    # -------------------------------------------------------------------------
    # Reads / writes
    # -------------------------------------------------------------------------

    async def read_once(self, room_id: str, path: str = "") -> Any:
        async with self._transport("read"):
            raw = await self.redis.get(self.ROOM_KEY.format(room_code=room_id))
        return get_path(self._decode(raw), path)

    async def _transact(self, room_id: str, mutate: Mutation) -> Any:
        """
        Run mutate(doc) -> (result, new_doc) as an optimistic transaction.

        new_doc may be _UNCHANGED (nothing written), None (delete) or a dict.
        Retries whenever another writer touched the room in between.
        """
        key = self.ROOM_KEY.format(room_code=room_id)
        version_key = self.VERSION_KEY.format(room_code=room_id)
        ttl = int(self.room_ttl.total_seconds())

        async with self._transport("write"):
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        doc = self._decode(await pipe.get(key))
                        result, new_doc = mutate(doc)
                        if new_doc is _UNCHANGED:
                            return result

                        pipe.multi()
                        if new_doc is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, json.dumps(new_doc), ex=ttl)
                        pipe.incr(version_key)
                        pipe.expire(version_key, ttl)
                        replies = await pipe.execute()
                        version = int(replies[1])
                        break
                    except WatchError:
                        logger.debug(f"Concurrent write on room {room_id}, retrying")
                        continue

            await self.pubsub.publish(RoomChange(room_code=room_id, version=version, doc=new_doc))
        return result

    async def create(self, room_id: str, doc: dict) -> bool:
        def mutate(current):
            if current is not None:
                return False, _UNCHANGED
            return True, doc

        return await self._transact(room_id, mutate)

    async def delete(self, room_id: str) -> None:
        def mutate(current):
            if current is None:
                return None, _UNCHANGED
            return None, None

        await self._transact(room_id, mutate)

    async def write_atomic(self, room_id: str, updates: Mapping[str, Any]) -> bool:
        def mutate(current):
            if current is None:
                return False, _UNCHANGED
            return True, apply_update(current, updates)

        return await self._transact(room_id, mutate)

    async def conditional_write(
        self,
        room_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> bool:
        def mutate(current):
            if current is None or not matches(current, expected):
                return False, _UNCHANGED
            return True, apply_update(current, updates)

        return await self._transact(room_id, mutate)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Subscription:
        sub = _RedisSubscription(self, room_id, on_change)
        async with self._transport("subscribe"):
            await self.pubsub.subscribe(room_id, sub.deliver)
            raw_doc, raw_version = await self.redis.mget(
                self.ROOM_KEY.format(room_code=room_id),
                self.VERSION_KEY.format(room_code=room_id),
            )
        version = int(raw_version) if raw_version else 0
        await sub.deliver(RoomChange(room_code=room_id, version=version, doc=self._decode(raw_doc)))
        return sub

    # -------------------------------------------------------------------------
    # Sessions and deferred (disconnect) writes
    # -------------------------------------------------------------------------

    @staticmethod
    def _deferred_field(room_id: str, path: str) -> str:
        return f"{room_id}|{path}"

    async def open_session(self, owner: str) -> None:
        ttl = int(self.session_ttl.total_seconds())
        async with self._transport("session"):
            pipe = self.redis.pipeline()
            pipe.sadd(self.SESSIONS_KEY, owner)
            pipe.set(self.SESSION_KEY.format(owner=owner), "1", ex=ttl)
            await pipe.execute()
        self._heartbeats[owner] = asyncio.create_task(self._heartbeat(owner))

    async def _heartbeat(self, owner: str) -> None:
        """Keep the session key alive while this gateway holds the connection."""
        ttl = int(self.session_ttl.total_seconds())
        key = self.SESSION_KEY.format(owner=owner)
        while True:
            await asyncio.sleep(max(1, ttl // 3))
            try:
                await self.redis.set(key, "1", ex=ttl)
            except RedisError as e:
                logger.warning(f"Session heartbeat failed for {owner}: {e}")

    async def register_deferred(self, owner: str, room_id: str, path: str, value: Any) -> None:
        key = self.DEFERRED_KEY.format(owner=owner)
        async with self._transport("register deferred"):
            pipe = self.redis.pipeline()
            pipe.hset(key, self._deferred_field(room_id, path), json.dumps(value))
            pipe.expire(key, int(self.room_ttl.total_seconds()))
            await pipe.execute()

    async def cancel_deferred(
        self,
        owner: str,
        room_id: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        key = self.DEFERRED_KEY.format(owner=owner)
        async with self._transport("cancel deferred"):
            if room_id is None:
                await self.redis.delete(key)
                return
            if path is not None:
                await self.redis.hdel(key, self._deferred_field(room_id, path))
                return
            prefix = f"{room_id}|"
            fields = [
                f for f in await self.redis.hkeys(key)
                if (f.decode() if isinstance(f, bytes) else f).startswith(prefix)
            ]
            if fields:
                await self.redis.hdel(key, *fields)

    async def fire_deferred(self, owner: str) -> int:
        heartbeat = self._heartbeats.pop(owner, None)
        if heartbeat:
            heartbeat.cancel()

        key = self.DEFERRED_KEY.format(owner=owner)
        async with self._transport("fire deferred"):
            # HGETALL + DEL in one transaction: only one firer gets the writes
            pipe = self.redis.pipeline(transaction=True)
            pipe.hgetall(key)
            pipe.delete(key)
            pipe.srem(self.SESSIONS_KEY, owner)
            pipe.delete(self.SESSION_KEY.format(owner=owner))
            raw_pending, *_ = await pipe.execute()

        pending: dict[tuple[str, str], Any] = {}
        for raw_field, raw_value in (raw_pending or {}).items():
            field = raw_field.decode() if isinstance(raw_field, bytes) else raw_field
            room_id, _, path = field.partition("|")
            pending[(room_id, path)] = json.loads(raw_value)

        written = 0
        for room_id, updates in self.group_deferred(pending).items():
            if await self.write_atomic(room_id, updates):
                written += 1
        return written

    async def reap_expired_sessions(self) -> int:
        """
        Fire deferred writes of sessions whose heartbeat expired.

        Returns:
            Number of sessions reaped.
        """
        async with self._transport("reap sessions"):
            owners = await self.redis.smembers(self.SESSIONS_KEY)
        reaped = 0
        for raw_owner in owners:
            owner = raw_owner.decode() if isinstance(raw_owner, bytes) else raw_owner
            if owner in self._heartbeats:
                continue
            async with self._transport("reap sessions"):
                alive = await self.redis.exists(self.SESSION_KEY.format(owner=owner))
            if alive:
                continue
            logger.info(f"Session {owner} expired, firing its disconnect writes")
            await self.fire_deferred(owner)
            reaped += 1
        return reaped

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
