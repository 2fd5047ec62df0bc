"""
Redis pub/sub for room change notifications.

Every committed write to a room document is published on the room's channel
together with the new document and its version number. Gateways in any
process subscribe to the rooms their clients are in and hand the snapshots
to per-client handlers.

Usage:
    pubsub = RoomPubSub(redis_client)
    await pubsub.start()

    async def handle_change(msg: RoomChange):
        print(f"Room {msg.room_code} is at version {msg.version}")

    await pubsub.subscribe("ABC123", handle_change)
    await pubsub.publish(RoomChange(room_code="ABC123", version=7, doc={...}))

    await pubsub.stop()
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass
class RoomChange:
    """
    A committed room document version.

    Attributes:
        room_code: Room the document belongs to.
        version: Monotonic per-room version (from INCR).
        doc: Full document after the write, or None if the room was deleted.
    """

    room_code: str
    version: int
    doc: Optional[dict]

    def to_json(self) -> str:
        return json.dumps({
            "room_code": self.room_code,
            "version": self.version,
            "doc": self.doc,
        })

    @classmethod
    def from_json(cls, raw: str) -> "RoomChange":
        d = json.loads(raw)
        return cls(
            room_code=d["room_code"],
            version=int(d["version"]),
            doc=d.get("doc"),
        )


ChangeListener = Callable[[RoomChange], Awaitable[None]]


class RoomPubSub:
    """
    Redis pub/sub fan-out of room changes.

    Manages subscriptions to room channels and dispatches incoming
    changes to registered listeners.
    """

    CHANNEL_PREFIX = "tf:room-changes:"

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client
        self.pubsub = redis_client.pubsub()
        self._listeners: dict[str, list[ChangeListener]] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _channel(self, room_code: str) -> str:
        return f"{self.CHANNEL_PREFIX}{room_code}"

    async def subscribe(self, room_code: str, listener: ChangeListener) -> None:
        """
        Register a listener for a room's changes.

        Args:
            room_code: Room to listen to.
            listener: Async function called with each RoomChange.
        """
        channel = self._channel(room_code)
        if channel not in self._listeners:
            self._listeners[channel] = []
            await self.pubsub.subscribe(channel)
            logger.debug(f"Subscribed to channel {channel}")
        self._listeners[channel].append(listener)

    async def remove_listener(self, room_code: str, listener: ChangeListener) -> None:
        """Remove one listener; unsubscribe from the channel when none are left."""
        channel = self._channel(room_code)
        listeners = self._listeners.get(channel)
        if listeners is None:
            return
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            del self._listeners[channel]
            await self.pubsub.unsubscribe(channel)
            logger.debug(f"Unsubscribed from channel {channel}")

    async def publish(self, change: RoomChange) -> int:
        """
        Publish a room change.

        Returns:
            Number of subscribers that received the message.
        """
        channel = self._channel(change.room_code)
        count = await self.redis.publish(channel, change.to_json())
        logger.debug(f"Published v{change.version} to {channel} ({count} receivers)")
        return count

    async def start(self) -> None:
        """Start listening for messages."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info("RoomPubSub listener started")

    async def stop(self) -> None:
        """Stop listening and clean up."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.pubsub.close()
        self._listeners.clear()
        logger.info("RoomPubSub listener stopped")

    async def _listen(self) -> None:
        """Main listener loop."""
        while self._running:
            try:
                if not self._listeners:
                    await asyncio.sleep(0.05)
                    continue
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message and message["type"] == "message":
                    await self._handle_message(message)

            except asyncio.CancelledError:
                break
            except redis.ConnectionError as e:
                logger.error(f"PubSub connection error: {e}")
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"PubSub listener error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _handle_message(self, raw_message: dict) -> None:
        """Decode a Redis message and hand it to the channel's listeners."""
        try:
            channel = raw_message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()

            data = raw_message["data"]
            if isinstance(data, bytes):
                data = data.decode()

            change = RoomChange.from_json(data)

            for listener in list(self._listeners.get(channel, [])):
                try:
                    await listener(change)
                except Exception as e:
                    logger.error(f"Error in room change listener: {e}", exc_info=True)

        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Invalid room change message: {e}")
