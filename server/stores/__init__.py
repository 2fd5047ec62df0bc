"""Replicated room stores for the 24 game."""

from .sync import Increment, Subscription, SyncStore
from .memory_store import MemoryStore
from .pubsub import RoomChange, RoomPubSub
from .redis_store import RedisStore

__all__ = [
    # Contract
    "Increment",
    "Subscription",
    "SyncStore",
    # In-process
    "MemoryStore",
    # Redis
    "RedisStore",
    "RoomChange",
    "RoomPubSub",
]
