"""
In-process replicated room store.

Used for single-server deployments and tests. Each subscriber gets its own
queue and delivery task, so a slow handler never blocks writers or other
subscribers, and every subscriber sees one room's versions in commit order.

Writes are serialized by an asyncio.Lock, which makes conditional_write a
true compare-and-set within the process.
"""

import asyncio
import copy
import logging
from typing import Any, Mapping, Optional

from .sync import (
    ChangeHandler,
    Subscription,
    SyncStore,
    apply_update,
    get_path,
    matches,
)

logger = logging.getLogger(__name__)


class _MemorySubscription(Subscription):
    """Queue-backed delivery of room snapshots to one handler."""

    def __init__(self, store: "MemoryStore", room_id: str, handler: ChangeHandler):
        self.store = store
        self.room_id = room_id
        self.handler = handler
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._deliver())

    async def _deliver(self) -> None:
        while True:
            snapshot = await self.queue.get()
            try:
                await self.handler(snapshot)
            except Exception as e:
                logger.error(f"Error in room change handler: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        self.store._remove_subscription(self)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class MemoryStore(SyncStore):
    """Dict-backed SyncStore living in the server process."""

    def __init__(self) -> None:
        self._rooms: dict[str, dict] = {}
        self._subscriptions: dict[str, list[_MemorySubscription]] = {}
        self._deferred: dict[str, dict[tuple[str, str], Any]] = {}
        self._sessions: set[str] = set()
        self._lock = asyncio.Lock()
        self._commits = 0

    # -------------------------------------------------------------------------
    # Reads / writes
    # -------------------------------------------------------------------------

    async def read_once(self, room_id: str, path: str = "") -> Any:
        return copy.deepcopy(get_path(self._rooms.get(room_id), path))

    async def create(self, room_id: str, doc: dict) -> bool:
        async with self._lock:
            if room_id in self._rooms:
                return False
            self._commit(room_id, copy.deepcopy(doc))
        return True

    async def delete(self, room_id: str) -> None:
        async with self._lock:
            if room_id in self._rooms:
                self._commit(room_id, None)

    async def write_atomic(self, room_id: str, updates: Mapping[str, Any]) -> bool:
        async with self._lock:
            doc = self._rooms.get(room_id)
            if doc is None:
                return False
            self._commit(room_id, apply_update(doc, updates))
        return True

    async def conditional_write(
        self,
        room_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> bool:
        async with self._lock:
            doc = self._rooms.get(room_id)
            if doc is None or not matches(doc, expected):
                return False
            self._commit(room_id, apply_update(doc, updates))
        return True

    def _commit(self, room_id: str, doc: Optional[dict]) -> None:
        """Store doc (None deletes) and queue it for every subscriber."""
        self._commits += 1
        if doc is None:
            self._rooms.pop(room_id, None)
        else:
            self._rooms[room_id] = doc
        for sub in self._subscriptions.get(room_id, []):
            sub.queue.put_nowait(copy.deepcopy(doc))

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Subscription:
        sub = _MemorySubscription(self, room_id, on_change)
        async with self._lock:
            self._subscriptions.setdefault(room_id, []).append(sub)
            sub.queue.put_nowait(copy.deepcopy(self._rooms.get(room_id)))
        sub.start()
        logger.debug(f"Subscribed to room {room_id}")
        return sub

    def _remove_subscription(self, sub: _MemorySubscription) -> None:
        subs = self._subscriptions.get(sub.room_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(sub.room_id, None)

    async def settle(self, max_rounds: int = 100) -> None:
        """Wait until deliveries stop producing new writes (tests)."""
        for _ in range(max_rounds):
            commits = self._commits
            for subs in list(self._subscriptions.values()):
                for sub in list(subs):
                    await sub.queue.join()
            # Handlers may have spawned tasks that write again
            for _ in range(20):
                await asyncio.sleep(0)
            if commits == self._commits:
                return

    # -------------------------------------------------------------------------
    # Deferred (disconnect) writes
    # -------------------------------------------------------------------------

    async def open_session(self, owner: str) -> None:
        self._sessions.add(owner)

    async def register_deferred(self, owner: str, room_id: str, path: str, value: Any) -> None:
        self._deferred.setdefault(owner, {})[(room_id, path)] = copy.deepcopy(value)

    async def cancel_deferred(
        self,
        owner: str,
        room_id: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        pending = self._deferred.get(owner)
        if not pending:
            return
        if room_id is None:
            self._deferred.pop(owner, None)
            return
        for key in list(pending):
            if key[0] == room_id and (path is None or key[1] == path):
                del pending[key]

    async def fire_deferred(self, owner: str) -> int:
        self._sessions.discard(owner)
        pending = self._deferred.pop(owner, None)
        if not pending:
            return 0
        written = 0
        for room_id, updates in self.group_deferred(pending).items():
            if await self.write_atomic(room_id, updates):
                written += 1
        return written

    def pending_deferred(self, owner: str) -> dict[tuple[str, str], Any]:
        return dict(self._deferred.get(owner, {}))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                await sub.close()
        self._subscriptions.clear()
