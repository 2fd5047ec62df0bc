"""
Replicated room store contract.

Every client coordinates only through a store holding one JSON document per
room. The store offers:

- subscribe: deliver the current document, then every later version, to a
  callback (eventual, at-least-once, ordered per room)
- write_atomic: apply several path updates as one write
- conditional_write: apply updates only if some paths still hold expected
  values (compare-and-set)
- deferred writes: updates registered by a session owner that the store
  applies if the owner goes away without cancelling them

Updates are flat path maps, e.g.::

    {"winner": "player_1", "players/player_1/score": Increment(1)}

A value of None deletes the path. Increment(n) adds n to the current
number (missing counts as 0) inside the same write.
"""

import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[Optional[dict]], Awaitable[None]]

_MISSING = object()


@dataclass(frozen=True)
class Increment:
    """Atomic numeric increment applied by the store."""

    amount: int = 1


def split_path(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def get_path(doc: Optional[dict], path: str, default: Any = None) -> Any:
    """Read a nested value; '' returns the whole document."""
    node: Any = doc
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def _prune(doc: dict, parts: list[str]) -> None:
    """Drop dicts left empty along parts after a delete."""
    for depth in range(len(parts) - 1, 0, -1):
        parent = get_path(doc, "/".join(parts[:depth - 1]))
        child = parts[depth - 1]
        if isinstance(parent, dict) and parent.get(child) == {}:
            del parent[child]
        else:
            break


def apply_update(doc: dict, updates: Mapping[str, Any]) -> dict:
    """
    Apply a path update map to a copy of doc.

    Args:
        doc: Current document (not modified).
        updates: Path -> value (None deletes, Increment adds).

    Returns:
        The updated document.
    """
    result = copy.deepcopy(doc)
    for path, value in updates.items():
        parts = split_path(path)
        if not parts:
            raise ValueError("Root path is not allowed in an update; use create/delete")

        if value is None:
            parent = get_path(result, "/".join(parts[:-1]))
            if isinstance(parent, dict):
                parent.pop(parts[-1], None)
                _prune(result, parts)
            continue

        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child

        if isinstance(value, Increment):
            current = node.get(parts[-1]) or 0
            node[parts[-1]] = current + value.amount
        else:
            node[parts[-1]] = copy.deepcopy(value)
    return result


def matches(doc: Optional[dict], expected: Mapping[str, Any]) -> bool:
    """True if every expected path currently holds its expected value (None = absent)."""
    for path, want in expected.items():
        have = get_path(doc, path, _MISSING)
        if want is None:
            if have is not _MISSING and have is not None:
                return False
        elif have is _MISSING or have != want:
            return False
    return True


class Subscription(ABC):
    """Handle returned by subscribe()."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering changes to the handler."""


class SyncStore(ABC):
    """Replicated key-value store holding one JSON document per room."""

    @abstractmethod
    async def read_once(self, room_id: str, path: str = "") -> Any:
        """Read the current document (or a path inside it)."""

    @abstractmethod
    async def create(self, room_id: str, doc: dict) -> bool:
        """Store doc if no document exists for room_id. Returns False if taken."""

    @abstractmethod
    async def delete(self, room_id: str) -> None:
        """Remove the room document."""

    @abstractmethod
    async def write_atomic(self, room_id: str, updates: Mapping[str, Any]) -> bool:
        """
        Apply all updates as one write.

        Returns:
            False if the room does not exist (nothing is written).
        """

    @abstractmethod
    async def conditional_write(
        self,
        room_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> bool:
        """
        Apply updates only if every path in expected still holds its value.

        Returns:
            True if the write was applied, False if any expectation failed.
        """

    @abstractmethod
    async def subscribe(self, room_id: str, on_change: ChangeHandler) -> Subscription:
        """Deliver the current document and every later one (None once deleted)."""

    @abstractmethod
    async def register_deferred(self, owner: str, room_id: str, path: str, value: Any) -> None:
        """Write value at path if owner disconnects without cancelling."""

    @abstractmethod
    async def cancel_deferred(
        self,
        owner: str,
        room_id: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        """Cancel one deferred write, all of a room's, or all of owner's."""

    @abstractmethod
    async def fire_deferred(self, owner: str) -> int:
        """
        Apply owner's pending deferred writes (at most once).

        Returns:
            Number of rooms written.
        """

    @abstractmethod
    async def open_session(self, owner: str) -> None:
        """Mark owner as connected."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check store connectivity."""

    async def close(self) -> None:
        """Release store resources."""

    @asynccontextmanager
    async def session(self, owner: str) -> AsyncIterator[str]:
        """
        Scope deferred writes to a connection.

        Whatever owner still has registered when the block exits was not
        cancelled by a graceful leave, so it is fired.

        Usage:
            async with store.session(connection_id):
                ...
        """
        await self.open_session(owner)
        try:
            yield owner
        finally:
            fired = await self.fire_deferred(owner)
            if fired:
                logger.info(f"Fired deferred disconnect writes for {owner} ({fired} room(s))")

    @staticmethod
    def group_deferred(pending: Mapping[tuple[str, str], Any]) -> dict[str, dict[str, Any]]:
        """Group {(room_id, path): value} into per-room update maps."""
        by_room: dict[str, dict[str, Any]] = {}
        for (room_id, path), value in pending.items():
            by_room.setdefault(room_id, {})[path] = value
        return by_room
