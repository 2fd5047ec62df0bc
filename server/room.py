"""
Shared room state for multiplayer 24.

A room is one JSON document in the replicated store. There is no central
arbiter: every client writes to the document directly, and correctness
comes from how the writes are shaped:

    - The round winner is set with a compare-and-set against winner == null,
      and the winner's score is incremented in that same write, so two
      simultaneous solvers can never both be credited.
    - A new round (cards, winner, clock, round number, ready flags) is one
      combined write, guarded by the round number so redundant triggers
      cannot advance twice.
    - Only the host generates and commits new rounds.

Round flow:
    Open (no winner) -> Won (winner set, others may still finish)
    -> Clocked (winner started everyone's countdown) -> Frozen (countdown
    over for non-winners) -> all active players ready -> next Open round

Record layout (keys as stored):
    host, capacity, players{id: {id, name, score, ready, sittingOut, joinedAt}},
    originalCards[4], gameStarted, winner, winTime, roundNumber, clocked,
    scoreHistory{name: score}, createdAt
"""

import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from cards import Card, cards_from_dicts, cards_to_dicts
from constants import MAX_PLAYERS, MIN_PLAYERS, ROOM_CODE_LENGTH
from exceptions import InvalidAction, NotHost, RoomFull, RoomNotFound
from puzzle import generate_cards
from stores.sync import Increment, SyncStore
from validation import validate_capacity

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RoomPlayer:
    """
    A player seated in a room.

    Attributes:
        id: Client-generated opaque identifier.
        name: Display name (also the scoreHistory key).
        score: Rounds won in this room.
        ready: Ready for the next round.
        sitting_out: Not playing; excluded from the ready barrier.
        joined_at: Join time in milliseconds.
    """

    id: str
    name: str
    score: int = 0
    ready: bool = False
    sitting_out: bool = False
    joined_at: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "score": self.score,
            "ready": self.ready,
            "sittingOut": self.sitting_out,
            "joinedAt": self.joined_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoomPlayer":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            score=int(data.get("score") or 0),
            ready=bool(data.get("ready", False)),
            sitting_out=bool(data.get("sittingOut", False)),
            joined_at=int(data.get("joinedAt") or 0),
        )


@dataclass
class Round:
    """One puzzle instance within a room."""

    round_number: int = 1
    original_cards: list[Card] = field(default_factory=list)
    winner: Optional[str] = None
    win_time: Optional[int] = None
    clocked: bool = False

    @property
    def is_won(self) -> bool:
        return self.winner is not None


@dataclass
class Room:
    """
    Parsed room document.

    Attributes:
        code: Join code.
        host: Player id allowed to commit new rounds.
        capacity: Maximum active players accepted at join time.
        players: RoomPlayers by id.
        round: The current round.
        game_started: False while the host waits in the lobby.
        score_history: Last known score by player name.
        created_at: Creation time in milliseconds.
    """

    code: str
    host: str
    capacity: int = MAX_PLAYERS
    players: dict[str, RoomPlayer] = field(default_factory=dict)
    round: Round = field(default_factory=Round)
    game_started: bool = False
    score_history: dict[str, int] = field(default_factory=dict)
    created_at: int = 0

    def get_player(self, player_id: str) -> Optional[RoomPlayer]:
        return self.players.get(player_id)

    def is_host(self, player_id: str) -> bool:
        return self.host == player_id

    def active_players(self) -> list[RoomPlayer]:
        """Players not sitting out."""
        return [p for p in self.players.values() if not p.sitting_out]

    def ready_barrier_met(self) -> bool:
        """Every active player is ready, and there is at least one."""
        active = self.active_players()
        return bool(active) and all(p.ready for p in active)

    def next_host(self, excluding: Optional[str] = None) -> Optional[RoomPlayer]:
        """Earliest-joined player other than excluding (active players first)."""
        candidates = [p for p in self.players.values() if p.id != excluding]
        if not candidates:
            return None
        return min(candidates, key=lambda p: (p.sitting_out, p.joined_at, p.id))

    def sorted_players(self) -> list[RoomPlayer]:
        """Players by descending score for the scoreboard."""
        return sorted(self.players.values(), key=lambda p: (-p.score, p.joined_at))

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "capacity": self.capacity,
            "players": {pid: p.to_dict() for pid, p in self.players.items()},
            "originalCards": cards_to_dicts(self.round.original_cards),
            "gameStarted": self.game_started,
            "winner": self.round.winner,
            "winTime": self.round.win_time,
            "roundNumber": self.round.round_number,
            "clocked": self.round.clocked,
            "scoreHistory": dict(self.score_history),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, code: str, data: dict) -> "Room":
        players = {
            pid: RoomPlayer.from_dict({"id": pid, **(pdata or {})})
            for pid, pdata in (data.get("players") or {}).items()
        }
        return cls(
            code=code,
            host=data.get("host", ""),
            capacity=int(data.get("capacity") or MAX_PLAYERS),
            players=players,
            round=Round(
                round_number=int(data.get("roundNumber") or 1),
                original_cards=cards_from_dicts(data.get("originalCards")),
                winner=data.get("winner"),
                win_time=data.get("winTime"),
                clocked=bool(data.get("clocked", False)),
            ),
            game_started=bool(data.get("gameStarted", False)),
            score_history={k: int(v) for k, v in (data.get("scoreHistory") or {}).items()},
            created_at=int(data.get("createdAt") or 0),
        )


def player_path(player_id: str, *parts: str) -> str:
    return "/".join(("players", player_id) + parts)


def disconnect_actions(room: Room, player_id: str) -> dict[str, Any]:
    """
    Writes the store should apply if player_id drops without leaving.

    Persists the score under the player's name, removes the player and, for
    the host, hands the host role to the next player.
    """
    player = room.get_player(player_id)
    if player is None:
        return {}
    actions: dict[str, Any] = {
        f"scoreHistory/{player.name}": player.score,
        player_path(player_id): None,
    }
    if room.is_host(player_id):
        successor = room.next_host(excluding=player_id)
        if successor is not None:
            actions["host"] = successor.id
    return actions


class RoomStateMachine:
    """
    Round lifecycle operations against the replicated store.

    Every method reads or writes through the SyncStore; nothing is cached
    between calls except the last round this instance advanced from.
    """

    def __init__(self, store: SyncStore, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self._advanced_from: dict[str, int] = {}

    def _generate_code(self) -> str:
        alphabet = string.ascii_uppercase + string.digits
        return "".join(self.rng.choices(alphabet, k=ROOM_CODE_LENGTH))

    def forget(self, code: str) -> None:
        """Drop per-room bookkeeping once this player is done with the room."""
        self._advanced_from.pop(code, None)

    async def load(self, code: str) -> Room:
        """Read a room or raise RoomNotFound."""
        data = await self.store.read_once(code)
        if not data:
            raise RoomNotFound(code)
        return Room.from_dict(code, data)

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    async def create_room(
        self,
        host_id: str,
        name: str,
        capacity: int = MAX_PLAYERS,
        max_attempts: int = 100,
    ) -> Room:
        """
        Create a waiting room with the host seated and round 1 dealt.

        Args:
            host_id: Creator's player id.
            name: Creator's display name.
            capacity: Seats (2-6).
            max_attempts: Code collisions tolerated before giving up.

        Returns:
            The created Room.
        """
        validate_capacity(capacity)
        created_at = now_ms()
        host = RoomPlayer(id=host_id, name=name, joined_at=created_at)

        for _ in range(max_attempts):
            room = Room(
                code=self._generate_code(),
                host=host_id,
                capacity=capacity,
                players={host_id: host},
                round=Round(round_number=1, original_cards=generate_cards(self.rng)),
                created_at=created_at,
            )
            if await self.store.create(room.code, room.to_dict()):
                logger.info(f"Room {room.code} created by {host_id} (capacity {capacity})")
                return room
        raise RuntimeError("Could not generate unique room code")

    async def join(self, code: str, player_id: str, name: str) -> tuple[Room, int]:
        """
        Seat a player.

        A name found in scoreHistory gets its old score back.

        Returns:
            (room before the join, score the player starts with)

        Raises:
            RoomNotFound: No such room.
            RoomFull: Active players already fill the capacity.
        """
        room = await self.load(code)

        existing = room.get_player(player_id)
        if existing is not None:
            return room, existing.score

        if len(room.active_players()) >= room.capacity:
            raise RoomFull(code, room.capacity)

        restored = room.score_history.get(name, 0)
        if restored:
            # Any player using this name inherits the score
            logger.info(f"Restoring score {restored} for name {name!r} in room {code}")

        player = RoomPlayer(id=player_id, name=name, score=restored, joined_at=now_ms())
        updates: dict[str, Any] = {
            player_path(player_id): player.to_dict(),
            "gameStarted": True,
        }
        if room.host not in room.players:
            updates["host"] = player_id

        applied = await self.store.conditional_write(code, {player_path(player_id): None}, updates)
        if not applied:
            raise RoomNotFound(code)
        logger.info(f"Player {player_id} ({name}) joined room {code}")
        return room, restored

    async def start_game(self, code: str, actor_id: str) -> None:
        room = await self.load(code)
        if not room.is_host(actor_id):
            raise NotHost("Only the host can start the game")
        if len(room.players) < MIN_PLAYERS:
            raise InvalidAction(f"Need at least {MIN_PLAYERS} players")
        await self.store.write_atomic(code, {"gameStarted": True})

    async def close_room(self, code: str, actor_id: str) -> None:
        """Host removes a room that never started."""
        room = await self.load(code)
        if not room.is_host(actor_id):
            raise NotHost("Only the host can close the room")
        if room.game_started:
            raise InvalidAction("Room can only be closed while waiting")
        await self.store.delete(code)
        self.forget(code)
        logger.info(f"Room {code} closed by host")

    # -------------------------------------------------------------------------
    # Winning and the clock
    # -------------------------------------------------------------------------

    async def claim_win(self, code: str, player_id: str, round_number: int) -> bool:
        """
        Record player_id as the round winner, if nobody beat them to it.

        The score increment rides in the same conditional write as the winner,
        so exactly one claimant per round is credited.

        Returns:
            True if this claim won, False if the round already had a winner
            (or moved on, or the player is no longer seated).
        """
        expected = {
            "winner": None,
            "roundNumber": round_number,
            player_path(player_id, "id"): player_id,
            player_path(player_id, "sittingOut"): False,
        }
        updates = {
            "winner": player_id,
            "winTime": now_ms(),
            player_path(player_id, "score"): Increment(1),
        }
        won = await self.store.conditional_write(code, expected, updates)
        if won:
            logger.info(f"Player {player_id} won round {round_number} in room {code}")
        else:
            logger.debug(f"Win claim by {player_id} for round {round_number} in room {code} lost the race")
        return won

    async def start_clock(self, code: str, player_id: str) -> bool:
        """
        Winner starts everyone else's countdown.

        Returns:
            True if the round became clocked by this call.
        """
        room = await self.load(code)
        if room.round.winner != player_id:
            raise InvalidAction("Only the round winner can start the clock")
        if room.round.clocked:
            return False
        return await self.store.conditional_write(
            code,
            {"winner": player_id, "roundNumber": room.round.round_number, "clocked": False},
            {"clocked": True},
        )

    # -------------------------------------------------------------------------
    # Ready barrier and round advance
    # -------------------------------------------------------------------------

    async def ready_up(self, code: str, player_id: str) -> bool:
        """
        Mark player_id ready for the next round.

        Returns:
            False if the player is sitting out or the round moved on first.
        """
        room = await self.load(code)
        player = room.get_player(player_id)
        if player is None:
            raise InvalidAction("You are not in this room")
        if player.sitting_out:
            return False
        if player.ready:
            return True
        return await self.store.conditional_write(
            code,
            {
                "roundNumber": room.round.round_number,
                player_path(player_id, "id"): player_id,
                player_path(player_id, "sittingOut"): False,
            },
            {player_path(player_id, "ready"): True},
        )

    async def check_advance(self, room: Room, evaluator_id: str) -> bool:
        """
        Start the next round if the evaluator is host and everyone active is ready.

        Safe to call from every snapshot: the commit is guarded by the round
        number and by the ready/sitting-out flags it was decided on.

        Returns:
            True if this call committed the next round.
        """
        if not room.is_host(evaluator_id):
            return False
        if not room.ready_barrier_met():
            return False
        return await self._commit_next_round(room, require_barrier=True)

    async def skip_round(self, code: str, actor_id: str) -> bool:
        """Host moves on without waiting for the barrier once the round is won and clocked."""
        room = await self.load(code)
        if not room.is_host(actor_id):
            raise NotHost("Only the host can skip the round")
        if not (room.round.is_won and room.round.clocked):
            raise InvalidAction("A round can be skipped once it is won and clocked")
        return await self._commit_next_round(room, require_barrier=False)

    async def _commit_next_round(self, room: Room, require_barrier: bool) -> bool:
        """Replace the round wholesale in one guarded write."""
        current = room.round.round_number
        if self._advanced_from.get(room.code, 0) >= current:
            return False

        expected: dict[str, Any] = {"roundNumber": current, "host": room.host}
        updates: dict[str, Any] = {
            "originalCards": cards_to_dicts(generate_cards(self.rng)),
            "winner": None,
            "winTime": None,
            "clocked": False,
            "roundNumber": current + 1,
        }
        for player in room.players.values():
            if require_barrier:
                expected[player_path(player.id, "sittingOut")] = player.sitting_out
            if player.ready:
                expected[player_path(player.id, "ready")] = True
                updates[player_path(player.id, "ready")] = False

        advanced = await self.store.conditional_write(room.code, expected, updates)
        if advanced:
            self._advanced_from[room.code] = current
            logger.info(f"Room {room.code} advanced to round {current + 1}")
        else:
            logger.debug(f"Round advance from {current} in room {room.code} was stale")
        return advanced

    # -------------------------------------------------------------------------
    # Roster
    # -------------------------------------------------------------------------

    async def set_sitting_out(self, code: str, player_id: str, sitting_out: bool) -> Room:
        """
        Sit out or join back in.

        Returns:
            The room after the change (join-back uses its originalCards).
        """
        applied = await self.store.conditional_write(
            code,
            {player_path(player_id, "id"): player_id},
            {player_path(player_id, "sittingOut"): sitting_out},
        )
        if not applied:
            raise InvalidAction("You are not in this room")
        return await self.load(code)

    async def sit_out(self, code: str, player_id: str) -> Room:
        return await self.set_sitting_out(code, player_id, True)

    async def join_back(self, code: str, player_id: str) -> Room:
        return await self.set_sitting_out(code, player_id, False)

    async def kick(self, code: str, actor_id: str, target_id: str) -> bool:
        """
        Host removes another player, keeping their score in scoreHistory.

        Returns:
            False if the target was already gone.
        """
        room = await self.load(code)
        if not room.is_host(actor_id):
            raise NotHost("Only the host can remove players")
        if actor_id == target_id:
            raise InvalidAction("You cannot remove yourself")
        target = room.get_player(target_id)
        if target is None:
            return False
        kicked = await self.store.conditional_write(
            code,
            {"host": actor_id, player_path(target_id, "id"): target_id},
            {
                f"scoreHistory/{target.name}": target.score,
                player_path(target_id): None,
            },
        )
        if kicked:
            logger.info(f"Player {target_id} removed from room {code} by host")
        return kicked

    async def leave(self, code: str, player_id: str) -> None:
        """
        Graceful leave.

        The host leaving a waiting room closes it. Otherwise the score is kept
        in scoreHistory and, if the host left, the earliest-joined player
        takes over. The last player out removes the room.
        """
        data = await self.store.read_once(code)
        if not data:
            return
        room = Room.from_dict(code, data)
        if room.get_player(player_id) is None:
            return

        if room.is_host(player_id) and not room.game_started:
            await self.store.delete(code)
            self.forget(code)
            logger.info(f"Host left waiting room {code}, room closed")
            return

        if set(room.players) == {player_id}:
            await self.store.delete(code)
            self.forget(code)
            logger.info(f"Last player left room {code}, room removed")
            return

        expected: dict[str, Any] = {player_path(player_id, "id"): player_id}
        updates = disconnect_actions(room, player_id)
        if "host" in updates:
            expected["host"] = player_id
        if not await self.store.conditional_write(code, expected, updates):
            # Host changed underneath us; leave without touching it
            updates.pop("host", None)
            expected.pop("host", None)
            await self.store.conditional_write(code, expected, updates)
        logger.info(f"Player {player_id} left room {code}")

    async def repair_host(self, room: Room, player_id: str) -> bool:
        """
        Take over a room whose host record is gone.

        Only the player next_host() picks attempts it, as a compare-and-set
        on the stale host id.
        """
        if room.host in room.players:
            return False
        successor = room.next_host()
        if successor is None or successor.id != player_id:
            return False
        repaired = await self.store.conditional_write(
            room.code,
            {"host": room.host, player_path(player_id, "id"): player_id},
            {"host": player_id},
        )
        if repaired:
            logger.info(f"Player {player_id} took over as host of room {room.code}")
        return repaired
