"""
Game client: one connected player's view of a room.

The client plays the round locally on its own MoveEngine and talks to the
other players only through the replicated store. It subscribes to its room
and reacts to every snapshot:

    - new round number  -> reload the board from originalCards
    - winner appears    -> announce it (the winner's board stays locked)
    - clocked appears   -> start the local countdown; freeze non-winners on expiry
    - self removed      -> report and drop the room
    - host and everyone ready -> commit the next round in the background

Snapshots may repeat or arrive late, so each reaction is keyed on the round
number and applied at most once. The board lock is recomputed from the
latest snapshot each time, so a late snapshot cannot leave it stuck.

The same client can instead run a solo session (no room, no store).
"""

import asyncio
import functools
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from clock import RoundClock
from constants import MAX_PLAYERS
from exceptions import InvalidAction, NotHost
from game import MoveEngine, Operation
from room import Room, RoomStateMachine, disconnect_actions
from solo import SoloSession
from stores.sync import Subscription, SyncStore
from validation import validate_player_name, validate_room_code

logger = logging.getLogger(__name__)

Sink = Callable[[dict], Awaitable[None]]

SOLVED = "You solved it!"
TIMES_UP = "Time's up!"
SITTING_OUT = "You are sitting out"


class GameClient:
    """
    Library entry point for one player.

    Args:
        store: Replicated room store.
        player_id: Opaque id; generated when omitted.
        sink: Async callable receiving outbound event dicts.
        rng: Random source for room codes and puzzles (tests).
        clock_factory: Builds the RoundClock for each client (tests).
        session_owner: Owner of deferred disconnect writes; defaults to player_id.
    """

    def __init__(
        self,
        store: SyncStore,
        player_id: Optional[str] = None,
        sink: Optional[Sink] = None,
        rng=None,
        clock_factory: Callable[[], RoundClock] = RoundClock,
        session_owner: Optional[str] = None,
    ) -> None:
        self.store = store
        self.player_id = player_id or str(uuid.uuid4())
        self.sink = sink
        self.session_owner = session_owner or self.player_id
        self.machine = RoomStateMachine(store, rng)
        self.engine = MoveEngine()
        self.clock = clock_factory()

        self.room_code: Optional[str] = None
        self.room: Optional[Room] = None
        self.solo: Optional[SoloSession] = None
        self._subscription: Optional[Subscription] = None
        self._tasks: set[asyncio.Task] = set()

        self._loaded_round: Optional[int] = None
        self._announced_round: Optional[int] = None
        self._clocked_round: Optional[int] = None
        self._claimed_round: Optional[int] = None

        self._deferred: dict[str, Any] = {}
        self._deferred_dirty = False
        self._deferred_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @property
    def in_room(self) -> bool:
        return self.room_code is not None

    @property
    def is_host(self) -> bool:
        return self.room is not None and self.room.is_host(self.player_id)

    async def _emit(self, message: dict) -> None:
        if self.sink is not None:
            await self.sink(message)

    def _spawn(self, coro: Awaitable, label: str) -> asyncio.Task:
        """Run coro in the background; failures are logged and sent to the sink."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._task_done, label))
        return task

    def _task_done(self, label: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(f"Background {label} failed for {self.player_id}: {exc}", exc_info=exc)
        if self.sink is not None:
            report = asyncio.create_task(self._emit({
                "type": "error",
                "message": f"{label} failed: {exc}",
                "retryable": getattr(exc, "retryable", False),
            }))
            self._tasks.add(report)
            report.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for background work (advance checks, deferred sync) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _require_room(self) -> Room:
        if self.room_code is None or self.room is None:
            raise InvalidAction("You are not in a room")
        return self.room

    def _require_lobby(self) -> None:
        if self.in_room:
            raise InvalidAction("Leave your current room first")
        if self.solo is not None:
            raise InvalidAction("Finish solo play first")

    def _require_board(self) -> MoveEngine:
        if self.solo is None:
            self._require_room()
        return self.engine

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    async def create_room(self, name: str, capacity: int = MAX_PLAYERS) -> str:
        """
        Create a room and sit in it as host.

        Returns:
            The room code.
        """
        self._require_lobby()
        name = validate_player_name(name)
        room = await self.machine.create_room(self.player_id, name, capacity)
        await self._emit({
            "type": "room_created",
            "room_code": room.code,
            "player_id": self.player_id,
            "capacity": room.capacity,
        })
        await self._enter(room)
        return room.code

    async def join_room(self, code: str, name: str) -> tuple[str, int]:
        """
        Join an existing room.

        Returns:
            (player_id, score restored from an earlier visit under this name)
        """
        self._require_lobby()
        code = validate_room_code(code)
        name = validate_player_name(name)
        _, restored = await self.machine.join(code, self.player_id, name)
        await self._emit({
            "type": "room_joined",
            "room_code": code,
            "player_id": self.player_id,
            "restored_score": restored,
        })
        await self._enter(await self.machine.load(code))
        return self.player_id, restored

    async def _enter(self, room: Room) -> None:
        code = room.code
        self.room_code = code
        self.room = room

        # Disconnect writes must be in place before the first snapshot
        self._deferred_dirty = True
        await self._sync_deferred()

        async def on_change(doc: Optional[dict]) -> None:
            await self._on_snapshot(code, doc)

        self._subscription = await self.store.subscribe(code, on_change)

    async def start_game(self) -> None:
        room = self._require_room()
        await self.machine.start_game(room.code, self.player_id)

    async def leave_room(self) -> None:
        """Leave gracefully; disconnect writes are cancelled, not fired."""
        if self.room_code is None:
            return
        code, sub = self._detach()
        try:
            await self.machine.leave(code, self.player_id)
            await self.store.cancel_deferred(self.session_owner, code)
            self._deferred = {}
        finally:
            if sub is not None:
                await sub.close()
        logger.info(f"Player {self.player_id} left room {code}")

    async def close_room(self) -> None:
        room = self._require_room()
        await self.machine.close_room(room.code, self.player_id)
        code, sub = self._detach()
        if code is not None:
            await self._emit({"type": "room_closed", "room_code": code})
        await self._teardown((code, sub))

    async def kick_player(self, target_id: str) -> bool:
        room = self._require_room()
        return await self.machine.kick(room.code, self.player_id, target_id)

    async def close(self) -> None:
        """Drop the room without leaving (as on a lost connection)."""
        # Let the disconnect writes settle first; they are what fires next
        if self._deferred_task is not None and not self._deferred_task.done():
            await asyncio.gather(self._deferred_task, return_exceptions=True)
        sub = self._subscription
        if self.room_code is not None:
            self.machine.forget(self.room_code)
        self._subscription = None
        self.room_code = None
        self.room = None
        self.solo = None
        self.clock.stop()
        if sub is not None:
            await sub.close()
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    def _detach(self) -> tuple[Optional[str], Optional[Subscription]]:
        """Forget the room synchronously so late snapshots are ignored."""
        code, sub = self.room_code, self._subscription
        if code is not None:
            self.machine.forget(code)
        self.room_code = None
        self.room = None
        self._subscription = None
        self._loaded_round = None
        self._announced_round = None
        self._clocked_round = None
        self._claimed_round = None
        self.clock.stop()
        self.engine = MoveEngine()
        return code, sub

    async def _teardown(self, detached: tuple[Optional[str], Optional[Subscription]]) -> None:
        code, sub = detached
        if code is not None:
            await self.store.cancel_deferred(self.session_owner, code)
            self._deferred = {}
        if sub is not None:
            await sub.close()

    # -------------------------------------------------------------------------
    # Board
    # -------------------------------------------------------------------------

    async def select_card(self, card_id: str) -> None:
        engine = self._require_board()
        move = engine.select_card(card_id)
        await self._board_changed(move is not None)

    async def select_operation(self, symbol: str) -> None:
        engine = self._require_board()
        engine.select_operation(Operation.parse(symbol))
        await self._board_changed(False)

    async def submit_move(self, left_id: str, symbol: str, right_id: str) -> None:
        engine = self._require_board()
        engine.submit_move(left_id, Operation.parse(symbol), right_id)
        await self._board_changed(True)

    async def undo(self) -> bool:
        engine = self._require_board()
        undone = engine.undo()
        await self._board_changed(False)
        return undone

    async def reset(self) -> None:
        engine = self._require_board()
        engine.reset()
        await self._board_changed(False)

    async def _board_changed(self, combined: bool) -> None:
        if combined and self.engine.is_solved:
            if self.solo is not None:
                await self._solo_solved()
            else:
                await self.claim_win()
        await self._emit({"type": "board", **self.engine.to_dict()})

    async def claim_win(self) -> bool:
        """
        Claim the round for a solved board.

        Returns:
            True if this player is the round winner.
        """
        room = self._require_room()
        round_number = self._loaded_round or room.round.round_number
        if self._claimed_round == round_number or room.round.is_won:
            return room.round.winner == self.player_id
        self._claimed_round = round_number
        try:
            won = await self.machine.claim_win(room.code, self.player_id, round_number)
        except Exception:
            self._claimed_round = None
            raise
        if won:
            self.engine.lock(SOLVED)
        return won

    def _apply_lock(self, room: Room) -> None:
        """Lock or unlock the board to match what the room says about this player."""
        current = room.round
        me = room.get_player(self.player_id)
        if current.winner == self.player_id:
            self.engine.lock(SOLVED)
        elif self._clocked_round == current.round_number and self.clock.expired:
            self.engine.lock(TIMES_UP)
        elif me is not None and me.sitting_out:
            self.engine.lock(SITTING_OUT)
        elif self.engine.lock_reason == SITTING_OUT:
            self.engine.unlock()

    # -------------------------------------------------------------------------
    # Round flow
    # -------------------------------------------------------------------------

    async def start_clock(self) -> bool:
        room = self._require_room()
        return await self.machine.start_clock(room.code, self.player_id)

    async def ready_up(self) -> bool:
        room = self._require_room()
        return await self.machine.ready_up(room.code, self.player_id)

    async def skip_round(self) -> bool:
        """Host moves on once this client's countdown for the round has run out."""
        room = self._require_room()
        if not room.is_host(self.player_id):
            raise NotHost("Only the host can skip the round")
        if self._clocked_round != room.round.round_number:
            raise InvalidAction("A round can be skipped once it is won and clocked")
        if not self.clock.expired:
            raise InvalidAction("Wait for the clock to run out")
        return await self.machine.skip_round(room.code, self.player_id)

    async def sit_out(self) -> None:
        room = self._require_room()
        fresh = await self.machine.sit_out(room.code, self.player_id)
        self._apply_lock(fresh)
        await self._emit({"type": "board", **self.engine.to_dict()})

    async def join_back(self) -> None:
        """Rejoin play on the room's current cards, keeping any win or freeze."""
        room = self._require_room()
        fresh = await self.machine.join_back(room.code, self.player_id)
        if fresh.round.round_number != self._loaded_round:
            self.clock.stop()
        self.engine.load(fresh.round.original_cards)
        self._loaded_round = fresh.round.round_number
        self._apply_lock(fresh)
        await self._emit({"type": "board", **self.engine.to_dict()})

    # -------------------------------------------------------------------------
    # Solo play
    # -------------------------------------------------------------------------

    def _require_solo(self) -> SoloSession:
        if self.solo is None:
            raise InvalidAction("You are not playing solo")
        return self.solo

    async def start_solo(self) -> None:
        """Start a fresh solo session (score and best time reset)."""
        if self.in_room:
            raise InvalidAction("Leave your current room first")
        self.solo = SoloSession(self.machine.rng, time_fn=self.clock.time_fn)
        self.engine = self.solo.engine
        self.solo.deal()
        logger.info(f"Player {self.player_id} started solo play")
        await self._solo_round()

    async def next_puzzle(self) -> None:
        solo = self._require_solo()
        solo.next_puzzle()
        await self._solo_round()

    async def end_solo(self) -> None:
        solo = self._require_solo()
        self.solo = None
        self.engine = MoveEngine()
        logger.info(f"Player {self.player_id} ended solo play (score {solo.score})")
        await self._emit({"type": "solo_ended", "score": solo.score, "best_time": solo.best_time})

    async def _solo_round(self) -> None:
        solo = self._require_solo()
        await self._emit({
            "type": "solo_round",
            **solo.to_dict(),
            "cards": [card.to_dict() for card in solo.engine.original_cards],
        })
        await self._emit({"type": "board", **self.engine.to_dict()})

    async def _solo_solved(self) -> None:
        solo = self._require_solo()
        if solo.solved:
            return
        new_best = solo.record_solve()
        await self._emit({"type": "solo_solved", "new_best": new_best, **solo.to_dict()})

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def _on_snapshot(self, code: str, doc: Optional[dict]) -> None:
        if self.room_code != code:
            return

        if doc is None:
            detached = self._detach()
            await self._emit({"type": "room_closed", "room_code": code})
            self._spawn(self._teardown(detached), "room teardown")
            return

        room = Room.from_dict(code, doc)
        previous = self.room
        me = room.get_player(self.player_id)
        if me is None:
            if previous is not None and previous.get_player(self.player_id) is not None:
                detached = self._detach()
                await self._emit({"type": "removed", "room_code": code})
                self._spawn(self._teardown(detached), "room teardown")
            return

        if self._loaded_round is not None and room.round.round_number < self._loaded_round:
            # Older than a round join_back already loaded
            return

        self.room = room
        current = room.round
        events: list[dict] = []
        lock_before = (self.engine.locked, self.engine.lock_reason)

        if self._loaded_round != current.round_number:
            self._loaded_round = current.round_number
            self.clock.stop()
            self.engine.load(current.original_cards)
            events.append({
                "type": "round_started",
                "round_number": current.round_number,
                "cards": [card.to_dict() for card in current.original_cards],
            })

        if current.is_won and self._announced_round != current.round_number:
            self._announced_round = current.round_number
            winner = room.get_player(current.winner)
            events.append({
                "type": "round_won",
                "round_number": current.round_number,
                "winner": current.winner,
                "winner_name": winner.name if winner else None,
                "you": current.winner == self.player_id,
            })

        if current.clocked and self._clocked_round != current.round_number:
            self._clocked_round = current.round_number
            self.clock.start(functools.partial(self._on_clock_expired, current.round_number))
            events.append({
                "type": "clocked",
                "round_number": current.round_number,
                "seconds": self.clock.duration,
            })

        self._apply_lock(room)

        events.append({"type": "room_state", **self.room_view()})
        board_changed = (self.engine.locked, self.engine.lock_reason) != lock_before
        if board_changed or any(e["type"] == "round_started" for e in events):
            events.append({"type": "board", **self.engine.to_dict()})
        for event in events:
            await self._emit(event)

        self._schedule_deferred_sync()
        if room.host not in room.players:
            self._spawn(self.machine.repair_host(room, self.player_id), "host handover")
        elif room.is_host(self.player_id) and room.ready_barrier_met():
            self._spawn(self.machine.check_advance(room, self.player_id), "round advance")

    def _on_clock_expired(self, round_number: int) -> None:
        if self.room is None or self._loaded_round != round_number:
            return
        if self.room.round.winner == self.player_id:
            return
        self.engine.lock(TIMES_UP)
        logger.debug(f"Board frozen for {self.player_id} in round {round_number}")
        self._spawn(self._emit({
            "type": "board_frozen",
            "round_number": round_number,
            "board": self.engine.to_dict(),
        }), "board freeze")

    def room_view(self) -> dict:
        """Room summary sent to the player."""
        room = self.room
        if room is None:
            return {}
        return {
            "room_code": room.code,
            "host": room.host,
            "is_host": room.is_host(self.player_id),
            "capacity": room.capacity,
            "game_started": room.game_started,
            "round_number": room.round.round_number,
            "winner": room.round.winner,
            "clocked": room.round.clocked,
            "clock_remaining": self.clock.remaining(),
            "players": [
                {
                    "id": p.id,
                    "name": p.name,
                    "score": p.score,
                    "ready": p.ready,
                    "sitting_out": p.sitting_out,
                    "is_host": room.is_host(p.id),
                    "is_you": p.id == self.player_id,
                }
                for p in room.sorted_players()
            ],
        }

    # -------------------------------------------------------------------------
    # Deferred disconnect writes
    # -------------------------------------------------------------------------

    def _schedule_deferred_sync(self) -> None:
        """Bring the registered disconnect writes in line with the latest room."""
        self._deferred_dirty = True
        if self._deferred_task is None or self._deferred_task.done():
            self._deferred_task = self._spawn(self._sync_deferred(), "disconnect registration")

    async def _sync_deferred(self) -> None:
        while self._deferred_dirty:
            self._deferred_dirty = False
            code, room = self.room_code, self.room
            if code is None or room is None:
                return
            wanted = disconnect_actions(room, self.player_id)
            for path in set(self._deferred) - set(wanted):
                await self.store.cancel_deferred(self.session_owner, code, path)
            for path, value in wanted.items():
                if path not in self._deferred or self._deferred[path] != value:
                    await self.store.register_deferred(self.session_owner, code, path, value)
            if self.room_code != code:
                # Left while registering
                await self.store.cancel_deferred(self.session_owner, code)
                return
            self._deferred = wanted
