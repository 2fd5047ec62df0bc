"""
Test suite for WebSocket message handlers.

Tests handler flows and error reporting using a mock WebSocket and the
in-process store.

Run with: pytest test_handlers.py -v
"""

import asyncio
from unittest.mock import patch

import pytest

from client import GameClient
from clock import RoundClock
from exceptions import TransportError
from handlers import HANDLERS, ConnectionContext, dispatch
from puzzle import fallback_cards
from stores.memory_store import MemoryStore


# =============================================================================
# Mock helpers
# =============================================================================

class MockWebSocket:
    """Mock WebSocket that collects sent messages."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send_json(self, data: dict):
        self.messages.append(data)

    def last_message(self) -> dict:
        return self.messages[-1] if self.messages else {}

    def messages_of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m.get("type") == msg_type]


def make_ctx(store, player_id="test_player", duration=60.0):
    """Create a ConnectionContext whose client reports to the mock socket."""
    ws = MockWebSocket()
    client = GameClient(
        store,
        player_id=player_id,
        sink=ws.send_json,
        clock_factory=lambda: RoundClock(duration=duration),
    )
    return ConnectionContext(
        websocket=ws,
        connection_id=f"conn_{player_id}",
        player_id=player_id,
        client=client,
    )


@pytest.fixture(autouse=True)
def fixed_cards():
    def deal(rng=None):
        return fallback_cards(timestamp_ms=0)

    with patch("room.generate_cards", side_effect=deal), patch("solo.generate_cards", side_effect=deal):
        yield


@pytest.fixture
def store():
    return MemoryStore()


async def settle(store, *ctxs):
    for _ in range(3):
        await store.settle()
        for ctx in ctxs:
            await ctx.client.wait_idle()


async def host_and_guest(store, duration=60.0):
    host = make_ctx(store, "host", duration)
    guest = make_ctx(store, "guest", duration)
    await dispatch({"type": "create_room", "player_name": "Hosty", "capacity": 3}, host)
    code = host.room_code
    await dispatch({"type": "join_room", "room_code": code.lower(), "player_name": "Guesty"}, guest)
    await settle(store, host, guest)
    return code, host, guest


# =============================================================================
# Dispatch table
# =============================================================================

class TestDispatch:

    def test_every_inbound_type_has_a_handler(self):
        assert set(HANDLERS) == {
            "create_room", "join_room", "start_game", "select_card",
            "select_operation", "submit_move", "undo", "reset", "start_clock",
            "ready", "sit_out", "join_back", "kick_player", "leave_room",
            "close_room", "skip_round", "start_solo", "next_puzzle", "end_solo",
        }

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, store):
        ctx = make_ctx(store)
        await dispatch({"type": "teleport"}, ctx)
        assert ctx.websocket.messages == []

    @pytest.mark.asyncio
    async def test_game_error_becomes_error_message(self, store):
        ctx = make_ctx(store)
        await dispatch({"type": "join_room", "room_code": "ZZZZZZ", "player_name": "Bob"}, ctx)
        assert ctx.websocket.last_message() == {
            "type": "error",
            "message": "Room ZZZZZZ not found",
            "retryable": False,
        }

    @pytest.mark.asyncio
    async def test_validation_errors_are_retryable(self, store):
        ctx = make_ctx(store)
        await dispatch({"type": "create_room", "player_name": "Bob!!", "capacity": 2}, ctx)
        msg = ctx.websocket.last_message()
        assert msg["type"] == "error"
        assert msg["retryable"] is True

    @pytest.mark.asyncio
    async def test_bad_capacity(self, store):
        ctx = make_ctx(store)
        await dispatch({"type": "create_room", "player_name": "Bob", "capacity": "lots"}, ctx)
        assert ctx.websocket.last_message()["message"] == "Capacity must be a number"

    @pytest.mark.asyncio
    async def test_transport_error_is_reported_not_raised(self, store):
        ctx = make_ctx(store)
        with patch.object(store, "read_once", side_effect=TransportError("Store read failed, please retry")):
            await dispatch({"type": "join_room", "room_code": "ABC123", "player_name": "Bob"}, ctx)
        msg = ctx.websocket.last_message()
        assert msg["type"] == "error"
        assert msg["retryable"] is True


# =============================================================================
# Lobby handlers
# =============================================================================

class TestLobbyHandlers:

    @pytest.mark.asyncio
    async def test_create_and_join(self, store):
        code, host, guest = await host_and_guest(store)
        assert host.websocket.messages_of_type("room_created")[0]["room_code"] == code
        joined = guest.websocket.messages_of_type("room_joined")[0]
        assert joined["room_code"] == code
        assert joined["player_id"] == "guest"
        assert len(host.websocket.messages_of_type("room_state")[-1]["players"]) == 2

    @pytest.mark.asyncio
    async def test_kick_requires_host(self, store):
        code, host, guest = await host_and_guest(store)
        await dispatch({"type": "kick_player", "player_id": "host"}, guest)
        assert guest.websocket.last_message()["message"] == "Only the host can remove players"

        await dispatch({"type": "kick_player", "player_id": "guest"}, host)
        await settle(store, host, guest)
        assert guest.websocket.messages_of_type("removed")

    @pytest.mark.asyncio
    async def test_kick_missing_target(self, store):
        _, host, _ = await host_and_guest(store)
        await dispatch({"type": "kick_player"}, host)
        assert host.websocket.last_message()["message"] == "Missing player_id"

    @pytest.mark.asyncio
    async def test_leave_room(self, store):
        code, host, guest = await host_and_guest(store)
        await dispatch({"type": "leave_room"}, guest)
        assert guest.websocket.last_message() == {"type": "removed", "room_code": code, "reason": "left"}
        assert guest.room_code is None


# =============================================================================
# Board handlers
# =============================================================================

class TestBoardHandlers:

    @pytest.mark.asyncio
    async def test_selection_flow(self, store):
        _, host, _ = await host_and_guest(store)
        await dispatch({"type": "select_card", "card_id": "8-♦-0-2"}, host)
        await dispatch({"type": "select_operation", "operation": "÷"}, host)
        await dispatch({"type": "select_card", "card_id": "3-♠-0-0"}, host)
        board = host.websocket.last_message()
        assert board["type"] == "board"
        assert len(board["cards"]) == 3
        assert board["moves"] == ["8♦ / 3♠ = 8/3"]

    @pytest.mark.asyncio
    async def test_operation_without_card(self, store):
        _, host, _ = await host_and_guest(store)
        await dispatch({"type": "select_operation", "operation": "+"}, host)
        assert host.websocket.last_message()["message"] == "Please select a card first!"

    @pytest.mark.asyncio
    async def test_submit_solution_wins(self, store):
        code, host, guest = await host_and_guest(store, duration=0.01)
        await dispatch({"type": "submit_move", "left": "8-♦-0-2", "operation": "/", "right": "3-♠-0-0"}, guest)
        third = guest.client.engine.cards[-1].id
        await dispatch({"type": "submit_move", "left": "3-♥-0-1", "operation": "-", "right": third}, guest)
        diff = guest.client.engine.cards[-1].id
        await dispatch({"type": "submit_move", "left": "8-♣-0-3", "operation": "/", "right": diff}, guest)
        await settle(store, host, guest)

        assert guest.websocket.messages_of_type("board")[-1]["solved"] is True
        assert host.websocket.messages_of_type("round_won")[-1]["winner"] == "guest"

        await dispatch({"type": "start_clock"}, host)
        assert host.websocket.last_message()["message"] == "Only the round winner can start the clock"
        await dispatch({"type": "start_clock"}, guest)
        await settle(store, host, guest)
        assert host.websocket.messages_of_type("clocked")

        await asyncio.sleep(0.05)
        await dispatch({"type": "skip_round"}, host)
        await settle(store, host, guest)
        assert (await store.read_once(code, "roundNumber")) == 2

    @pytest.mark.asyncio
    async def test_undo_and_reset(self, store):
        _, host, _ = await host_and_guest(store)
        await dispatch({"type": "submit_move", "left": "3-♠-0-0", "operation": "+", "right": "3-♥-0-1"}, host)
        await dispatch({"type": "undo"}, host)
        assert len(host.websocket.last_message()["cards"]) == 4
        await dispatch({"type": "reset"}, host)
        assert host.websocket.last_message()["can_undo"] is False

    @pytest.mark.asyncio
    async def test_ready_and_sit_out(self, store):
        code, host, guest = await host_and_guest(store)
        await dispatch({"type": "sit_out"}, guest)
        assert guest.websocket.last_message()["lock_reason"] == "You are sitting out"
        await dispatch({"type": "ready"}, host)
        await settle(store, host, guest)
        assert (await store.read_once(code, "roundNumber")) == 2
        await dispatch({"type": "join_back"}, guest)
        assert guest.websocket.last_message()["locked"] is False

    @pytest.mark.asyncio
    async def test_skip_refused_during_countdown(self, store):
        code, host, guest = await host_and_guest(store)
        await store.write_atomic(code, {"winner": "guest", "clocked": True})
        await settle(store, host, guest)

        await dispatch({"type": "skip_round"}, host)
        assert host.websocket.last_message()["message"] == "Wait for the clock to run out"
        assert (await store.read_once(code, "roundNumber")) == 1


# =============================================================================
# Solo handlers
# =============================================================================

class TestSoloHandlers:

    @pytest.mark.asyncio
    async def test_solo_flow(self, store):
        ctx = make_ctx(store, "solo")
        await dispatch({"type": "start_solo"}, ctx)
        assert ctx.websocket.messages_of_type("solo_round")[-1]["round_number"] == 1

        await dispatch({"type": "next_puzzle"}, ctx)
        assert ctx.websocket.last_message()["message"] == "Solve this puzzle first"

        await dispatch({"type": "submit_move", "left": "8-♦-0-2", "operation": "/", "right": "3-♠-0-0"}, ctx)
        third = ctx.client.engine.cards[-1].id
        await dispatch({"type": "submit_move", "left": "3-♥-0-1", "operation": "-", "right": third}, ctx)
        diff = ctx.client.engine.cards[-1].id
        await dispatch({"type": "submit_move", "left": "8-♣-0-3", "operation": "/", "right": diff}, ctx)
        assert ctx.websocket.messages_of_type("solo_solved")[-1]["score"] == 1

        await dispatch({"type": "next_puzzle"}, ctx)
        assert ctx.websocket.messages_of_type("solo_round")[-1]["round_number"] == 2

        await dispatch({"type": "end_solo"}, ctx)
        assert ctx.websocket.last_message() == {"type": "solo_ended", "score": 1, "best_time": 0}

    @pytest.mark.asyncio
    async def test_end_solo_without_session(self, store):
        ctx = make_ctx(store, "solo")
        await dispatch({"type": "end_solo"}, ctx)
        assert ctx.websocket.last_message()["message"] == "You are not playing solo"
