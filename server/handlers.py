"""WebSocket message handlers for the 24 game.

Each handler corresponds to a single message type from the client.
Handlers are dispatched via the HANDLERS dict; dispatch() turns game
errors into error messages so a bad request never ends the connection.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from client import GameClient
from constants import MAX_PLAYERS
from exceptions import GameError, ValidationError
from logging_config import room_code_var

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    player_id: str
    client: GameClient

    @property
    def room_code(self) -> Optional[str]:
        return self.client.room_code


def _required(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing {key}")
    return value


# ---------------------------------------------------------------------------
# Lobby / Room handlers
# ---------------------------------------------------------------------------

async def handle_create_room(data: dict, ctx: ConnectionContext, **kw) -> None:
    try:
        capacity = int(data.get("capacity", MAX_PLAYERS))
    except (TypeError, ValueError):
        raise ValidationError("Capacity must be a number")
    code = await ctx.client.create_room(data.get("player_name", ""), capacity)
    room_code_var.set(code)


async def handle_join_room(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.join_room(data.get("room_code", ""), data.get("player_name", ""))
    room_code_var.set(ctx.room_code)


async def handle_start_game(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.start_game()


async def handle_leave_room(data: dict, ctx: ConnectionContext, **kw) -> None:
    code = ctx.room_code
    await ctx.client.leave_room()
    room_code_var.set(None)
    if code is not None:
        await ctx.websocket.send_json({"type": "removed", "room_code": code, "reason": "left"})


async def handle_close_room(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.close_room()
    room_code_var.set(None)


async def handle_kick_player(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.kick_player(_required(data, "player_id"))


# ---------------------------------------------------------------------------
# Board handlers
# ---------------------------------------------------------------------------

async def handle_select_card(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.select_card(_required(data, "card_id"))


async def handle_select_operation(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.select_operation(_required(data, "operation"))


async def handle_submit_move(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.submit_move(
        _required(data, "left"),
        _required(data, "operation"),
        _required(data, "right"),
    )


async def handle_undo(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.undo()


async def handle_reset(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.reset()


# ---------------------------------------------------------------------------
# Round flow handlers
# ---------------------------------------------------------------------------

async def handle_start_clock(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.start_clock()


async def handle_ready(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.ready_up()


async def handle_sit_out(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.sit_out()


async def handle_join_back(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.join_back()


async def handle_skip_round(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.skip_round()


# ---------------------------------------------------------------------------
# Solo handlers
# ---------------------------------------------------------------------------

async def handle_start_solo(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.start_solo()


async def handle_next_puzzle(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.next_puzzle()


async def handle_end_solo(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.client.end_solo()


# ---------------------------------------------------------------------------
# Handler dispatch table
# ---------------------------------------------------------------------------

HANDLERS = {
    "create_room": handle_create_room,
    "join_room": handle_join_room,
    "start_game": handle_start_game,
    "select_card": handle_select_card,
    "select_operation": handle_select_operation,
    "submit_move": handle_submit_move,
    "undo": handle_undo,
    "reset": handle_reset,
    "start_clock": handle_start_clock,
    "ready": handle_ready,
    "sit_out": handle_sit_out,
    "join_back": handle_join_back,
    "kick_player": handle_kick_player,
    "leave_room": handle_leave_room,
    "close_room": handle_close_room,
    "skip_round": handle_skip_round,
    "start_solo": handle_start_solo,
    "next_puzzle": handle_next_puzzle,
    "end_solo": handle_end_solo,
}


async def dispatch(data: dict, ctx: ConnectionContext, **kw) -> None:
    """
    Run the handler for one inbound message.

    Unknown types are ignored. GameErrors are reported to the sender as
    {"type": "error", "message", "retryable"}.
    """
    handler = HANDLERS.get(data.get("type"))
    if handler is None:
        logger.debug(f"Ignoring unknown message type {data.get('type')!r}")
        return
    try:
        await handler(data, ctx, **kw)
    except GameError as e:
        logger.debug(f"{data.get('type')} rejected for {ctx.player_id}: {e.message}")
        await ctx.websocket.send_json({
            "type": "error",
            "message": e.message,
            "retryable": e.retryable,
        })
