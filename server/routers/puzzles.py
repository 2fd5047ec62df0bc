"""
Puzzle and room lookup API router.

Provides stateless puzzle endpoints (solvability check, fresh hand) and a
read-only room summary for the join screen.
"""

import logging
import random
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from constants import HAND_SIZE
from exceptions import ValidationError
from puzzle import generate_cards
from room import Room
from solver import can_make_24
from stores.sync import SyncStore
from validation import validate_room_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["puzzles"])

# Store reference (set during app initialization)
_store: Optional[SyncStore] = None


def set_store(store: Optional[SyncStore]) -> None:
    global _store
    _store = store


# =============================================================================
# Request/Response Models
# =============================================================================


class CheckRequest(BaseModel):
    """Values to test for a way to make the target."""
    values: list[float] = Field(..., min_length=1, max_length=HAND_SIZE)


class CheckResponse(BaseModel):
    values: list[float]
    solvable: bool


class CardResponse(BaseModel):
    rank: str
    suit: Optional[str]
    id: str
    value: int


class PuzzleResponse(BaseModel):
    """A freshly generated solvable hand."""
    cards: list[CardResponse]


class RoomPlayerResponse(BaseModel):
    name: str
    score: int
    sitting_out: bool
    is_host: bool


class RoomSummaryResponse(BaseModel):
    """Public view of a room."""
    room_code: str
    capacity: int
    game_started: bool
    round_number: int
    players: list[RoomPlayerResponse]
    seats_left: int


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/puzzles/check", response_model=CheckResponse)
def check_puzzle(request: CheckRequest):
    """
    Tell whether the values can make 24.

    Plain def so FastAPI runs the search in its threadpool.
    """
    return CheckResponse(values=request.values, solvable=can_make_24(request.values))


@router.get("/puzzles/new", response_model=PuzzleResponse)
async def new_puzzle(seed: Optional[int] = Query(None, description="Seed for a repeatable hand")):
    """Deal a solvable hand."""
    rng = random.Random(seed) if seed is not None else None
    cards = generate_cards(rng)
    return PuzzleResponse(cards=[
        CardResponse(rank=c.rank, suit=c.suit, id=c.id, value=int(c.numeric_value))
        for c in cards
    ])


@router.get("/rooms/{room_code}", response_model=RoomSummaryResponse)
async def get_room(room_code: str):
    """Summarize a room by code."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Room store not initialized")
    try:
        code = validate_room_code(room_code)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    data = await _store.read_once(code)
    if not data:
        raise HTTPException(status_code=404, detail="Room not found")

    room = Room.from_dict(code, data)
    return RoomSummaryResponse(
        room_code=room.code,
        capacity=room.capacity,
        game_started=room.game_started,
        round_number=room.round.round_number,
        players=[
            RoomPlayerResponse(
                name=p.name,
                score=p.score,
                sitting_out=p.sitting_out,
                is_host=room.is_host(p.id),
            )
            for p in room.sorted_players()
        ],
        seats_left=max(0, room.capacity - len(room.active_players())),
    )
