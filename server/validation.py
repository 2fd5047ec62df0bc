"""Player name and room code validation."""

import re

from constants import MAX_PLAYER_NAME_LENGTH, MAX_PLAYERS, MIN_PLAYERS, ROOM_CODE_LENGTH
from exceptions import ValidationError

_NAME_RE = re.compile(r"^[a-zA-Z0-9 '\-]+$")
_CODE_RE = re.compile(rf"^[A-Z0-9]{{{ROOM_CODE_LENGTH}}}$")


def validate_player_name(name: str) -> str:
    """Return the trimmed name or raise ValidationError."""
    trimmed = (name or "").strip()
    if not trimmed:
        raise ValidationError("Please enter your name")
    if len(trimmed) > MAX_PLAYER_NAME_LENGTH:
        raise ValidationError(f"Max {MAX_PLAYER_NAME_LENGTH} characters")
    if not _NAME_RE.match(trimmed):
        raise ValidationError("Only letters, numbers, spaces, hyphens allowed")
    return trimmed


def validate_room_code(code: str) -> str:
    """Return the normalized (upper-case) code or raise ValidationError."""
    cleaned = (code or "").strip().upper()
    if not _CODE_RE.match(cleaned):
        raise ValidationError("Invalid room code")
    return cleaned


def validate_capacity(capacity: int) -> int:
    if not isinstance(capacity, int) or isinstance(capacity, bool):
        raise ValidationError("Capacity must be a whole number")
    if not MIN_PLAYERS <= capacity <= MAX_PLAYERS:
        raise ValidationError(f"Capacity must be between {MIN_PLAYERS} and {MAX_PLAYERS}")
    return capacity
