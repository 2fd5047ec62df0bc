"""
Game exceptions.

All recoverable game errors derive from GameError so the WebSocket layer
can turn them into a single error message shape. None of them are fatal
to a connection.
"""


class GameError(Exception):
    """Base class for all game errors."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or ""
        super().__init__(self.message)


class ValidationError(GameError):
    """Malformed player name, room code or room setting."""

    retryable = True


class RoomNotFound(GameError):
    """Room does not exist."""

    def __init__(self, room_code: str):
        self.room_code = room_code
        super().__init__(f"Room {room_code} not found")


class RoomFull(GameError):
    """Room has no free seat."""

    def __init__(self, room_code: str, capacity: int):
        self.room_code = room_code
        self.capacity = capacity
        super().__init__(f"Room {room_code} is full ({capacity} players)")


class InvalidMove(GameError):
    """Move rejected by the local board."""


class DivisionByZero(InvalidMove):
    """Cannot divide by zero."""


class NotHost(GameError):
    """Only the host can do that."""


class InvalidAction(GameError):
    """Action not allowed in the current room state."""


class TransportError(GameError):
    """Replicated store read/write failed."""

    retryable = True
