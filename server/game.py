"""
Local move engine for the 24 game.

Each client plays the shared puzzle on its own board. Nothing here is
replicated: selections, derived cards, the undo stack and the move log are
private to the client, and every operation is synchronous.

Selection flow:
    no selection -> card selected -> card + operation selected -> combine
    -> no selection

    - Selecting the selected card again (no operation yet) deselects it.
    - Selecting the selected operation again deselects the operation.
    - Selecting another card before an operation replaces the selection.
    - Selecting a card while card + operation are selected combines them.

Combining two cards replaces both with one derived card carrying the
result. When a single card is left the board is solved if its value is
within EPSILON of the target.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from cards import Card, Number
from constants import EPSILON, TARGET
from exceptions import DivisionByZero, InvalidMove
from solver import format_value, is_integral


class Operation(str, Enum):
    """Binary operations available on the board."""

    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"

    def apply(self, a: Number, b: Number) -> Number:
        """
        Compute a <op> b.

        Raises:
            DivisionByZero: For division by a zero-valued card.
        """
        if self is Operation.ADD:
            return a + b
        if self is Operation.SUBTRACT:
            return a - b
        if self is Operation.MULTIPLY:
            return a * b
        if b == 0:
            raise DivisionByZero("Cannot divide by zero!")
        return a / b

    @classmethod
    def parse(cls, symbol: str) -> "Operation":
        aliases = {"×": "*", "x": "*", "÷": "/", "−": "-"}
        try:
            return cls(aliases.get(symbol, symbol))
        except ValueError:
            raise InvalidMove(f"Unknown operation {symbol!r}")


@dataclass(frozen=True)
class Move:
    """One combine step in the local move log."""

    left: Card
    operation: Operation
    right: Card
    result: Card

    def describe(self) -> str:
        return f"{self.left.display()} {self.operation.value} {self.right.display()} = {self.result.rank}"


@dataclass(frozen=True)
class _BoardState:
    cards: tuple[Card, ...]
    moves: tuple[Move, ...]


@dataclass
class MoveEngine:
    """
    Per-client board state machine.

    Attributes:
        original_cards: The round's dealt cards (reset target).
        cards: Cards currently on the board.
        moves: Move log for the current attempt.
        selected_card: First operand, if chosen.
        selected_operation: Operation, if chosen.
        locked: When True every board action is refused (lock_reason explains why).
    """

    original_cards: list[Card] = field(default_factory=list)
    cards: list[Card] = field(default_factory=list)
    moves: list[Move] = field(default_factory=list)
    selected_card: Optional[Card] = None
    selected_operation: Optional[Operation] = None
    locked: bool = False
    lock_reason: str = ""
    _history: list[_BoardState] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if self.original_cards and not self.cards:
            self.cards = list(self.original_cards)

    # -------------------------------------------------------------------------
    # Round lifecycle
    # -------------------------------------------------------------------------

    def load(self, original_cards: list[Card]) -> None:
        """Start a fresh attempt on a new set of dealt cards."""
        self.original_cards = list(original_cards)
        self.cards = list(original_cards)
        self.moves = []
        self._history = []
        self.clear_selection()
        self.unlock()

    def lock(self, reason: str) -> None:
        self.locked = True
        self.lock_reason = reason
        self.clear_selection()

    def unlock(self) -> None:
        self.locked = False
        self.lock_reason = ""

    def _ensure_unlocked(self) -> None:
        if self.locked:
            raise InvalidMove(self.lock_reason or "Board is locked")

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def clear_selection(self) -> None:
        self.selected_card = None
        self.selected_operation = None

    def get_card(self, card_id: str) -> Card:
        for card in self.cards:
            if card.id == card_id:
                return card
        raise InvalidMove(f"Card {card_id} is not on the board")

    def select_card(self, card_id: str) -> Optional[Move]:
        """
        Click a card.

        Returns:
            The Move if this click completed a combine, otherwise None.
        """
        self._ensure_unlocked()
        card = self.get_card(card_id)

        if self.selected_card is None or self.selected_operation is None:
            if self.selected_card is not None and self.selected_card.id == card.id:
                self.selected_card = None
            else:
                self.selected_card = card
            return None

        return self.combine(self.selected_card, card, self.selected_operation)

    def select_operation(self, operation: Operation) -> None:
        """Click an operation; toggles off when clicked twice."""
        self._ensure_unlocked()
        if self.selected_card is None:
            raise InvalidMove("Please select a card first!")
        if self.selected_operation == operation:
            self.selected_operation = None
        else:
            self.selected_operation = operation

    # -------------------------------------------------------------------------
    # Board actions
    # -------------------------------------------------------------------------

    def combine(self, card1: Card, card2: Card, operation: Operation) -> Move:
        """
        Replace two cards with the result of card1 <op> card2.

        Raises:
            InvalidMove: Same card twice, card not on the board, or board locked.
            DivisionByZero: Dividing by a zero-valued card; selection is cleared.
        """
        self._ensure_unlocked()
        if card1.id == card2.id:
            raise InvalidMove("Please select two different cards!")
        card1 = self.get_card(card1.id)
        card2 = self.get_card(card2.id)

        try:
            result = operation.apply(card1.numeric_value, card2.numeric_value)
        except DivisionByZero:
            self.clear_selection()
            raise

        if is_integral(result):
            result = int(result)
        result_card = Card(
            rank=format_value(result),
            suit=None,
            id=f"result-{uuid.uuid4().hex[:12]}",
            is_original=False,
            value=result,
        )
        move = Move(left=card1, operation=operation, right=card2, result=result_card)

        self._history.append(_BoardState(tuple(self.cards), tuple(self.moves)))
        self.cards = [c for c in self.cards if c.id not in (card1.id, card2.id)]
        self.cards.append(result_card)
        self.moves.append(move)
        self.clear_selection()
        return move

    def submit_move(self, left_id: str, operation: Operation, right_id: str) -> Move:
        """Combine two cards by id without going through the selection flow."""
        self._ensure_unlocked()
        return self.combine(self.get_card(left_id), self.get_card(right_id), operation)

    def undo(self) -> bool:
        """
        Restore the board as it was before the last combine.

        Returns:
            False if there was nothing to undo.
        """
        self._ensure_unlocked()
        if not self._history:
            return False
        state = self._history.pop()
        self.cards = list(state.cards)
        self.moves = list(state.moves)
        self.clear_selection()
        return True

    def reset(self) -> None:
        """Put the dealt cards back and forget every move."""
        self._ensure_unlocked()
        self.cards = list(self.original_cards)
        self.moves = []
        self._history = []
        self.clear_selection()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def can_undo(self) -> bool:
        return bool(self._history)

    @property
    def final_value(self) -> Optional[Number]:
        if len(self.cards) != 1:
            return None
        return self.cards[0].numeric_value

    @property
    def is_solved(self) -> bool:
        value = self.final_value
        return value is not None and abs(value - TARGET) < EPSILON

    def to_dict(self) -> dict:
        """Board view for the client."""
        return {
            "cards": [card.to_dict() for card in self.cards],
            "selected_card": self.selected_card.id if self.selected_card else None,
            "selected_operation": self.selected_operation.value if self.selected_operation else None,
            "moves": [move.describe() for move in self.moves],
            "can_undo": self.can_undo,
            "solved": self.is_solved,
            "locked": self.locked,
            "lock_reason": self.lock_reason,
        }
