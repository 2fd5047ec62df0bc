"""
Card model for the 24 game.

Original cards are dealt from the 13 ranks of a standard deck (A=1 .. K=13)
with a suit. Derived cards are produced by combining two cards on a local
board: their rank is the display string of the result ("8", "7/3") and they
carry the exact numeric value.
"""

import time
from dataclasses import dataclass
from typing import Optional, Union

from constants import CARD_VALUES

Number = Union[int, float]


@dataclass(frozen=True)
class Card:
    """
    A card on the board.

    Attributes:
        rank: Face symbol ('A', '2'..'10', 'J', 'Q', 'K') or a derived display string.
        suit: Suit symbol, or None for derived cards.
        id: Unique identifier (disambiguates duplicate ranks).
        is_original: True for dealt cards, False for combine results.
        value: Numeric value for derived cards; originals derive it from rank.
    """

    rank: str
    suit: Optional[str]
    id: str
    is_original: bool = True
    value: Optional[Number] = None

    @property
    def numeric_value(self) -> Number:
        """Value used for arithmetic."""
        if self.value is not None:
            return self.value
        if self.rank in CARD_VALUES:
            return CARD_VALUES[self.rank]
        return float(self.rank)

    def display(self) -> str:
        """Label for move history: '8♠' for dealt cards, the result string otherwise."""
        if self.is_original and self.suit:
            return f"{self.rank}{self.suit}"
        return self.rank

    def to_dict(self) -> dict:
        """Wire form used in the shared room record."""
        data = {
            "rank": self.rank,
            "suit": self.suit,
            "id": self.id,
            "isOriginal": self.is_original,
        }
        if self.value is not None:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Card":
        return cls(
            rank=str(data["rank"]),
            suit=data.get("suit"),
            id=str(data["id"]),
            is_original=bool(data.get("isOriginal", True)),
            value=data.get("value"),
        )


def dealt_card(rank: str, suit: str, index: int, timestamp_ms: Optional[int] = None) -> Card:
    """
    Build an original card.

    The id combines rank, suit, a millisecond timestamp and the draw index so
    duplicate ranks stay distinct within and across puzzles.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return Card(rank=rank, suit=suit, id=f"{rank}-{suit}-{timestamp_ms}-{index}")


def cards_from_dicts(items: Optional[list]) -> list[Card]:
    return [Card.from_dict(item) for item in items or []]


def cards_to_dicts(cards: list[Card]) -> list[dict]:
    return [card.to_dict() for card in cards]
