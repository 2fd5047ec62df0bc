"""
Puzzle generation.

Ranks are drawn independently with replacement (not from a depleting deck),
so a hand may repeat a rank and even a rank+suit pair. Hands are redrawn
until the solver accepts one; after too many failures the fixed 3-3-8-8
hand is used.
"""

import logging
import random
import time
from typing import Optional

from cards import Card, dealt_card
from constants import CARD_NAMES, FALLBACK_HAND, HAND_SIZE, MAX_GENERATION_ATTEMPTS, SUITS
from solver import can_make_24

logger = logging.getLogger(__name__)


def fallback_cards(timestamp_ms: Optional[int] = None) -> list[Card]:
    """The known-solvable 3♠ 3♥ 8♦ 8♣ hand."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return [
        dealt_card(rank, suit, index, timestamp_ms)
        for index, (rank, suit) in enumerate(FALLBACK_HAND)
    ]


def draw_hand(rng: random.Random, timestamp_ms: Optional[int] = None) -> list[Card]:
    """Draw HAND_SIZE random cards without checking solvability."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return [
        dealt_card(rng.choice(CARD_NAMES), rng.choice(SUITS), index, timestamp_ms)
        for index in range(HAND_SIZE)
    ]


def generate_cards(
    rng: Optional[random.Random] = None,
    max_attempts: int = MAX_GENERATION_ATTEMPTS,
) -> list[Card]:
    """
    Generate a solvable hand of four cards.

    Args:
        rng: Random source (a fresh random.Random if None).
        max_attempts: Hands to try before using the fallback.

    Returns:
        Four original cards that can make 24.
    """
    rng = rng or random.Random()

    for _ in range(max_attempts):
        hand = draw_hand(rng)
        if can_make_24(card.numeric_value for card in hand):
            return hand

    logger.warning(f"No solvable hand after {max_attempts} attempts, using fallback")
    return fallback_cards()
