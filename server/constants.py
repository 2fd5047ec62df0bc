"""
Card and rule constants for the 24 game.

This module is the single source of truth for rank values and puzzle
tolerances. Tunable values come from config.py (environment-aware);
the card tables are fixed.

Rank Values:
    - Ace: 1
    - 2-10: Face value
    - Jack: 11, Queen: 12, King: 13
"""

from config import config


# =============================================================================
# Card Values - Single Source of Truth
# =============================================================================

CARD_VALUES: dict[str, int] = {
    'A': 1,
    '2': 2,
    '3': 3,
    '4': 4,
    '5': 5,
    '6': 6,
    '7': 7,
    '8': 8,
    '9': 9,
    '10': 10,
    'J': 11,
    'Q': 12,
    'K': 13,
}

CARD_NAMES: list[str] = list(CARD_VALUES)

SUITS: list[str] = ['♠', '♥', '♦', '♣']

# Known-solvable puzzle used when generation exhausts its attempts: 8 / (3 - 8/3)
FALLBACK_HAND: list[tuple[str, str]] = [
    ('3', '♠'),
    ('3', '♥'),
    ('8', '♦'),
    ('8', '♣'),
]


# =============================================================================
# Puzzle Constants
# =============================================================================

TARGET = config.puzzle.target
EPSILON = config.puzzle.epsilon
FRACTION_TOLERANCE = config.puzzle.fraction_tolerance
MAX_GENERATION_ATTEMPTS = config.puzzle.max_generation_attempts
CLOCK_DURATION_SECONDS = config.puzzle.clock_duration_seconds
HAND_SIZE = 4


# =============================================================================
# Room Constants
# =============================================================================

MIN_PLAYERS = config.MIN_PLAYERS
MAX_PLAYERS = config.MAX_PLAYERS_PER_ROOM
ROOM_CODE_LENGTH = config.ROOM_CODE_LENGTH
MAX_PLAYER_NAME_LENGTH = config.MAX_PLAYER_NAME_LENGTH
