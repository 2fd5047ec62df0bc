"""
Solo play: one player, one board, no room store.

A solo session deals a solvable hand, times how long the player takes to
make 24, and keeps a running score and best time for as long as the
session lives. Nothing is written to the replicated store.
"""

import logging
import random
import time
from typing import Callable, Optional

from cards import Card
from exceptions import InvalidAction
from game import MoveEngine
from puzzle import generate_cards

logger = logging.getLogger(__name__)


class SoloSession:
    """
    Single-player puzzle run.

    Attributes:
        engine: The board being played.
        score: Puzzles solved this session.
        best_time: Fastest solve in whole seconds, None before the first.
        round_number: Puzzles dealt so far.
        solved_in: Seconds the current puzzle took, None while unsolved.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rng = rng or random.Random()
        self.time_fn = time_fn
        self.engine = MoveEngine()
        self.score = 0
        self.best_time: Optional[int] = None
        self.round_number = 0
        self.started_at: Optional[float] = None
        self.solved_in: Optional[int] = None

    @property
    def solved(self) -> bool:
        return self.solved_in is not None

    def deal(self) -> list[Card]:
        """Load a fresh solvable hand and restart the timer."""
        cards = generate_cards(self.rng)
        self.engine.load(cards)
        self.round_number += 1
        self.started_at = self.time_fn()
        self.solved_in = None
        return cards

    def next_puzzle(self) -> list[Card]:
        """Move on once the current puzzle is solved."""
        if self.round_number and not self.solved:
            raise InvalidAction("Solve this puzzle first")
        return self.deal()

    def elapsed(self) -> int:
        """Whole seconds on the current puzzle; frozen once it is solved."""
        if self.solved_in is not None:
            return self.solved_in
        if self.started_at is None:
            return 0
        return int(self.time_fn() - self.started_at)

    def record_solve(self) -> bool:
        """
        Credit a solved board, once per puzzle.

        Returns:
            True if this solve set a new best time.
        """
        if self.solved or not self.engine.is_solved:
            return False
        seconds = self.elapsed()
        self.solved_in = seconds
        self.score += 1
        self.engine.lock("You solved it!")

        new_best = self.best_time is None or seconds < self.best_time
        if new_best:
            self.best_time = seconds
        logger.debug(f"Solo puzzle {self.round_number} solved in {seconds}s (best {self.best_time}s)")
        return new_best

    def to_dict(self) -> dict:
        return {
            "round_number": self.round_number,
            "score": self.score,
            "elapsed": self.elapsed(),
            "best_time": self.best_time,
            "solved": self.solved,
        }
