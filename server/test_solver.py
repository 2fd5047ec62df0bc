"""
Test suite for the 24 solver and fraction formatting.

Covers:
- Known solvable / unsolvable hands
- Agreement with an exact brute-force search over fractions
- Continued-fraction conversion and display strings

Run with: pytest test_solver.py -v
"""

import itertools
import random
from fractions import Fraction

import pytest

from solver import can_make_24, format_value, is_integral, to_fraction


def exact_solvable(values, target=24) -> bool:
    """Exhaustive search with exact rational arithmetic."""
    def search(nums):
        if len(nums) == 1:
            return nums[0] == target
        for i, j in itertools.permutations(range(len(nums)), 2):
            a, b = nums[i], nums[j]
            rest = [n for k, n in enumerate(nums) if k not in (i, j)]
            candidates = [a + b, a - b, a * b]
            if b != 0:
                candidates.append(a / b)
            if any(search(rest + [c]) for c in candidates):
                return True
        return False

    return search([Fraction(v) for v in values])


# =============================================================================
# can_make_24
# =============================================================================

class TestCanMake24:

    @pytest.mark.parametrize("values", [
        [3, 3, 8, 8],      # 8 / (3 - 8/3)
        [1, 5, 5, 5],      # 5 * (5 - 1/5)
        [4, 4, 10, 10],    # (10*10 - 4) / 4
        [1, 2, 3, 4],
        [6, 6, 6, 6],
        [12, 12, 12, 12],
    ])
    def test_solvable_hands(self, values):
        assert can_make_24(values) is True

    @pytest.mark.parametrize("values", [
        [1, 1, 1, 1],
        [1, 1, 1, 2],
        [1, 1, 2, 2],
        [1, 1, 1, 3],
    ])
    def test_unsolvable_hands(self, values):
        assert can_make_24(values) is False

    def test_single_value(self):
        assert can_make_24([24]) is True
        assert can_make_24([23]) is False

    def test_empty_is_unsolvable(self):
        assert can_make_24([]) is False

    def test_custom_target(self):
        assert can_make_24([1, 2, 3, 4], target=10) is True

    def test_matches_exact_search_on_random_hands(self):
        rng = random.Random(2024)
        for _ in range(150):
            hand = [rng.randint(1, 13) for _ in range(4)]
            assert can_make_24(hand) == exact_solvable(hand), hand


# =============================================================================
# Fractions
# =============================================================================

class TestToFraction:

    @pytest.mark.parametrize("numerator,denominator", [
        (1, 2), (7, 3), (8, 3), (1, 13), (25, 12), (169, 12), (3, 8),
    ])
    def test_recovers_simple_fractions(self, numerator, denominator):
        assert to_fraction(numerator / denominator) == (numerator, denominator)

    def test_negative_values(self):
        assert to_fraction(-2 / 3) == (-2, 3)
        assert to_fraction(-7 / 2) == (-7, 2)

    def test_integers(self):
        assert to_fraction(24.0) == (24, 1)
        assert to_fraction(0.0) == (0, 1)

    def test_within_tolerance(self):
        value = 1 / 7 + 1 / 11
        num, den = to_fraction(value)
        assert abs(num / den - value) <= abs(value) * 1e-6


class TestFormatValue:

    def test_integers_stay_plain(self):
        assert format_value(8) == "8"
        assert format_value(24.0) == "24"
        assert format_value(-3) == "-3"

    def test_non_integers_become_fractions(self):
        assert format_value(8 / 3) == "8/3"
        assert format_value(-1 / 2) == "-1/2"
        assert format_value(1 / 3 + 2) == "7/3"

    def test_is_integral(self):
        assert is_integral(4.0)
        assert not is_integral(4.5)
