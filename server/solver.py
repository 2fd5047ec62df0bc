"""
24 solver and fraction display.

can_make_24 decides whether four numbers reach the target with + - * /.
It reduces the list one ordered pair at a time: every pair (a, b) is
replaced by each of a+b, a-b, a*b and a/b, and the shorter list is solved
recursively. Ordered pairs cover the non-commutative operations, so no
separate b-a or b/a branch is needed.

to_fraction turns a float produced by division back into a reduced
numerator/denominator pair using continued-fraction convergents.
"""

import math
from typing import Iterable, Iterator

from constants import EPSILON, FRACTION_TOLERANCE, TARGET


def _results(a: float, b: float) -> Iterator[float]:
    yield a + b
    yield a - b
    yield a * b
    if b != 0:
        yield a / b


def _solve(numbers: list[float], target: float, epsilon: float) -> bool:
    if len(numbers) == 1:
        return abs(numbers[0] - target) < epsilon

    for i, a in enumerate(numbers):
        for j, b in enumerate(numbers):
            if i == j:
                continue
            remaining = [n for k, n in enumerate(numbers) if k != i and k != j]
            for result in _results(a, b):
                if _solve(remaining + [result], target, epsilon):
                    return True
    return False


def can_make_24(
    values: Iterable[float],
    target: float = TARGET,
    epsilon: float = EPSILON,
) -> bool:
    """
    Check whether the values can be combined into the target.

    Args:
        values: Card values (normally four).
        target: Number to reach.
        epsilon: Absolute tolerance for the final comparison.

    Returns:
        True on the first sequence of operations that reaches the target.
    """
    numbers = [float(v) for v in values]
    if not numbers:
        return False
    return _solve(numbers, target, epsilon)


def to_fraction(value: float, tolerance: float = FRACTION_TOLERANCE) -> tuple[int, int]:
    """
    Approximate a float with a reduced fraction.

    Expands continued-fraction convergents until the reconstructed value is
    within tolerance (relative to |value|) of the input.

    Args:
        value: Number to convert.
        tolerance: Relative tolerance.

    Returns:
        (numerator, denominator), sign carried by the numerator.
    """
    h1, h2 = 1, 0
    k1, k2 = 0, 1
    b = value

    while True:
        a = math.floor(b)
        h1, h2 = a * h1 + h2, h1
        k1, k2 = a * k1 + k2, k1
        if abs(value - h1 / k1) <= abs(value) * tolerance or b == a:
            break
        b = 1 / (b - a)

    return h1, k1


def is_integral(value: float) -> bool:
    return float(value).is_integer()


def format_value(value: float) -> str:
    """Display string for a card value: '8' for integers, '7/3' otherwise."""
    if is_integral(value):
        return str(int(value))
    numerator, denominator = to_fraction(value)
    if denominator == 1:
        return str(numerator)
    return f"{numerator}/{denominator}"
