"""
Test suite for the local MoveEngine.

Covers:
- Selection state machine (toggles, replacement, operation without card)
- Combining, fraction results, division by zero
- Undo / reset restoring exact prior states
- Locking

Run with: pytest test_game.py -v
"""

import pytest

from cards import Card
from exceptions import DivisionByZero, InvalidMove
from game import MoveEngine, Operation


def make_cards(*ranks: str) -> list[Card]:
    suits = ["♠", "♥", "♦", "♣"]
    return [Card(rank=r, suit=suits[i % 4], id=f"c{i}") for i, r in enumerate(ranks)]


def make_engine(*ranks: str) -> MoveEngine:
    engine = MoveEngine()
    engine.load(make_cards(*ranks))
    return engine


def values(engine: MoveEngine) -> list:
    return [c.numeric_value for c in engine.cards]


# =============================================================================
# Operations
# =============================================================================

class TestOperation:

    def test_apply(self):
        assert Operation.ADD.apply(3, 4) == 7
        assert Operation.SUBTRACT.apply(3, 4) == -1
        assert Operation.MULTIPLY.apply(3, 4) == 12
        assert Operation.DIVIDE.apply(3, 4) == 0.75

    def test_divide_by_zero(self):
        with pytest.raises(DivisionByZero):
            Operation.DIVIDE.apply(3, 0)

    @pytest.mark.parametrize("symbol,expected", [
        ("+", Operation.ADD), ("×", Operation.MULTIPLY), ("÷", Operation.DIVIDE), ("-", Operation.SUBTRACT),
    ])
    def test_parse(self, symbol, expected):
        assert Operation.parse(symbol) is expected

    def test_parse_unknown(self):
        with pytest.raises(InvalidMove):
            Operation.parse("^")


# =============================================================================
# Selection
# =============================================================================

class TestSelection:

    def test_select_and_deselect_card(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c0")
        assert engine.selected_card.id == "c0"
        engine.select_card("c0")
        assert engine.selected_card is None

    def test_other_card_replaces_selection(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c0")
        engine.select_card("c2")
        assert engine.selected_card.id == "c2"
        assert len(engine.cards) == 4

    def test_operation_toggles(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c0")
        engine.select_operation(Operation.ADD)
        assert engine.selected_operation is Operation.ADD
        engine.select_operation(Operation.ADD)
        assert engine.selected_operation is None

    def test_operation_requires_card(self):
        engine = make_engine("3", "3", "8", "8")
        with pytest.raises(InvalidMove):
            engine.select_operation(Operation.ADD)

    def test_second_card_combines(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c2")
        engine.select_operation(Operation.MULTIPLY)
        move = engine.select_card("c0")
        assert move is not None
        assert move.result.numeric_value == 24
        assert sorted(values(engine)) == [3, 8, 24]
        assert engine.selected_card is None
        assert engine.selected_operation is None

    def test_same_card_twice_is_invalid(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c0")
        engine.select_operation(Operation.ADD)
        with pytest.raises(InvalidMove):
            engine.select_card("c0")
        assert len(engine.cards) == 4

    def test_unknown_card(self):
        engine = make_engine("3", "3", "8", "8")
        with pytest.raises(InvalidMove):
            engine.select_card("nope")


# =============================================================================
# Combining
# =============================================================================

class TestCombine:

    def test_fraction_result(self):
        engine = make_engine("8", "3", "3", "8")
        move = engine.submit_move("c0", Operation.DIVIDE, "c1")
        assert move.result.rank == "8/3"
        assert move.result.numeric_value == pytest.approx(8 / 3)
        assert not move.result.is_original

    def test_non_integer_from_any_operation_uses_fraction(self):
        engine = make_engine("8", "3", "3", "8")
        third = engine.submit_move("c0", Operation.DIVIDE, "c1").result
        move = engine.submit_move("c2", Operation.SUBTRACT, third.id)
        assert move.result.rank == "1/3"

    def test_integer_division_is_plain(self):
        engine = make_engine("8", "4", "3", "3")
        move = engine.submit_move("c0", Operation.DIVIDE, "c1")
        assert move.result.rank == "2"
        assert move.result.numeric_value == 2

    def test_describe(self):
        engine = make_engine("8", "4", "3", "3")
        move = engine.submit_move("c0", Operation.SUBTRACT, "c1")
        assert move.describe() == "8♠ - 4♥ = 4"

    def test_divide_by_zero_leaves_board_untouched(self):
        engine = make_engine("3", "3", "8", "8")
        zero = engine.submit_move("c0", Operation.SUBTRACT, "c1").result
        before_cards = list(engine.cards)
        before_moves = list(engine.moves)

        engine.select_card("c2")
        engine.select_operation(Operation.DIVIDE)
        with pytest.raises(DivisionByZero):
            engine.select_card(zero.id)

        assert engine.cards == before_cards
        assert engine.moves == before_moves
        assert engine.selected_card is None
        assert engine.selected_operation is None

    def test_solve(self):
        engine = make_engine("3", "3", "8", "8")
        third = engine.submit_move("c2", Operation.DIVIDE, "c0").result       # 8/3
        diff = engine.submit_move("c1", Operation.SUBTRACT, third.id).result  # 1/3
        final = engine.submit_move("c3", Operation.DIVIDE, diff.id).result    # 24
        assert final.rank == "24"
        assert engine.is_solved
        assert engine.final_value == pytest.approx(24)

    def test_one_card_off_target_is_not_solved(self):
        engine = make_engine("1", "1", "1", "1")
        a = engine.submit_move("c0", Operation.ADD, "c1").result
        b = engine.submit_move("c2", Operation.ADD, "c3").result
        engine.submit_move(a.id, Operation.ADD, b.id)
        assert engine.final_value == 4
        assert not engine.is_solved


# =============================================================================
# Undo / reset
# =============================================================================

class TestUndoReset:

    def test_undo_on_empty_stack(self):
        engine = make_engine("3", "3", "8", "8")
        assert engine.undo() is False
        assert not engine.can_undo

    def test_k_combines_then_k_undos_restore(self):
        engine = make_engine("3", "3", "8", "8")
        snapshots = [(list(engine.cards), list(engine.moves))]
        a = engine.submit_move("c0", Operation.ADD, "c1").result
        snapshots.append((list(engine.cards), list(engine.moves)))
        b = engine.submit_move("c2", Operation.MULTIPLY, a.id).result
        snapshots.append((list(engine.cards), list(engine.moves)))
        engine.submit_move("c3", Operation.SUBTRACT, b.id)

        for cards, moves in reversed(snapshots):
            assert engine.undo() is True
            assert engine.cards == cards
            assert engine.moves == moves
        assert engine.undo() is False

    def test_reset(self):
        engine = make_engine("3", "3", "8", "8")
        originals = list(engine.original_cards)
        engine.submit_move("c0", Operation.ADD, "c1")
        engine.select_card("c2")
        engine.reset()
        assert engine.cards == originals
        assert engine.moves == []
        assert not engine.can_undo
        assert engine.selected_card is None

    def test_load_starts_fresh(self):
        engine = make_engine("3", "3", "8", "8")
        engine.submit_move("c0", Operation.ADD, "c1")
        engine.lock("Time's up!")
        engine.load(make_cards("1", "2", "3", "4"))
        assert values(engine) == [1, 2, 3, 4]
        assert not engine.locked
        assert not engine.can_undo


# =============================================================================
# Locking
# =============================================================================

class TestLocking:

    def test_locked_board_refuses_actions(self):
        engine = make_engine("3", "3", "8", "8")
        engine.submit_move("c0", Operation.ADD, "c1")
        engine.lock("Time's up!")
        for action in (
            lambda: engine.select_card("c2"),
            lambda: engine.submit_move("c2", Operation.ADD, "c3"),
            engine.undo,
            engine.reset,
        ):
            with pytest.raises(InvalidMove, match="Time's up!"):
                action()
        assert len(engine.cards) == 3

    def test_unlock(self):
        engine = make_engine("3", "3", "8", "8")
        engine.lock("You are sitting out")
        engine.unlock()
        engine.select_card("c0")
        assert engine.selected_card.id == "c0"

    def test_to_dict(self):
        engine = make_engine("3", "3", "8", "8")
        engine.select_card("c1")
        view = engine.to_dict()
        assert view["selected_card"] == "c1"
        assert view["can_undo"] is False
        assert len(view["cards"]) == 4
        assert view["locked"] is False
