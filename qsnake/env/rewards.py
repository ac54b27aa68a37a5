from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .snapshot import Board, Move, Snake, Snapshot


class Outcome(str, Enum):
    OFF_BOARD = "off_board"
    STARVED = "starved"
    SELF_COLLISION = "self_collision"
    LOST_COLLISION = "lost_collision"
    INVALID_MOVE = "invalid_move"
    OSCILLATION = "oscillation"
    ELIMINATED = "eliminated"
    ATE = "ate"
    SURVIVED = "survived"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    Outcome.OFF_BOARD, Outcome.STARVED, Outcome.SELF_COLLISION,
    Outcome.LOST_COLLISION, Outcome.INVALID_MOVE, Outcome.ELIMINATED,
})


@dataclass(frozen=True)
class RewardTable:
    death: float = -1.0
    oscillation: float = -0.5
    ate: float = 1.0
    survived: float = 0.1
    oscillation_repeats: int = 3

    def value(self, outcome: Outcome) -> float:
        if outcome.terminal:
            return self.death
        if outcome is Outcome.OSCILLATION:
            return self.oscillation
        if outcome is Outcome.ATE:
            return self.ate
        return self.survived


# ---------- predicates ----------
def is_outside_bounds(board: Board, snake: Snake) -> bool:
    return not board.in_bounds(snake.head)


def is_starved(snake: Snake) -> bool:
    return snake.health <= 0


def is_collision_with_self(snake: Snake) -> bool:
    head, body = snake.head, snake.body[1:]
    return head in body


def is_collision_with_others_lost(snake: Snake, others: Iterable[Snake]) -> bool:
    """Head on another snake's body, unless it is a head-to-head we win."""
    for other in others:
        if other.id == snake.id:
            continue
        for i, cell in enumerate(other.body):
            if cell != snake.head:
                continue
            if i != 0 or other.length >= snake.length:
                return True
    return False


# ---------- classification ----------
def classify_transition(prev_snapshot: Snapshot, next_snapshot: Snapshot,
                        prev_decision, next_decision=None,
                        oscillation_repeats: int = 3) -> Outcome:
    """Outcome of the move taken in ``prev_decision``.

    Terminal conditions are checked first: a collision at full health must not
    read as "ate food" just because health did not drop.
    An illegal move always scores as a death, whatever the engine played instead.
    """
    board = next_snapshot.board
    me = next_snapshot.me

    if is_outside_bounds(board, me):
        return Outcome.OFF_BOARD
    if is_starved(me):
        return Outcome.STARVED
    if is_collision_with_self(me):
        return Outcome.SELF_COLLISION
    if is_collision_with_others_lost(me, board.snakes):
        return Outcome.LOST_COLLISION
    if not getattr(prev_decision, "is_valid", True):
        # the engine played a substitute; the next snapshot says nothing about this move
        return Outcome.INVALID_MOVE
    if (prev_decision.equal_moves_count >= oscillation_repeats
            and prev_decision.canonical_move != Move.UP):
        return Outcome.OSCILLATION
    if not next_snapshot.self_alive:
        return Outcome.ELIMINATED
    if me.health >= prev_snapshot.me.health:
        return Outcome.ATE
    return Outcome.SURVIVED


def reward(prev_snapshot: Snapshot, next_snapshot: Snapshot,
           prev_decision, next_decision=None,
           table: RewardTable = RewardTable()) -> float:
    outcome = classify_transition(prev_snapshot, next_snapshot, prev_decision, next_decision,
                                  oscillation_repeats=table.oscillation_repeats)
    return table.value(outcome)
