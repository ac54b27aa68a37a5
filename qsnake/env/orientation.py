"""Canonical ("heading is always up") frame for boards and moves.

The network only ever sees the board as if the snake were travelling up, so
one set of weights covers all four headings. Moves picked in that local frame
are mapped back to world space before they are sent to the engine.
"""
from __future__ import annotations
from typing import Dict

import numpy as np

from ..errors import InvalidHeadingError
from .snapshot import Move, Snake

# heading -> {local move -> world move}
_TO_WORLD: Dict[Move, Dict[Move, Move]] = {
    Move.UP: {
        Move.UP: Move.UP, Move.RIGHT: Move.RIGHT, Move.DOWN: Move.DOWN, Move.LEFT: Move.LEFT,
    },
    Move.RIGHT: {
        Move.UP: Move.RIGHT, Move.RIGHT: Move.DOWN, Move.DOWN: Move.LEFT, Move.LEFT: Move.UP,
    },
    Move.DOWN: {
        Move.UP: Move.DOWN, Move.RIGHT: Move.LEFT, Move.DOWN: Move.UP, Move.LEFT: Move.RIGHT,
    },
    Move.LEFT: {
        Move.UP: Move.LEFT, Move.RIGHT: Move.UP, Move.DOWN: Move.RIGHT, Move.LEFT: Move.DOWN,
    },
}

_TO_LOCAL: Dict[Move, Dict[Move, Move]] = {
    heading: {world: local for local, world in table.items()}
    for heading, table in _TO_WORLD.items()
}


def _table(tables: Dict[Move, Dict[Move, Move]], heading) -> Dict[Move, Move]:
    try:
        return tables[Move(heading)]
    except (ValueError, KeyError):
        raise InvalidHeadingError(heading) from None


def to_world_space(move: Move, heading: Move) -> Move:
    return _table(_TO_WORLD, heading)[Move(move)]


def to_local_heading(move: Move, heading: Move) -> Move:
    return _table(_TO_LOCAL, heading)[Move(move)]


def rotate_board_to_local_space(grid: np.ndarray, heading: Move, legacy_left: bool = False) -> np.ndarray:
    """Rotate a board grid (row 0 = top edge) so that ``heading`` points up."""
    try:
        heading = Move(heading)
    except ValueError:
        raise InvalidHeadingError(heading) from None

    if heading is Move.UP:
        return grid
    if heading is Move.RIGHT:
        # transpose + reverse rows: a quarter turn counter-clockwise
        return grid.T[::-1, :]
    if heading is Move.DOWN:
        return grid[::-1, ::-1]
    if heading is Move.LEFT:
        if legacy_left:
            return grid.T[::-1, :]
        # transpose + reverse columns: a quarter turn clockwise
        return grid.T[:, ::-1]
    raise InvalidHeadingError(heading)


def infer_heading(snake: Snake) -> Move:
    """Direction travelled on the previous turn; up when there is no neck yet."""
    head, neck = snake.head, snake.neck
    if neck is None:
        return Move.UP
    if neck.x < head.x:
        return Move.RIGHT
    if neck.x > head.x:
        return Move.LEFT
    if neck.y < head.y:
        return Move.UP
    if neck.y > head.y:
        return Move.DOWN
    return Move.UP  # stacked segments on turn 0
