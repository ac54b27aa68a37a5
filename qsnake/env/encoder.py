from __future__ import annotations
from typing import Optional, Tuple

import numpy as np

from ..errors import BoardShapeError
from .orientation import infer_heading, rotate_board_to_local_space
from .snapshot import Coord, Move, Snake, Snapshot

# cell values
WALL       = -4.0
EMPTY      =  0.0
FOOD       =  1.0
HAZARD     = -1.0
OTHER_BODY = -2.0
OWN_BODY   =  2.0
OTHER_HEAD = -3.0
OWN_HEAD   =  3.0


class StateEncoder:
    """Board snapshot -> fixed-length float32 feature vector.

    The grid is padded by a one-cell wall ring so that a head that just left
    the board is still visible (it lands on the ring). Layout is row-major
    with row 0 at the top edge, rotated so the snake's heading points up,
    followed by one health scalar in [0, 1].
    """

    def __init__(self, width: int, height: int, legacy_left_rotation: bool = False):
        if width <= 0 or height <= 0:
            raise ValueError("Board dimensions must be positive")
        self.width = width
        self.height = height
        self.legacy_left_rotation = legacy_left_rotation

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.height + 2, self.width + 2

    @property
    def feature_size(self) -> int:
        rows, cols = self.grid_shape
        return rows * cols + 1

    # ---------- grid ----------
    def _cell(self, c: Coord) -> Tuple[int, int]:
        # clamp onto the wall ring; in-board coords map to 1..w / 1..h
        x = min(max(c.x, -1), self.width)
        y = min(max(c.y, -1), self.height)
        return self.height - y, x + 1

    def _put(self, grid: np.ndarray, c: Coord, value: float) -> None:
        grid[self._cell(c)] = value

    def encode_grid(self, snapshot: Snapshot) -> np.ndarray:
        """Unrotated grid in world orientation."""
        board = snapshot.board
        if (board.width, board.height) != (self.width, self.height):
            raise BoardShapeError((self.width, self.height), (board.width, board.height))

        grid = np.full(self.grid_shape, WALL, dtype=np.float32)
        grid[1:-1, 1:-1] = EMPTY

        for c in board.food:
            self._put(grid, c, FOOD)
        for c in board.hazards:
            self._put(grid, c, HAZARD)

        me = snapshot.me
        others = list(snapshot.opponents())

        # bodies first, then heads, so heads always win a shared cell
        for other in others:
            for c in other.body:
                self._put(grid, c, OTHER_BODY)
        for c in me.body:
            self._put(grid, c, OWN_BODY)
        for other in others:
            self._put(grid, other.head, OTHER_HEAD)
        self._put(grid, me.head, OWN_HEAD)
        return grid

    # ---------- features ----------
    def encode(self, snapshot: Snapshot, heading: Optional[Move] = None) -> np.ndarray:
        if heading is None:
            heading = infer_heading(snapshot.me)
        grid = self.encode_grid(snapshot)
        local = rotate_board_to_local_space(grid, heading, legacy_left=self.legacy_left_rotation)
        return np.concatenate([local.reshape(-1), [health_ratio(snapshot.me)]]).astype(np.float32)


def health_ratio(snake: Snake) -> float:
    return min(max(snake.health / 100.0, 0.0), 1.0)
