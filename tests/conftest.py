"""Shared builders for snapshots, decisions and a scripted approximator."""
from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pytest

from qsnake.agent.turn_buffer import DecisionRecord
from qsnake.env.snapshot import Board, Coord, Move, Snake, Snapshot

XY = Tuple[int, int]


def coords(points: Iterable[XY]) -> Tuple[Coord, ...]:
    return tuple(Coord(x, y) for x, y in points)


def make_snake(body: Sequence[XY], snake_id: str = "me", health: int = 100,
               length: Optional[int] = None) -> Snake:
    return Snake(id=snake_id, body=coords(body), health=health, length=length or len(body))


def make_snapshot(me: Snake, turn: int = 0, others: Sequence[Snake] = (),
                  food: Iterable[XY] = (), hazards: Iterable[XY] = (),
                  width: int = 5, height: int = 5, alive: bool = True,
                  game_id: str = "game-1") -> Snapshot:
    snakes = ((me,) if alive else ()) + tuple(others)
    board = Board(width, height, frozenset(coords(food)), frozenset(coords(hazards)), snakes)
    return Snapshot(turn=turn, board=board, you=me, game_id=game_id)


def make_decision(snapshot: Snapshot, canonical: Move = Move.UP, world: Optional[Move] = None,
                  equal_moves_count: int = 0, q_values: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
                  features: Optional[np.ndarray] = None, is_valid: bool = True) -> DecisionRecord:
    return DecisionRecord(
        turn=snapshot.turn,
        features=features if features is not None else np.zeros(3, dtype=np.float32),
        q_values=tuple(q_values),
        canonical_move=canonical,
        world_move=world or canonical,
        equal_moves_count=equal_moves_count,
        snapshot=snapshot,
        is_valid=is_valid,
    )


def snake_payload(body: Sequence[XY], snake_id: str = "me", health: int = 100) -> dict:
    cells = [{"x": x, "y": y} for x, y in body]
    return {"id": snake_id, "name": snake_id, "health": health, "body": cells,
            "head": cells[0], "length": len(cells)}


def game_payload(body: Sequence[XY], turn: int = 0, health: int = 100, width: int = 11,
                 height: int = 11, food: Iterable[XY] = (), alive: bool = True,
                 game_id: str = "game-1") -> dict:
    you = snake_payload(body, health=health)
    return {
        "game": {"id": game_id, "timeout": 500},
        "turn": turn,
        "board": {
            "width": width, "height": height,
            "food": [{"x": x, "y": y} for x, y in food],
            "hazards": [],
            "snakes": [you] if alive else [],
        },
        "you": you,
    }


class ScriptedApproximator:
    """Returns fixed (or computed) Q-values and records every fit call."""

    def __init__(self, q_values: Union[Sequence[float], Callable[[np.ndarray], Sequence[float]]] = (1.0, 0.0, 0.0, 0.0),
                 fail_fit: bool = False):
        self.q_values = q_values
        self.fail_fit = fail_fit
        self.predict_calls: List[np.ndarray] = []
        self.fit_calls: List[Tuple[np.ndarray, List[float]]] = []
        self.saved_to: List[str] = []

    def predict(self, features):
        self.predict_calls.append(np.asarray(features))
        if callable(self.q_values):
            return list(self.q_values(np.asarray(features)))
        return list(self.q_values)

    def fit(self, features, target):
        if self.fail_fit:
            raise RuntimeError("fit exploded")
        self.fit_calls.append((np.asarray(features), list(target)))
        return 0.25

    def save(self, path):
        self.saved_to.append(str(path))


@pytest.fixture
def approximator():
    return ScriptedApproximator()
