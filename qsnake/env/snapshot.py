from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple


class Move(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"

    @property
    def offset(self) -> Tuple[int, int]:
        return _OFFSETS[self]

    @property
    def opposite(self) -> "Move":
        return OPPOSITE[self]


# Fixed action ordering shared by the encoder, the policy and the network head
MOVES: Tuple[Move, ...] = (Move.UP, Move.DOWN, Move.LEFT, Move.RIGHT)

OPPOSITE: Dict[Move, Move] = {
    Move.UP: Move.DOWN, Move.DOWN: Move.UP,
    Move.LEFT: Move.RIGHT, Move.RIGHT: Move.LEFT,
}

_OFFSETS: Dict[Move, Tuple[int, int]] = {
    Move.UP: (0, 1), Move.DOWN: (0, -1),     # y grows upward
    Move.LEFT: (-1, 0), Move.RIGHT: (1, 0),
}


@dataclass(frozen=True)
class Coord:
    x: int
    y: int

    def step(self, move: Move) -> "Coord":
        dx, dy = move.offset
        return Coord(self.x + dx, self.y + dy)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Coord":
        return cls(int(d["x"]), int(d["y"]))


@dataclass(frozen=True)
class Snake:
    id: str
    body: Tuple[Coord, ...]
    health: int = 100
    length: int = 0
    name: str = ""

    def __post_init__(self):
        if not self.body:
            raise ValueError(f"Snake {self.id} has an empty body")
        if not self.length:
            object.__setattr__(self, "length", len(self.body))

    @property
    def head(self) -> Coord:
        return self.body[0]

    @property
    def neck(self) -> Optional[Coord]:
        return self.body[1] if len(self.body) > 1 else None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Snake":
        body = tuple(Coord.from_dict(c) for c in d.get("body") or [])
        if not body and d.get("head"):
            body = (Coord.from_dict(d["head"]),)
        return cls(
            id=str(d["id"]),
            body=body,
            health=int(d.get("health", 100)),
            length=int(d.get("length") or len(body)),
            name=str(d.get("name", "")),
        )


@dataclass(frozen=True)
class Board:
    width: int
    height: int
    food: FrozenSet[Coord] = field(default_factory=frozenset)
    hazards: FrozenSet[Coord] = field(default_factory=frozenset)
    snakes: Tuple[Snake, ...] = ()

    def in_bounds(self, c: Coord) -> bool:
        return 0 <= c.x < self.width and 0 <= c.y < self.height

    def snake(self, snake_id: str) -> Optional[Snake]:
        for s in self.snakes:
            if s.id == snake_id:
                return s
        return None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Board":
        return cls(
            width=int(d["width"]),
            height=int(d["height"]),
            food=frozenset(Coord.from_dict(c) for c in d.get("food") or []),
            hazards=frozenset(Coord.from_dict(c) for c in d.get("hazards") or []),
            snakes=tuple(Snake.from_dict(s) for s in d.get("snakes") or []),
        )


@dataclass(frozen=True)
class Snapshot:
    """One game state as delivered by the Battlesnake engine.

    ``you`` is the agent's own snake. Once the agent has been eliminated it is
    no longer part of ``board.snakes``, but the engine still reports its last
    known body here.
    """
    turn: int
    board: Board
    you: Snake
    game_id: str = ""

    @property
    def self_alive(self) -> bool:
        return self.board.snake(self.you.id) is not None

    @property
    def me(self) -> Snake:
        """Self as seen on the board, or the last known self when eliminated."""
        return self.board.snake(self.you.id) or self.you

    def opponents(self) -> Iterable[Snake]:
        return (s for s in self.board.snakes if s.id != self.you.id)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Snapshot":
        game = payload.get("game") or {}
        return cls(
            turn=int(payload.get("turn", 0)),
            board=Board.from_dict(payload["board"]),
            you=Snake.from_dict(payload["you"]),
            game_id=str(game.get("id", "")),
        )
