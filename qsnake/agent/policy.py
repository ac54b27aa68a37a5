from __future__ import annotations
import random
from typing import List, Optional

import numpy as np

from ..env.encoder import StateEncoder
from ..env.orientation import infer_heading, to_local_heading, to_world_space
from ..env.snapshot import MOVES, Move, Snapshot
from .q_network import Approximator
from .turn_buffer import DecisionRecord


def legal_world_moves(snapshot: Snapshot) -> List[Move]:
    """Moves that neither reverse into the neck nor leave the board."""
    me = snapshot.me
    head, neck = me.head, me.neck
    legal = []
    for m in MOVES:
        nxt = head.step(m)
        if neck is not None and neck != head and nxt == neck:
            continue
        if not snapshot.board.in_bounds(nxt):
            continue
        legal.append(m)
    return legal


def argmax_first(values) -> int:
    best = 0
    for i, v in enumerate(values):
        if v > values[best]:
            best = i
    return best


class EpsilonGreedyPolicy:
    def __init__(self, encoder: StateEncoder, approximator: Approximator,
                 epsilon: float = 0.0, rng: Optional[random.Random] = None):
        self.encoder = encoder
        self.approximator = approximator
        self.epsilon = epsilon
        self.rng = rng or random.Random()

    def decide(self, snapshot: Snapshot, previous: Optional[DecisionRecord] = None,
               explore: bool = True) -> DecisionRecord:
        heading = infer_heading(snapshot.me)
        legal = legal_world_moves(snapshot)

        features = self.encoder.encode(snapshot, heading)
        q_values = tuple(float(q) for q in self.approximator.predict(features))
        canonical = MOVES[argmax_first(q_values)]

        if explore and self.epsilon > 0 and self.rng.random() < self.epsilon:
            world = self.rng.choice(legal or list(MOVES))
            canonical = to_local_heading(world, heading)

        world = to_world_space(canonical, heading)
        equal = 0
        if previous is not None and previous.canonical_move == canonical:
            equal = previous.equal_moves_count + 1

        return DecisionRecord(
            turn=snapshot.turn,
            features=np.asarray(features, dtype=np.float32),
            q_values=q_values,
            canonical_move=canonical,
            world_move=world,
            equal_moves_count=equal,
            snapshot=snapshot,
            is_valid=world in legal,
        )
