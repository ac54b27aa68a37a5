from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

from ..env.snapshot import Move, Snapshot
from ..errors import TurnReplayError


@dataclass(frozen=True)
class DecisionRecord:
    turn: int
    features: np.ndarray
    q_values: Tuple[float, ...]
    canonical_move: Move
    world_move: Move
    equal_moves_count: int
    snapshot: Snapshot
    is_valid: bool = True


class TurnBuffer:
    """One game's decisions keyed by turn number.

    Rewards are only known one turn later, so decisions are held here until
    the episode ends and then drained pairwise by the trainer.
    """

    def __init__(self):
        self._records: Dict[int, DecisionRecord] = {}
        self.draining = False

    def record(self, rec: DecisionRecord) -> DecisionRecord:
        if rec.turn in self._records:
            raise TurnReplayError(rec.turn)
        self._records[rec.turn] = rec
        return rec

    def get(self, turn: int) -> Optional[DecisionRecord]:
        return self._records.get(turn)

    def last(self) -> Optional[DecisionRecord]:
        if not self._records:
            return None
        return self._records[max(self._records)]

    def pairs(self, start: int = 0) -> Iterator[Tuple[DecisionRecord, DecisionRecord]]:
        """Consecutive (t, t+1) records from ``start``; stops at the first gap."""
        t = start
        while t in self._records and (t + 1) in self._records:
            yield self._records[t], self._records[t + 1]
            t += 1

    def clear(self) -> None:
        self._records.clear()
        self.draining = False

    def __len__(self):
        return len(self._records)

    def __contains__(self, turn: int) -> bool:
        return turn in self._records
