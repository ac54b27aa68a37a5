from __future__ import annotations


class QSnakeError(RuntimeError):
    """Base class for every error raised by the agent core."""


class ContractViolation(QSnakeError):
    """A caller broke an invariant of the core; fatal for the episode."""


class TurnReplayError(ContractViolation):
    def __init__(self, turn: int):
        super().__init__(f"Turn {turn} was already recorded")
        self.turn = turn


class InvalidHeadingError(ContractViolation):
    def __init__(self, heading):
        super().__init__(f"Invalid heading {heading!r}")
        self.heading = heading


class BoardShapeError(ContractViolation):
    def __init__(self, expected, got):
        super().__init__(f"Board is {got[0]}x{got[1]}, encoder expects {expected[0]}x{expected[1]}")
        self.expected = expected
        self.got = got


class MissingPreviousStateError(QSnakeError):
    """Training was requested before any decision was recorded."""

    def __init__(self, msg: str = "Missing previous state"):
        super().__init__(msg)


class ApproximatorLoadError(QSnakeError):
    def __init__(self, path, reason: str = "not found"):
        super().__init__(f"Cannot load approximator from {path}: {reason}")
        self.path = path
