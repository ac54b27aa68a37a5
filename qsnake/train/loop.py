# qsnake/train/loop.py
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openpyxl import Workbook, load_workbook  # for episode logging

from .. import config as cfg
from ..agent.policy import EpsilonGreedyPolicy, legal_world_moves
from ..agent.q_network import Approximator, TorchQApproximator, load_or_create, parse_hidden
from ..agent.turn_buffer import DecisionRecord, TurnBuffer
from ..env.encoder import StateEncoder
from ..env.rewards import Outcome, RewardTable, classify_transition
from ..env.snapshot import MOVES, Move, Snapshot
from ..errors import ContractViolation, MissingPreviousStateError, TurnReplayError

logger = logging.getLogger(__name__)

EPISODES_HEADERS = [
    "episode", "game_id", "outcome", "turns", "updates", "total_reward", "avg_loss",
    "epsilon", "invalid_moves", "duration_ms", "timestamp", "grid_w", "grid_h",
]


@dataclass
class EpsilonCfg:
    start: float = getattr(cfg, "DEFAULT_EPS_START", 1.0)
    min: float = getattr(cfg, "DEFAULT_EPS_MIN", 0.05)
    decay: float = getattr(cfg, "DEFAULT_EPS_DECAY", 0.99)


@dataclass(frozen=True)
class AgentParams:
    board_w: int = getattr(cfg, "BOARD_WIDTH", 11)
    board_h: int = getattr(cfg, "BOARD_HEIGHT", 11)
    learning_rate: float = getattr(cfg, "LEARNING_RATE", 0.1)
    discount_factor: float = getattr(cfg, "DISCOUNT_FACTOR", 0.9)
    legacy_left_rotation: bool = bool(getattr(cfg, "LEGACY_LEFT_ROTATION", 0))
    rewards: RewardTable = field(default_factory=lambda: RewardTable(
        oscillation=getattr(cfg, "OSCILLATION_PENALTY", -0.5),
        survived=getattr(cfg, "SURVIVAL_REWARD", 0.1),
        oscillation_repeats=getattr(cfg, "OSCILLATION_REPEATS", 3),
    ))


@dataclass
class EpisodeSummary:
    game_id: str
    total_reward: float
    turns: int
    updates: int
    outcome: Optional[str] = None
    avg_loss: float = 0.0
    epsilon: float = 0.0
    invalid_moves: int = 0


# ---------------- Bellman update ----------------
def bellman_target(q_values: Sequence[float], move: Move, reward: float, max_next_q: float,
                   learning_rate: float, discount_factor: float) -> List[float]:
    """Copy of ``q_values`` with the taken action moved towards the TD target."""
    a = MOVES.index(Move(move))
    q = float(q_values[a])
    target = list(float(v) for v in q_values)
    target[a] = q + learning_rate * (reward + discount_factor * max_next_q - q)
    return target


class QLearner:
    """Turns buffered (t, t+1) decision pairs into one-step Q-learning fits."""

    def __init__(self, approximator: Approximator, learning_rate: float = 0.1,
                 discount_factor: float = 0.9, rewards: RewardTable = RewardTable()):
        self.approximator = approximator
        self.learning_rate = learning_rate
        self.discount_factor = discount_factor
        self.rewards = rewards
        self.last_loss: float = 0.0

    def classify(self, prev: DecisionRecord, nxt: DecisionRecord) -> Outcome:
        return classify_transition(prev.snapshot, nxt.snapshot, prev, nxt,
                                   oscillation_repeats=self.rewards.oscillation_repeats)

    def bellman_update(self, prev: DecisionRecord, nxt: DecisionRecord, reward: float) -> float:
        target = bellman_target(prev.q_values, prev.canonical_move, reward, max(nxt.q_values),
                                self.learning_rate, self.discount_factor)
        self.last_loss = self.approximator.fit(prev.features, target) or 0.0
        return reward

    def train_pairs(self, buffer: TurnBuffer) -> Tuple[float, int, Optional[Outcome], float]:
        """Drain ``buffer``; returns (total reward, updates, last outcome, mean loss)."""
        total, updates, outcome, loss_sum = 0.0, 0, None, 0.0
        buffer.draining = True
        try:
            for prev, nxt in buffer.pairs():
                outcome = self.classify(prev, nxt)
                total += self.bellman_update(prev, nxt, self.rewards.value(outcome))
                loss_sum += self.last_loss
                updates += 1
        finally:
            buffer.clear()
        return total, updates, outcome, loss_sum / max(1, updates)


# ---------------- one game ----------------
class SnakeAgent:
    """Plays and learns one game: records a decision per turn, trains at the end."""

    def __init__(self, approximator: Approximator, params: AgentParams = AgentParams(),
                 epsilon: float = 0.0, rng: Optional[random.Random] = None, game_id: str = ""):
        self.params = params
        self.game_id = game_id
        self.encoder = StateEncoder(params.board_w, params.board_h, params.legacy_left_rotation)
        self.policy = EpsilonGreedyPolicy(self.encoder, approximator, epsilon, rng)
        self.learner = QLearner(approximator, params.learning_rate, params.discount_factor, params.rewards)
        self.buffer = TurnBuffer()
        self.invalid_moves = 0

    @property
    def epsilon(self) -> float:
        return self.policy.epsilon

    def on_turn(self, snapshot: Snapshot) -> Tuple[Move, bool]:
        if self.buffer.draining:
            raise ContractViolation("Episode is being trained; no more turns accepted")
        if snapshot.turn in self.buffer:
            # checked before predict so a replayed turn never reaches the network
            raise TurnReplayError(snapshot.turn)
        previous = self.buffer.get(snapshot.turn - 1)
        rec = self.buffer.record(self.policy.decide(snapshot, previous))
        if not rec.is_valid:
            self.invalid_moves += 1
        return rec.world_move, rec.is_valid

    def train_episode(self, final_snapshot: Snapshot) -> EpisodeSummary:
        last = self.buffer.last()
        if last is None:
            raise MissingPreviousStateError()
        try:
            # the engine never asks for a move after the game ends
            self.buffer.record(self.policy.decide(final_snapshot, last, explore=False))
        except Exception:
            self.buffer.clear()
            raise
        turns = len(self.buffer) - 1
        total, updates, outcome, avg_loss = self.learner.train_pairs(self.buffer)
        return EpisodeSummary(
            game_id=self.game_id or final_snapshot.game_id,
            total_reward=total,
            turns=turns,
            updates=updates,
            outcome=outcome.value if outcome is not None else None,
            avg_loss=avg_loss,
            epsilon=self.epsilon,
            invalid_moves=self.invalid_moves,
        )

    on_episode_end = train_episode


# ---------------- process-wide trainer ----------------
class Trainer:
    """
    Process-wide owner of the shared network:
      - one SnakeAgent per running game id; idle or surplus sessions are evicted
      - epsilon schedule, decayed once per finished episode
      - checkpoint every CHECKPOINT_EVERY episodes and on shutdown
      - episode summaries are appended to storage/episodes/qsnake.xlsx
    """

    def __init__(self, approximator: Optional[Approximator] = None,
                 params: Optional[AgentParams] = None,
                 epsilon: Optional[EpsilonCfg] = None,
                 checkpoint_path: Optional[Path] = None,
                 episodes_path: Optional[Path] = None,
                 seed: Optional[int] = None):
        self.params = params or AgentParams()
        self.epsilon = epsilon or EpsilonCfg()
        self._eps_value: float = self.epsilon.start
        self.checkpoint_path = Path(checkpoint_path or
                                    Path(getattr(cfg, "CHECKPOINT_DIR", "storage/checkpoints"))
                                    / getattr(cfg, "CHECKPOINT_NAME", "qsnake.ckpt"))
        self.episodes_path = Path(episodes_path or
                                  Path(getattr(cfg, "EPISODES_DIR", "storage/episodes")) / "qsnake.xlsx")
        self.rng = random.Random(seed)

        if approximator is None:
            in_dim = StateEncoder(self.params.board_w, self.params.board_h).feature_size
            hidden = parse_hidden(getattr(cfg, "HIDDEN_UNITS", "128,64"))
            lr = getattr(cfg, "FIT_LR", 1e-3)
            if getattr(cfg, "FRESH_START", 0):
                approximator = TorchQApproximator(in_dim, hidden, lr=lr)
            else:
                approximator = load_or_create(self.checkpoint_path, in_dim, hidden=hidden, lr=lr,
                                              fallback=bool(getattr(cfg, "LOAD_FALLBACK", 1)))
        self.approximator = approximator

        self.episode: int = 0
        self._sessions: Dict[str, SnakeAgent] = {}
        self._started_ms: Dict[str, int] = {}
        self._last_seen: Dict[str, float] = {}
        self._clock = time.monotonic
        self._training = 0
        self._lock = threading.Lock()

        # Episode logging buffer
        self._episodes_buf: List[Dict[str, Any]] = []
        self._episodes_lock = threading.Lock()

    # ---------- config ----------
    def get_config(self) -> Dict[str, Any]:
        p = asdict(self.params)
        p["epsilon"] = asdict(self.epsilon)
        p["epsilon_current"] = self._eps_value
        return p

    # ---------- sessions ----------
    @property
    def training(self) -> bool:
        """True while an episode is being trained on the shared network."""
        return self._training > 0

    def _drop_locked(self, gid: str) -> Optional[SnakeAgent]:
        self._started_ms.pop(gid, None)
        self._last_seen.pop(gid, None)
        return self._sessions.pop(gid, None)

    def _evict_locked(self, now: float) -> None:
        idle = float(getattr(cfg, "SESSION_IDLE_S", 600))
        if idle > 0:
            for gid in [g for g, seen in self._last_seen.items() if now - seen > idle]:
                agent = self._drop_locked(gid)
                logger.warning("Game %s idle for %.0fs; dropping %d buffered turns",
                               gid, idle, len(agent.buffer) if agent else 0)
        cap = int(getattr(cfg, "MAX_SESSIONS", 64))
        while cap > 0 and len(self._sessions) >= cap:
            oldest = min(self._last_seen, key=self._last_seen.get)
            self._drop_locked(oldest)
            logger.warning("%d games open; dropping least recent %s", cap, oldest)

    def _session(self, snapshot: Snapshot) -> SnakeAgent:
        gid = snapshot.game_id
        with self._lock:
            now = self._clock()
            agent = self._sessions.get(gid)
            if agent is None:
                self._evict_locked(now)
                agent = SnakeAgent(self.approximator, self.params, self._eps_value,
                                   random.Random(self.rng.random()), game_id=gid)
                self._sessions[gid] = agent
                self._started_ms[gid] = int(time.time() * 1000)
            self._last_seen[gid] = now
            return agent

    def start(self, snapshot: Snapshot) -> None:
        with self._lock:
            stale = self._drop_locked(snapshot.game_id)
        if stale is not None:
            logger.warning("Game %s restarted; dropping %d buffered turns", snapshot.game_id, len(stale.buffer))
        self._session(snapshot)
        logger.info("GAME START %s", snapshot.game_id)

    def move(self, snapshot: Snapshot) -> Tuple[Move, bool]:
        agent = self._session(snapshot)
        try:
            move, valid = agent.on_turn(snapshot)
        except ContractViolation as e:
            # keep playing; this turn is simply not learned from
            fallback = self.rng.choice(legal_world_moves(snapshot) or list(MOVES))
            logger.error("%s: %s. Playing '%s'", snapshot.turn, e, fallback.value)
            return fallback, False
        # the buffered decision keeps is_valid=False, so training scores it as a death
        if not valid and getattr(cfg, "SUBSTITUTE_ILLEGAL_MOVES", 1):
            safe = legal_world_moves(snapshot)
            substitute = self.rng.choice(safe) if safe else Move.UP
            logger.warning("%s: Not valid move '%s'. Picking '%s'", snapshot.turn, move.value, substitute.value)
            return substitute, False
        return move, valid

    def end(self, snapshot: Snapshot) -> Optional[EpisodeSummary]:
        with self._lock:
            started = self._started_ms.get(snapshot.game_id)
            agent = self._drop_locked(snapshot.game_id)
            if agent is not None:
                self._training += 1
        if agent is None:
            logger.warning("GAME OVER %s without a session; nothing to train", snapshot.game_id)
            return None

        try:
            summary = agent.on_episode_end(snapshot)
        finally:
            with self._lock:
                self._training -= 1
        with self._lock:
            self.episode += 1
            episode = self.episode
            self._eps_value = max(self.epsilon.min, self._eps_value * float(self.epsilon.decay))

        now = int(time.time() * 1000)
        self._log_episode({
            **asdict(summary),
            "episode": episode,
            "duration_ms": now - (started or now),
            "timestamp": now,
        })
        logger.info("GAME OVER %s: %s after %d turns, reward %.2f",
                    summary.game_id, summary.outcome, summary.turns, summary.total_reward)

        every = int(getattr(cfg, "CHECKPOINT_EVERY", 10))
        if every > 0 and episode % every == 0:
            self.save_checkpoint(reason="periodic")
        return summary

    # ---------- checkpointing ----------
    def save_checkpoint(self, reason: str = "manual") -> Path:
        logger.info("Saving checkpoint (%s)", reason)
        self.approximator.save(self.checkpoint_path)
        return self.checkpoint_path

    def shutdown(self) -> None:
        """Save the network and flush the episode log."""
        try:
            self.save_checkpoint(reason="shutdown")
        finally:
            self.flush_episode_log()

    # ---------- episode logging (Excel) ----------
    def _ensure_wb_and_sheet(self, path: Path):
        if path.exists():
            wb = load_workbook(path.as_posix())
            ws = wb.active
            if ws.max_row < 1:
                ws.append(EPISODES_HEADERS)
            return wb, ws
        wb = Workbook()
        ws = wb.active
        ws.title = "episodes"
        ws.append(EPISODES_HEADERS)
        return wb, ws

    def _log_episode(self, row: Dict[str, Any]) -> None:
        rec = dict(row)
        rec["grid_w"] = self.params.board_w
        rec["grid_h"] = self.params.board_h
        with self._episodes_lock:
            self._episodes_buf.append(rec)
            batch = int(getattr(cfg, "EPISODES_WRITE_BATCH", 100))
            if len(self._episodes_buf) >= max(1, batch):
                self._flush_episode_log_locked()

    def flush_episode_log(self) -> None:
        """Public flush (call on close/shutdown)."""
        with self._episodes_lock:
            self._flush_episode_log_locked()

    def _flush_episode_log_locked(self) -> None:
        if not self._episodes_buf:
            return
        path = self.episodes_path
        path.parent.mkdir(parents=True, exist_ok=True)
        wb, ws = self._ensure_wb_and_sheet(path)
        buf = self._episodes_buf
        self._episodes_buf = []
        for r in buf:
            ws.append([r.get(k, "") for k in EPISODES_HEADERS])
        wb.save(path.as_posix())
