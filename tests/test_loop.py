from __future__ import annotations

import numpy as np
import pytest
from openpyxl import load_workbook

from qsnake.env.snapshot import Move, Snapshot
from qsnake.errors import MissingPreviousStateError, TurnReplayError
from qsnake.train.loop import (
    AgentParams,
    EpsilonCfg,
    QLearner,
    SnakeAgent,
    Trainer,
    bellman_target,
)

from conftest import ScriptedApproximator, game_payload, make_decision, make_snake, make_snapshot

PARAMS = AgentParams(board_w=5, board_h=5, learning_rate=0.1, discount_factor=0.9)


def _climb(turns, final_alive=False):
    """Snake moving straight up the middle column, leaving the board on the last turn."""
    snaps = []
    for t in range(turns + 1):
        y = t + 5 - turns
        body = [(2, y), (2, y - 1)]
        alive = t < turns or final_alive
        snaps.append(make_snapshot(make_snake(body, health=99 - t), turn=t, alive=alive))
    return snaps


def test_bellman_target_replaces_only_taken_action():
    target = bellman_target([0.5, 0.1, 0.2, 0.3], Move.UP, reward=0.1, max_next_q=0.5,
                            learning_rate=0.1, discount_factor=0.9)
    assert target[0] == pytest.approx(0.5 + 0.1 * (0.1 + 0.9 * 0.5 - 0.5))
    assert target[1:] == [0.1, 0.2, 0.3]


def test_bellman_target_uses_fixed_action_order():
    target = bellman_target([0.0, 0.0, 0.0, 0.0], Move.RIGHT, reward=-1.0, max_next_q=2.0,
                            learning_rate=0.5, discount_factor=0.5)
    assert target == pytest.approx([0.0, 0.0, 0.0, 0.5 * (-1.0 + 1.0)])


def test_bellman_update_fits_previous_features():
    approx = ScriptedApproximator()
    learner = QLearner(approx, learning_rate=0.1, discount_factor=0.9)
    s0, s1 = _climb(1)
    prev = make_decision(s0, q_values=(0.5, 0.1, 0.2, 0.3), features=np.ones(3, dtype=np.float32))
    nxt = make_decision(s1, q_values=(0.0, 0.8, 0.0, 0.0))

    assert learner.bellman_update(prev, nxt, reward=1.0) == 1.0

    (features, target), = approx.fit_calls
    np.testing.assert_array_equal(features, np.ones(3))
    assert target[0] == pytest.approx(0.5 + 0.1 * (1.0 + 0.9 * 0.8 - 0.5))


def test_episode_trains_once_per_transition_and_sums_rewards():
    approx = ScriptedApproximator((0.5, 0.1, 0.2, 0.3))
    agent = SnakeAgent(approx, PARAMS, game_id="g")
    snaps = _climb(3)

    for s in snaps[:-1]:
        move, _ = agent.on_turn(s)
        assert move == Move.UP
    summary = agent.on_episode_end(snaps[-1])

    assert len(approx.fit_calls) == 3
    assert summary.updates == 3
    assert summary.turns == 3
    assert summary.total_reward == pytest.approx(0.1 + 0.1 - 1.0)
    assert summary.outcome == "off_board"
    assert summary.game_id == "g"
    assert len(agent.buffer) == 0
    # first transition: survived, next max Q is 0.5
    assert approx.fit_calls[0][1][0] == pytest.approx(0.5 + 0.1 * (0.1 + 0.9 * 0.5 - 0.5))


def test_training_without_decisions_is_missing_previous_state():
    agent = SnakeAgent(ScriptedApproximator(), PARAMS)
    with pytest.raises(MissingPreviousStateError):
        agent.train_episode(_climb(1)[-1])


def test_turn_replay_is_rejected_before_predict():
    approx = ScriptedApproximator()
    agent = SnakeAgent(approx, PARAMS)
    s0 = _climb(1)[0]
    agent.on_turn(s0)

    with pytest.raises(TurnReplayError):
        agent.on_turn(s0)

    assert len(approx.predict_calls) == 1
    assert len(agent.buffer) == 1


def test_final_snapshot_colliding_with_last_turn_clears_buffer():
    agent = SnakeAgent(ScriptedApproximator(), PARAMS)
    s0 = _climb(1)[0]
    agent.on_turn(s0)

    with pytest.raises(TurnReplayError):
        agent.on_episode_end(s0)
    assert len(agent.buffer) == 0


def test_gap_stops_training_early():
    approx = ScriptedApproximator()
    agent = SnakeAgent(approx, PARAMS)
    snaps = _climb(4)
    for s in (snaps[0], snaps[1], snaps[3]):
        agent.on_turn(s)

    summary = agent.on_episode_end(snaps[4])

    assert summary.updates == 1
    assert len(approx.fit_calls) == 1
    assert len(agent.buffer) == 0


def test_failed_fit_propagates_and_clears_buffer():
    agent = SnakeAgent(ScriptedApproximator(fail_fit=True), PARAMS)
    snaps = _climb(2)
    for s in snaps[:-1]:
        agent.on_turn(s)

    with pytest.raises(RuntimeError):
        agent.on_episode_end(snaps[-1])
    assert len(agent.buffer) == 0


def test_invalid_moves_are_counted():
    approx = ScriptedApproximator((0.0, 1.0, 0.0, 0.0))  # always "down" = into the neck
    agent = SnakeAgent(approx, PARAMS)
    snaps = _climb(2)
    for s in snaps[:-1]:
        _, valid = agent.on_turn(s)
        assert not valid

    assert agent.on_episode_end(snaps[-1]).invalid_moves == 2


# ---------------- Trainer ----------------
@pytest.fixture
def trainer(tmp_path):
    return Trainer(
        approximator=ScriptedApproximator((0.0, 1.0, 0.0, 0.0)),
        params=AgentParams(board_w=11, board_h=11),
        epsilon=EpsilonCfg(start=0.0, min=0.0, decay=1.0),
        checkpoint_path=tmp_path / "ckpt" / "q.ckpt",
        episodes_path=tmp_path / "episodes" / "log.xlsx",
        seed=1,
    )


def _payload_snapshot(**kw) -> Snapshot:
    return Snapshot.from_dict(game_payload(**kw))


def test_trainer_substitutes_illegal_moves(trainer):
    snap = _payload_snapshot(body=[(5, 5), (5, 4), (5, 3)])

    move, valid = trainer.move(snap)

    assert not valid
    assert move in (Move.UP, Move.LEFT, Move.RIGHT)


def test_trainer_recovers_from_turn_replay(trainer):
    snap = _payload_snapshot(body=[(5, 5), (5, 4), (5, 3)])
    trainer.move(snap)

    move, valid = trainer.move(snap)

    assert not valid
    assert move in (Move.UP, Move.LEFT, Move.RIGHT)


def test_trainer_end_logs_episode_and_decays_epsilon(tmp_path):
    tr = Trainer(
        approximator=ScriptedApproximator(),
        params=AgentParams(board_w=11, board_h=11),
        epsilon=EpsilonCfg(start=0.5, min=0.1, decay=0.5),
        checkpoint_path=tmp_path / "q.ckpt",
        episodes_path=tmp_path / "log.xlsx",
    )
    tr.start(_payload_snapshot(body=[(5, 5), (5, 5), (5, 5)]))
    tr.move(_payload_snapshot(body=[(5, 5), (5, 5), (5, 5)], turn=0))
    tr.move(_payload_snapshot(body=[(5, 6), (5, 5), (5, 5)], turn=1, health=99))

    summary = tr.end(_payload_snapshot(body=[(5, 7), (5, 6), (5, 5)], turn=2, health=98))
    tr.flush_episode_log()

    assert summary.updates == 2
    assert summary.epsilon == 0.5
    assert tr.get_config()["epsilon_current"] == pytest.approx(0.25)
    rows = list(load_workbook(tmp_path / "log.xlsx").active.values)
    assert rows[0][:3] == ("episode", "game_id", "outcome")
    assert rows[1][0] == 1 and rows[1][1] == "game-1" and rows[1][2] == "survived"


def test_trainer_end_without_session_is_ignored(trainer):
    assert trainer.end(_payload_snapshot(body=[(1, 1)], game_id="unknown")) is None


def test_trainer_checkpoints_periodically(tmp_path, monkeypatch):
    from qsnake import config as cfg
    monkeypatch.setattr(cfg, "CHECKPOINT_EVERY", 1)
    approx = ScriptedApproximator()
    tr = Trainer(approximator=approx, params=AgentParams(board_w=11, board_h=11),
                 checkpoint_path=tmp_path / "q.ckpt", episodes_path=tmp_path / "log.xlsx")

    tr.move(_payload_snapshot(body=[(5, 5), (5, 4)], turn=0))
    tr.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1))

    assert approx.saved_to == [str(tmp_path / "q.ckpt")]


def test_sessions_are_isolated_per_game(trainer):
    a = _payload_snapshot(body=[(5, 5), (5, 4)], game_id="a")
    b = _payload_snapshot(body=[(5, 5), (5, 4)], game_id="b")
    trainer.move(a)
    trainer.move(b)  # same turn number, different game: no replay error

    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="a")).updates == 1
    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="b")).updates == 1


def test_substituted_illegal_move_is_trained_as_death(trainer):
    # the network always prefers "down", straight into the neck
    snap0 = _payload_snapshot(body=[(5, 5), (5, 4), (5, 3)])
    move, valid = trainer.move(snap0)
    assert not valid and move is not Move.DOWN

    head = snap0.me.head.step(move)
    # full health afterwards would otherwise read as "ate"
    summary = trainer.end(_payload_snapshot(body=[(head.x, head.y), (5, 5), (5, 4)], turn=1))

    assert summary.outcome == "invalid_move"
    assert summary.total_reward == -1.0
    (_, target), = trainer.approximator.fit_calls
    assert target[0] == 0.0
    assert target[1] == pytest.approx(1.0 + 0.1 * (-1.0 + 0.9 * 1.0 - 1.0))


def test_training_flag_is_raised_only_while_fitting(tmp_path):
    seen = []

    class Watching(ScriptedApproximator):
        def fit(self, features, target):
            seen.append(tr.training)
            return super().fit(features, target)

    tr = Trainer(approximator=Watching(), params=AgentParams(board_w=11, board_h=11),
                 checkpoint_path=tmp_path / "q.ckpt", episodes_path=tmp_path / "log.xlsx")
    tr.move(_payload_snapshot(body=[(5, 5), (5, 4)], turn=0))
    assert not tr.training

    tr.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1))

    assert seen == [True]
    assert not tr.training


def test_training_flag_is_cleared_when_fit_fails(tmp_path):
    tr = Trainer(approximator=ScriptedApproximator(fail_fit=True), params=AgentParams(board_w=11, board_h=11),
                 checkpoint_path=tmp_path / "q.ckpt", episodes_path=tmp_path / "log.xlsx")
    tr.move(_payload_snapshot(body=[(5, 5), (5, 4)], turn=0))

    with pytest.raises(RuntimeError):
        tr.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1))
    assert not tr.training


def test_idle_sessions_are_evicted(trainer, monkeypatch):
    from qsnake import config as cfg
    monkeypatch.setattr(cfg, "SESSION_IDLE_S", 60)
    clock = [0.0]
    trainer._clock = lambda: clock[0]

    trainer.move(_payload_snapshot(body=[(5, 5), (5, 4)], game_id="stale"))
    clock[0] = 30.0
    trainer.move(_payload_snapshot(body=[(5, 5), (5, 4)], game_id="live"))
    clock[0] = 61.0
    trainer.move(_payload_snapshot(body=[(5, 5), (5, 4)], game_id="new"))

    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="stale")) is None
    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="live")).updates == 1


def test_open_sessions_are_capped(trainer, monkeypatch):
    from qsnake import config as cfg
    monkeypatch.setattr(cfg, "SESSION_IDLE_S", 0)
    monkeypatch.setattr(cfg, "MAX_SESSIONS", 2)
    clock = [0.0]
    trainer._clock = lambda: clock[0]

    for i, gid in enumerate(("a", "b", "c")):
        clock[0] = float(i)
        trainer.move(_payload_snapshot(body=[(5, 5), (5, 4)], game_id=gid))

    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="a")) is None
    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="b")).updates == 1
    assert trainer.end(_payload_snapshot(body=[(5, 6), (5, 5)], turn=1, game_id="c")).updates == 1
