# config.py
"""
Central configuration for the Q-learning Battlesnake.

Everything is read from environment variables so you can override defaults
without changing code. Relevant env vars:

- REQUIRE_CUDA (0/1)
- CHECKPOINT_DIR, CHECKPOINT_EVERY, LOAD_FALLBACK
- SESSION_IDLE_S, MAX_SESSIONS
- BOARD_WIDTH, BOARD_HEIGHT
- LEARNING_RATE, DISCOUNT_FACTOR, DEFAULT_EPS_* (see below)
- EPISODES_DIR, EPISODES_WRITE_BATCH
"""

import os

def _i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

def _s(name: str, default: str) -> str:
    return os.getenv(name, default)

# --------- Hardware / runtime ---------
REQUIRE_CUDA = _i("REQUIRE_CUDA", 0)  # set to 1 to require GPU, else falls back to CPU

# --------- Checkpointing ---------
CHECKPOINT_DIR   = _s("CHECKPOINT_DIR", "storage/checkpoints")
CHECKPOINT_NAME  = _s("CHECKPOINT_NAME", "qsnake.ckpt")
CHECKPOINT_EVERY = _i("CHECKPOINT_EVERY", 10)   # episodes; 0 => only on shutdown / api_save
LOAD_FALLBACK    = _i("LOAD_FALLBACK", 1)       # start untrained when the checkpoint is missing
FRESH_START      = _i("FRESH_START", 0)         # ignore the checkpoint (it is overwritten on save)

# --------- Sessions ---------
# games whose /end never arrives are dropped once idle this long, or when too many are open
SESSION_IDLE_S = _i("SESSION_IDLE_S", 600)
MAX_SESSIONS   = _i("MAX_SESSIONS", 64)

# --------- Board / features ---------
BOARD_WIDTH  = _i("BOARD_WIDTH", 11)
BOARD_HEIGHT = _i("BOARD_HEIGHT", 11)
# 1 => heading=left rotates the board like heading=right (pre-fix checkpoints)
LEGACY_LEFT_ROTATION = _i("LEGACY_LEFT_ROTATION", 0)

# --------- Q-learning ---------
LEARNING_RATE   = _f("LEARNING_RATE", 0.1)
DISCOUNT_FACTOR = _f("DISCOUNT_FACTOR", 0.9)
FIT_LR          = _f("FIT_LR", 1e-3)            # optimizer step size for one fit call
HIDDEN_UNITS    = _s("HIDDEN_UNITS", "128,64")

# --------- Epsilon schedule (applied between episodes) ---------
DEFAULT_EPS_START = _f("DEFAULT_EPS_START", 1.0)
DEFAULT_EPS_MIN   = _f("DEFAULT_EPS_MIN", 0.05)
DEFAULT_EPS_DECAY = _f("DEFAULT_EPS_DECAY", 0.99)

# --------- Rewards ---------
SURVIVAL_REWARD     = _f("SURVIVAL_REWARD", 0.1)
OSCILLATION_PENALTY = _f("OSCILLATION_PENALTY", -0.5)
OSCILLATION_REPEATS = _i("OSCILLATION_REPEATS", 3)

# --------- Play ---------
SUBSTITUTE_ILLEGAL_MOVES = _i("SUBSTITUTE_ILLEGAL_MOVES", 1)

# --------- Battlesnake appearance ---------
SNAKE_AUTHOR = _s("SNAKE_AUTHOR", "")
SNAKE_COLOR  = _s("SNAKE_COLOR", "#888888")
SNAKE_HEAD   = _s("SNAKE_HEAD", "default")
SNAKE_TAIL   = _s("SNAKE_TAIL", "default")

# --------- Episode log ---------
EPISODES_DIR = _s("EPISODES_DIR", "storage/episodes")
EPISODES_WRITE_BATCH = _i("EPISODES_WRITE_BATCH", 100)
