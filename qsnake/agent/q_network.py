from __future__ import annotations
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .. import config as cfg
from ..errors import ApproximatorLoadError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _device() -> str:
    # Only require CUDA if explicitly requested via config
    if getattr(cfg, "REQUIRE_CUDA", 0) and not torch.cuda.is_available():
        raise RuntimeError(
            "CUDA GPU required but not available. "
            "Set REQUIRE_CUDA=0 (env) to bypass."
        )
    return "cuda" if torch.cuda.is_available() else "cpu"


def parse_hidden(text: str) -> Tuple[int, ...]:
    return tuple(int(p) for p in str(text).split(",") if p.strip())


class Approximator(ABC):
    """Action-value function: features -> 4 Q-values (up, down, left, right)."""

    @abstractmethod
    def predict(self, features: Sequence[float]) -> List[float]: ...
    @abstractmethod
    def fit(self, features: Sequence[float], target: Sequence[float]) -> float: ...
    @abstractmethod
    def save(self, path: PathLike) -> None: ...

    @classmethod
    @abstractmethod
    def load(cls, path: PathLike) -> "Approximator": ...


class QNet(nn.Module):
    def __init__(self, in_dim: int, hidden: Tuple[int, ...] = (128, 64), out_dim: int = 4):
        super().__init__()
        dims = (in_dim,) + tuple(hidden)
        self.hidden = nn.ModuleList(nn.Linear(a, b) for a, b in zip(dims[:-1], dims[1:]))
        self.out = nn.Linear(dims[-1], out_dim)

    def forward(self, x: torch.Tensor):
        for layer in self.hidden:
            x = F.relu(layer(x))
        return self.out(x)


class TorchQApproximator(Approximator):
    """MLP + Adam, one gradient step per fit call.

    The network is shared by every game the process is playing, so predict and
    fit are serialized behind one lock.
    """

    def __init__(self, in_dim: int, hidden: Tuple[int, ...] = (128, 64), out_dim: int = 4,
                 lr: float = 1e-3, device: str = None):
        self.device = torch.device(device or _device())
        self.in_dim, self.hidden, self.out_dim, self.lr = in_dim, tuple(hidden), out_dim, lr
        self.net = QNet(in_dim, self.hidden, out_dim).to(self.device)
        self.optimizer = torch.optim.Adam(self.net.parameters(), lr=lr)
        self._lock = threading.Lock()
        self.fit_calls = 0

    def _tensor(self, values: Sequence[float]) -> torch.Tensor:
        arr = np.asarray(values, dtype=np.float32).reshape(1, -1)
        if arr.shape[1] != self.in_dim:
            raise ValueError(f"Expected {self.in_dim} features, got {arr.shape[1]}")
        return torch.as_tensor(arr, device=self.device)

    def predict(self, features: Sequence[float]) -> List[float]:
        with self._lock, torch.no_grad():
            q = self.net(self._tensor(features))
            return q.squeeze(0).float().cpu().tolist()

    def fit(self, features: Sequence[float], target: Sequence[float]) -> float:
        with self._lock:
            x = self._tensor(features)
            y = torch.as_tensor(np.asarray(target, dtype=np.float32).reshape(1, -1), device=self.device)
            loss = F.mse_loss(self.net(x), y)
            self.optimizer.zero_grad(set_to_none=True)
            loss.backward()
            self.optimizer.step()
            self.fit_calls += 1
            return float(loss.detach().item())

    # ---------- persistence ----------
    def state_dict(self) -> Dict:
        return {
            "version": 1,
            "in_dim": self.in_dim,
            "hidden": list(self.hidden),
            "out_dim": self.out_dim,
            "lr": self.lr,
            "net": self.net.state_dict(),
            "opt": self.optimizer.state_dict(),
            "fit_calls": self.fit_calls,
        }

    def save(self, path: PathLike) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            ckpt = self.state_dict()
            try:
                torch.save(ckpt, tmp.as_posix())
                tmp.replace(path)  # atomic-ish on Windows/Posix
            except Exception:
                tmp.unlink(missing_ok=True)
                raise
        logger.info("Saved approximator to %s (%d fit calls)", path, self.fit_calls)

    @classmethod
    def load(cls, path: PathLike, device: str = None) -> "TorchQApproximator":
        path = Path(path)
        if not path.exists():
            raise ApproximatorLoadError(path)
        dev = device or _device()
        try:
            ckpt = torch.load(path.as_posix(), map_location=dev)
            inst = cls(int(ckpt["in_dim"]), tuple(ckpt["hidden"]), int(ckpt.get("out_dim", 4)),
                       lr=float(ckpt.get("lr", 1e-3)), device=dev)
            inst.net.load_state_dict(ckpt["net"])
            if ckpt.get("opt"):
                inst.optimizer.load_state_dict(ckpt["opt"])
            inst.fit_calls = int(ckpt.get("fit_calls", 0))
        except Exception as e:
            raise ApproximatorLoadError(path, str(e)) from e
        logger.info("Loaded approximator from %s", path)
        return inst


def load_or_create(path: PathLike, in_dim: int, hidden: Tuple[int, ...] = (128, 64),
                   lr: float = 1e-3, fallback: bool = True) -> TorchQApproximator:
    """Load the checkpoint; with ``fallback`` start untrained instead of failing."""
    try:
        approx = TorchQApproximator.load(path)
    except ApproximatorLoadError as e:
        if not fallback:
            raise
        logger.warning("%s; starting with an untrained network", e)
        return TorchQApproximator(in_dim, hidden, lr=lr)
    if approx.in_dim != in_dim:
        if not fallback:
            raise ApproximatorLoadError(path, f"expects {approx.in_dim} features, board needs {in_dim}")
        logger.warning("Checkpoint %s has %d inputs, need %d; starting fresh", path, approx.in_dim, in_dim)
        return TorchQApproximator(in_dim, hidden, lr=lr)
    return approx
