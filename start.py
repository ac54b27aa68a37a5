# start.py: run the Battlesnake server
"""
Launcher for the Q-learning Battlesnake.

Examples
--------
# Serve on the default port (PORT env or 8000)
python start.py

# Force CPU and ignore any saved network
python start.py --cpu --fresh
"""
from __future__ import annotations

import argparse
import contextlib
import logging
import os
import socket
import sys
from pathlib import Path

# ---------- constants ----------
REPO_ROOT = Path(__file__).resolve().parent
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = int(os.getenv("PORT", "8000"))

# ---------- small utils ----------
def port_is_free(host: str, port: int) -> bool:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.settimeout(0.25)
        return s.connect_ex((host if host != "0.0.0.0" else "127.0.0.1", port)) != 0

# ---------- backend (uvicorn) ----------
def run_backend(host: str, port: int, log_level: str = "info"):
    from uvicorn import Config, Server

    module = "qsnake.app:app"
    config = Config(module, host=host, port=port, reload=False, log_level=log_level)
    server = Server(config)
    print(f"[API] Running Battlesnake at http://{host}:{port} (module {module})")
    server.run()

# ---------- main ----------
def main():
    p = argparse.ArgumentParser(description="Q-learning Battlesnake server.")
    p.add_argument("--host", default=DEFAULT_HOST)
    p.add_argument("--port", type=int, default=DEFAULT_PORT)
    p.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    p.add_argument("--fresh", action="store_true", help="Start with an untrained network even if a checkpoint exists.")

    # device pref
    dev = p.add_argument_group("device")
    dev.add_argument("--cpu", action="store_true", help="Force CPU (sets REQUIRE_CUDA=0).")
    dev.add_argument("--require-cuda", action="store_true", help="Require CUDA (sets REQUIRE_CUDA=1).")

    args = p.parse_args()

    # Set env for qsnake/config.py consumption (must happen before it is imported)
    if args.require_cuda:
        os.environ["REQUIRE_CUDA"] = "1"
    elif args.cpu:
        os.environ["REQUIRE_CUDA"] = "0"
    if args.fresh:
        os.environ["FRESH_START"] = "1"

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Make sure storage dirs exist
    (REPO_ROOT / "storage" / "checkpoints").mkdir(parents=True, exist_ok=True)
    (REPO_ROOT / "storage" / "episodes").mkdir(parents=True, exist_ok=True)

    if not port_is_free(args.host, args.port):
        print(f"[API] Port {args.port} is busy; pick another with --port.")
        sys.exit(2)

    try:
        run_backend(args.host, args.port, args.log_level)
    except KeyboardInterrupt:
        print("\n[start.py] Shutting down…")

if __name__ == "__main__":
    main()
