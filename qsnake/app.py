from __future__ import annotations
import logging
from typing import Any, Dict

from fastapi import Body, FastAPI, HTTPException, Request

from . import config as cfg
from .env.snapshot import Snapshot
from .errors import QSnakeError
from .train.loop import Trainer

logger = logging.getLogger(__name__)


def create_app(trainer: Trainer = None) -> FastAPI:
    app = FastAPI(title="qsnake", version="1.0")
    app.state.trainer = trainer

    def _trainer() -> Trainer:
        # built lazily so importing the module never touches the checkpoint
        if app.state.trainer is None:
            app.state.trainer = Trainer()
        return app.state.trainer

    @app.middleware("http")
    async def server_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["Server"] = "battlesnake/github/qsnake"
        return response

    # -------- Battlesnake API --------
    @app.get("/")
    def info() -> Dict[str, Any]:
        trainer = app.state.trainer
        if trainer is not None and trainer.training:
            raise HTTPException(status_code=403, detail="Training in progress")
        return {
            "apiversion": "1",
            "author": cfg.SNAKE_AUTHOR,
            "color": cfg.SNAKE_COLOR,
            "head": cfg.SNAKE_HEAD,
            "tail": cfg.SNAKE_TAIL,
        }

    @app.post("/start")
    def start(payload: Dict[str, Any] = Body(...)) -> str:
        _trainer().start(Snapshot.from_dict(payload))
        return "ok"

    @app.post("/move")
    def move(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        nxt, _valid = _trainer().move(Snapshot.from_dict(payload))
        return {"move": nxt.value}

    @app.post("/end")
    def end(payload: Dict[str, Any] = Body(...)) -> str:
        snapshot = Snapshot.from_dict(payload)
        try:
            _trainer().end(snapshot)
        except QSnakeError as e:
            logger.error("Training on game %s failed: %s", snapshot.game_id, e)
        return "ok"

    # -------- admin --------
    @app.post("/api/save")
    def api_save() -> Dict[str, Any]:
        path = _trainer().save_checkpoint(reason="api_save")
        return {"ok": True, "path": path.as_posix()}

    @app.get("/api/config")
    def api_get_config() -> Dict[str, Any]:
        return _trainer().get_config()

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.trainer is not None:
            app.state.trainer.shutdown()

    return app


app = create_app()
