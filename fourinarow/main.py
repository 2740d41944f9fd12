from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Optional

import anyio
import asyncio
import json
import logging
import os
import time
import uuid

from . import crud, db, errors, moves, profiles, rematch
from .errors import GameError
from .expiry import remaining_wait_ms
from .db import get_session
from .logging_utils import setup_logging, get_logger, request_id_ctx


# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """Sliding-window limit per client IP. Returns False when the request should be rejected."""
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


# websocket connections -> metadata {ws: {'game_id': str|None, 'last_sent': float}}
_WS_CONNECTIONS: dict = {}


def _prepare_message(e: dict):
    try:
        return json.dumps(e)
    except Exception:
        return None


async def _send_to_websocket(ws: WebSocket, meta: dict, msg, ev, now_ts: float) -> bool:
    """Send one event. Returns False if the socket is dead."""
    if meta.get('game_id') and ev.get('game_id') and meta['game_id'] != ev['game_id']:
        return True
    try:
        if msg is not None:
            await ws.send_text(msg)
        else:
            await ws.send_json(ev)
        meta['last_sent'] = now_ts
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


async def broadcast_event(event: dict):
    """Push an event to every subscribed socket; drop the ones that fail."""
    logger.debug("broadcast_event", extra={"event": event.get('type'), "ws_count": len(_WS_CONNECTIONS)})
    json_message = _prepare_message(event)
    now = time.time()
    dead = []
    for ws, meta in list(_WS_CONNECTIONS.items()):
        if not await _send_to_websocket(ws, meta, json_message, event, now):
            dead.append(ws)
    for d in dead:
        _WS_CONNECTIONS.pop(d, None)


def notify_game_update(game_id: Optional[str], **fields) -> None:
    """Fire a game_update from a sync handler. Clients re-fetch state on receipt."""
    if not game_id:
        return
    event = {'type': 'game_update', 'game_id': game_id, **fields}
    try:
        anyio.from_thread.run(broadcast_event, event)
    except RuntimeError:
        # not inside a worker thread (direct calls, scripts)
        pass


setup_logging(logging.INFO)
logger = get_logger("fourinarow")
app = FastAPI(title="Four in a Row")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request_error", extra={"path": str(request.url), "method": request.method})
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

_DEFAULT_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", _DEFAULT_ORIGINS).split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors()), "message": "Input validation failed"},
    )


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    logger.info("game_error", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    engine = db.init_db()
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})


async def _cleanup_loop(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            with Session(db.engine) as s:
                crud.cleanup_expired_waiting(s)
        except Exception as e:
            logger.warning("cleanup_failed", extra={"error": str(e)})


@app.on_event("startup")
async def start_cleanup_loop():
    interval = int(os.getenv("CLEANUP_INTERVAL_SEC", "0"))
    if interval > 0:
        app.state.cleanup_task = asyncio.get_running_loop().create_task(_cleanup_loop(interval))


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


def _clean_player(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError('Player id cannot be empty')
    return v


class PlayerRequest(BaseModel):
    player: str = Field(..., min_length=1, max_length=128)

    @validator('player')
    def validate_player(cls, v):
        return _clean_player(v)


class CreateGameRequest(PlayerRequest):
    mode: str = Field("friend", pattern=r'^(friend|auto)$')


class PlayRequest(PlayerRequest):
    column: int


class UsernameRequest(BaseModel):
    username: str = Field(..., max_length=64)


def _game_payload(gs) -> dict:
    payload = gs.to_dict()
    payload['remaining_wait_ms'] = remaining_wait_ms(gs)
    return payload


@app.post("/api/games", status_code=201)
def create_game(
    body: CreateGameRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60)),
):
    gs = crud.create_game(session, body.player, body.mode)
    notify_game_update(gs.id, status=gs.status)
    return {"game_id": gs.id}


@app.post("/api/games/auto_match")
def auto_match(
    body: PlayerRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60)),
):
    result = crud.auto_match(session, body.player)
    if result["matched"]:
        notify_game_update(result["game_id"], status="active")
    return result


@app.post("/api/games/cleanup")
def cleanup_expired(session: Session = Depends(get_session)):
    return crud.cleanup_expired_waiting(session)


@app.get("/api/games")
def list_games(session: Session = Depends(get_session)):
    return {"games": [_game_payload(gs) for gs in crud.list_games(session)]}


@app.get("/api/games/{game_id}")
def get_game(game_id: str, session: Session = Depends(get_session)):
    gs = crud.get_game(session, game_id)
    if gs is None:
        raise errors.NotFound()
    return _game_payload(gs)


@app.post("/api/games/{game_id}/join")
def join_game(game_id: str, body: PlayerRequest, session: Session = Depends(get_session)):
    result = crud.join_game(session, game_id, body.player)
    if result.get("joined"):
        notify_game_update(game_id, status="active")
    return result


@app.post("/api/games/{game_id}/play")
def play(game_id: str, body: PlayRequest, session: Session = Depends(get_session)):
    gs = moves.play(session, game_id, body.player, body.column)
    notify_game_update(game_id, status=gs.status)
    return _game_payload(gs)


@app.post("/api/games/{game_id}/resign")
def resign(game_id: str, body: PlayerRequest, session: Session = Depends(get_session)):
    gs = moves.resign(session, game_id, body.player)
    notify_game_update(game_id, status=gs.status)
    return _game_payload(gs)


@app.post("/api/games/{game_id}/rematch")
def request_rematch(game_id: str, body: PlayerRequest, session: Session = Depends(get_session)):
    result = rematch.request_rematch(session, game_id, body.player)
    notify_game_update(game_id, rematch_game_id=result.get("new_game_id"))
    return result


@app.get("/api/games/{game_id}/moves")
def list_moves(game_id: str, session: Session = Depends(get_session)):
    return {"game_id": game_id, "moves": [m.to_dict() for m in moves.list_for_game(session, game_id)]}


@app.get("/api/players/{player}/active")
def active_for_player(player: str, session: Session = Depends(get_session)):
    return {"games": [_game_payload(gs) for gs in crud.active_for_player(session, player)]}


@app.get("/api/players/{player}/waiting_auto")
def waiting_auto_for_player(player: str, session: Session = Depends(get_session)):
    gs = crud.waiting_auto_for_player(session, player)
    return {"game": _game_payload(gs) if gs else None}


@app.get("/api/profiles/{player}")
def get_profile(player: str, session: Session = Depends(get_session)):
    p = profiles.get_profile(session, player)
    if not p:
        return {"player_id": player, "username": None}
    return {"player_id": p.player_id, "username": p.username}


@app.put("/api/profiles/{player}")
def set_username(player: str, body: UsernameRequest, session: Session = Depends(get_session)):
    result = profiles.set_username(session, player, body.username)
    if not result["ok"]:
        return JSONResponse(status_code=409 if result["code"] == "taken" else 400, content=result)
    return result


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket, game_id: Optional[str] = None):
    """Subscribe to game_update events, optionally for one game (?game_id=...)."""
    await ws.accept()
    _WS_CONNECTIONS[ws] = {'game_id': game_id, 'last_sent': 0}
    try:
        while True:
            # keep the connection open; clients may send pings
            await ws.receive_text()
    except WebSocketDisconnect:
        _WS_CONNECTIONS.pop(ws, None)
    except Exception:
        _WS_CONNECTIONS.pop(ws, None)
