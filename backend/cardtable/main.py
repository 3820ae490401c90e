"""FastAPI application — WebSocket table channel plus REST admin endpoints."""

import hmac
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from cardtable import config, metrics, redis_client
from cardtable.game_manager import session
from cardtable.keepalive import keep_alive
from cardtable.models import AddBotsRequest, CommandResult
from cardtable.timer import auto_play
from cardtable.ws_manager import manager

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    session.set_manager(manager)
    auto_play.set_session(session)
    auto_play.start()
    keep_alive.attach(session, manager)
    keep_alive.start()
    yield
    keep_alive.stop()
    auto_play.stop()
    await redis_client.close()


app = FastAPI(title="Card Table API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Admin Auth ----------


def _password_matches(candidate: object) -> bool:
    if not config.ADMIN_PASSWORD or not isinstance(candidate, str) or not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), config.ADMIN_PASSWORD.encode())


async def verify_admin(authorization: str | None = Header(None)):
    """Validate the admin password from the Authorization header."""
    if not config.ADMIN_PASSWORD:
        raise HTTPException(
            status_code=503,
            detail="Admin not configured. Set ADMIN_PASSWORD env var.",
        )
    expected = f"Bearer {config.ADMIN_PASSWORD}".encode()
    if not authorization or not hmac.compare_digest(authorization.encode(), expected):
        raise HTTPException(status_code=401, detail="Invalid admin password")


# ---------- REST endpoints ----------


@app.get("/api/health")
async def health():
    return {"ok": True}


@app.get("/api/state")
@limiter.limit("30/minute")
async def get_state(request: Request):
    """Public table snapshot (no hands)."""
    return await session.get_view()


@app.post("/api/admin/reset", response_model=CommandResult)
@limiter.limit("10/minute")
async def admin_reset(request: Request, _=Depends(verify_admin)):
    return await session.reset("admin reset")


@app.post("/api/admin/bots", response_model=CommandResult)
@limiter.limit("10/minute")
async def admin_add_bots(request: Request, req: AddBotsRequest, _=Depends(verify_admin)):
    return await session.add_bots(req.count)


@app.get("/api/admin/summary")
@limiter.limit("10/minute")
async def admin_summary(request: Request, _=Depends(verify_admin)):
    """Live table summary plus recent results from redis."""
    table = await session.get_summary()
    try:
        history = await metrics.get_summary()
    except Exception:
        logger.warning("Metrics unavailable", exc_info=True)
        history = None
    return {"table": table, "history": history}


# ---------- WebSocket ----------


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    conn_id = uuid.uuid4().hex
    conn = await manager.connect(conn_id, ws)

    try:
        await conn.send(json.dumps({"type": "welcome", "id": conn_id}))
        view = await session.get_view(conn_id)
        await conn.send(json.dumps({"type": "state", "data": view}))
    except Exception:
        logger.debug("Error sending initial state to %s", conn_id, exc_info=True)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
                if not isinstance(msg, dict):
                    continue
            except json.JSONDecodeError:
                continue  # ignore malformed messages
            try:
                await _handle_message(conn_id, msg)
            except WebSocketDisconnect:
                raise
            except Exception:
                logger.exception("Error handling %r from %s", msg.get("type"), conn_id)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(conn_id, conn)
        try:
            await session.disconnect(conn_id)
        except Exception:
            logger.exception("Error handling disconnect for %s", conn_id)


async def _handle_message(conn_id: str, msg: dict) -> None:
    msg_type = msg.get("type", "")

    if msg_type == "pong":
        manager.record_pong(conn_id)
    elif msg_type == "join":
        await session.join(conn_id, str(msg.get("name") or ""))
    elif msg_type == "ready":
        await session.ready(conn_id)
    elif msg_type == "submit":
        custom = msg.get("custom")
        await session.submit(
            conn_id,
            str(msg.get("card") or ""),
            custom if isinstance(custom, str) else None,
        )
    elif msg_type == "pick":
        await session.pick(conn_id, str(msg.get("submission_id") or ""))
    elif msg_type == "chat":
        await session.chat(conn_id, str(msg.get("text") or ""))
    elif msg_type == "vote_skip":
        await session.vote_skip(conn_id)
    elif msg_type == "admin":
        await _handle_admin(conn_id, msg)
    else:
        logger.debug("Ignoring message type %r from %s", msg_type, conn_id)


async def _handle_admin(conn_id: str, msg: dict) -> None:
    if not _password_matches(msg.get("password")):
        await manager.send_json(conn_id, {"type": "admin_fail"})
        return

    action = msg.get("action", "")
    if action == "login":
        await manager.send_json(conn_id, {"type": "admin_ok"})
    elif action == "reset":
        await session.reset("admin reset")
    elif action == "add_bots":
        try:
            count = int(msg.get("count") or 1)
        except (TypeError, ValueError):
            count = 1
        await session.add_bots(count)
    elif action == "music_start":
        url = msg.get("url")
        if isinstance(url, str) and url:
            await session.start_music(url)
    elif action == "wipe_chat":
        await session.wipe_chat()
    else:
        logger.debug("Unknown admin action %r", action)
