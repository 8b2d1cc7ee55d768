from contextlib import asynccontextmanager
from typing import Literal
import logging
import random
import re
import time
import uuid

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from backend.app.config import settings
from backend.app.logging_setup import log_fields, setup_logging
from backend.app.db import connect, init_db
from backend.app import telemetry
from backend.recommender import store
from backend.recommender.deck import build_deck
from backend.recommender.errors import DeckBuildError, StoreError

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

SWIPE_KEY_NAMESPACE = uuid.UUID("6f1c3c52-2f0e-4a53-9a37-4a4f6d1b7e21")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ensure DB exists
    conn = connect()
    init_db(conn)
    conn.close()
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.2.0",
    lifespan=lifespan,
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


def _should_log_request() -> bool:
    rate = settings.log_sample_rate
    if rate <= 0:
        return False
    if rate >= 1:
        return True
    return random.random() < rate


@app.middleware("http")
async def request_context(request: Request, call_next):
    start = time.perf_counter()
    req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = req_id

    response = await call_next(request)

    dur_ms = int((time.perf_counter() - start) * 1000)
    route = telemetry.route_key(request.method, request.url.path)
    log_fields(
        logger,
        logging.ERROR if response.status_code >= 500 else logging.INFO,
        "request",
        req_id=req_id,
        route=route,
        status=response.status_code,
        dur_ms=dur_ms,
    )

    if request.url.path != "/health" and _should_log_request():
        # sqlite write + commit blocks, keep it off the event loop
        await run_in_threadpool(
            _write_request_log,
            req_id, route, request.method, request.url.path, response.status_code, dur_ms,
        )

    response.headers["x-request-id"] = req_id
    return response


def _write_request_log(req_id: str, route: str, method: str, path: str, status: int, dur_ms: int) -> None:
    conn = connect()
    try:
        telemetry.record_request_log(conn, req_id, route, method, path, status, dur_ms, _now_ms())
    except Exception:
        # telemetry must never fail the request it describes
        logger.exception("failed to write request log %s", req_id)
    finally:
        conn.close()


def require_admin(token: str | None) -> None:
    if not settings.admin_token or not token or token != settings.admin_token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _admin_token(authorization: str | None, x_admin_token: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    if x_admin_token:
        return x_admin_token.strip()
    return None


@app.get("/health")
def health():
    conn = connect()
    try:
        phase = store.get_meta(conn, "phase") or "unknown"
    finally:
        conn.close()
    return {"status": "ok", "app": settings.app_name, "env": settings.app_env, "phase": phase}


# Deck
@app.get("/v1/deck")
def deck(
    request: Request,
    session_id: str = Query(..., min_length=1, max_length=128),
    limit: int = Query(20, ge=1, le=50),
):
    conn = connect()
    try:
        result = build_deck(
            conn,
            settings,
            session_id=session_id,
            limit=limit,
            request_id=request.state.request_id,
        )
    except (DeckBuildError, StoreError):
        logger.exception("deck build failed for session %s", session_id)
        raise HTTPException(status_code=500, detail="internal error")
    finally:
        conn.close()

    payload = {
        "deck_id": result.deck_id,
        "model_version": result.model_version,
        "deck": [
            {
                "id": m.movie_id,
                "title": m.title,
                "year": m.year,
                "poster_url": m.poster_url,
                "genres": m.genres,
                "reason_code": m.reason_code,
                "score": m.score,
            }
            for m in result.deck
        ],
    }
    if result.reason:
        payload["reason"] = result.reason
    return payload


# Swipes
class SwipeIn(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    deck_id: str = Field(..., min_length=8)
    movie_id: str = Field(..., min_length=1)
    action: Literal["like", "skip"]
    ts_ms: int | None = Field(default=None, ge=0)
    dwell_ms: int | None = Field(default=None, ge=0)


def swipe_event_id(ev: SwipeIn, ts_ms: int) -> str:
    """Stable key so a retried POST of the same swipe lands on the same row."""
    key = "|".join([ev.session_id, ev.deck_id, ev.movie_id, ev.action, str(ts_ms)])
    return str(uuid.uuid5(SWIPE_KEY_NAMESPACE, key))


@app.post("/v1/events/swipe")
def log_swipe(
    ev: SwipeIn,
    request: Request,
    x_idempotency_key: str | None = Header(default=None),
):
    ts = ev.ts_ms if ev.ts_ms is not None else _now_ms()
    event_id = x_idempotency_key or swipe_event_id(ev, ts)

    conn = connect()
    try:
        if not store.deck_served_to_session(conn, ev.deck_id, ev.session_id):
            raise HTTPException(status_code=404, detail="deck_id not found for this session")

        inserted = store.record_swipe(
            conn,
            {
                "event_id": event_id,
                "session_id": ev.session_id,
                "deck_id": ev.deck_id,
                "movie_id": ev.movie_id,
                "action": ev.action,
                "ts_ms": ts,
                "dwell_ms": ev.dwell_ms,
                "request_id": request.state.request_id,
            },
        )
    finally:
        conn.close()

    return {"ok": True, "event_id": event_id, "duplicate": not inserted}


@app.get("/v1/profile")
def profile(session_id: str = Query(..., min_length=1, max_length=128)):
    conn = connect()
    try:
        summary = telemetry.profile_summary(conn, session_id)
    finally:
        conn.close()
    return {"session_id": session_id, **summary}


# Admin
@app.get("/v1/metrics")
def metrics(
    window: str = Query("24h"),
    authorization: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
):
    require_admin(_admin_token(authorization, x_admin_token))

    match = re.fullmatch(r"([0-9]{1,3})h", window)
    hours = max(1, min(72, int(match.group(1)))) if match else 24

    conn = connect()
    try:
        data = telemetry.metrics_window(conn, _now_ms(), hours * 60 * 60 * 1000)
    finally:
        conn.close()
    return {"ok": True, **data}


@app.get("/v1/admin/model")
def get_model(
    authorization: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
):
    require_admin(_admin_token(authorization, x_admin_token))
    conn = connect()
    try:
        current = store.get_current_model_version(conn, settings.default_model_version)
        known = store.list_model_versions(conn)
    finally:
        conn.close()
    return {"ok": True, "current_model_version": current, "known_models": known}


class ModelPointerIn(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_version: str = Field(..., min_length=1)


@app.post("/v1/admin/model")
def set_model(
    body: ModelPointerIn,
    authorization: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
):
    require_admin(_admin_token(authorization, x_admin_token))
    mv = body.model_version.strip()

    conn = connect()
    try:
        if not store.model_version_exists(conn, mv):
            raise HTTPException(status_code=400, detail="unknown model_version")
        # same gate as publish_model --set-current
        if store.model_version_metrics(conn, mv) is None:
            raise HTTPException(status_code=400, detail="model_version has no offline eval")
        store.set_current_model_version(conn, mv)
    finally:
        conn.close()
    return {"ok": True, "current_model_version": mv}
