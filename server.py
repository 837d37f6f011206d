"""
server.py — Scripture Streamer · FastAPI Control Plane
======================================================
Downstream websocket endpoint for streaming clients plus a small HTTP
control plane.

Endpoints
---------
  WS   /ws                       Client channel (StartStreaming / audio / StopStreaming)
  GET  /health                   Service liveness
  GET  /sessions                 List live streaming sessions
  POST /sessions/{user_id}/stop  Stop one user's session
  GET  /config                   Current runtime config
  PUT  /config                   Partial config update (persisted)
  POST /references/detect        Run reference detection on text
  GET  /works                    List / search known works

Concurrency model
-----------------
Everything runs on one event loop.  The session registry is only touched
by synchronous calls, so no locks are needed; each session's upstream
connector runs as its own asyncio task.

Run:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketState

import config
from apps.pipeline.detector import ReferenceDetector
from apps.pipeline.llm_detector import LLMReferenceDetector
from apps.pipeline.relay import SessionRelay
from apps.pipeline.sessions import SessionRegistry
from apps.pipeline.upstream import AssemblyAITokenClient
from apps.pipeline.works import default_index
from config import StreamerConfig

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("STREAMER_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("scripture_streamer.server")

CONFIG_PATH = config.DEFAULT_CONFIG_PATH
TOKEN_HTTP_TIMEOUT_SEC = float(os.getenv("TOKEN_HTTP_TIMEOUT_SEC", "10.0"))


# ---------------------------------------------------------------------------
# Downstream channel
# ---------------------------------------------------------------------------

class WebSocketChannel:
    """Hashable handle for one client websocket (Starlette's WebSocket is not)."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws

    async def send_json(self, data: dict) -> None:
        if self.ws.client_state != WebSocketState.CONNECTED:
            log.debug("event=send_skipped reason=client_gone event_name=%s", data.get("event"))
            return
        await self.ws.send_json(data)


def build_relay(cfg: StreamerConfig, http: httpx.AsyncClient) -> SessionRelay:
    detector = ReferenceDetector(default_index(), lang=cfg.detection.lang)
    llm = LLMReferenceDetector(
        detector,
        model=cfg.detection.model,
        timeout_sec=cfg.detection.timeout_sec,
        max_tokens=cfg.detection.max_tokens,
    )
    tokens = AssemblyAITokenClient(config.assemblyai_api_key(), http, cfg.assemblyai)
    return SessionRelay(SessionRegistry(), detector, cfg, tokens, llm=llm)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class DetectRequest(BaseModel):
    text: Optional[str] = None
    chunks: Optional[list[str]] = None


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    cfg = StreamerConfig.load(CONFIG_PATH)
    if not config.assemblyai_api_key():
        log.error("event=missing_api_key name=ASSEMBLYAI_API_KEY streaming_will_fail=true")
    if not config.groq_api_key():
        log.warning("event=missing_api_key name=GROQ_API_KEY llm_detection=off summary=placeholder")

    async with httpx.AsyncClient(timeout=TOKEN_HTTP_TIMEOUT_SEC) as http:
        app.state.config = cfg
        app.state.relay = build_relay(cfg, http)
        log.info(
            "event=server_start strategy=%s works=%d",
            cfg.detection.strategy, len(default_index().works()),
        )
        yield
        log.info("event=server_shutdown sessions=%d", len(app.state.relay.registry))
        await app.state.relay.stop_all()
    log.info("event=server_stopped")


app = FastAPI(
    title="Scripture Streamer",
    version="1.0.0",
    description="Live transcript relay with scripture reference detection",
    lifespan=_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _relay(request_app: FastAPI) -> SessionRelay:
    return request_app.state.relay


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.websocket("/ws")
async def ws_stream(ws: WebSocket) -> None:
    """
    Client channel.  Text frames carry JSON messages:
        {"event": "StartStreaming",  "data": {"userId": "u1"}}
        {"event": "SendAudioBuffer", "data": {"payload": "<base64 pcm16>"}}
        {"event": "StopStreaming",   "data": {"userId": "u1"}}
    Binary frames are raw PCM16 16 kHz mono audio for the bound session.
    """
    await ws.accept()
    relay = _relay(ws.app)
    channel = WebSocketChannel(ws)
    log.info("event=client_connected remote=%s", ws.client)
    await relay.on_connect(channel)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await relay.on_audio(channel, message["bytes"])
            elif message.get("text") is not None:
                await relay.on_message(channel, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        await relay.on_disconnect(channel)
        log.info("event=client_disconnected remote=%s", ws.client)


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Liveness probe."""
    relay = _relay(request.app)
    return JSONResponse({
        "status":           "ok",
        "active_sessions":  len(relay.registry),
        "strategy":         relay.config.detection.strategy,
        "llm_available":    bool(relay.llm and relay.llm.available),
    })


@app.get("/sessions")
async def list_sessions(request: Request) -> list[dict[str, Any]]:
    """Snapshot of all live sessions."""
    return [s.to_status() for s in _relay(request.app).registry.sessions()]


@app.post("/sessions/{user_id}/stop", status_code=status.HTTP_202_ACCEPTED)
async def stop_session(user_id: str, request: Request) -> JSONResponse:
    stopped = await _relay(request.app).stop_user(user_id)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"No active session for user '{user_id}'.")
    return JSONResponse({"status": "stopped", "userId": user_id})


@app.get("/config")
async def get_config(request: Request) -> dict[str, Any]:
    return request.app.state.config.model_dump()


@app.put("/config")
async def update_config(request: Request) -> dict[str, Any]:
    """
    Partial update, e.g. {"detection": {"strategy": "both"}}.
    Applies to sessions started afterwards.
    """
    try:
        patch = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")
    try:
        updated = request.app.state.config.merge_patch(patch)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    updated.save(CONFIG_PATH)
    request.app.state.config = updated
    _relay(request.app).apply_config(updated)
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return updated.model_dump()


@app.post("/references/detect")
async def detect_references(body: DetectRequest, request: Request) -> dict[str, Any]:
    """Regex detection over `text`, or over `chunks` merged in order."""
    detector = _relay(request.app).detector
    if body.chunks is not None:
        refs = detector.detect_from_chunks(body.chunks)
    elif body.text is not None:
        refs = detector.detect(body.text)
    else:
        raise HTTPException(status_code=400, detail="Provide 'text' or 'chunks'.")
    return {"references": [r.to_payload() for r in refs]}


@app.get("/works")
async def list_works(q: str = "") -> list[dict[str, Any]]:
    return [
        {
            "name":      w.name,
            "shortName": w.short_name,
            "path":      w.path,
            "aliases":   list(w.aliases),
            "chapters":  len(w.chapters),
        }
        for w in default_index().search(q)
    ]
