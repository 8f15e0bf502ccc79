"""
LiveCoach — FastAPI Server

================================================================================
Architecture:
  • One LiveCoachService per WebSocket connection, held in a ServiceRegistry
  • The browser runs the camera + speech recognizer and pushes:
      - object detections (or raw JPEG frames for server-side detection)
      - final transcripts
      - step-advance clicks and speech-playback acks
  • The server pushes coaching status, streamed tutor text, score/step
    updates and `speak` requests (optionally with ElevenLabs audio)
  • Session progress is saved per (module_id, session_token) so a reload
    resumes where the trainee left off
================================================================================

Endpoints:
  WS   /ws/coach                                      — live coaching stream
  GET  /health                                        — server health
  GET  /sessions                                      — active sessions + telemetry
  GET  /session/{session_id}                          — single session detail
  GET  /token                                         — signed resumable session token
  GET  /modules/{module_id}/sessions/{token}/summary  — review summary
  POST /feedback/{log_id}                             — rate a tutor answer

Client → Server messages:
  { type: "start_session", module_id, session_token | token, vision? }
  { type: "detections", objects: [{label, score?, box?}, ...] }
  { type: "frame", image: "<base64 jpeg>" }
  { type: "transcript", text, is_final }
  { type: "advance" }
  { type: "speech_done", speech_id }
  { type: "stop_session" }
  { type: "ping" }

Server → Client messages:
  status, ai_text, event, step, score, branch, speak, speech_cancel,
  error, session_starting, session_started, session_stopped, pong
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import jwt
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import persistence_cfg, sdk_cfg, server_cfg
from .core.errors import ModuleUnavailableError, PersistenceError
from .core.models import DetectedObject
from .data.demo import DEMO_MODULES, demo_catalog
from .processing.vision import default_detector
from .services.coach_service import LiveCoachService
from .services.gemini import GeminiChatService, GeminiEmbedder
from .services.modules import InMemoryModuleRepository
from .services.registry import ServiceRegistry
from .services.speech import ClientSpeechSynthesizer, ElevenLabsAudio
from .services.stores import (
    MemoryFeedbackStore,
    MemorySessionStore,
    MongoFeedbackStore,
    MongoSessionStore,
)

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("livecoach")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# ---------------------------------------------------------------------------
# Service Registry
# ---------------------------------------------------------------------------


def build_registry() -> ServiceRegistry:
    """Wire the shared collaborators from config."""
    embedder = GeminiEmbedder() if sdk_cfg.has_chat_key else None
    if persistence_cfg.backend == "mongo" and sdk_cfg.mongodb_uri:
        session_store: Any = MongoSessionStore()
        feedback_store: Any = MongoFeedbackStore(embedder=embedder)
    else:
        session_store = MemorySessionStore()
        feedback_store = MemoryFeedbackStore(embedder=embedder)
    return ServiceRegistry(
        modules=InMemoryModuleRepository(DEMO_MODULES),
        catalog=demo_catalog(),
        chat_service=GeminiChatService(),
        session_store=session_store,
        feedback_store=feedback_store,
        detector_factory=default_detector if sdk_cfg.yolo_model_path else None,
    )


registry = build_registry()

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 LiveCoach Backend starting...")
    logger.info(f"   Chat key configured: {sdk_cfg.has_chat_key}")
    logger.info(f"   TTS key configured:  {sdk_cfg.has_tts_key}")
    logger.info(f"   Session store:       {persistence_cfg.backend}")
    yield
    logger.info("🛑 Shutting down, closing all sessions...")
    await registry.stop_all()
    logger.info("🛑 LiveCoach Backend stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LiveCoach — Real-Time Procedural Training Coach",
    version=VERSION,
    description=(
        "Watches a trainee work through a step-by-step module on camera, "
        "gives proactive hints and corrections, answers spoken questions "
        "and detours into remedial modules when a safety rule is broken."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

def mint_session_token(module_id: str, session_token: Optional[str] = None) -> str:
    now = int(time.time())
    payload = {
        "module_id": module_id,
        "session_token": session_token or uuid.uuid4().hex,
        "iat": now,
    }
    return jwt.encode(payload, sdk_cfg.session_token_secret, algorithm="HS256")


def read_session_token(token: str) -> Dict[str, Any]:
    """Raises jwt.InvalidTokenError on a bad signature or payload."""
    payload = jwt.decode(token, sdk_cfg.session_token_secret, algorithms=["HS256"])
    if not payload.get("module_id") or not payload.get("session_token"):
        raise jwt.InvalidTokenError("token is missing module_id or session_token")
    return payload


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "chat_key_configured": sdk_cfg.has_chat_key,
        "tts_key_configured": sdk_cfg.has_tts_key,
        "active_sessions": registry.active_count,
    }


@app.get("/token")
async def token(module_id: str, session_token: Optional[str] = None):
    signed = mint_session_token(module_id, session_token)
    payload = read_session_token(signed)
    return {
        "token": signed,
        "module_id": module_id,
        "session_token": payload["session_token"],
    }


@app.get("/sessions")
async def list_sessions():
    result: Dict[str, Any] = {}
    for sid, svc in registry.all_services.items():
        result[sid] = {
            "active": svc.is_active,
            "status": svc.status.value,
            "telemetry": svc.telemetry.to_dict(),
        }
    return result


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    svc = registry.get(session_id)
    if svc:
        return {"active": svc.is_active, **svc.snapshot()}
    return JSONResponse(status_code=404, content={"error": "session not found"})


@app.get("/modules/{module_id}/sessions/{session_token}/summary")
async def session_summary(module_id: str, session_token: str):
    try:
        summary = await registry.session_store.summary(module_id, session_token)
    except PersistenceError as e:
        logger.error(f"Summary lookup failed: {e}")
        return JSONResponse(status_code=503, content={"error": str(e)})
    if summary is None:
        return JSONResponse(status_code=404, content={"error": "session not found"})
    return summary.to_dict()


@app.post("/feedback/{log_id}")
async def submit_feedback(log_id: str, payload: Dict[str, Any]):
    if registry.feedback_store is None:
        return JSONResponse(status_code=503, content={"error": "feedback store not configured"})
    outcome = str(payload.get("feedback", "")).strip()
    try:
        await registry.feedback_store.update_feedback(log_id, outcome)
    except PersistenceError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    return {"status": "ok", "log_id": log_id, "feedback": "good" if outcome.lower() == "good" else "bad"}


# ---------------------------------------------------------------------------
# WebSocket: Per-Session Coaching Stream
# ---------------------------------------------------------------------------

def _resolve_identity(message: Dict[str, Any]) -> Dict[str, str]:
    """module_id + session_token from a signed token or the raw fields."""
    signed = message.get("token")
    if signed:
        payload = read_session_token(signed)
        return {"module_id": payload["module_id"], "session_token": payload["session_token"]}
    module_id = str(message.get("module_id", "")).strip()
    if not module_id:
        raise ValueError("module_id is required")
    return {
        "module_id": module_id,
        "session_token": str(message.get("session_token") or uuid.uuid4().hex),
    }


def _parse_detections(raw: Any, session_id: str) -> List[DetectedObject]:
    """Client detections; malformed entries are dropped, never fatal."""
    if not isinstance(raw, list):
        logger.warning(f"[{session_id}] Ignoring detections payload of type {type(raw).__name__}")
        return []
    objects: List[DetectedObject] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("label"):
            continue
        try:
            objects.append(DetectedObject.from_dict(item))
        except (TypeError, ValueError) as e:
            logger.warning(f"[{session_id}] Skipping malformed detection {item!r}: {e}")
    return objects


@app.websocket("/ws/coach")
async def websocket_coach(ws: WebSocket):
    """
    WebSocket endpoint — one LiveCoachService per connection.
    """
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    current_service: Optional[LiveCoachService] = None
    start_task: Any = None

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data, default=str))
        except Exception:
            pass

    async def stop_current() -> Dict[str, Any]:
        nonlocal current_service, start_task
        if start_task and not start_task.done():
            start_task.cancel()
            try:
                await start_task
            except BaseException:
                pass
        start_task = None
        summary = await registry.stop_service(session_id) or {}
        current_service = None
        return summary

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type", "")

            # ── Start coaching session ──
            if msg_type == "start_session":
                if current_service is not None and current_service.status.value != "idle":
                    await send({"type": "error", "message": "Session already active"})
                    continue
                if current_service is not None:
                    await stop_current()

                try:
                    identity = _resolve_identity(message)
                except (jwt.InvalidTokenError, ValueError) as e:
                    await send({"type": "error", "message": f"Invalid session: {e}"})
                    continue

                audio = ElevenLabsAudio() if sdk_cfg.has_tts_key else None
                synth = ClientSpeechSynthesizer(send, audio=audio, session_id=session_id)
                service = registry.create(
                    session_id=session_id,
                    module_id=identity["module_id"],
                    session_token=identity["session_token"],
                    synthesizer=synth,
                    on_message=send,
                )
                current_service = service
                await send({
                    "type": "session_starting",
                    "data": {
                        "session_id": session_id,
                        "status": "initializing",
                        "token": mint_session_token(identity["module_id"], identity["session_token"]),
                        **identity,
                    },
                })

                async def _start_coaching(svc: LiveCoachService, vision: bool) -> None:
                    try:
                        info = await svc.start(vision_available=vision)
                        await send({"type": "session_started", "data": info})
                    except ModuleUnavailableError as e:
                        logger.warning(f"[{session_id}] {e}")
                        await registry.stop_service(session_id)
                        await send({"type": "error", "message": str(e)})
                    except Exception as e:
                        logger.error(f"[{session_id}] Failed to start coach: {e}", exc_info=True)
                        await registry.stop_service(session_id)
                        await send({"type": "error", "message": f"Failed to start coach: {str(e)[:100]}"})

                start_task = asyncio.create_task(
                    _start_coaching(service, bool(message.get("vision", True))),
                    name=f"start-{session_id}",
                )

            # ── Stop session ──
            elif msg_type == "stop_session":
                if current_service is None:
                    continue
                summary = await stop_current()
                await send({"type": "session_stopped", "data": summary})

            # ── Keepalive ──
            elif msg_type == "ping":
                await send({"type": "pong"})

            elif current_service is None:
                if msg_type in ("detections", "frame", "transcript", "advance"):
                    await send({"type": "error", "message": "No active session"})

            # ── Camera ──
            elif msg_type == "detections":
                objects = _parse_detections(message.get("objects", []), session_id)
                await current_service.handle_detections(objects)

            elif msg_type == "frame":
                image = message.get("image", "")
                if image:
                    await current_service.handle_frame(image)

            # ── Voice ──
            elif msg_type == "transcript":
                text = str(message.get("text", "")).strip()
                if text:
                    await current_service.handle_transcript(text, bool(message.get("is_final", True)))

            elif msg_type == "speech_done":
                current_service.speech_done(message.get("speech_id"))

            # ── Manual step advance ──
            elif msg_type == "advance":
                await current_service.advance_step("click")

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        # Clean up on disconnect
        if current_service is not None:
            await stop_current()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "livecoach.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        reload=True,
        log_level="info",
    )
