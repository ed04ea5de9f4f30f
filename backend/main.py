from __future__ import annotations

import hmac
import json
import logging
import re
from typing import Any

import httpx
from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

import config
from chat_core import (
    ChatError,
    GenerationRegistry,
    InferenceClient,
    InputGuard,
    SafetyFilter,
    TurnRateLimiter,
    Unauthorized,
)
from chat_core.handoff import StaffDesk
from chat_core.orchestrator import SessionOrchestrator
from chat_store import ConversationStore, HandoffStore, SQLiteChatDB
from chat_store.time_utils import to_iso, utc_now

config.bootstrap_local_env()

logger = logging.getLogger("careline")


class ApiKeyNotConfigured(ChatError):
    code = "API_KEY_NOT_CONFIGURED"
    status_code = 503


class NewSessionRequest(BaseModel):
    patient_id: str | None = Field(default=None, max_length=128)


class SessionRequest(BaseModel):
    session_id: str | None = None


class MessageRequest(BaseModel):
    session_id: str | None = None
    # Checked by the input guard.
    message: Any = None


class ChatApp:
    def __init__(
        self,
        settings: config.ChatSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or config.load_settings()
        self.db = SQLiteChatDB(self.settings.db_path)
        self.store = ConversationStore(
            self.db,
            safety_mode=self.settings.safety_mode,
            max_messages_per_session=self.settings.max_messages_per_session,
            max_session_hours=self.settings.max_session_hours,
        )
        self.handoffs = HandoffStore(self.db)
        self.safety = SafetyFilter()
        self.guard = InputGuard(max_message_length=self.settings.max_message_length)
        self.generations = GenerationRegistry()
        self.inference = InferenceClient(
            base_url=self.settings.llama_server_url,
            system_prompt=self.settings.active_system_prompt,
            model_name=self.settings.model_name,
            timeout_seconds=self.settings.request_timeout_seconds,
            retry_attempts=self.settings.retry_attempts,
            retry_delay_seconds=self.settings.retry_delay_seconds,
            transport=transport,
        )
        self.orchestrator = SessionOrchestrator(
            self.store,
            self.handoffs,
            self.safety,
            self.inference,
            generations=self.generations,
            guard=self.guard,
            rate_limiter=TurnRateLimiter(
                per_minute=self.settings.messages_per_minute,
                per_hour=self.settings.messages_per_hour,
            ),
            safety_mode=self.settings.safety_mode,
            context_window=self.settings.context_window,
            heartbeat_seconds=self.settings.heartbeat_seconds,
        )
        self.staff = StaffDesk(self.store, self.handoffs, guard=self.guard, generations=self.generations)
        logger.info(
            "chat backend ready db_path=%s engine=%s safety_mode=%s",
            self.db.path,
            self.settings.llama_server_url,
            self.settings.safety_mode,
        )

    def use_inference(self, inference: Any) -> None:
        self.inference = inference
        self.orchestrator.inference = inference


container = ChatApp()
logging.basicConfig(
    level=container.settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = FastAPI(title="Careline Chat Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(container.settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    )


_STAFF_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{0,63}$")


def require_api_key(x_api_key: str | None) -> None:
    expected = container.settings.api_key
    if not expected:
        raise ApiKeyNotConfigured("Server API key is not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("Invalid or missing API key")


def require_staff_id(x_staff_id: str | None) -> str:
    candidate = (x_staff_id or "").strip()
    if not candidate or not _STAFF_ID_RE.fullmatch(candidate):
        raise Unauthorized("Staff identity is required")
    return candidate


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.get("/api/health")
async def health(x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    engine_ok = await container.inference.health_check()
    return {
        "status": "healthy" if engine_ok else "degraded",
        "engine": "up" if engine_ok else "down",
        "safety_mode": container.settings.safety_mode,
        "active_generations": len(container.generations),
        "timestamp": to_iso(utc_now()),
    }


@app.post("/api/patient/session/new")
async def patient_session_new(payload: NewSessionRequest, x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    conversation = container.orchestrator.create_session(payload.patient_id)
    return {
        **conversation.as_dict(),
        "greeting": container.store.greeting,
        "safety_mode": container.settings.safety_mode,
    }


@app.post("/api/patient/message")
async def patient_message(payload: MessageRequest, x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    result = await container.orchestrator.send_message(payload.session_id, payload.message)
    return result.as_payload()


@app.post("/api/patient/message/stream")
async def patient_message_stream(payload: MessageRequest, x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    turn = container.orchestrator.prepare_turn(payload.session_id, payload.message)

    async def event_stream():
        events = container.orchestrator.stream_turn(turn)
        try:
            async for event in events:
                yield _emit_sse(event.event, event.data)
        finally:
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/patient/cancel")
async def patient_cancel(payload: SessionRequest, x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    cancelled = container.orchestrator.cancel_generation(payload.session_id)
    return {"success": True, "session_id": payload.session_id, "cancelled": cancelled}


@app.get("/api/patient/history/{session_id}")
async def patient_history(
    session_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    x_api_key: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    messages = container.orchestrator.get_history(session_id, limit=limit)
    return {
        "session_id": session_id,
        "messages": [message.as_dict() for message in messages],
        "count": len(messages),
    }


@app.delete("/api/patient/session/{session_id}")
async def patient_session_close(session_id: str, x_api_key: str | None = Header(default=None)):
    require_api_key(x_api_key)
    conversation = container.orchestrator.close_session(session_id)
    return {"success": True, "conversation": conversation.as_dict()}


@app.get("/api/staff/active")
async def staff_active(
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    require_staff_id(x_staff_id)
    conversations = container.staff.list_active()
    return {"conversations": conversations, "count": len(conversations)}


@app.get("/api/staff/handoffs")
async def staff_handoffs(
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    require_staff_id(x_staff_id)
    handoffs = container.staff.list_pending_handoffs()
    return {"handoffs": handoffs, "count": len(handoffs)}


@app.post("/api/staff/takeover")
async def staff_takeover(
    payload: SessionRequest,
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
    x_staff_role: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    staff_id = require_staff_id(x_staff_id)
    conversation = container.staff.takeover(payload.session_id, staff_id)
    logger.info("takeover accepted session_id=%s staff_id=%s role=%s", conversation.session_id, staff_id, x_staff_role)
    return {"success": True, "conversation": conversation.as_dict()}


@app.post("/api/staff/release")
async def staff_release(
    payload: SessionRequest,
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    staff_id = require_staff_id(x_staff_id)
    conversation = container.staff.release(payload.session_id, staff_id)
    return {"success": True, "conversation": conversation.as_dict()}


@app.post("/api/staff/message")
async def staff_message(
    payload: MessageRequest,
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    staff_id = require_staff_id(x_staff_id)
    message = container.staff.staff_send_message(payload.session_id, staff_id, payload.message)
    return {"success": True, "message": message.as_dict()}


@app.get("/api/staff/transcript/{session_id}")
async def staff_transcript(
    session_id: str,
    limit: int = Query(default=1000, ge=1, le=5000),
    x_api_key: str | None = Header(default=None),
    x_staff_id: str | None = Header(default=None),
):
    require_api_key(x_api_key)
    require_staff_id(x_staff_id)
    return container.staff.get_transcript(session_id, limit=limit)


def serve() -> None:
    import uvicorn

    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=container.settings.host,
            port=container.settings.port,
            log_level=container.settings.log_level.lower(),
        )
    )
    logger.info("starting server host=%s port=%s", container.settings.host, container.settings.port)
    server.run()


if __name__ == "__main__":
    serve()
