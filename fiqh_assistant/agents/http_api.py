from __future__ import annotations

import io
import json
import os
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from starlette.middleware import Middleware

from fiqh_assistant.agents.chat_agent import ChatEngine, get_engine
from fiqh_assistant.pipelines.speech import ScheduledSegment, TimelineOutput
from fiqh_assistant.schemas.models import (
    ChatRequest,
    ChatResponse,
    ChatSession,
    ConversationResponse,
    Preferences,
    PreferencesUpdate,
    SessionListResponse,
    SessionSummary,
    SpeechResponse,
    SpeechSegment,
    StatusResponse,
)
from fiqh_assistant.utils.env import load_env_file
from fiqh_assistant.utils.errors import GenerationInterrupted, ReplyInProgress
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics
from fiqh_assistant.utils.tracing import configure_tracing
from fiqh_assistant.utils.translations import share_text

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
cors_origins = ["*"] if raw_origins.strip() == "*" else [o.strip() for o in raw_origins.split(",") if o.strip()]

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)
configure_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    await engine.ensure_started()
    try:
        yield
    finally:
        await engine.aclose()


app = FastAPI(title="Al-Fiqh Assistant API", version="0.1.0", middleware=[cors_middleware], lifespan=lifespan)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = uuid.uuid4().hex
    start = time.perf_counter()
    try:
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.error(
            "api_request_failed",
            path=request.url.path,
            duration_ms=duration_ms,
            request_id=request_id,
            error=str(exc),
        )
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record(request.url.path, duration_ms)
    log.info(
        "api_request",
        path=request.url.path,
        status=response.status_code,
        duration_ms=duration_ms,
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response


async def get_chat_engine() -> ChatEngine:
    engine = get_engine()
    await engine.ensure_started()
    return engine


def _format_sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _conversation(engine: ChatEngine) -> ConversationResponse:
    return ConversationResponse(active_session_id=engine.active_session_id, messages=engine.messages)


def _summary(session: ChatSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        title=session.title,
        created_at=session.created_at,
        message_count=len(session.messages),
    )


@app.get("/v1/status", response_model=StatusResponse)
async def service_status(engine: ChatEngine = Depends(get_chat_engine)) -> StatusResponse:
    return engine.status_report()


@app.get("/v1/sessions", response_model=SessionListResponse)
async def list_sessions(engine: ChatEngine = Depends(get_chat_engine)) -> SessionListResponse:
    return SessionListResponse(
        sessions=[_summary(session) for session in engine.sessions],
        status=engine.status,
        active_session_id=engine.active_session_id,
    )


@app.post("/v1/sessions/new", response_model=ConversationResponse)
async def new_session(engine: ChatEngine = Depends(get_chat_engine)) -> ConversationResponse:
    engine.new_chat()
    return _conversation(engine)


@app.get("/v1/sessions/{session_id}")
async def session_detail(session_id: str, engine: ChatEngine = Depends(get_chat_engine)) -> Dict[str, Any]:
    session = engine.collection.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_json_dict()


@app.delete("/v1/sessions/{session_id}", status_code=204)
async def session_delete(session_id: str, engine: ChatEngine = Depends(get_chat_engine)) -> Response:
    if not engine.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.post("/v1/sessions/{session_id}/activate", response_model=ConversationResponse)
async def session_activate(session_id: str, engine: ChatEngine = Depends(get_chat_engine)) -> ConversationResponse:
    if engine.is_loading:
        raise HTTPException(status_code=409, detail="A reply is in progress")
    if not engine.switch_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return _conversation(engine)


@app.get("/v1/conversation", response_model=ConversationResponse)
async def conversation(engine: ChatEngine = Depends(get_chat_engine)) -> ConversationResponse:
    return _conversation(engine)


async def _reply_sse(engine: ChatEngine, payload: ChatRequest) -> AsyncIterator[str]:
    previous = ""
    try:
        async for event in engine.stream_reply(
            payload.prompt,
            image=payload.image,
            reply_to_id=payload.reply_to_id,
            thinking=payload.thinking,
        ):
            if event.kind == "chunk":
                content = event.message.content
                yield _format_sse(
                    "chunk",
                    {
                        "message_id": event.message.id,
                        "delta": content[len(previous):],
                        "sources": [source.to_json_dict() for source in event.message.sources or []],
                    },
                )
                previous = content
                continue
            yield _format_sse(
                event.kind,
                {"session_id": engine.active_session_id, "message": event.message.to_json_dict()},
            )
    except (GenerationInterrupted, ReplyInProgress, ValueError) as exc:
        yield _format_sse("error", {"message": str(exc), "session_id": engine.active_session_id})


@app.post("/v1/chat")
async def chat_endpoint(
    request: Request,
    payload: ChatRequest,
    stream: bool = Query(default=False),
    engine: ChatEngine = Depends(get_chat_engine),
):
    if engine.is_loading:
        raise HTTPException(status_code=409, detail="A reply is in progress")
    if not payload.prompt.strip() and payload.image is None:
        raise HTTPException(status_code=422, detail="A prompt or an image is required")
    if payload.reply_to_id and not any(message.id == payload.reply_to_id for message in engine.messages):
        raise HTTPException(status_code=404, detail="Reply target not found")
    if stream:
        accept = request.headers.get("Accept", "")
        if "text/event-stream" not in accept:
            raise HTTPException(status_code=406, detail="Streaming requires Accept: text/event-stream")
        return StreamingResponse(_reply_sse(engine, payload), media_type="text/event-stream")
    try:
        message = await engine.send(
            payload.prompt,
            image=payload.image,
            reply_to_id=payload.reply_to_id,
            thinking=payload.thinking,
        )
    except ReplyInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except GenerationInterrupted as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ChatResponse(session_id=engine.active_session_id, message=message, notice=engine.notice)


@app.delete("/v1/chat", status_code=204)
async def chat_cancel(engine: ChatEngine = Depends(get_chat_engine)) -> Response:
    engine.cancel_reply()
    return Response(status_code=204)


@app.delete("/v1/notice", status_code=204)
async def notice_dismiss(engine: ChatEngine = Depends(get_chat_engine)) -> Response:
    engine.dismiss_notice()
    return Response(status_code=204)


@app.get("/v1/preferences", response_model=Preferences)
async def preferences_get(engine: ChatEngine = Depends(get_chat_engine)) -> Preferences:
    return engine.preferences


@app.put("/v1/preferences", response_model=Preferences)
async def preferences_update(payload: PreferencesUpdate, engine: ChatEngine = Depends(get_chat_engine)) -> Preferences:
    if payload.language is not None:
        engine.set_language(payload.language)
    if payload.voice is not None:
        engine.set_voice(payload.voice)
    return engine.preferences


@app.post("/v1/sync/reconnect", response_model=StatusResponse)
async def sync_reconnect(engine: ChatEngine = Depends(get_chat_engine)) -> StatusResponse:
    if engine.is_loading:
        raise HTTPException(status_code=409, detail="A reply is in progress")
    await engine.reconnect()
    return engine.status_report()


@app.get("/v1/messages/{message_id}/share")
async def message_share(message_id: str, engine: ChatEngine = Depends(get_chat_engine)) -> Dict[str, str]:
    message = engine.conversation.find(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"message_id": message.id, "text": share_text(message.content)}


def _speech_payload(message_id: str, segments: list[ScheduledSegment]) -> SpeechResponse:
    return SpeechResponse(
        message_id=message_id,
        segments=[
            SpeechSegment(index=s.index, text=s.text, start_time=s.start_time, duration=s.duration) for s in segments
        ],
        total_duration=max((s.end_time for s in segments), default=0.0),
    )


@app.post("/v1/messages/{message_id}/speech")
async def message_speech(
    message_id: str,
    audio: bool = Query(default=False, description="Return the rendered WAV instead of the schedule"),
    engine: ChatEngine = Depends(get_chat_engine),
):
    try:
        segments = await engine.speak(message_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if audio:
        scheduler = engine.speaker(message_id)
        output = scheduler.output if scheduler is not None else None
        if not isinstance(output, TimelineOutput):
            raise HTTPException(status_code=409, detail="Audio is playing on a device output")
        buffer = io.BytesIO()
        output.write_wav(buffer, output.latest(len(segments)))
        return Response(content=buffer.getvalue(), media_type="audio/wav")
    return _speech_payload(message_id, segments)


@app.delete("/v1/speech", status_code=204)
async def speech_stop(engine: ChatEngine = Depends(get_chat_engine)) -> Response:
    engine.stop_speech()
    return Response(status_code=204)


@app.get("/v1/metrics")
async def metrics_snapshot(engine: ChatEngine = Depends(get_chat_engine)):
    metrics = get_metrics().snapshot()
    diagnostics = metrics.setdefault("diagnostics", {})
    diagnostics["sessions"] = {"total": len(engine.collection), "pending_remote_writes": engine.sync.pending}
    return metrics
