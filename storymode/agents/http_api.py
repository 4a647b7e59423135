from __future__ import annotations

import base64
import binascii
import os
import time
import uuid
from collections.abc import AsyncIterator
from typing import List

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from storymode.agents.story_agent import format_sse, get_story_agent
from storymode.schemas.models import (
    ChatRequest,
    ChatResponse,
    FieldCatalogResponse,
    FieldSchema,
    HealthResponse,
    SessionStateResponse,
    UserIdentity,
)
from storymode.schemas.profile import field_definitions
from storymode.utils.attachments import Attachment
from storymode.utils.env import get_int_env, load_env_file
from storymode.utils.llm import generation_enabled
from storymode.utils.logging import get_logger
from storymode.utils.observability import get_metrics
from storymode.utils.profile_store import get_profile_store
from storymode.utils.security import get_rate_limiter, resolve_identity, verify_api_key
from storymode.utils.tracing import configure_tracing

load_env_file()

log = get_logger(__name__)
configure_tracing()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
cors_origins = ["*"] if raw_origins.strip() == "*" else [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

app = FastAPI(title="StoryMode AI API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_ATTACHMENT_BYTES = get_int_env("ATTACHMENT_MAX_BYTES", 10 * 1024 * 1024)
MAX_ATTACHMENTS = get_int_env("ATTACHMENT_MAX_COUNT", 10)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = uuid.uuid4().hex
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.error("api_request_failed", path=request.url.path, duration_ms=duration_ms, request_id=request_id, error=str(exc))
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


def require_auth(
    request: Request,
    api_key: str | None = Header(default=None, alias="X-API-Key"),
    limiter=Depends(get_rate_limiter),
) -> str | None:
    verify_api_key(api_key)
    identity = (api_key or "anonymous").strip() or "anonymous"
    limiter.allow(f"{identity}:{request.url.path}")
    return api_key


def current_identity(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
    email: str | None = Header(default=None, alias="X-User-Email"),
    display_name: str | None = Header(default=None, alias="X-User-Name"),
) -> UserIdentity | None:
    return resolve_identity(user_id, email, display_name)


def _decode_attachments(payload: ChatRequest) -> List[Attachment]:
    if len(payload.attachments) > MAX_ATTACHMENTS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_ATTACHMENTS} attachments per message")
    attachments: List[Attachment] = []
    for item in payload.attachments:
        try:
            content = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Attachment {item.filename} is not valid base64") from exc
        if len(content) > MAX_ATTACHMENT_BYTES:
            raise HTTPException(status_code=413, detail=f"Attachment {item.filename} exceeds size limit")
        attachments.append(Attachment(filename=item.filename, content=content, mime_type=item.mime_type))
    return attachments


def _check_turn(payload: ChatRequest, attachments: List[Attachment]) -> None:
    if not payload.message.strip() and not attachments:
        raise HTTPException(status_code=400, detail="Message text or at least one attachment is required")


@app.get("/v1/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        sessions=len(get_profile_store()),
        generation_enabled=generation_enabled(),
        metrics=get_metrics().snapshot(),
    )


@app.get("/v1/fields", response_model=FieldCatalogResponse)
def field_catalog(api_key: str | None = Depends(require_auth)) -> FieldCatalogResponse:
    return FieldCatalogResponse(
        fields=[
            FieldSchema(
                name=definition.name,
                label=definition.label,
                description=definition.description,
                multi_valued=definition.multi_valued,
                keywords=list(definition.keywords),
                prompt=definition.prompt,
            )
            for definition in field_definitions()
        ]
    )


@app.get("/v1/session/{session_id}", response_model=SessionStateResponse)
def session_detail(session_id: str, api_key: str | None = Depends(require_auth)) -> SessionStateResponse:
    payload = get_profile_store().export(session_id)
    if payload is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return payload


@app.delete("/v1/session/{session_id}", status_code=204)
def session_delete(session_id: str, api_key: str | None = Depends(require_auth)) -> Response:
    store = get_profile_store()
    if store.get(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    store.clear(session_id)
    return Response(status_code=204)


@app.post("/v1/chat")
async def chat_endpoint(
    request: Request,
    payload: ChatRequest,
    stream: bool = Query(default=False),
    api_key: str | None = Depends(require_auth),
    identity: UserIdentity | None = Depends(current_identity),
):
    attachments = _decode_attachments(payload)
    _check_turn(payload, attachments)
    agent = get_story_agent()

    if stream:
        accept = request.headers.get("Accept", "")
        if "text/event-stream" not in accept:
            raise HTTPException(status_code=406, detail="Streaming requires Accept: text/event-stream")

        async def events() -> AsyncIterator[str]:
            async for event in agent.process_turn(
                payload.message,
                session_id=payload.session_id,
                attachments=attachments,
                identity=identity,
                revision_requested=payload.revision_requested,
            ):
                yield format_sse(event)

        return StreamingResponse(events(), media_type="text/event-stream")

    result = await agent.run_turn(
        payload.message,
        session_id=payload.session_id,
        attachments=attachments,
        identity=identity,
        revision_requested=payload.revision_requested,
    )
    response: ChatResponse = result.to_response()
    return response
