from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from storymode.agents.prompting import build_prompt
from storymode.schemas.models import (
    ChatMessage,
    ChatResponse,
    Notification,
    TurnDiagnostics,
    UserIdentity,
)
from storymode.schemas.profile import Profile
from storymode.utils.attachments import (
    Attachment,
    Extractor,
    format_attachment_context,
    resolve_attachments,
)
from storymode.utils.classifier import classify_message
from storymode.utils.errors import GenerationRequestFailed
from storymode.utils.logging import get_logger
from storymode.utils.notifications import LogNotificationSink, NotificationSink, safe_notify
from storymode.utils.observability import get_metrics, time_phase
from storymode.utils.profile_store import ProfileStore, get_profile_store, profile_snapshot
from storymode.utils.stage import ConversationStage, detect_revision_request, select_stage
from storymode.utils.streaming import ResponseStreamer
from storymode.utils.tracing import start_span

log = get_logger(__name__)


@dataclass(frozen=True)
class TurnEvent:
    """One externally visible step of a turn: profile, message, chunk, completed or error."""

    name: str
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnResult:
    session_id: str
    user_message: ChatMessage
    profile: Profile
    stage: ConversationStage
    assistant_message: ChatMessage | None = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False
    diagnostics: TurnDiagnostics | None = None

    def to_response(self) -> ChatResponse:
        return ChatResponse(
            session_id=self.session_id,
            stage=self.stage.value,
            profile=profile_snapshot(self.profile),
            missing_fields=[definition.name for definition in self.profile.missing_fields()],
            user_message=self.user_message,
            assistant_message=self.assistant_message,
            notifications=self.notifications,
            diagnostics=self.diagnostics,
        )


def format_sse(event: TurnEvent) -> str:
    payload = dict(event.data)
    payload.setdefault("session_id", event.session_id)
    return f"event: {event.name}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


class _TeeSink:
    def __init__(self, primary: NotificationSink | None, collected: List[Notification]) -> None:
        self._primary = primary
        self._collected = collected

    def notify(self, notification: Notification) -> None:
        self._collected.append(notification)
        safe_notify(self._primary, notification)


class StoryAgent:
    """Runs one conversation turn from user submission to streamed reply.

    Attachments are resolved first (each may fail on its own), then the
    message is classified and merged into the session profile, the stage is
    derived, the prompt assembled and the reply streamed. A new turn on the
    same session cancels the one still streaming.
    """

    def __init__(
        self,
        store: ProfileStore | None = None,
        streamer: ResponseStreamer | None = None,
        *,
        extractor: Extractor | None = None,
        notifier: NotificationSink | None = None,
        attachment_timeout: float | None = None,
    ) -> None:
        self.store = store if store is not None else get_profile_store()
        self.streamer = streamer if streamer is not None else ResponseStreamer()
        self.extractor = extractor
        self.notifier: NotificationSink = notifier or LogNotificationSink()
        self.attachment_timeout = attachment_timeout

    async def process_turn(
        self,
        text: str,
        *,
        session_id: str | None = None,
        attachments: Sequence[Attachment] = (),
        identity: UserIdentity | None = None,
        revision_requested: bool = False,
        notifications: List[Notification] | None = None,
    ) -> AsyncIterator[TurnEvent]:
        if not (text or "").strip() and not attachments:
            raise ValueError("A turn needs message text or at least one attachment")

        sink = _TeeSink(self.notifier, notifications if notifications is not None else [])
        metrics = get_metrics()
        trace_id = uuid.uuid4().hex
        started = time.perf_counter()

        state, token = self.store.begin_turn(session_id)
        session_id = state.session_id
        user_message = ChatMessage.user(text, [item.filename for item in attachments])
        self.store.append_message(session_id, user_message)

        with start_span("turn.attachments", {"trace_id": trace_id, "attachments.count": len(attachments)}):
            attachments_started = time.perf_counter()
            resolved = await resolve_attachments(attachments, self.extractor, timeout=self.attachment_timeout)
            attachments_ms = (time.perf_counter() - attachments_started) * 1000
        metrics.record_phase("attachments", attachments_ms)
        failures = [item for item in resolved if not item.ok]
        for item in failures:
            sink.notify(
                Notification(
                    title="Attachment skipped",
                    description=f"Could not process {item.filename}",
                    level="warning",
                )
            )

        with start_span("turn.profile", {"trace_id": trace_id, "session_id": session_id}), time_phase(metrics, "profile"):
            classified = classify_message(text)
            before, profile = self.store.apply(session_id, classified)
            stage = select_stage(
                profile.completeness,
                guidance_generated=state.guidance_generated,
                profile_changed=profile is not before,
                revision_requested=revision_requested or detect_revision_request(text),
            )
        metrics.record_stage(stage.value)
        log.info(
            "turn_stage_selected",
            trace_id=trace_id,
            session_id=session_id,
            stage=stage.value,
            completeness=profile.completeness,
            fields=sorted(classified),
        )

        yield TurnEvent(
            "profile",
            session_id,
            {
                "trace_id": trace_id,
                "user_message": user_message.model_dump(mode="json"),
                "profile": profile_snapshot(profile).model_dump(mode="json"),
                "stage": stage.value,
                "missing_fields": [definition.name for definition in profile.missing_fields()],
                "attachments": [{"filename": item.filename, "ok": item.ok} for item in resolved],
            },
        )

        payload = build_prompt(
            profile,
            stage,
            text,
            format_attachment_context(resolved),
            identity,
            previous_guidance=state.last_guidance,
        )
        assistant = ChatMessage.pending_assistant()
        self.store.append_message(session_id, assistant)
        yield TurnEvent("message", session_id, {"message": assistant.model_dump(mode="json")})

        generation_started = time.perf_counter()
        updates = self.streamer.stream(payload["prompt"], assistant, system_message=payload["system"], token=token)
        try:
            async for update in updates:
                yield TurnEvent(
                    "chunk",
                    session_id,
                    {
                        "message_id": update.message_id,
                        "delta": update.delta,
                        "content": update.content,
                        "index": update.index,
                    },
                )
        except (GeneratorExit, asyncio.CancelledError):
            # caller abandoned the turn; late chunks must not reach the message
            token.cancel()
            await updates.aclose()
            self.store.end_turn(session_id, token)
            raise
        except GenerationRequestFailed as exc:
            self.store.end_turn(session_id, token)
            metrics.increment_counter("turn::generation_failed")
            sink.notify(
                Notification(
                    title="Error",
                    description="Failed to generate response. Please try again.",
                    level="error",
                )
            )
            yield TurnEvent(
                "error",
                session_id,
                {"trace_id": trace_id, "message": str(exc), "message_id": assistant.id, "partial": assistant.content},
            )
            return

        generation_ms = (time.perf_counter() - generation_started) * 1000
        self.store.end_turn(
            session_id,
            token,
            guidance_generated=stage is not ConversationStage.COLLECTION,
            guidance=assistant.content,
        )
        diagnostics = TurnDiagnostics(
            attachments_ms=attachments_ms,
            generation_ms=generation_ms,
            end_to_end_ms=(time.perf_counter() - started) * 1000,
            attachment_failures=len(failures),
        )
        metrics.record("turn", diagnostics.end_to_end_ms or 0.0)
        yield TurnEvent(
            "completed",
            session_id,
            {
                "trace_id": trace_id,
                "message": assistant.model_dump(mode="json"),
                "stage": stage.value,
                "cancelled": token.cancelled,
                "diagnostics": diagnostics.model_dump(mode="json"),
            },
        )

    async def run_turn(
        self,
        text: str,
        *,
        session_id: str | None = None,
        attachments: Sequence[Attachment] = (),
        identity: UserIdentity | None = None,
        revision_requested: bool = False,
    ) -> TurnResult:
        """Drain ``process_turn`` and return the final state of the turn."""

        notifications: List[Notification] = []
        result: TurnResult | None = None
        assistant: ChatMessage | None = None
        async for event in self.process_turn(
            text,
            session_id=session_id,
            attachments=attachments,
            identity=identity,
            revision_requested=revision_requested,
            notifications=notifications,
        ):
            if event.name == "profile":
                result = TurnResult(
                    session_id=event.session_id,
                    user_message=ChatMessage.model_validate(event.data["user_message"]),
                    profile=Profile.from_dict(event.data["profile"]),
                    stage=ConversationStage(event.data["stage"]),
                    attachments=list(event.data["attachments"]),
                )
            elif event.name == "message":
                assistant = ChatMessage.model_validate(event.data["message"])
            elif event.name == "chunk" and assistant is not None:
                assistant.content = event.data["content"]
            elif event.name == "completed" and result is not None:
                result.assistant_message = ChatMessage.model_validate(event.data["message"])
                result.cancelled = bool(event.data.get("cancelled"))
                result.diagnostics = TurnDiagnostics.model_validate(event.data["diagnostics"])
            elif event.name == "error" and result is not None:
                if assistant is not None:
                    assistant.content = event.data.get("partial", assistant.content)
                    assistant.final = True
                result.assistant_message = assistant
                result.error = event.data.get("message")
        if result is None:  # pragma: no cover - process_turn always emits a profile event
            raise RuntimeError("turn ended without a profile event")
        result.notifications = notifications
        return result


_AGENT: StoryAgent | None = None


def get_story_agent() -> StoryAgent:
    global _AGENT
    if _AGENT is None:
        _AGENT = StoryAgent()
    return _AGENT


def reset_story_agent() -> None:
    global _AGENT
    _AGENT = None
