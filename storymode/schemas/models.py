from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from storymode.utils.errors import MessageFinalizedError


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class ChatMessage(BaseModel):
    """One conversation turn.

    User messages are final on creation. Assistant messages start empty and
    non-final, grow through ``append`` while a stream is active and are frozen
    by ``finalize``.
    """

    id: str = Field(default_factory=_new_id)
    role: Literal["user", "assistant"]
    content: str = ""
    created_at: datetime = Field(default_factory=_now_utc)
    attachments: List[str] = Field(default_factory=list)
    final: bool = True

    @classmethod
    def user(cls, content: str, attachments: List[str] | None = None) -> "ChatMessage":
        return cls(role="user", content=content, attachments=list(attachments or []), final=True)

    @classmethod
    def pending_assistant(cls) -> "ChatMessage":
        return cls(role="assistant", content="", final=False)

    def append(self, delta: str) -> str:
        if self.final:
            raise MessageFinalizedError(f"message {self.id} is final")
        self.content += delta
        return self.content

    def finalize(self) -> None:
        self.final = True


class UserIdentity(BaseModel):
    """Signed-in identity supplied by the authentication service."""

    id: str
    email: str
    display_name: Optional[str] = None

    @property
    def greeting_name(self) -> str:
        return self.display_name or self.email


class AttachmentPayload(BaseModel):
    filename: str
    mime_type: str = "application/octet-stream"
    content_base64: str


class ChatRequest(BaseModel):
    message: str = ""
    session_id: Optional[str] = None
    attachments: List[AttachmentPayload] = Field(default_factory=list)
    revision_requested: bool = Field(default=False, description="Ask to revise previously generated guidance")


class ProfileSnapshot(BaseModel):
    major: Optional[str] = None
    colleges: List[str] = Field(default_factory=list)
    essay_prompts: List[str] = Field(default_factory=list)
    extracurriculars: List[str] = Field(default_factory=list)
    classes: List[str] = Field(default_factory=list)
    hobbies: List[str] = Field(default_factory=list)
    awards: List[str] = Field(default_factory=list)
    completeness: int = 0


class Notification(BaseModel):
    title: str
    description: str
    level: Literal["info", "warning", "error"] = "info"


class TurnDiagnostics(BaseModel):
    attachments_ms: float | None = None
    generation_ms: float | None = None
    end_to_end_ms: float | None = None
    attachment_failures: int = 0


class ChatResponse(BaseModel):
    session_id: str
    stage: str
    profile: ProfileSnapshot
    missing_fields: List[str] = Field(default_factory=list)
    user_message: ChatMessage
    assistant_message: ChatMessage | None = None
    notifications: List[Notification] = Field(default_factory=list)
    diagnostics: TurnDiagnostics | None = None


class SessionStateResponse(BaseModel):
    session_id: str
    profile: ProfileSnapshot
    stage: str
    guidance_generated: bool = False
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    remaining_ttl_seconds: int | None = None


class FieldSchema(BaseModel):
    name: str
    label: str
    description: str
    multi_valued: bool
    keywords: List[str]
    prompt: Optional[str] = None


class FieldCatalogResponse(BaseModel):
    fields: List[FieldSchema]


class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int = 0
    generation_enabled: bool = False
    metrics: Dict[str, Any] = Field(default_factory=dict)
