from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from storymode.schemas.models import ChatMessage, ProfileSnapshot, SessionStateResponse
from storymode.schemas.profile import Profile, get_field_definition
from storymode.utils.logging import get_logger
from storymode.utils.stage import select_stage
from storymode.utils.streaming import CancellationToken

log = get_logger(__name__)

WELCOME_MESSAGE = """Welcome to StoryMode AI! 🎓 I'm here to help you craft a compelling narrative for your college applications.

To get started, I'll need to learn about you. Please share:

📚 **Intended Major** - What field do you want to study?
🏫 **Target Colleges** - Which schools are you applying to?
📝 **Essay Prompt** - What specific prompt are you working on?
🏅 **Extracurriculars** - Your activities, leadership roles, volunteering
📖 **Classes** - Relevant coursework that showcases your interests
🎨 **Hobbies** - Personal interests and passions
🏆 **Awards** - Recognition and achievements

You can share this information in any order, and feel free to attach documents like transcripts, activity lists, or draft essays. I'll help you weave these elements into a cohesive narrative that showcases your unique story!"""


def merge_profile(profile: Profile, classified: Mapping[str, Sequence[str]]) -> Profile:
    """Return a new profile with classifier output folded in.

    ``major`` is last-write-wins; every other field appends its fragments in
    order. Nothing is ever cleared, so completeness cannot decrease.
    """

    changes: Dict[str, Any] = {}
    for name, fragments in classified.items():
        definition = get_field_definition(name)
        if definition is None:
            log.warning("profile_merge_unknown_field", field=name)
            continue
        fragments = [fragment for fragment in fragments if fragment]
        if not fragments:
            continue
        if definition.multi_valued:
            existing = changes.get(definition.name, getattr(profile, definition.name))
            changes[definition.name] = tuple(existing) + tuple(fragments)
        else:
            changes[definition.name] = fragments[-1]
    if not changes:
        return profile
    return profile.with_updates(**changes)


def profile_snapshot(profile: Profile) -> ProfileSnapshot:
    return ProfileSnapshot(**profile.to_dict())


@dataclass
class SessionState:
    session_id: str
    profile: Profile = field(default_factory=Profile)
    messages: List[ChatMessage] = field(default_factory=list)
    guidance_generated: bool = False
    last_guidance: Optional[str] = None
    active_token: Optional[CancellationToken] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def copy(self) -> "SessionState":
        return SessionState(
            session_id=self.session_id,
            profile=self.profile,
            messages=list(self.messages),
            guidance_generated=self.guidance_generated,
            last_guidance=self.last_guidance,
            active_token=self.active_token,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def _to_response(state: SessionState, ttl_seconds: int) -> SessionStateResponse:
    now = datetime.now(UTC)
    remaining = int(max((state.updated_at + timedelta(seconds=ttl_seconds) - now).total_seconds(), 0))
    stage = select_stage(state.profile.completeness, guidance_generated=state.guidance_generated)
    return SessionStateResponse(
        session_id=state.session_id,
        profile=profile_snapshot(state.profile),
        stage=stage.value,
        guidance_generated=state.guidance_generated,
        messages=[message.model_copy() for message in state.messages],
        created_at=state.created_at,
        updated_at=state.updated_at,
        remaining_ttl_seconds=remaining,
    )


class ProfileStore:
    """In-memory, per-session owner of profiles and message history.

    Every profile update is a read-merge-publish under one lock so that
    overlapping turns on the same session cannot lose fragments.
    """

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, SessionState] = {}
        self._lock = Lock()

    def _prune_locked(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(UTC)
        expiry = now - timedelta(seconds=self.ttl_seconds)
        expired = [sid for sid, state in self._sessions.items() if state.updated_at < expiry]
        for sid in expired:
            state = self._sessions.pop(sid)
            if state.active_token is not None:
                state.active_token.cancel()
        if expired:
            log.info("session_pruned", count=len(expired))

    def _get_or_create_locked(self, session_id: str | None) -> SessionState:
        state = self._sessions.get(session_id) if session_id else None
        if state is None:
            session_id = session_id or uuid.uuid4().hex
            state = SessionState(session_id=session_id)
            state.messages.append(ChatMessage(role="assistant", content=WELCOME_MESSAGE))
            self._sessions[session_id] = state
            log.info("session_created", session_id=session_id)
        return state

    def get(self, session_id: str) -> SessionState | None:
        with self._lock:
            state = self._sessions.get(session_id)
            return state.copy() if state else None

    def ensure(self, session_id: str | None) -> SessionState:
        with self._lock:
            self._prune_locked()
            return self._get_or_create_locked(session_id).copy()

    def begin_turn(self, session_id: str | None) -> Tuple[SessionState, CancellationToken]:
        """Register a new turn, cancelling whichever turn was still streaming."""

        token = CancellationToken()
        with self._lock:
            self._prune_locked()
            state = self._get_or_create_locked(session_id)
            previous = state.active_token
            if previous is not None and not previous.cancelled:
                previous.cancel()
                log.info("turn_superseded", session_id=state.session_id)
            state.active_token = token
            state.updated_at = datetime.now(UTC)
            return state.copy(), token

    def end_turn(
        self,
        session_id: str,
        token: CancellationToken,
        *,
        guidance_generated: bool = False,
        guidance: str | None = None,
    ) -> None:
        """Release the turn; a completed generation or refinement reply becomes the session guidance."""

        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return
            if guidance_generated and not token.cancelled:
                state.guidance_generated = True
                if guidance:
                    state.last_guidance = guidance
            if state.active_token is token:
                state.active_token = None
            state.updated_at = datetime.now(UTC)

    def apply(self, session_id: str, classified: Mapping[str, Sequence[str]]) -> Tuple[Profile, Profile]:
        """Merge classifier output into the session profile; returns (before, after).

        A session deleted while its turn was in flight stays deleted: the merge
        is computed against an empty profile and not stored.
        """

        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                log.info("profile_apply_session_missing", session_id=session_id)
                before = Profile()
                return before, merge_profile(before, classified)
            before = state.profile
            after = merge_profile(before, classified)
            state.profile = after
            state.updated_at = datetime.now(UTC)
        if after is not before:
            log.info(
                "profile_updated",
                session_id=session_id,
                fields=sorted(classified),
                completeness_before=before.completeness,
                completeness_after=after.completeness,
            )
        return before, after

    def append_message(self, session_id: str, message: ChatMessage) -> None:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return
            state.messages.append(message)
            state.updated_at = datetime.now(UTC)

    def clear(self, session_id: str) -> None:
        with self._lock:
            state = self._sessions.pop(session_id, None)
            if state is not None and state.active_token is not None:
                state.active_token.cancel()

    def export(self, session_id: str) -> SessionStateResponse | None:
        state = self.get(session_id)
        return _to_response(state, self.ttl_seconds) if state else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


_PROFILE_STORE: ProfileStore | None = None


def get_profile_store() -> ProfileStore:
    global _PROFILE_STORE
    if _PROFILE_STORE is None:
        ttl = int(os.getenv("SESSION_TTL_SECONDS", "3600"))
        _PROFILE_STORE = ProfileStore(ttl_seconds=max(ttl, 60))
    return _PROFILE_STORE

