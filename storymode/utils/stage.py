from __future__ import annotations

import re
from enum import Enum

GENERATION_THRESHOLD = 60

_REVISION_KEYWORDS = (
    "revise",
    "revision",
    "rewrite",
    "refine",
    "edit",
    "improve",
    "change",
    "feedback",
    "another version",
    "try again",
)
_REVISION_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(keyword) for keyword in _REVISION_KEYWORDS) + r")\b")


class ConversationStage(str, Enum):
    COLLECTION = "collection"
    GENERATION = "generation"
    REFINEMENT = "refinement"


def detect_revision_request(text: str) -> bool:
    """True when the message asks to rework earlier guidance.

    Keywords match as whole words so "credit" or "changed" do not count.
    """

    return _REVISION_PATTERN.search((text or "").lower()) is not None


def select_stage(
    completeness: int,
    *,
    guidance_generated: bool = False,
    profile_changed: bool = True,
    revision_requested: bool = False,
) -> ConversationStage:
    """Derive the conversation stage for one turn.

    Below the threshold the assistant keeps collecting profile facts. At or
    above it the full roadmap is generated. Refinement needs guidance from an
    earlier turn of the same session plus either an explicit revision request
    or a turn that added nothing to the profile.
    """

    if completeness < 0 or completeness > 100:
        raise ValueError(f"completeness must be within 0..100, got {completeness}")
    if completeness < GENERATION_THRESHOLD:
        return ConversationStage.COLLECTION
    if guidance_generated and (revision_requested or not profile_changed):
        return ConversationStage.REFINEMENT
    return ConversationStage.GENERATION
