from __future__ import annotations

from typing import Dict, List

from storymode.schemas.models import UserIdentity
from storymode.schemas.profile import FIELD_DEFINITIONS, Profile, render_field_value
from storymode.utils.stage import ConversationStage

SYSTEM_PROMPT = (
    "You are StoryMode AI, helping a college applicant create compelling narratives."
    " Be encouraging, insightful, and specific in your responses. Help them see connections between"
    " their different experiences and how they tell a cohesive story."
)

GENERATION_SECTIONS = (
    "Narrative Themes",
    "Cross-Field Connections",
    "College-Specific Strategy",
    "Essay Prompt Roadmap",
    "Brainstorming Ideas",
    "Action Plan",
)

_GENERATION_SECTION_HINTS = {
    "Narrative Themes": "two or three throughlines that tie the profile together",
    "Cross-Field Connections": "how the major, classes, activities, hobbies and awards reinforce each other",
    "College-Specific Strategy": "one short strategy per target college",
    "Essay Prompt Roadmap": "a roadmap for each essay prompt, with the angle and the experiences to use",
    "Brainstorming Ideas": "concrete story ideas and anecdotes worth drafting",
    "Action Plan": "numbered next steps the applicant can start this week",
}


def _personalization_notes(identity: UserIdentity | None) -> str:
    if identity is None:
        return "No signed-in user details available."
    lines = [f"The user is {identity.email}."]
    if identity.display_name:
        lines.append(f"Address them as {identity.display_name}.")
    return " ".join(lines)


def render_profile(profile: Profile) -> str:
    return "\n".join(f"- {definition.label}: {render_field_value(profile, definition)}" for definition in FIELD_DEFINITIONS)


def _collection_instructions(profile: Profile) -> str:
    missing = profile.missing_fields()
    lines: List[str] = [
        "Stage instructions (collection):",
        "1. Acknowledge what the applicant just shared and reflect back anything notable.",
    ]
    if missing:
        labels = ", ".join(definition.label for definition in missing)
        lines.append(f"2. Name the profile fields that are still missing: {labels}.")
        lines.append("3. Ask targeted follow-up questions for the missing fields, for example:")
        lines.extend(f"   - {definition.prompt or definition.description}" for definition in missing)
    else:
        lines.append("2. Every profile field has content; ask one question that deepens the weakest field.")
    lines.append("Keep it conversational and do not write the full narrative roadmap yet.")
    return "\n".join(lines)


def _generation_instructions() -> str:
    lines = [
        "Stage instructions (generation):",
        "Produce the applicant's narrative roadmap using exactly these sections, each as a heading:",
    ]
    for position, section in enumerate(GENERATION_SECTIONS, start=1):
        lines.append(f"{position}. {section}: {_GENERATION_SECTION_HINTS[section]}")
    lines.append("Ground every point in the profile facts above; do not invent experiences.")
    return "\n".join(lines)


def _refinement_instructions() -> str:
    return "\n".join(
        [
            "Stage instructions (refinement):",
            "Revise the guidance you already produced in this conversation (shown under Previous guidance)"
            " based on the latest message.",
            "Keep what still fits, change what the applicant asked to change, and explain each revision briefly.",
            "Use the same profile snapshot; do not drop sections the applicant did not mention.",
        ]
    )


def stage_instructions(stage: ConversationStage, profile: Profile) -> str:
    if stage is ConversationStage.GENERATION:
        return _generation_instructions()
    if stage is ConversationStage.REFINEMENT:
        return _refinement_instructions()
    return _collection_instructions(profile)


def build_prompt(
    profile: Profile,
    stage: ConversationStage,
    message: str,
    attachment_context: str = "",
    identity: UserIdentity | None = None,
    previous_guidance: str | None = None,
) -> Dict[str, str]:
    """Assemble the full instruction text for one turn.

    The payload carries the profile snapshot (``Not specified`` for empty
    fields), completeness, stage, the raw message, labelled attachment text
    and the stage-specific instructions. Refinement prompts also carry the
    guidance produced earlier in the session so the model can revise it.
    """

    attachments_section = attachment_context.strip() or "(no attachments)"
    guidance_section = ""
    if stage is ConversationStage.REFINEMENT:
        guidance = (previous_guidance or "").strip() or "(none recorded)"
        guidance_section = f"Previous guidance:\n{guidance}\n\n"
    prompt = (
        f"User context: {_personalization_notes(identity)}\n\n"
        f"Applicant profile:\n{render_profile(profile)}\n\n"
        f"Profile completeness: {profile.completeness}%\n"
        f"Conversation stage: {stage.value}\n\n"
        f"User message:\n{message}\n\n"
        f"Attached documents:\n{attachments_section}\n\n"
        f"{guidance_section}"
        f"{stage_instructions(stage, profile)}"
    )
    return {"prompt": prompt, "system": SYSTEM_PROMPT}
