from storymode.agents.prompting import GENERATION_SECTIONS, SYSTEM_PROMPT, build_prompt
from storymode.schemas.models import UserIdentity
from storymode.schemas.profile import NOT_SPECIFIED, Profile
from storymode.utils.stage import ConversationStage


def _full_profile() -> Profile:
    return Profile(
        major="Computer Science",
        colleges=("MIT", "Stanford"),
        essay_prompts=("Why engineering?",),
        extracurriculars=("Robotics club captain",),
        classes=("AP Physics",),
        hobbies=("chess",),
        awards=("Regional science fair winner",),
    )


def test_collection_prompt_lists_missing_fields():
    profile = Profile(major="Biology")
    payload = build_prompt(profile, ConversationStage.COLLECTION, "I study biology")
    prompt = payload["prompt"]
    assert payload["system"] == SYSTEM_PROMPT
    assert "- Intended Major: Biology" in prompt
    assert f"- Target Colleges: {NOT_SPECIFIED}" in prompt
    assert "Profile completeness: 14%" in prompt
    assert "Conversation stage: collection" in prompt
    assert "Target Colleges, Essay Prompts, Extracurriculars, Classes, Hobbies, Awards" in prompt
    assert "User message:\nI study biology" in prompt
    assert "(no attachments)" in prompt


def test_generation_prompt_has_every_section_in_order():
    prompt = build_prompt(_full_profile(), ConversationStage.GENERATION, "What now?")["prompt"]
    positions = [prompt.index(section) for section in GENERATION_SECTIONS]
    assert positions == sorted(positions)
    assert "- Target Colleges: MIT; Stanford" in prompt
    assert "Profile completeness: 100%" in prompt
    assert NOT_SPECIFIED not in prompt


def test_refinement_prompt_asks_for_revision():
    prompt = build_prompt(_full_profile(), ConversationStage.REFINEMENT, "Please revise")["prompt"]
    assert "Conversation stage: refinement" in prompt
    assert "Revise the guidance you already produced" in prompt


def test_attachment_context_and_identity_are_included():
    identity = UserIdentity(id="u1", email="ada@example.com", display_name="Ada")
    prompt = build_prompt(
        Profile(),
        ConversationStage.COLLECTION,
        "see attached",
        "Content from resume.txt:\nChess captain",
        identity,
    )["prompt"]
    assert "Content from resume.txt:\nChess captain" in prompt
    assert "The user is ada@example.com." in prompt
    assert "Address them as Ada." in prompt


def test_anonymous_prompt_mentions_missing_identity():
    prompt = build_prompt(Profile(), ConversationStage.COLLECTION, "hi")["prompt"]
    assert "No signed-in user details available." in prompt


def test_refinement_prompt_carries_previous_guidance():
    prompt = build_prompt(
        _full_profile(),
        ConversationStage.REFINEMENT,
        "Make the action plan shorter",
        previous_guidance="1. Narrative Themes: robotics and service",
    )["prompt"]
    assert "Previous guidance:\n1. Narrative Themes: robotics and service" in prompt
    assert prompt.index("Previous guidance:") < prompt.index("Stage instructions (refinement):")


def test_previous_guidance_only_rendered_for_refinement():
    prompt = build_prompt(
        _full_profile(),
        ConversationStage.GENERATION,
        "What now?",
        previous_guidance="old roadmap",
    )["prompt"]
    assert "Previous guidance" not in prompt
    assert "old roadmap" not in prompt
