import pytest

from storymode.utils.stage import ConversationStage, detect_revision_request, select_stage


def test_threshold_boundary_is_inclusive_on_generation_side():
    assert select_stage(59) is ConversationStage.COLLECTION
    assert select_stage(60) is ConversationStage.GENERATION
    assert select_stage(0) is ConversationStage.COLLECTION
    assert select_stage(100) is ConversationStage.GENERATION


def test_refinement_after_guidance_with_revision_request():
    stage = select_stage(71, guidance_generated=True, revision_requested=True)
    assert stage is ConversationStage.REFINEMENT


def test_refinement_after_guidance_when_profile_unchanged():
    stage = select_stage(86, guidance_generated=True, profile_changed=False)
    assert stage is ConversationStage.REFINEMENT


def test_new_profile_facts_regenerate_guidance():
    stage = select_stage(86, guidance_generated=True, profile_changed=True)
    assert stage is ConversationStage.GENERATION


def test_refinement_never_below_threshold():
    stage = select_stage(57, guidance_generated=True, profile_changed=False, revision_requested=True)
    assert stage is ConversationStage.COLLECTION


def test_out_of_range_completeness_raises():
    with pytest.raises(ValueError):
        select_stage(101)


def test_detect_revision_request():
    assert detect_revision_request("Can you revise the action plan?")
    assert detect_revision_request("Please REWRITE that")
    assert not detect_revision_request("I play violin")


def test_revision_keywords_match_whole_words_only():
    assert not detect_revision_request("I earned college credit in AP Bio")
    assert not detect_revision_request("I changed schools junior year")
    assert not detect_revision_request("Big improvement in my grades")
    assert detect_revision_request("Can we try again with a new angle?")
