from storymode.utils.classifier import classify_message


def test_empty_and_whitespace_yield_no_fields():
    assert classify_message("") == {}
    assert classify_message("   \n\t ") == {}


def test_no_keyword_returns_empty_mapping():
    assert classify_message("Hi there, how are you today?") == {}


def test_whole_message_is_the_fragment():
    text = "  I want to MAJOR in biology  "
    result = classify_message(text)
    assert result == {"major": [text]}


def test_single_message_can_populate_multiple_fields():
    result = classify_message("I love coding and won an award")
    assert set(result) == {"hobbies", "awards"}
    assert result["hobbies"] == ["I love coding and won an award"]


def test_major_and_college_from_intro_message():
    result = classify_message("I'm majoring in computer science and applying to MIT")
    assert set(result) == {"major", "colleges"}


def test_college_names_match_whole_words_only():
    assert "colleges" in classify_message("Stanford is my dream")
    assert classify_message("I will submit it tomorrow") == {}


def test_trailing_space_keywords_for_classes():
    assert "classes" in classify_message("I took AP Biology")
    assert "classes" in classify_message("Doing the IB diploma")
    assert "classes" not in classify_message("I took APUSH")


def test_known_substring_false_positive_is_preserved():
    result = classify_message("I volunteer at a preschool")
    assert set(result) == {"extracurriculars", "colleges"}
