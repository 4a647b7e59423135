import asyncio
from typing import List

import pytest

from storymode.agents.story_agent import StoryAgent, format_sse
from storymode.schemas.models import UserIdentity
from storymode.utils.attachments import Attachment
from storymode.utils.notifications import CollectingNotificationSink
from storymode.utils.observability import get_metrics
from storymode.utils.profile_store import ProfileStore
from storymode.utils.stage import ConversationStage
from storymode.utils.streaming import ResponseStreamer

FIVE_FIELD_MESSAGE = (
    "I want to major in biology, applying to Stanford, working on the why-us essay, "
    "captain of the chess club, and I love hiking"
)


class RecordingCompletion:
    def __init__(self, chunks: List[str], *, fail_after: int | None = None, pause: float = 0.0) -> None:
        self.chunks = chunks
        self.fail_after = fail_after
        self.pause = pause
        self.prompts: List[str] = []

    async def __call__(self, prompt, **kwargs):
        self.prompts.append(prompt)
        for position, chunk in enumerate(self.chunks):
            if self.fail_after is not None and position == self.fail_after:
                raise RuntimeError("model connection dropped")
            await asyncio.sleep(self.pause)
            yield chunk


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


def _agent(completion: RecordingCompletion, store: ProfileStore | None = None):
    sink = CollectingNotificationSink()
    agent = StoryAgent(
        store=store if store is not None else ProfileStore(),
        streamer=ResponseStreamer(completion, timeout_seconds=5),
        notifier=sink,
    )
    return agent, sink


def test_first_message_populates_major_and_colleges():
    completion = RecordingCompletion(["Great ", "start!"])
    agent, sink = _agent(completion)

    result = asyncio.run(agent.run_turn("I'm majoring in computer science and applying to MIT"))

    assert result.profile.major == "I'm majoring in computer science and applying to MIT"
    assert result.profile.colleges == ("I'm majoring in computer science and applying to MIT",)
    assert result.profile.completeness == 29
    assert result.stage is ConversationStage.COLLECTION
    assert result.assistant_message.content == "Great start!"
    assert result.assistant_message.final is True
    assert result.error is None
    assert sink.notifications == []
    assert "Conversation stage: collection" in completion.prompts[0]
    assert "Profile completeness: 29%" in completion.prompts[0]

    state = agent.store.get(result.session_id)
    assert [message.role for message in state.messages] == ["assistant", "user", "assistant"]
    assert state.guidance_generated is False


def test_event_sequence_and_sse_format():
    agent, _ = _agent(RecordingCompletion(["a", "b"]))

    async def run():
        return [event async for event in agent.process_turn("I enjoy painting")]

    events = asyncio.run(run())
    assert [event.name for event in events] == ["profile", "message", "chunk", "chunk", "completed"]
    assert events[0].data["stage"] == "collection"
    assert "hobbies" not in events[0].data["missing_fields"]
    assert [event.data["content"] for event in events if event.name == "chunk"] == ["a", "ab"]

    frame = format_sse(events[2])
    assert frame.startswith("event: chunk\ndata: ")
    assert frame.endswith("\n\n")
    assert f'"session_id": "{events[0].session_id}"' in frame


def test_generation_then_refinement_within_session():
    completion = RecordingCompletion(["Roadmap"])
    agent, _ = _agent(completion)

    first = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))
    assert first.profile.completeness == 71
    assert first.stage is ConversationStage.GENERATION
    assert "Narrative Themes" in completion.prompts[0]
    assert agent.store.get(first.session_id).guidance_generated is True

    second = asyncio.run(agent.run_turn("Please revise the plan", session_id=first.session_id))
    assert second.stage is ConversationStage.REFINEMENT
    assert second.profile.completeness == 71
    assert "Revise the guidance you already produced" in completion.prompts[1]


def test_new_profile_facts_after_guidance_regenerate():
    agent, _ = _agent(RecordingCompletion(["ok"]))
    first = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))
    second = asyncio.run(agent.run_turn("I won a regional award", session_id=first.session_id))
    assert second.profile.completeness == 86
    assert second.stage is ConversationStage.GENERATION


def test_revision_flag_forces_refinement():
    agent, _ = _agent(RecordingCompletion(["ok"]))
    first = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))
    second = asyncio.run(
        agent.run_turn("I also won an award", session_id=first.session_id, revision_requested=True)
    )
    assert second.stage is ConversationStage.REFINEMENT


def test_failed_attachment_notifies_and_turn_continues():
    completion = RecordingCompletion(["Thanks"])
    agent, sink = _agent(completion)
    attachments = [
        Attachment("resume.txt", b"Debate team captain", "text/plain"),
        Attachment("scan.png", b"\x89PNG", "image/png"),
    ]

    result = asyncio.run(agent.run_turn("", attachments=attachments))

    assert result.attachments == [{"filename": "resume.txt", "ok": True}, {"filename": "scan.png", "ok": False}]
    assert [(item.title, item.description) for item in sink.notifications] == [
        ("Attachment skipped", "Could not process scan.png")
    ]
    assert result.notifications == sink.notifications
    assert result.diagnostics.attachment_failures == 1
    assert result.user_message.attachments == ["resume.txt", "scan.png"]
    prompt = completion.prompts[0]
    assert "Content from resume.txt:\nDebate team captain" in prompt
    assert "Note: Could not process scan.png" in prompt


def test_generation_failure_keeps_partial_reply():
    agent, sink = _agent(RecordingCompletion(["Partial ", "rest"], fail_after=1))

    result = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))

    assert result.error is not None
    assert result.assistant_message.content == "Partial "
    assert [item.title for item in sink.notifications] == ["Error"]
    assert sink.notifications[0].description == "Failed to generate response. Please try again."
    state = agent.store.get(result.session_id)
    assert state.guidance_generated is False
    assert state.messages[-1].content == "Partial "
    assert state.profile.completeness == 71


def test_empty_turn_is_rejected():
    agent, _ = _agent(RecordingCompletion(["x"]))
    with pytest.raises(ValueError):
        asyncio.run(agent.run_turn("   "))


@pytest.mark.asyncio
async def test_new_turn_supersedes_streaming_turn():
    completion = RecordingCompletion(["one ", "two ", "three"], pause=0.01)
    store = ProfileStore()
    agent, _ = _agent(completion, store)

    first = agent.process_turn("I love music")
    events = []
    async for event in first:
        events.append(event)
        if event.name == "chunk":
            break
    second = await agent.run_turn("I love running", session_id=events[0].session_id)
    async for event in first:
        events.append(event)

    first_chunks = [event for event in events if event.name == "chunk"]
    assert len(first_chunks) == 1
    assert events[-1].name == "completed"
    assert events[-1].data["cancelled"] is True
    assert events[-1].data["message"]["content"] == "one "
    assert second.assistant_message.content == "one two three"
    assert store.get(second.session_id).profile.hobbies == ("I love music", "I love running")


@pytest.mark.asyncio
async def test_abandoned_stream_releases_the_turn():
    store = ProfileStore()
    agent, _ = _agent(RecordingCompletion(["one ", "two "]), store)

    stream = agent.process_turn("I love chess")
    session_id = None
    async for event in stream:
        session_id = event.session_id
        if event.name == "chunk":
            break
    await stream.aclose()

    state = store.get(session_id)
    assert state.active_token is None
    assert state.messages[-1].final is True
    assert state.messages[-1].content == "one "


def test_identity_reaches_prompt():
    completion = RecordingCompletion(["hi"])
    agent, _ = _agent(completion)
    identity = UserIdentity(id="u-1", email="sam@example.com", display_name="Sam")
    asyncio.run(agent.run_turn("I enjoy chess", identity=identity))
    assert "Address them as Sam." in completion.prompts[0]


def test_agent_keeps_the_store_it_was_given():
    store = ProfileStore()
    agent, _ = _agent(RecordingCompletion(["ok"]), store)
    assert agent.store is store

    result = asyncio.run(agent.run_turn("I enjoy chess"))
    assert store.get(result.session_id).profile.hobbies == ("I enjoy chess",)


def test_refinement_prompt_includes_earlier_guidance():
    completion = RecordingCompletion(["Roadmap: lead with the biology research story"])
    agent, _ = _agent(completion)

    first = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))
    assert first.stage is ConversationStage.GENERATION
    assert agent.store.get(first.session_id).last_guidance == "Roadmap: lead with the biology research story"

    second = asyncio.run(agent.run_turn("Please revise the plan", session_id=first.session_id))
    assert second.stage is ConversationStage.REFINEMENT
    assert "Previous guidance:\nRoadmap: lead with the biology research story" in completion.prompts[1]


def test_new_facts_with_lookalike_words_regenerate_guidance():
    agent, _ = _agent(RecordingCompletion(["ok"]))
    first = asyncio.run(agent.run_turn(FIVE_FIELD_MESSAGE))
    second = asyncio.run(agent.run_turn("I earned college credit in AP Bio", session_id=first.session_id))
    assert second.profile.completeness == 86
    assert second.stage is ConversationStage.GENERATION
