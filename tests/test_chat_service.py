"""
Tests for ChatService turn handling

Covers:
- The first-turn scenario (conversation created, events, stored messages)
- Fragment completeness against the stored assistant message
- Upstream failure recovery with the fixed apology
- Document context injection
- Cancellation without a partial assistant message
"""

import asyncio

import pytest

from carechat.models.conversation import Conversation, MessageRole
from carechat.services.chat_service import (
    SYSTEM_PROMPT,
    UPSTREAM_ERROR_MESSAGE,
)
from tests.fixtures.chat_fixtures import FEVER_FRAGMENTS, FEVER_QUESTION, FakeBridge


class EventRecorder:
    """Collects (event, data) pairs emitted for one client"""

    def __init__(self):
        self.events = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def of(self, name):
        return [data for event, data in self.events if event == name]


def run_turn(chat_service, user, text, conversation_id=None):
    recorder = EventRecorder()
    result = asyncio.run(chat_service.handle_turn(user.id, text, conversation_id, recorder))
    return result, recorder


class TestFirstTurn:
    """A user without conversations asks a question"""

    def test_fever_scenario(self, chat_service, store, session, alice):
        result, recorder = run_turn(chat_service, alice, FEVER_QUESTION)

        conversations = store.list_conversations(session, alice.id)
        assert len(conversations) == 1
        conversation = conversations[0]
        assert conversation.title == "What is a fever?..."
        assert result.conversation_id == conversation.id

        assert recorder.events == [
            ("conversationId", conversation.id),
            ("receiveMessage", "A fever "),
            ("receiveMessage", "is a temperature "),
            ("receiveMessage", "above normal."),
        ]

        messages = store.get_messages(session, conversation.id, alice.id)
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "What is a fever?"),
            (MessageRole.ASSISTANT, "A fever is a temperature above normal."),
        ]
        assert all(m.user_id == alice.id for m in messages)

    def test_conversation_id_emitted_once_before_fragments(self, chat_service, alice):
        _, recorder = run_turn(chat_service, alice, "Hello")

        names = [event for event, _ in recorder.events]
        assert names.count("conversationId") == 1
        assert names[0] == "conversationId"

    def test_fragments_concatenate_to_stored_message(self, chat_service, alice):
        result, recorder = run_turn(chat_service, alice, "Hello")

        assert "".join(recorder.of("receiveMessage")) == result.assistant_message.content
        assert result.fragments == FEVER_FRAGMENTS
        assert result.upstream_failed is False

    def test_uses_fixed_system_prompt(self, chat_service, bridge, alice):
        run_turn(chat_service, alice, "Hello")

        system_prompt, user_prompt = bridge.prompts[0]
        assert system_prompt == SYSTEM_PROMPT
        assert user_prompt == "Hello"


class TestFollowUpTurns:
    """Turns against an existing conversation"""

    def test_continues_owned_conversation(self, chat_service, store, session, alice):
        first, _ = run_turn(chat_service, alice, "First question")
        second, recorder = run_turn(chat_service, alice, "Second question", first.conversation_id)

        assert second.conversation_id == first.conversation_id
        assert recorder.of("conversationId") == [first.conversation_id]
        assert len(store.list_conversations(session, alice.id)) == 1
        assert len(store.get_messages(session, first.conversation_id, alice.id)) == 4

    def test_foreign_conversation_id_opens_new_conversation(self, chat_service, store, session, alice, bob):
        alice_turn, _ = run_turn(chat_service, alice, "Alice's question")
        bob_turn, recorder = run_turn(chat_service, bob, "Bob's question", alice_turn.conversation_id)

        assert bob_turn.conversation_id != alice_turn.conversation_id
        assert recorder.of("conversationId") == [bob_turn.conversation_id]
        assert len(store.get_messages(session, alice_turn.conversation_id, alice.id)) == 2
        assert session.get(Conversation, bob_turn.conversation_id).user_id == bob.id


class TestUpstreamFailure:
    """Completion failures are recorded as an apology"""

    def test_failure_before_any_fragment(self, chat_service, store, session, alice):
        chat_service.bridge = FakeBridge([], fail_after=0)

        result, recorder = run_turn(chat_service, alice, FEVER_QUESTION)

        assert recorder.of("receiveMessage") == [UPSTREAM_ERROR_MESSAGE]
        messages = store.get_messages(session, result.conversation_id, alice.id)
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, FEVER_QUESTION),
            (MessageRole.ASSISTANT, UPSTREAM_ERROR_MESSAGE),
        ]
        assert result.upstream_failed is True

    def test_failure_mid_stream_stores_apology_only(self, chat_service, store, session, alice):
        chat_service.bridge = FakeBridge(FEVER_FRAGMENTS, fail_after=1)

        result, recorder = run_turn(chat_service, alice, FEVER_QUESTION)

        assert recorder.of("receiveMessage") == ["A fever ", UPSTREAM_ERROR_MESSAGE]
        assert result.assistant_message.content == UPSTREAM_ERROR_MESSAGE
        assert chat_service.bridge.closed == 1


class TestDocumentContext:
    """Uploaded document text is prepended to the prompt"""

    def test_set_context_summary_counts_rows(self, chat_service, alice):
        summary = chat_service.set_context(alice.id, "ignored", rows=12)

        assert "12 rows" in summary
        assert summary.startswith("I have analyzed the uploaded file.")

    def test_set_context_summary_counts_lines_without_rows(self, chat_service, alice):
        summary = chat_service.set_context(alice.id, "row one\n\nrow two\nrow three\n")
        assert "3 rows" in summary

    def test_prompt_contains_context_once(self, chat_service, bridge, alice):
        chat_service.set_context(alice.id, "patient,temp\nA,38.5")

        run_turn(chat_service, alice, "Who has a fever?")

        _, prompt = bridge.prompts[0]
        assert prompt.count("patient,temp\nA,38.5") == 1
        assert prompt.startswith("Here is the data from the uploaded Excel file:\n")
        assert prompt.endswith("User Question: Who has a fever?")

    def test_latest_upload_replaces_previous(self, chat_service, bridge, alice):
        chat_service.set_context(alice.id, "OLD-DOCUMENT")
        chat_service.set_context(alice.id, "NEW-DOCUMENT")

        run_turn(chat_service, alice, "Summarize it")

        _, prompt = bridge.prompts[0]
        assert "NEW-DOCUMENT" in prompt
        assert "OLD-DOCUMENT" not in prompt

    def test_context_is_per_user(self, chat_service, bridge, alice, bob):
        chat_service.set_context(alice.id, "ALICE-DOCUMENT")

        run_turn(chat_service, bob, "Anything?")

        _, prompt = bridge.prompts[0]
        assert prompt == "Anything?"


class TestCancellation:
    """A dropped client abandons the stream"""

    def test_cancel_mid_stream_stores_no_assistant_message(self, chat_service, store, session, alice):
        bridge = FakeBridge(["partial ", "never sent"], hold_after=1)
        chat_service.bridge = bridge
        recorder = EventRecorder()

        async def scenario():
            first_fragment = asyncio.Event()

            async def emit(event, data):
                await recorder(event, data)
                if event == "receiveMessage":
                    first_fragment.set()

            task = asyncio.create_task(chat_service.handle_turn(alice.id, "Hi", None, emit))
            await asyncio.wait_for(first_fragment.wait(), timeout=5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert recorder.of("receiveMessage") == ["partial "]
        assert bridge.closed == 1

        conversation_id = recorder.of("conversationId")[0]
        messages = store.get_messages(session, conversation_id, alice.id)
        assert [m.role for m in messages] == [MessageRole.USER]
