"""
Tests for the conversation model and its Model Gateway transcript.
"""

import pytest

from sciproto.conversation import (
    RENDER_PROTOTYPE,
    RENDER_SUCCESS_NOTE,
    UNREPORTED_RENDER_ERROR,
    ConversationState,
    Message,
    RenderOutcome,
    Role,
    ToolCall,
    ToolResult,
)


def render_turn(code="export default function App() {}", call_id="call_1", text="Rendering"):
    return Message.assistant(text, tool_call=ToolCall(RENDER_PROTOTYPE, {"code": code}, id=call_id))


def outcome_turn(outcome, call_id="call_1"):
    return Message.for_tool_result(ToolResult(RENDER_PROTOTYPE, outcome, tool_call_id=call_id))


class TestMessage:
    """Test Message construction and validation."""

    def test_user_message(self):
        message = Message.user("Build a demo")
        assert message.role is Role.USER
        assert message.text == "Build a demo"
        assert message.id.startswith("msg_")

    def test_ids_are_unique(self):
        assert Message.user("a").id != Message.user("a").id

    def test_empty_message_rejected(self):
        with pytest.raises(ValueError):
            Message(role=Role.ASSISTANT)

    def test_tool_call_only_on_assistant(self):
        with pytest.raises(ValueError):
            Message(role=Role.USER, tool_call=ToolCall(RENDER_PROTOTYPE, {"code": "x"}))

    def test_tool_result_message_needs_result(self):
        with pytest.raises(ValueError):
            Message(role=Role.TOOL_RESULT, text="just text")

    def test_assistant_with_only_tool_call_is_valid(self):
        message = render_turn(text="")
        assert message.text == ""
        assert message.tool_call.name == RENDER_PROTOTYPE

    def test_failed_outcome_keeps_error(self):
        assert RenderOutcome.failed("ReferenceError: x").error == "ReferenceError: x"
        assert RenderOutcome.failed("").error

    def test_dict_round_trip_preserves_fields(self):
        message = outcome_turn(RenderOutcome.failed("boom"), call_id="call_9")
        restored = Message.from_dict(message.to_dict())
        assert restored == message


class TestConversationState:
    """Test the append-only session log."""

    def test_append_and_order(self):
        state = ConversationState()
        first = state.append(Message.user("one"))
        second = state.append(Message.assistant("two"))
        assert len(state) == 2
        assert list(state) == [first, second]
        assert state.last is second

    def test_empty_state(self):
        state = ConversationState()
        assert state.last is None
        assert state.to_transcript() == []

    def test_from_list_restores_history(self):
        state = ConversationState([Message.user("hi"), render_turn(), outcome_turn(RenderOutcome.ok())])
        restored = ConversationState.from_list(state.to_list())
        assert restored.messages() == state.messages()

    def test_from_list_rejects_bad_roles(self):
        with pytest.raises(ValueError):
            ConversationState.from_list([{"role": "system", "text": "nope"}])


class TestTranscript:
    """Test serialization into the Model Gateway transcript."""

    def test_plain_exchange(self):
        state = ConversationState([Message.user("Explain"), Message.assistant("Sure")])
        assert state.to_transcript() == [
            {"role": "user", "content": [{"type": "text", "text": "Explain"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "Sure"}]},
        ]

    def test_tool_call_and_error_result(self):
        state = ConversationState([
            Message.user("Build it"),
            render_turn(code="bad code"),
            outcome_turn(RenderOutcome.failed("SyntaxError: Unexpected token")),
        ])
        transcript = state.to_transcript()

        assert [t["role"] for t in transcript] == ["user", "assistant", "user"]
        tool_use = transcript[1]["content"][1]
        assert tool_use == {"type": "tool_use", "id": "call_1", "name": RENDER_PROTOTYPE, "input": {"code": "bad code"}}

        result = transcript[2]["content"][0]
        assert result["type"] == "tool_result"
        assert result["tool_use_id"] == "call_1"
        assert result["is_error"] is True
        assert "SyntaxError: Unexpected token" in result["content"]

    def test_success_result_note(self):
        state = ConversationState([Message.user("Build"), render_turn(), outcome_turn(RenderOutcome.ok())])
        result = state.to_transcript()[2]["content"][0]
        assert result["content"] == RENDER_SUCCESS_NOTE
        assert "is_error" not in result

    def test_result_precedes_user_text_in_merged_turn(self):
        state = ConversationState([
            Message.user("Build"),
            render_turn(),
            outcome_turn(RenderOutcome.failed("boom")),
            Message.user("Make it blue instead"),
        ])
        transcript = state.to_transcript()
        assert len(transcript) == 3
        last = transcript[-1]["content"]
        assert [b["type"] for b in last] == ["tool_result", "text"]

    def test_unanswered_tool_call_gets_synthetic_error(self):
        state = ConversationState([Message.user("Build"), render_turn(), Message.user("Hello?")])
        transcript = state.to_transcript()
        blocks = transcript[-1]["content"]
        assert blocks[0]["type"] == "tool_result"
        assert blocks[0]["is_error"] is True
        assert UNREPORTED_RENDER_ERROR in blocks[0]["content"]
        assert blocks[1] == {"type": "text", "text": "Hello?"}

    def test_trailing_unanswered_tool_call_is_answered(self):
        state = ConversationState([Message.user("Build"), render_turn()])
        transcript = state.to_transcript()
        assert transcript[-1]["role"] == "user"
        assert transcript[-1]["content"][0]["tool_use_id"] == "call_1"

    def test_consecutive_assistant_turns_merge(self):
        state = ConversationState([Message.user("Hi"), Message.assistant("a"), Message.assistant("b")])
        transcript = state.to_transcript()
        assert len(transcript) == 2
        assert [b["text"] for b in transcript[1]["content"]] == ["a", "b"]

    def test_orphan_tool_result_skipped(self):
        state = ConversationState([Message.user("Hi"), outcome_turn(RenderOutcome.failed("x"))])
        assert state.to_transcript() == [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

    def test_leading_assistant_turn_dropped(self):
        state = ConversationState([render_turn(), outcome_turn(RenderOutcome.ok()), Message.user("Next")])
        transcript = state.to_transcript()
        assert transcript == [{"role": "user", "content": [{"type": "text", "text": "Next"}]}]

    def test_result_without_call_id_answers_pending_call(self):
        state = ConversationState([
            Message.user("Build"),
            render_turn(call_id="call_7"),
            Message.for_tool_result(ToolResult(RENDER_PROTOTYPE, RenderOutcome.failed("late"))),
        ])
        result = state.to_transcript()[2]["content"][0]
        assert result["tool_use_id"] == "call_7"
        assert "late" in result["content"]

    def test_transcript_is_deterministic(self):
        state = ConversationState([
            Message.user("Build"),
            render_turn(),
            outcome_turn(RenderOutcome.failed("boom")),
        ])
        assert state.to_transcript() == state.to_transcript()

    def test_context_leads_first_user_turn(self):
        state = ConversationState([Message.user("Build"), Message.assistant("Done"), Message.user("Again")])
        transcript = state.to_transcript(context="Paper: attention")

        assert transcript[0]["content"] == [
            {"type": "text", "text": "Paper: attention"},
            {"type": "text", "text": "Build"},
        ]
        assert transcript[2]["content"] == [{"type": "text", "text": "Again"}]

    def test_context_does_not_leak_into_state(self):
        state = ConversationState([Message.user("Build")])
        state.to_transcript(context="Paper")
        assert state.to_transcript() == [{"role": "user", "content": [{"type": "text", "text": "Build"}]}]

    def test_context_ignored_without_turns(self):
        assert ConversationState().to_transcript(context="Paper") == []
