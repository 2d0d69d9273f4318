"""
Conversation State for a prototype session.

The ordered log of turns (user / assistant / tool_result) is both rendered
to the user and replayed to the Model Gateway on every call. It is
append-only during a session and only the agent loop writes to it.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

RENDER_PROTOTYPE = "render_prototype"

UNREPORTED_RENDER_ERROR = "Render outcome was not reported."
RENDER_SUCCESS_NOTE = "Prototype rendered successfully."


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class RenderOutcome:
    """Terminal result of executing one code version in the sandbox."""
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "RenderOutcome":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "RenderOutcome":
        return cls(success=False, error=error or "Unknown render error")

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "RenderOutcome":
        if data.get("success"):
            return cls.ok()
        return cls.failed(str(data.get("error") or ""))


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict
    id: str = field(default_factory=new_tool_call_id)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            name=data["name"],
            arguments=dict(data.get("arguments") or {}),
            id=data.get("id") or new_tool_call_id(),
        )


@dataclass(frozen=True)
class ToolResult:
    name: str
    outcome: RenderOutcome
    tool_call_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "tool_call_id": self.tool_call_id,
            "outcome": self.outcome.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolResult":
        return cls(
            name=data["name"],
            outcome=RenderOutcome.from_dict(data.get("outcome") or {}),
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(frozen=True)
class Message:
    """One finalized turn in a conversation."""
    role: Role
    text: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None
    id: str = field(default_factory=new_message_id)

    def __post_init__(self):
        if not (self.text or self.tool_call or self.tool_result):
            raise ValueError("Message needs text, a tool call or a tool result")
        if self.tool_call is not None and self.role is not Role.ASSISTANT:
            raise ValueError("Only assistant messages carry tool calls")
        if self.tool_result is not None and self.role is not Role.TOOL_RESULT:
            raise ValueError("Only tool_result messages carry tool results")
        if self.role is Role.TOOL_RESULT and self.tool_result is None:
            raise ValueError("tool_result messages need a tool result")

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str = "", tool_call: Optional[ToolCall] = None) -> "Message":
        return cls(role=Role.ASSISTANT, text=text, tool_call=tool_call)

    @classmethod
    def for_tool_result(cls, result: ToolResult) -> "Message":
        return cls(role=Role.TOOL_RESULT, tool_result=result)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "role": self.role.value}
        if self.text:
            data["text"] = self.text
        if self.tool_call:
            data["tool_call"] = self.tool_call.to_dict()
        if self.tool_result:
            data["tool_result"] = self.tool_result.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        tool_call = data.get("tool_call")
        tool_result = data.get("tool_result")
        return cls(
            role=Role(data["role"]),
            text=data.get("text") or "",
            tool_call=ToolCall.from_dict(tool_call) if tool_call else None,
            tool_result=ToolResult.from_dict(tool_result) if tool_result else None,
            id=data.get("id") or new_message_id(),
        )


class ConversationState:
    """Append-only, ordered session log."""

    def __init__(self, messages: Optional[list[Message]] = None):
        self._messages: list[Message] = list(messages or [])

    def append(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def messages(self) -> list[Message]:
        return list(self._messages)

    def to_list(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_list(cls, data: list[dict]) -> "ConversationState":
        return cls([Message.from_dict(item) for item in data or []])

    def to_transcript(self, context: Optional[str] = None) -> list[dict]:
        """
        Serialize into the Model Gateway transcript (Anthropic Messages format).

        Consecutive same-role turns are merged; tool_result blocks lead a
        merged user turn, and every tool_use gets an answer even when the
        sandbox never reported one. A context text (the source paper) is
        placed ahead of the first user turn's text.
        """
        transcript: list[dict] = []
        unanswered: Optional[ToolCall] = None

        def push(role: str, blocks: list[dict]):
            if transcript and transcript[-1]["role"] == role:
                if role == "user":
                    results = [b for b in blocks if b["type"] == "tool_result"]
                    others = [b for b in blocks if b["type"] != "tool_result"]
                    existing = transcript[-1]["content"]
                    lead = [b for b in existing if b["type"] == "tool_result"]
                    rest = [b for b in existing if b["type"] != "tool_result"]
                    transcript[-1]["content"] = lead + results + rest + others
                else:
                    transcript[-1]["content"].extend(blocks)
            else:
                transcript.append({"role": role, "content": list(blocks)})

        for message in self._messages:
            if unanswered is not None and not (
                message.role is Role.TOOL_RESULT
                and message.tool_result.tool_call_id in (None, unanswered.id)
            ):
                push("user", [_tool_result_block(unanswered.id, RenderOutcome.failed(UNREPORTED_RENDER_ERROR))])
                unanswered = None

            if message.role is Role.USER:
                push("user", [{"type": "text", "text": message.text}])

            elif message.role is Role.ASSISTANT:
                blocks: list[dict] = []
                if message.text:
                    blocks.append({"type": "text", "text": message.text})
                if message.tool_call:
                    blocks.append({
                        "type": "tool_use",
                        "id": message.tool_call.id,
                        "name": message.tool_call.name,
                        "input": dict(message.tool_call.arguments),
                    })
                    unanswered = message.tool_call
                push("assistant", blocks)

            elif message.role is Role.TOOL_RESULT:
                result = message.tool_result
                # Results with no pending call have nothing to answer
                if unanswered is None:
                    continue
                push("user", [_tool_result_block(unanswered.id, result.outcome)])
                unanswered = None

        if unanswered is not None:
            push("user", [_tool_result_block(unanswered.id, RenderOutcome.failed(UNREPORTED_RENDER_ERROR))])

        # The model expects the conversation to open with a user turn
        while transcript:
            first = transcript[0]
            if first["role"] == "user":
                # Results whose tool_use was dropped cannot be replayed
                first["content"] = [b for b in first["content"] if b["type"] != "tool_result"]
                if first["content"]:
                    break
            transcript.pop(0)

        if context and transcript:
            transcript[0]["content"].insert(0, {"type": "text", "text": context})

        return transcript


def _tool_result_block(tool_use_id: str, outcome: RenderOutcome) -> dict:
    if outcome.success:
        return {"type": "tool_result", "tool_use_id": tool_use_id, "content": RENDER_SUCCESS_NOTE}
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": f"Render failed with error:\n{outcome.error}",
        "is_error": True,
    }
