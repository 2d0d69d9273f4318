"""
NDJSON streaming protocol between the Model Gateway and the Agent Loop.

Each line is one JSON object:
- {"type": "text", "content": "<fragment>"}
- {"type": "tool_call", "name": "render_prototype", "args": {"code": "...", "title": "..."}}
- {"type": "error", "message": "...", "retryable": false}
- {"type": "done"}

decode_line() normalizes every accepted shape into one of four event
dataclasses; decode_stream() turns an arbitrary chunked byte/str stream
into a well-formed event sequence for a single turn.
"""

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Optional, Union

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


@dataclass(frozen=True)
class TextEvent:
    content: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolCallEvent:
    name: str
    args: dict
    id: Optional[str] = None
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    retryable: bool = False
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class DoneEvent:
    type: str = field(default="done", init=False)


StreamEvent = Union[TextEvent, ToolCallEvent, ErrorEvent, DoneEvent]


def event_to_dict(event: StreamEvent) -> dict:
    if isinstance(event, TextEvent):
        return {"type": "text", "content": event.content}
    if isinstance(event, ToolCallEvent):
        data = {"type": "tool_call", "name": event.name, "args": dict(event.args)}
        if event.id:
            data["id"] = event.id
        return data
    if isinstance(event, ErrorEvent):
        return {"type": "error", "message": event.message, "retryable": event.retryable}
    if isinstance(event, DoneEvent):
        return {"type": "done"}
    raise TypeError(f"Not a stream event: {event!r}")


def encode_event(event: StreamEvent) -> str:
    """Encode one event as an NDJSON line (with trailing newline)."""
    return json.dumps(event_to_dict(event), ensure_ascii=False) + "\n"


def decode_line(line: Union[str, bytes]) -> Optional[StreamEvent]:
    """
    Decode one NDJSON line into an event.

    Returns None for blank, malformed or unknown lines; the caller skips them.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream line: {line[:120]}")
        return None

    if not isinstance(data, dict):
        logger.debug(f"Skipping non-object stream line: {line[:120]}")
        return None

    event_type = data.get("type")

    if event_type == "text":
        content = data.get("content")
        if not isinstance(content, str) or not content:
            return None
        return TextEvent(content=content)

    if event_type == "tool_call":
        name = data.get("name")
        args = data.get("args", {})
        if not isinstance(name, str) or not name:
            logger.debug("Skipping tool_call without a name")
            return None
        if not isinstance(args, dict):
            logger.debug(f"Skipping tool_call '{name}' with non-object args")
            return None
        args = dict(args)
        # Legacy shape: title sent next to args instead of inside it
        if "title" in data and "title" not in args:
            args["title"] = data["title"]
        call_id = data.get("id")
        return ToolCallEvent(name=name, args=args, id=call_id if isinstance(call_id, str) else None)

    if event_type == "error":
        message = data.get("message")
        if not isinstance(message, str) or not message:
            message = "Unknown model gateway error"
        return ErrorEvent(message=message, retryable=bool(data.get("retryable", False)))

    if event_type == "done":
        return DoneEvent()

    logger.debug(f"Skipping unknown stream event type: {event_type!r}")
    return None


async def _iter_lines(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer


async def decode_stream(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[StreamEvent]:
    """
    Decode a chunked NDJSON stream into the events of one turn.

    At most one tool call is passed through, the stream ends at the first
    done or error event, and a DoneEvent is synthesized if the transport
    closes without one.
    """
    saw_tool_call = False

    async for line in _iter_lines(chunks):
        event = decode_line(line)
        if event is None:
            continue

        if isinstance(event, ToolCallEvent):
            if saw_tool_call:
                logger.debug(f"Ignoring extra tool call '{event.name}' in the same turn")
                continue
            saw_tool_call = True
            yield event
        elif isinstance(event, ErrorEvent):
            yield event
            return
        elif isinstance(event, DoneEvent):
            yield event
            return
        else:
            yield event

    yield DoneEvent()
