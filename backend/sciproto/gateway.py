"""
Model Gateway: wraps the Anthropic Messages streaming API.

The gateway turns one transcript into an NDJSON line stream (text fragments,
at most one render_prototype tool call, then done). Transient failures that
happen before the first line is emitted are retried with backoff; anything
else becomes a terminal error line.
"""

import asyncio
import logging
import uuid
from typing import AsyncIterator, Optional, Protocol, Sequence

import anthropic

from .config import get_settings
from .logging_config import get_session_logger
from .prompts import RENDER_PROTOTYPE_TOOL, SYSTEM_INSTRUCTION
from .protocol import DoneEvent, ErrorEvent, TextEvent, ToolCallEvent, encode_event

logger = logging.getLogger(__name__)

RETRY_DELAYS = (1.0, 2.0, 4.0)
OVERLOADED_STATUS_CODES = (503, 529)
RATE_LIMIT_STATUS_CODE = 429
OVERLOADED_MESSAGE = "Model is overloaded. Please try again in a few seconds."


class GatewayError(Exception):
    """Raised when a Model Gateway call fails."""

    def __init__(self, message: str, transient: bool = False, overloaded: bool = False):
        super().__init__(message)
        self.message = message
        self.transient = transient
        self.overloaded = overloaded


class ModelGateway(Protocol):
    def stream(self, transcript: list[dict]) -> AsyncIterator[str]:
        """Yield NDJSON lines for one model turn."""
        ...


def classify_error(error: Exception) -> GatewayError:
    """Map an SDK/transport exception onto a GatewayError."""
    if isinstance(error, GatewayError):
        return error

    if isinstance(error, anthropic.APIStatusError):
        status = error.status_code
        text = str(error)
        if status in OVERLOADED_STATUS_CODES or "overloaded" in text.lower():
            return GatewayError(OVERLOADED_MESSAGE, transient=True, overloaded=True)
        if status == RATE_LIMIT_STATUS_CODE:
            return GatewayError(
                "Rate limited by the model provider. Please try again shortly.",
                transient=True,
                overloaded=True,
            )
        return GatewayError(f"Model request failed ({status}): {text}")

    if isinstance(error, anthropic.APIConnectionError):
        return GatewayError(f"Could not reach the model provider: {error}", transient=True)

    return GatewayError(f"Model gateway error: {error}")


class AnthropicGateway:
    """
    Streams Claude responses as NDJSON lines.

    SDK-level retries are disabled so that backoff happens here, only before
    the first line reaches the caller.
    """

    def __init__(
        self,
        client: Optional[anthropic.AsyncAnthropic] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        session_id: Optional[str] = None,
    ):
        settings = get_settings()
        self._client = client
        self._api_key = settings.anthropic_api_key
        self.model = model or settings.model
        self.max_tokens = max_tokens or settings.max_tokens
        self.max_attempts = max(1, max_attempts or settings.gateway_max_attempts)
        self.retry_delays = tuple(retry_delays) or RETRY_DELAYS
        self.session_id = session_id

        logger.info(
            f"[{self.session_id}] AnthropicGateway initialized: model={self.model}, "
            f"max_attempts={self.max_attempts}"
        )

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise GatewayError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        return self._client

    def _slog(self):
        return get_session_logger(self.session_id) if self.session_id else None

    async def stream(self, transcript: list[dict]) -> AsyncIterator[str]:
        turn_id = uuid.uuid4().hex[:8]
        slogger = self._slog()

        for attempt in range(1, self.max_attempts + 1):
            emitted = False
            try:
                if slogger:
                    slogger.log_llm_request(turn_id, transcript, self.model)
                async for line in self._stream_once(transcript, turn_id):
                    emitted = True
                    yield line
                return

            except Exception as e:
                error = classify_error(e)

                if error.transient and not emitted and attempt < self.max_attempts:
                    delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                    logger.warning(
                        f"[{self.session_id}] Model call failed ({error.message}), retrying in "
                        f"{delay}s (attempt {attempt}/{self.max_attempts})"
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(f"[{self.session_id}] Model call failed: {error.message}", exc_info=True)
                if slogger:
                    slogger.log_error("GATEWAY", error.message)

                yield encode_event(ErrorEvent(message=error.message, retryable=error.overloaded))
                yield encode_event(DoneEvent())
                return

    async def _stream_once(self, transcript: list[dict], turn_id: str) -> AsyncIterator[str]:
        client = self._get_client()
        text_len = 0
        tool_name = None

        async with client.messages.stream(
            model=self.model,
            max_tokens=self.max_tokens,
            system=SYSTEM_INSTRUCTION,
            tools=[RENDER_PROTOTYPE_TOOL],
            messages=transcript,
        ) as stream:
            async for event in stream:
                if event.type == "text":
                    if event.text:
                        text_len += len(event.text)
                        yield encode_event(TextEvent(content=event.text))

                elif event.type == "content_block_stop":
                    block = event.content_block
                    if getattr(block, "type", None) == "tool_use" and tool_name is None:
                        tool_name = block.name
                        yield encode_event(
                            ToolCallEvent(name=block.name, args=dict(block.input or {}), id=block.id)
                        )

            final = await stream.get_final_message()

        usage = getattr(final, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) if usage else 0
        output_tokens = getattr(usage, "output_tokens", 0) if usage else 0
        stop_reason = getattr(final, "stop_reason", None)

        if stop_reason == "max_tokens":
            logger.warning(f"[{self.session_id}] Model output truncated (max_tokens reached)")

        slogger = self._slog()
        if slogger:
            slogger.log_llm_response(
                turn_id, stop_reason, input_tokens, output_tokens, text_len, tool_call=tool_name
            )

        yield encode_event(DoneEvent())
