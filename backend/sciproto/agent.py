"""
PrototypeAgent - self-correcting prototype generation loop for one session.

One agent owns a session's Conversation State, the latest PrototypeArtifact
and the RetryState. A turn streams a model response through the Model
Gateway, finalizes the assistant message, and hands any render_prototype
code to the Sandbox Executor. The executor's outcome comes back through
on_sandbox_report(): success ends the loop, an error schedules an automatic
repair turn carrying the error as a tool result, up to max_attempts.

Guarantees:
- Turns are single-flight: a submit while a turn is in flight or a render
  is pending is rejected with a "busy" event.
- Only the outcome for the currently pending code version is acted on;
  duplicate and stale reports are dropped.
- Every acted-on render error is recorded exactly once as a tool_result,
  so the replayed transcript never has an unanswered tool call.
- cleanup() cancels the in-flight stream, the pending repair and the
  render watchdog, and unsubscribes from the sandbox.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .config import get_settings
from .conversation import (
    RENDER_PROTOTYPE,
    ConversationState,
    Message,
    RenderOutcome,
    Role,
    ToolCall,
    ToolResult,
    new_tool_call_id,
)
from .gateway import AnthropicGateway, ModelGateway
from .logging_config import get_session_logger
from .persistence import AnalysisRecord, DebouncedSaver, PrototypeRecord
from .prompts import build_paper_context
from .protocol import ErrorEvent, TextEvent, ToolCallEvent, decode_stream
from .sandbox_executor import (
    BrowserSandboxExecutor,
    SandboxError,
    SandboxExecutor,
    SandboxReport,
    parse_sandbox_message,
)
from .sandbox_factory import create_sandbox_executor

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict], Union[None, Awaitable[Any]]]

EMPTY_CODE_ERROR = "render_prototype was called without any code."

_FENCE_RE = re.compile(r"^\s*```[\w.+-]*[^\n]*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^\s*```[\w.+-]*[^\n]*\n")


class LoopStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    EXECUTING = "executing"


@dataclass
class PrototypeArtifact:
    """The latest accepted generated program."""
    code: str = ""
    version: int = 0
    title: Optional[str] = None


@dataclass
class RetryState:
    """Per-conversation bookkeeping for self-correction."""
    max_attempts: int = 3
    attempt_count: int = 0
    is_fixing: bool = False

    def reset(self) -> None:
        self.attempt_count = 0
        self.is_fixing = False

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


def strip_code_fences(code: str) -> str:
    """Remove a surrounding markdown code fence (```jsx ... ```), if any."""
    if not code:
        return ""
    match = _FENCE_RE.match(code)
    if match:
        return match.group("body").strip("\n")
    # Unterminated fence: drop just the opening line
    if _OPEN_FENCE_RE.match(code):
        return _OPEN_FENCE_RE.sub("", code, count=1).strip("\n")
    return code


class PrototypeAgent:
    """
    Session-scoped agent loop.

    All loop state lives on this object and only this object writes the
    conversation. The UI observes it through events passed to on_event:

    - {"type": "status", "status": ..., "display_status": ...}
    - {"type": "text", "content": ...} - streaming fragment
    - {"type": "message", "message": {...}} - finalized turn
    - {"type": "render_prototype", "code", "version", "title"}
    - {"type": "render_result", "version", "success", "error"}
    - {"type": "fix_scheduled", "attempt", "max_attempts", "error"}
    - {"type": "max_retries", "attempts", "error"}
    - {"type": "error", "message", "retryable"}
    - {"type": "busy", "message"}
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        gateway: Optional[ModelGateway] = None,
        sandbox: Optional[SandboxExecutor] = None,
        on_event: Optional[EventCallback] = None,
        saver: Optional[DebouncedSaver] = None,
        prototype_id: Optional[str] = None,
        paper_hash: Optional[str] = None,
        max_fix_attempts: Optional[int] = None,
        fix_delay: Optional[float] = None,
        thinking_timeout: Optional[float] = None,
        render_timeout: Optional[float] = None,
    ):
        """
        Initialize the PrototypeAgent.

        Args:
            session_id: Unique session identifier for logging context
            gateway: Model Gateway (defaults to AnthropicGateway)
            sandbox: Sandbox Executor (defaults to the SANDBOX_MODE executor)
            on_event: Callback for UI events, sync or async
            saver: Debounced persistence for the session's PrototypeRecord
            prototype_id: Persistence key; saving is disabled without one
            paper_hash: Content hash of the source paper, stored on the record
        """
        settings = get_settings()

        self.session_id = session_id or "unknown"
        self.on_event = on_event
        self.saver = saver
        self.prototype_id = prototype_id
        self.paper_hash = paper_hash

        self.fix_delay = settings.fix_delay if fix_delay is None else fix_delay
        self.thinking_timeout = settings.thinking_timeout if thinking_timeout is None else thinking_timeout
        self.render_timeout = settings.render_timeout if render_timeout is None else render_timeout

        self.gateway: ModelGateway = gateway or AnthropicGateway(session_id=self.session_id)
        self.sandbox: SandboxExecutor = sandbox or create_sandbox_executor(
            session_id=self.session_id, send=self._emit
        )
        self.sandbox.subscribe(self.on_sandbox_report)

        # Session-scoped loop state
        self.status = LoopStatus.IDLE
        self.conversation = ConversationState()
        self.artifact = PrototypeArtifact()
        self.retry = RetryState(
            max_attempts=settings.max_fix_attempts if max_fix_attempts is None else max_fix_attempts
        )
        self.streaming_text = ""
        self.max_retries_reached = False
        self.last_error: Optional[str] = None
        self.pending_version: Optional[int] = None
        self.paper_context: Optional[str] = None

        # Last loaded record; saves update it so API-owned fields survive
        self._record: Optional[PrototypeRecord] = None

        self._pending_call_id: Optional[str] = None
        self._pending_fix_result: Optional[ToolResult] = None
        self._fix_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._turn_lock = asyncio.Lock()
        self._closed = False

        self.slogger = get_session_logger(self.session_id)
        self.slogger.log_agent("INIT", f"PrototypeAgent created (sandbox={self.sandbox.mode})")

        logger.info(f"[{self.session_id}] PrototypeAgent created")

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def is_busy(self) -> bool:
        return self._turn_lock.locked() or self.status != LoopStatus.IDLE

    @property
    def display_status(self) -> str:
        if self.max_retries_reached:
            return "max_retries_reached"
        if self.status in (LoopStatus.THINKING, LoopStatus.STREAMING):
            return "thinking"
        if self.status == LoopStatus.EXECUTING:
            return "rendering"
        return "ready"

    def snapshot(self) -> dict:
        """UI-facing view of the whole session state."""
        return {
            "session_id": self.session_id,
            "prototype_id": self.prototype_id,
            "paper_hash": self.paper_hash,
            "has_paper_context": self.paper_context is not None,
            "status": self.status.value,
            "display_status": self.display_status,
            "messages": self.conversation.to_list(),
            "streaming_text": self.streaming_text,
            "artifact": {
                "code": self.artifact.code,
                "version": self.artifact.version,
                "title": self.artifact.title,
            },
            "retry": {
                "attempt_count": self.retry.attempt_count,
                "max_attempts": self.retry.max_attempts,
                "is_fixing": self.retry.is_fixing,
            },
            "max_retries_reached": self.max_retries_reached,
            "last_error": self.last_error,
        }

    def to_record(self) -> Optional[PrototypeRecord]:
        if not self.prototype_id:
            return None
        changes = {
            "paper_hash": self.paper_hash,
            "title": self.artifact.title or "Untitled Prototype",
            "code": self.artifact.code,
            "history": self.conversation.to_list(),
        }
        if self._record is not None and self._record.id == self.prototype_id:
            return self._record.model_copy(update=changes)
        return PrototypeRecord(id=self.prototype_id, **changes)

    def restore(self, record: PrototypeRecord) -> None:
        """Load a saved prototype into an idle agent."""
        if self.is_busy:
            raise RuntimeError("Cannot restore while a turn is in progress")

        try:
            conversation = ConversationState.from_list(record.history)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[{self.session_id}] Saved history for '{record.id}' is unreadable, starting fresh: {e}")
            conversation = ConversationState()

        self.conversation = conversation
        self._record = record
        self.prototype_id = record.id
        self.paper_hash = record.paper_hash or self.paper_hash
        self.artifact = PrototypeArtifact(
            code=record.code,
            version=1 if record.code else 0,
            title=record.title,
        )
        self.retry.reset()
        self.max_retries_reached = False
        self.last_error = None
        self.pending_version = None

        self.slogger.log_agent(
            "RESTORE", f"prototype_id={record.id}, messages={len(self.conversation)}"
        )
        logger.info(f"[{self.session_id}] Restored prototype '{record.id}' ({len(self.conversation)} messages)")

    def attach_paper(self, analysis: AnalysisRecord) -> None:
        """Open every transcript with the source paper's text and analysis."""
        self.paper_hash = analysis.hash
        self.paper_context = build_paper_context(analysis.raw_text, analysis.analysis, analysis.filename)
        self.slogger.log_agent(
            "PAPER_CONTEXT", f"hash={analysis.hash[:12]}, context_len={len(self.paper_context)}"
        )
        logger.info(f"[{self.session_id}] Attached paper {analysis.hash[:12]} to the conversation")

    # =========================================================================
    # Event plumbing
    # =========================================================================

    async def _emit(self, event: dict) -> None:
        if self._closed or not self.on_event:
            return
        result = self.on_event(event)
        if inspect.isawaitable(result):
            await result

    async def _set_status(self, status: LoopStatus) -> None:
        if status == self.status:
            return
        self.slogger.log_agent("STATUS", f"{self.status.value} -> {status.value}")
        self.status = status
        await self._emit({
            "type": "status",
            "status": status.value,
            "display_status": self.display_status,
        })

    async def _append(self, message: Message) -> None:
        self.conversation.append(message)
        await self._emit({"type": "message", "message": message.to_dict()})

    def _schedule_save(self) -> None:
        record = self.to_record()
        if self.saver and record:
            self.saver.schedule(record)

    # =========================================================================
    # Turns
    # =========================================================================

    async def submit_turn(
        self,
        user_text: Optional[str] = None,
        tool_result: Optional[ToolResult] = None,
    ) -> bool:
        """
        Run one request/response cycle with the Model Gateway.

        Returns False (and emits "busy") when another turn is in flight or
        a render is still pending.
        """
        if self._closed:
            logger.warning(f"[{self.session_id}] submit_turn() called after cleanup")
            return False

        if self.is_busy:
            logger.warning(f"[{self.session_id}] Turn already in progress, rejecting submit")
            self.slogger.log_agent("BUSY", f"status={self.status.value}")
            await self._emit({
                "type": "busy",
                "message": "Please wait for the current response to complete",
            })
            return False

        async with self._turn_lock:
            await self._turn(user_text, tool_result)
        return True

    async def _turn(self, user_text: Optional[str], tool_result: Optional[ToolResult]) -> None:
        """Turn body; the caller holds _turn_lock."""
        self._turn_task = asyncio.current_task()

        if user_text is not None:
            await self._begin_user_turn()
            await self._append(Message.user(user_text))

        if tool_result is not None:
            await self._append(Message.for_tool_result(tool_result))

        self._schedule_save()

        self.streaming_text = ""
        accepted_call: Optional[ToolCallEvent] = None
        error_event: Optional[ErrorEvent] = None
        finalized = False

        await self._set_status(LoopStatus.THINKING)
        transcript = self.conversation.to_transcript(context=self.paper_context)
        self.slogger.log_agent("TURN_START", f"messages={len(self.conversation)}, transcript={len(transcript)}")

        try:
            lines = self.gateway.stream(transcript)
            try:
                async with asyncio.timeout(self.thinking_timeout):
                    async for event in decode_stream(lines):
                        if isinstance(event, TextEvent):
                            if accepted_call is not None:
                                continue
                            self.streaming_text += event.content
                            if self.status == LoopStatus.THINKING:
                                await self._set_status(LoopStatus.STREAMING)
                            await self._emit({"type": "text", "content": event.content})

                        elif isinstance(event, ToolCallEvent):
                            if event.name != RENDER_PROTOTYPE:
                                logger.warning(f"[{self.session_id}] Ignoring unknown tool call '{event.name}'")
                                continue
                            accepted_call = event
                            await self._set_status(LoopStatus.EXECUTING)

                        elif isinstance(event, ErrorEvent):
                            error_event = event
            except TimeoutError:
                logger.error(f"[{self.session_id}] Model response timed out after {self.thinking_timeout}s")
                if accepted_call is None:
                    error_event = ErrorEvent(
                        message=f"Model response timed out after {self.thinking_timeout:g} seconds",
                        retryable=True,
                    )
            except Exception as e:
                logger.error(f"[{self.session_id}] Model stream failed: {e}", exc_info=True)
                if accepted_call is None:
                    error_event = ErrorEvent(message=f"Model gateway error: {e}")
            finally:
                aclose = getattr(lines, "aclose", None)
                if aclose is not None:
                    await aclose()

            if accepted_call is not None:
                finalized = True
                await self._accept_tool_call(accepted_call)
            elif error_event is not None:
                finalized = True
                await self._fail_turn(error_event)
            else:
                finalized = True
                await self._finish_plain_turn()

        finally:
            self._turn_task = None
            if not finalized:
                # Cancelled mid-stream: drop the partial text, no dangling message
                self.streaming_text = ""
                self.retry.is_fixing = False
                if self.status != LoopStatus.IDLE:
                    self.status = LoopStatus.IDLE
                self.slogger.log_agent("TURN_ABORTED", "turn cancelled before completion")

    async def _begin_user_turn(self) -> None:
        """A user message resets retry bookkeeping and pre-empts a scheduled repair."""
        if self._fix_task and not self._fix_task.done():
            self._fix_task.cancel()
            logger.info(f"[{self.session_id}] User message pre-empted scheduled repair")
        self._fix_task = None

        if self._pending_fix_result is not None:
            await self._append(Message.for_tool_result(self._pending_fix_result))
            self._pending_fix_result = None

        if self.retry.attempt_count or self.retry.is_fixing:
            self.slogger.log_agent(
                "RETRY_RESET", f"user message (attempt_count={self.retry.attempt_count})"
            )
        self.retry.reset()
        self.max_retries_reached = False
        self.last_error = None

    async def _finish_plain_turn(self) -> None:
        text = self.streaming_text
        self.streaming_text = ""
        if text:
            await self._append(Message.assistant(text))
        self.retry.is_fixing = False
        self._schedule_save()
        self.slogger.log_agent("TURN_END", f"text_len={len(text)}, tool_call=None")
        await self._set_status(LoopStatus.IDLE)

    async def _fail_turn(self, error: ErrorEvent) -> None:
        text = self.streaming_text
        self.streaming_text = ""
        content = f"{text}\n\nError: {error.message}" if text else f"Error: {error.message}"
        await self._append(Message.assistant(content))
        self.retry.is_fixing = False
        self._schedule_save()

        self.slogger.log_error("AGENT", f"model gateway error: {error.message}")
        await self._emit({"type": "error", "message": error.message, "retryable": error.retryable})
        await self._set_status(LoopStatus.IDLE)

    async def _accept_tool_call(self, event: ToolCallEvent) -> None:
        raw_code = event.args.get("code")
        code = strip_code_fences(raw_code if isinstance(raw_code, str) else "")
        title = event.args.get("title")
        title = title if isinstance(title, str) and title.strip() else None

        arguments = dict(event.args)
        arguments["code"] = code
        call = ToolCall(name=event.name, arguments=arguments, id=event.id or new_tool_call_id())

        text = self.streaming_text
        self.streaming_text = ""
        await self._append(Message.assistant(text, tool_call=call))

        version = self.artifact.version + 1
        self.artifact = PrototypeArtifact(code=code, version=version, title=title or self.artifact.title)
        self.pending_version = version
        self._pending_call_id = call.id
        self.retry.is_fixing = False

        self.slogger.log_tool_call(call.id, call.name, arguments, version)
        self._schedule_save()

        if self.status != LoopStatus.EXECUTING:
            await self._set_status(LoopStatus.EXECUTING)

        if not code.strip():
            await self.on_sandbox_report(
                SandboxReport(version=version, outcome=RenderOutcome.failed(EMPTY_CODE_ERROR))
            )
            return

        if not isinstance(self.sandbox, BrowserSandboxExecutor):
            await self._emit({
                "type": "render_prototype",
                "code": code,
                "version": version,
                "title": self.artifact.title,
            })

        self._start_watchdog(version)

        try:
            await self.sandbox.render(code, version, self.artifact.title)
        except SandboxError as e:
            logger.error(f"[{self.session_id}] Sandbox rejected version {version}: {e}")
            await self.on_sandbox_report(SandboxReport(
                version=version, outcome=RenderOutcome.failed(str(e)), infrastructure=True
            ))

    # =========================================================================
    # Sandbox outcomes
    # =========================================================================

    async def receive_sandbox_frame(self, frame: dict) -> bool:
        """Route a RENDER_SUCCESS / RENDER_ERROR frame from the client."""
        if isinstance(self.sandbox, BrowserSandboxExecutor):
            return await self.sandbox.receive(frame)

        default_version = self.pending_version or self.artifact.version
        report = parse_sandbox_message(frame, default_version)
        if report is None:
            return False
        await self.on_sandbox_report(report)
        return True

    async def on_sandbox_report(self, report: SandboxReport) -> None:
        """Act on the sandbox outcome for the pending code version."""
        if self._closed:
            return

        if self.pending_version is None or report.version != self.pending_version:
            logger.info(
                f"[{self.session_id}] Ignoring stale render report for version {report.version} "
                f"(pending={self.pending_version})"
            )
            self.slogger.log_sandbox("STALE", f"version={report.version}, pending={self.pending_version}")
            return

        outcome = report.outcome

        if not outcome.success and self.retry.is_fixing:
            logger.info(f"[{self.session_id}] Ignoring duplicate render error (repair already scheduled)")
            return

        self._cancel_watchdog()
        self.pending_version = None
        call_id = self._pending_call_id
        self._pending_call_id = None

        self.slogger.log_render_outcome(report.version, outcome.success, outcome.error)
        await self._emit({
            "type": "render_result",
            "version": report.version,
            "success": outcome.success,
            "error": outcome.error,
        })

        if not outcome.success and report.infrastructure:
            # Sandbox failure, not a code error: no repair turn
            logger.warning(f"[{self.session_id}] Sandbox unavailable for version {report.version}: {outcome.error}")
            await self._abandon_render(call_id, f"Sandbox unavailable: {outcome.error}")
            return

        if outcome.success:
            self.retry.reset()
            self.max_retries_reached = False
            self.last_error = None
            await self._append(Message.for_tool_result(
                ToolResult(name=RENDER_PROTOTYPE, outcome=outcome, tool_call_id=call_id)
            ))
            self._schedule_save()
            await self._set_status(LoopStatus.IDLE)
            return

        self.last_error = outcome.error
        result = ToolResult(name=RENDER_PROTOTYPE, outcome=outcome, tool_call_id=call_id)

        if self.retry.exhausted:
            await self._append(Message.for_tool_result(result))
            self.max_retries_reached = True
            self._schedule_save()
            self.slogger.log_agent("MAX_RETRIES", f"attempts={self.retry.attempt_count}")
            logger.warning(f"[{self.session_id}] Max repair attempts reached ({self.retry.attempt_count})")
            await self._set_status(LoopStatus.IDLE)
            await self._emit({
                "type": "max_retries",
                "attempts": self.retry.attempt_count,
                "error": outcome.error,
            })
            # max_retries_reached changes display_status even when status is unchanged
            await self._emit({
                "type": "status",
                "status": self.status.value,
                "display_status": self.display_status,
            })
            return

        self.retry.is_fixing = True
        self.retry.attempt_count += 1
        self._pending_fix_result = result

        self.slogger.log_agent(
            "FIX_SCHEDULED", f"attempt={self.retry.attempt_count}/{self.retry.max_attempts}"
        )
        await self._set_status(LoopStatus.IDLE)
        await self._emit({
            "type": "fix_scheduled",
            "attempt": self.retry.attempt_count,
            "max_attempts": self.retry.max_attempts,
            "error": outcome.error,
        })
        self._fix_task = asyncio.create_task(self._run_fix())

    async def _run_fix(self) -> None:
        """Automatic repair turn, after the fix delay."""
        await asyncio.sleep(self.fix_delay)
        async with self._turn_lock:
            if self._closed:
                return
            self._fix_task = None
            result, self._pending_fix_result = self._pending_fix_result, None
            if result is None:
                return
            try:
                await self._turn(None, result)
            except Exception as e:
                logger.error(f"[{self.session_id}] Repair turn failed: {e}", exc_info=True)
                self.slogger.log_error("AGENT", f"repair turn failed: {e}")
                self.retry.is_fixing = False
                self.status = LoopStatus.IDLE
                await self._emit({"type": "error", "message": f"Repair failed: {e}", "retryable": True})

    def _start_watchdog(self, version: int) -> None:
        self._cancel_watchdog()
        if self.render_timeout and self.render_timeout > 0:
            self._watchdog_task = asyncio.create_task(self._render_watchdog(version))

    def _cancel_watchdog(self) -> None:
        task = self._watchdog_task
        self._watchdog_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _render_watchdog(self, version: int) -> None:
        await asyncio.sleep(self.render_timeout)
        if self._closed or self.pending_version != version:
            return

        self._watchdog_task = None
        message = f"Render did not report back within {self.render_timeout:g} seconds."
        logger.warning(f"[{self.session_id}] {message} (version={version})")
        self.slogger.log_sandbox("TIMEOUT", f"version={version}")

        call_id = self._pending_call_id
        self.pending_version = None
        self._pending_call_id = None
        await self._abandon_render(call_id, message)

    async def _abandon_render(self, call_id: Optional[str], message: str) -> None:
        """Close out a render that produced no verdict on the code itself."""
        self.last_error = message
        await self._append(Message.for_tool_result(ToolResult(
            name=RENDER_PROTOTYPE, outcome=RenderOutcome.failed(message), tool_call_id=call_id
        )))
        self._schedule_save()
        await self._set_status(LoopStatus.IDLE)
        await self._emit({"type": "error", "message": message, "retryable": True})

    # =========================================================================
    # User affordances
    # =========================================================================

    async def manual_retry(self) -> bool:
        """Re-submit the last render error, bypassing the retry ceiling once."""
        if self.last_error is None:
            await self._emit({"type": "error", "message": "There is no render error to retry"})
            return False

        if self.is_busy:
            await self._emit({
                "type": "busy",
                "message": "Please wait for the current response to complete",
            })
            return False

        self.slogger.log_agent("MANUAL_RETRY", f"error={self.last_error[:100]}")
        logger.info(f"[{self.session_id}] Manual retry requested")

        self.retry.reset()
        self.retry.is_fixing = True
        self.max_retries_reached = False

        # A repair still waiting out its delay is replaced by this retry
        if self._fix_task and not self._fix_task.done():
            self._fix_task.cancel()
        self._fix_task = None
        tool_result, self._pending_fix_result = self._pending_fix_result, None

        if tool_result is None:
            last = self.conversation.last
            if last is None or last.role is not Role.TOOL_RESULT:
                tool_result = ToolResult(name=RENDER_PROTOTYPE, outcome=RenderOutcome.failed(self.last_error))

        async with self._turn_lock:
            await self._turn(None, tool_result)
        return True

    async def dismiss_error(self) -> None:
        self.last_error = None
        self.max_retries_reached = False
        await self._emit({
            "type": "status",
            "status": self.status.value,
            "display_status": self.display_status,
        })

    # =========================================================================
    # Teardown
    # =========================================================================

    async def cleanup(self) -> None:
        """
        Abort in-flight work and release resources.

        Safe to call more than once. No sandbox report is acted on afterwards.
        """
        if self._closed:
            return
        logger.info(f"[{self.session_id}] Cleaning up agent resources...")
        self._closed = True
        self.sandbox.unsubscribe()

        current = asyncio.current_task()
        tasks = [
            t for t in (self._fix_task, self._watchdog_task, self._turn_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._fix_task = None
        self._watchdog_task = None
        self._turn_task = None
        self.pending_version = None
        self.streaming_text = ""
        self.status = LoopStatus.IDLE

        try:
            await self.sandbox.destroy()
        except SandboxError as e:
            logger.warning(f"[{self.session_id}] Error destroying sandbox: {e}")

        if self.saver:
            await self.saver.flush()

        self.slogger.log_agent("CLEANUP", "agent closed")
        logger.info(f"[{self.session_id}] Agent cleanup completed")
