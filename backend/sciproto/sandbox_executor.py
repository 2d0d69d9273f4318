"""
Sandbox Executor contract for rendering generated prototype code.

An executor receives (code, version) pairs, runs them in an isolated
context and reports exactly one outcome per version through a subscribed
callback. Executors never share memory with the generated program: the
browser executor talks to an iframe over the session WebSocket, the local
executor compiles and runs the code in subprocesses and the E2B executor
does the same in a remote microVM.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .conversation import RenderOutcome
from .logging_config import get_session_logger

logger = logging.getLogger(__name__)

RENDER_SUCCESS = "RENDER_SUCCESS"
RENDER_ERROR = "RENDER_ERROR"


class SandboxError(Exception):
    """Base exception for sandbox-related errors."""
    pass


class SandboxInitializationError(SandboxError):
    """Raised when the sandbox could not be created."""
    pass


class SandboxExecutionError(SandboxError):
    """Raised when running a render inside the sandbox fails."""
    pass


class SandboxUnavailableError(SandboxError):
    """Raised when the render toolchain itself is missing or unreachable."""
    pass


@dataclass(frozen=True)
class SandboxReport:
    """
    Outcome for one code version.

    infrastructure marks failures of the sandbox rather than of the code
    (toolchain missing, registry unreachable, VM not created); those never
    start a repair turn.
    """
    version: int
    outcome: RenderOutcome
    infrastructure: bool = False


ReportCallback = Callable[[SandboxReport], Union[None, Awaitable[None]]]
SendFunc = Callable[[dict], Awaitable[Any]]


def parse_sandbox_message(frame: dict, default_version: int) -> Optional[SandboxReport]:
    """
    Map an outcome-channel frame onto a SandboxReport.

    Frames without a version are attributed to default_version (the
    currently pending render). Returns None for any other frame type.
    """
    if not isinstance(frame, dict):
        return None

    frame_type = frame.get("type")
    if frame_type not in (RENDER_SUCCESS, RENDER_ERROR):
        return None

    version = frame.get("version")
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        try:
            version = int(version)
        except (TypeError, ValueError):
            version = default_version
    version = int(version)

    if frame_type == RENDER_SUCCESS:
        return SandboxReport(version=version, outcome=RenderOutcome.ok())

    message = frame.get("message") or frame.get("error") or "Unknown render error"
    return SandboxReport(version=version, outcome=RenderOutcome.failed(str(message)))


class SandboxExecutor:
    """
    Base executor: subscription handling and report delivery.

    Subclasses implement _start_render(); render() itself never blocks on
    the outcome.
    """

    mode = "base"

    def __init__(self, session_id: Optional[str] = None):
        self._session_id: str = session_id or "unknown"
        self._callback: Optional[ReportCallback] = None
        self._destroyed: bool = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def subscribe(self, callback: ReportCallback) -> None:
        self._callback = callback

    def unsubscribe(self) -> None:
        self._callback = None

    async def render(self, code: str, version: int, title: Optional[str] = None) -> None:
        """Dispatch code for rendering; the outcome arrives via the callback."""
        if self._destroyed:
            raise SandboxError(f"[{self._session_id}] Sandbox executor already destroyed")

        get_session_logger(self._session_id).log_sandbox(
            "RENDER", f"mode={self.mode}, version={version}, code_len={len(code)}"
        )
        await self._start_render(code, version, title)

    async def _start_render(self, code: str, version: int, title: Optional[str]) -> None:
        raise NotImplementedError

    async def _report(self, report: SandboxReport) -> None:
        """Deliver a report to the subscriber, unless unsubscribed or destroyed."""
        callback = self._callback
        if callback is None or self._destroyed:
            logger.debug(
                f"[{self._session_id}] Dropping sandbox report for version {report.version} "
                "(no subscriber)"
            )
            return

        result = callback(report)
        if inspect.isawaitable(result):
            await result

    async def destroy(self) -> None:
        self.unsubscribe()
        self._destroyed = True


class BrowserSandboxExecutor(SandboxExecutor):
    """
    Renders inside the client's sandboxed iframe.

    The code is shipped as a render_prototype frame over the session
    WebSocket; the client posts RENDER_SUCCESS / RENDER_ERROR frames back,
    which the connection manager routes to receive().
    """

    mode = "browser"

    def __init__(self, session_id: Optional[str] = None, send: Optional[SendFunc] = None):
        super().__init__(session_id)
        self._send = send
        self._pending_version: int = 0

    async def _start_render(self, code: str, version: int, title: Optional[str]) -> None:
        self._pending_version = version
        if self._send is None:
            raise SandboxExecutionError(f"[{self._session_id}] No client connection to render in")

        await self._send({
            "type": "render_prototype",
            "code": code,
            "version": version,
            "title": title,
        })

    async def receive(self, frame: dict) -> bool:
        """Route an outcome frame from the client. Returns True if it was one."""
        report = parse_sandbox_message(frame, self._pending_version)
        if report is None:
            return False
        await self._report(report)
        return True


class TaskSandboxExecutor(SandboxExecutor):
    """
    Base for executors that run the render themselves in a background task.

    A newer render cancels the in-flight older one.
    """

    def __init__(self, session_id: Optional[str] = None, timeout: float = 60.0):
        super().__init__(session_id)
        self._timeout = timeout
        self._task: Optional[asyncio.Task] = None

    async def _start_render(self, code: str, version: int, title: Optional[str]) -> None:
        if self._task and not self._task.done():
            logger.info(f"[{self._session_id}] Superseding in-flight render with version {version}")
            self._task.cancel()
        self._task = asyncio.create_task(self._run_and_report(code, version))

    async def _run_and_report(self, code: str, version: int) -> None:
        try:
            outcome = await self._execute(code, version)
        except asyncio.CancelledError:
            raise
        except SandboxError as e:
            logger.error(f"[{self._session_id}] Render of version {version} could not run: {e}")
            await self._report(SandboxReport(
                version=version, outcome=RenderOutcome.failed(str(e)), infrastructure=True
            ))
            return
        except Exception as e:
            logger.error(f"[{self._session_id}] Unexpected render failure: {e}", exc_info=True)
            await self._report(SandboxReport(
                version=version, outcome=RenderOutcome.failed(f"Sandbox failure: {e}"), infrastructure=True
            ))
            return

        await self._report(SandboxReport(version=version, outcome=outcome))

    async def _execute(self, code: str, version: int) -> RenderOutcome:
        raise NotImplementedError

    async def wait_idle(self) -> None:
        """Wait for the in-flight render (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def destroy(self) -> None:
        await super().destroy()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


# Shell exit codes for "cannot execute" / "command not found"
SHELL_MISSING_EXIT_CODES = (126, 127)

# npm/npx output when a package cannot be fetched
_TOOLCHAIN_OUTPUT_RE = re.compile(
    r"npm (?:error|ERR!)|E(?:NOTFOUND|AI_AGAIN|CONNREFUSED|CONNRESET|TIMEDOUT)\b|"
    r"command not found|npx: not found|node: not found",
    re.IGNORECASE,
)


def is_toolchain_failure(exit_code: Optional[int], stderr: Optional[str], stdout: Optional[str]) -> bool:
    """True when a failed compile command failed for lack of its toolchain."""
    if exit_code in SHELL_MISSING_EXIT_CODES:
        return True
    return bool(_TOOLCHAIN_OUTPUT_RE.search(f"{stderr or ''}\n{stdout or ''}"))


def format_command_error(stderr: Optional[str], stdout: Optional[str], exit_code: Optional[int]) -> str:
    """Build the error text reported for a failed compile command."""
    text = (stderr or "").strip() or (stdout or "").strip()
    if not text:
        text = f"Render command exited with code {exit_code}"
    if len(text) > 4000:
        text = text[:4000] + "\n... (truncated)"
    return text
