"""
E2B Sandbox Executor for render checks in an isolated microVM.

The sandbox is created lazily from the renderer template on the first
render and reused for the rest of the session. Each version is compiled
and then run through the render harness; the template preinstalls react,
react-dom and esbuild under /home/user/app/node_modules.

Note: E2B SDK is synchronous, so we use asyncio.to_thread() to run
blocking operations without blocking the event loop.
"""

import asyncio
import logging
from typing import Optional

from e2b import CommandExitException
from e2b_code_interpreter import Sandbox

from .conversation import RenderOutcome
from .render_check import (
    COMPILE_STAGE,
    ENTRY_FILE,
    HARNESS_FILE,
    RENDER_HARNESS,
    RUN_STAGE,
    stage_outcome,
)
from .sandbox_executor import (
    SandboxError,
    SandboxExecutionError,
    SandboxInitializationError,
    TaskSandboxExecutor,
)

logger = logging.getLogger(__name__)

RENDERS_DIR = "/home/user/app/renders"


class E2BSandboxExecutor(TaskSandboxExecutor):
    """Compiles and runs the render check inside an E2B sandbox."""

    mode = "e2b"

    def __init__(
        self,
        session_id: Optional[str] = None,
        template: Optional[str] = None,
        command: Optional[str] = None,
        run_command: Optional[str] = None,
        timeout: float = 60.0,
        sandbox_timeout_seconds: int = 1800,
    ):
        super().__init__(session_id, timeout=timeout)
        if template is None or command is None or run_command is None:
            from .config import get_settings
            settings = get_settings()
            template = template or settings.e2b_template
            command = command or settings.local_render_command
            run_command = run_command or settings.local_run_command
        self._template: str = template
        self._command: str = command
        self._run_command: str = run_command
        self._sandbox_timeout: int = sandbox_timeout_seconds
        self._sandbox: Optional[Sandbox] = None
        self._init_lock = asyncio.Lock()

        logger.info(
            f"[{self._session_id}] E2BSandboxExecutor initialized with template='{template}', "
            f"timeout={timeout}s"
        )

    def _create_sandbox_sync(self) -> Sandbox:
        """Synchronous sandbox creation."""
        logger.info(
            f"[{self._session_id}] Calling Sandbox.create(template='{self._template}', "
            f"timeout={self._sandbox_timeout})"
        )
        sandbox = Sandbox.create(template=self._template, timeout=self._sandbox_timeout)
        logger.info(f"[{self._session_id}] Sandbox created: {sandbox.sandbox_id}")
        return sandbox

    async def ensure_sandbox(self) -> Sandbox:
        """Ensure sandbox is created and return it (lazy initialization)."""
        async with self._init_lock:
            if self._sandbox is not None:
                return self._sandbox
            try:
                self._sandbox = await asyncio.to_thread(self._create_sandbox_sync)
            except Exception as e:
                error_msg = (
                    f"[{self._session_id}] Failed to create sandbox with template "
                    f"'{self._template}': {e}"
                )
                logger.error(error_msg, exc_info=True)
                raise SandboxInitializationError(error_msg) from e
            return self._sandbox

    async def _execute(self, code: str, version: int) -> RenderOutcome:
        sandbox = await self.ensure_sandbox()
        work_dir = f"{RENDERS_DIR}/v{version}"

        try:
            await asyncio.to_thread(sandbox.files.write, f"{work_dir}/{ENTRY_FILE}", code)
            await asyncio.to_thread(sandbox.files.write, f"{work_dir}/{HARNESS_FILE}", RENDER_HARNESS)
        except Exception as e:
            raise SandboxExecutionError(f"Failed to write render input: {e}") from e

        logger.info(f"[{self._session_id}] Checking version {version} in {work_dir}")

        for stage, command in ((COMPILE_STAGE, self._command), (RUN_STAGE, self._run_command)):
            try:
                result = await asyncio.to_thread(
                    sandbox.commands.run,
                    f"cd {work_dir} && {command}",
                    timeout=self._timeout,
                )
                exit_code, stderr, stdout = result.exit_code, result.stderr, result.stdout
            except CommandExitException as e:
                exit_code, stderr, stdout = e.exit_code, e.stderr, e.stdout
            except Exception as e:
                raise SandboxExecutionError(f"Render {stage} command failed to run: {e}") from e

            outcome = stage_outcome(stage, exit_code, stderr, stdout)
            if outcome is not None:
                logger.warning(
                    f"[{self._session_id}] Render of version {version} failed at {stage} "
                    f"(exit_code={exit_code})"
                )
                return outcome

        logger.info(f"[{self._session_id}] Render of version {version} succeeded")
        return RenderOutcome.ok()

    @property
    def sandbox_id(self) -> Optional[str]:
        return self._sandbox.sandbox_id if self._sandbox else None

    async def destroy(self) -> None:
        """Destroy the sandbox and cleanup resources."""
        await super().destroy()
        if self._sandbox is None:
            return

        try:
            logger.info(f"[{self._session_id}] Destroying sandbox with ID: {self._sandbox.sandbox_id}")
            await asyncio.to_thread(self._sandbox.kill)
            logger.info(f"[{self._session_id}] Sandbox destroyed successfully")
        except Exception as e:
            error_msg = f"[{self._session_id}] Failed to destroy sandbox: {e}"
            logger.error(error_msg, exc_info=True)
            raise SandboxError(error_msg) from e
        finally:
            self._sandbox = None
