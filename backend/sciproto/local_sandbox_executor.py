"""
Local Sandbox Executor for subprocess-based render checks.

Each code version is written into its own work directory together with
the render harness. The compile command (esbuild by default) and then the
run command (node + the harness) execute there in child processes with a
scrubbed environment. Used for development and for headless sessions
where no browser iframe is available.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple

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
    SandboxExecutionError,
    SandboxInitializationError,
    SandboxUnavailableError,
    TaskSandboxExecutor,
)

logger = logging.getLogger(__name__)

# Environment variables passed through to the render commands
PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "NODE_PATH", "SYSTEMROOT")


def scrubbed_env() -> Dict[str, str]:
    """Minimal environment for untrusted renders (no API keys)."""
    return {key: os.environ[key] for key in PASSTHROUGH_ENV if key in os.environ}


class LocalSandboxExecutor(TaskSandboxExecutor):
    """Compiles and runs each code version in local subprocesses."""

    mode = "local"

    def __init__(
        self,
        session_id: Optional[str] = None,
        command: Optional[str] = None,
        run_command: Optional[str] = None,
        timeout: float = 60.0,
        base_dir: Optional[Path] = None,
    ):
        super().__init__(session_id, timeout=timeout)
        if command is None or run_command is None:
            from .config import get_settings
            settings = get_settings()
            command = command or settings.local_render_command
            run_command = run_command or settings.local_run_command
        self._command: str = command
        self._run_command: str = run_command
        self._base_dir: Path = base_dir or Path(tempfile.gettempdir()) / "sciproto-renders"
        self._session_dir: Optional[Path] = None

        logger.info(
            f"[{self._session_id}] LocalSandboxExecutor initialized with command='{command[:60]}', "
            f"run_command='{run_command[:60]}', timeout={timeout}s"
        )

    def _ensure_session_dir(self) -> Path:
        """Create the per-session work directory (lazy initialization)."""
        if self._session_dir is not None:
            return self._session_dir
        try:
            session_dir = self._base_dir / self._session_id
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            error_msg = f"[{self._session_id}] Failed to create local render directory: {e}"
            logger.error(error_msg, exc_info=True)
            raise SandboxInitializationError(error_msg) from e
        self._session_dir = session_dir
        return session_dir

    def _write_inputs(self, work_dir: Path, code: str) -> None:
        work_dir.mkdir(parents=True, exist_ok=True)
        (work_dir / ENTRY_FILE).write_text(code, encoding="utf-8")
        (work_dir / HARNESS_FILE).write_text(RENDER_HARNESS, encoding="utf-8")

    async def _execute(self, code: str, version: int) -> RenderOutcome:
        work_dir = self._ensure_session_dir() / f"v{version}"
        try:
            await asyncio.to_thread(self._write_inputs, work_dir, code)
        except OSError as e:
            raise SandboxExecutionError(f"Failed to write render input: {e}") from e

        logger.info(f"[{self._session_id}] Checking version {version} in {work_dir}")

        for stage, command in ((COMPILE_STAGE, self._command), (RUN_STAGE, self._run_command)):
            result = await self._run_stage(command, work_dir)
            if isinstance(result, RenderOutcome):
                return result

            exit_code, stdout, stderr = result
            outcome = stage_outcome(stage, exit_code, stderr, stdout)
            if outcome is not None:
                logger.warning(
                    f"[{self._session_id}] Render of version {version} failed at {stage} "
                    f"(exit_code={exit_code}, stderr={stderr[:100]})"
                )
                return outcome

        logger.info(f"[{self._session_id}] Render of version {version} succeeded")
        return RenderOutcome.ok()

    async def _run_stage(self, command: str, work_dir: Path):
        """Run one stage; returns (exit_code, stdout, stderr) or a timeout outcome."""
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(work_dir),
                env=scrubbed_env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SandboxUnavailableError(f"Could not start render command: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=self._timeout if self._timeout and self._timeout > 0 else None,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            return RenderOutcome.failed(f"Render timed out after {self._timeout} seconds")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        result: Tuple[Optional[int], str, str] = (process.returncode, stdout, stderr)
        return result

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def destroy(self, delete_files: bool = True) -> None:
        """Cancel the in-flight render and optionally delete the work directory."""
        await super().destroy()
        if delete_files and self._session_dir and self._session_dir.exists():
            logger.info(f"[{self._session_id}] Deleting render directory: {self._session_dir}")
            await asyncio.to_thread(shutil.rmtree, self._session_dir, ignore_errors=True)
        self._session_dir = None
