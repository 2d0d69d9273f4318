"""
Tests for sandbox executors and the outcome message channel.
"""

import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from sciproto.conversation import RenderOutcome
from sciproto.e2b_sandbox_executor import E2BSandboxExecutor
from sciproto.local_sandbox_executor import LocalSandboxExecutor, scrubbed_env
from sciproto.render_check import (
    COMPILE_STAGE,
    ENTRY_FILE,
    HARNESS_FILE,
    RENDER_HARNESS,
    RUN_STAGE,
    stage_outcome,
)
from sciproto.sandbox_executor import (
    BrowserSandboxExecutor,
    SandboxError,
    SandboxExecutionError,
    SandboxReport,
    SandboxUnavailableError,
    format_command_error,
    is_toolchain_failure,
    parse_sandbox_message,
)
from sciproto.sandbox_factory import create_sandbox_executor

# Stands in for esbuild: reads App.jsx, writes App.cjs
COMPILER = """
import sys, time
source = open("App.jsx", encoding="utf-8").read()
if "sleep" in source:
    time.sleep(5)
if "throw" in source:
    print("SyntaxError: Unexpected token (1:6)", file=sys.stderr)
    sys.exit(1)
if "offline" in source:
    print("npm ERR! code ENOTFOUND", file=sys.stderr)
    print("npm ERR! network request to https://registry.npmjs.org/esbuild failed", file=sys.stderr)
    sys.exit(1)
if "no-shell-tool" in source:
    sys.exit(127)
open("App.cjs", "w", encoding="utf-8").write(source)
"""

# Stands in for node + the harness: loads App.cjs and "renders" it
RUNNER = """
import sys
open("render-check.cjs", encoding="utf-8").read()
source = open("App.cjs", encoding="utf-8").read()
if "undefinedVar" in source:
    print("ReferenceError: undefinedVar is not defined", file=sys.stderr)
    sys.exit(1)
if "no-react" in source:
    print("Renderer setup failed: Cannot find module 'react'", file=sys.stderr)
    sys.exit(3)
"""


class TestParseSandboxMessage:
    """Test mapping of outcome frames onto reports."""

    def test_success(self):
        assert parse_sandbox_message({"type": "RENDER_SUCCESS", "version": 3}, 1) == SandboxReport(
            version=3, outcome=RenderOutcome.ok()
        )

    def test_error_with_message(self):
        report = parse_sandbox_message({"type": "RENDER_ERROR", "message": "ReferenceError: x"}, 2)
        assert report.version == 2
        assert report.outcome == RenderOutcome.failed("ReferenceError: x")

    def test_error_field_alias(self):
        report = parse_sandbox_message({"type": "RENDER_ERROR", "error": "boom", "version": "4"}, 1)
        assert report.version == 4
        assert report.outcome.error == "boom"

    def test_error_without_text(self):
        report = parse_sandbox_message({"type": "RENDER_ERROR"}, 1)
        assert report.outcome.success is False
        assert report.outcome.error

    def test_bad_version_uses_default(self):
        assert parse_sandbox_message({"type": "RENDER_SUCCESS", "version": "latest"}, 7).version == 7

    @pytest.mark.parametrize("frame", [{"type": "chat"}, {}, "RENDER_SUCCESS", None])
    def test_other_frames(self, frame):
        assert parse_sandbox_message(frame, 1) is None


class TestFormatCommandError:
    def test_prefers_stderr(self):
        assert format_command_error("bad", "noise", 1) == "bad"

    def test_falls_back_to_stdout(self):
        assert format_command_error("", "out", 1) == "out"

    def test_exit_code_only(self):
        assert "2" in format_command_error(None, None, 2)

    def test_truncates(self):
        assert len(format_command_error("x" * 10000, "", 1)) < 4100


class TestBrowserSandboxExecutor:
    """Test the iframe-backed executor."""

    @pytest.mark.asyncio
    async def test_render_sends_frame(self):
        send = AsyncMock()
        executor = BrowserSandboxExecutor(session_id="browser-test", send=send)

        await executor.render("code", 2, "Title")

        send.assert_awaited_once_with({"type": "render_prototype", "code": "code", "version": 2, "title": "Title"})

    @pytest.mark.asyncio
    async def test_receive_reports_pending_version(self):
        reports = []
        executor = BrowserSandboxExecutor(session_id="browser-test", send=AsyncMock())
        executor.subscribe(reports.append)

        await executor.render("code", 5)
        handled = await executor.receive({"type": "RENDER_ERROR", "message": "boom"})

        assert handled is True
        assert reports == [SandboxReport(version=5, outcome=RenderOutcome.failed("boom"))]

    @pytest.mark.asyncio
    async def test_async_subscriber(self):
        callback = AsyncMock()
        executor = BrowserSandboxExecutor(session_id="browser-test", send=AsyncMock())
        executor.subscribe(callback)

        await executor.receive({"type": "RENDER_SUCCESS", "version": 1})

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_reports_after_unsubscribe(self):
        reports = []
        executor = BrowserSandboxExecutor(session_id="browser-test", send=AsyncMock())
        executor.subscribe(reports.append)
        executor.unsubscribe()

        assert await executor.receive({"type": "RENDER_SUCCESS", "version": 1}) is True
        assert reports == []

    @pytest.mark.asyncio
    async def test_non_outcome_frame(self):
        executor = BrowserSandboxExecutor(session_id="browser-test", send=AsyncMock())
        assert await executor.receive({"type": "ping"}) is False

    @pytest.mark.asyncio
    async def test_render_without_connection(self):
        executor = BrowserSandboxExecutor(session_id="browser-test")
        with pytest.raises(SandboxExecutionError):
            await executor.render("code", 1)

    @pytest.mark.asyncio
    async def test_render_after_destroy(self):
        executor = BrowserSandboxExecutor(session_id="browser-test", send=AsyncMock())
        await executor.destroy()
        with pytest.raises(SandboxError):
            await executor.render("code", 1)


class TestToolchainFailure:
    def test_missing_command(self):
        assert is_toolchain_failure(127, "sh: npx: not found", "") is True
        assert is_toolchain_failure(126, "", "") is True

    def test_registry_unreachable(self):
        assert is_toolchain_failure(1, "npm ERR! code ENOTFOUND", "") is True
        assert is_toolchain_failure(1, "npm error getaddrinfo EAI_AGAIN registry.npmjs.org", "") is True

    def test_code_error_is_not_toolchain(self):
        assert is_toolchain_failure(1, 'App.jsx:3:4: ERROR: Expected ";" but found "x"', "") is False


class TestStageOutcome:
    """Test judging a finished compile or run stage."""

    def test_passed(self):
        assert stage_outcome(COMPILE_STAGE, 0, "", "") is None
        assert stage_outcome(RUN_STAGE, 0, "warning", "") is None

    def test_compile_error_is_code_failure(self):
        outcome = stage_outcome(COMPILE_STAGE, 1, "ERROR: Unexpected end of file", "")
        assert outcome == RenderOutcome.failed("ERROR: Unexpected end of file")

    def test_compile_toolchain_unavailable(self):
        with pytest.raises(SandboxUnavailableError, match="ENOTFOUND"):
            stage_outcome(COMPILE_STAGE, 1, "npm ERR! code ENOTFOUND", "")

    def test_runtime_throw_is_code_failure(self):
        outcome = stage_outcome(RUN_STAGE, 1, "ReferenceError: x is not defined", "")
        assert outcome.success is False
        assert "x is not defined" in outcome.error

    def test_missing_renderer_libraries(self):
        with pytest.raises(SandboxUnavailableError):
            stage_outcome(RUN_STAGE, 3, "Renderer setup failed", "")

    def test_missing_node(self):
        with pytest.raises(SandboxUnavailableError):
            stage_outcome(RUN_STAGE, 127, "sh: node: not found", "")

    def test_harness_hooks_async_failures(self):
        assert 'process.on("unhandledRejection", fail)' in RENDER_HARNESS
        assert 'process.on("uncaughtException", fail)' in RENDER_HARNESS
        assert "renderToString" in RENDER_HARNESS


class TestLocalSandboxExecutor:
    """Test subprocess-based renders with Python scripts as the compile and run commands."""

    @pytest.fixture
    def make_executor(self, tmp_path):
        compiler = tmp_path / "compile.py"
        compiler.write_text(COMPILER)
        runner = tmp_path / "run.py"
        runner.write_text(RUNNER)

        def factory(session_id="local-test", timeout=10):
            return LocalSandboxExecutor(
                session_id=session_id,
                command=f'"{sys.executable}" "{compiler}"',
                run_command=f'"{sys.executable}" "{runner}"',
                timeout=timeout,
                base_dir=tmp_path / "renders",
            )

        return factory

    @pytest.fixture
    def executor(self, make_executor):
        return make_executor()

    @pytest.fixture
    def reports(self, executor):
        received = []
        executor.subscribe(received.append)
        return received

    @pytest.mark.asyncio
    async def test_success(self, executor, reports, tmp_path):
        await executor.render("export default function App() {}", 1)
        await executor.wait_idle()

        assert reports == [SandboxReport(version=1, outcome=RenderOutcome.ok())]
        work_dir = tmp_path / "renders" / "local-test" / "v1"
        assert (work_dir / ENTRY_FILE).read_text() == "export default function App() {}"
        assert (work_dir / HARNESS_FILE).read_text() == RENDER_HARNESS
        assert (work_dir / "App.cjs").exists()
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_compile_error(self, executor, reports):
        await executor.render("throw new Error()", 1)
        await executor.wait_idle()

        assert reports[0].outcome.success is False
        assert reports[0].infrastructure is False
        assert "SyntaxError: Unexpected token" in reports[0].outcome.error
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_runtime_error(self, executor, reports):
        await executor.render("export default () => undefinedVar", 1)
        await executor.wait_idle()

        assert reports[0].outcome.success is False
        assert reports[0].infrastructure is False
        assert "ReferenceError: undefinedVar is not defined" in reports[0].outcome.error
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_registry_unreachable_is_infrastructure(self, executor, reports):
        await executor.render("offline", 1)
        await executor.wait_idle()

        assert reports[0].infrastructure is True
        assert "ENOTFOUND" in reports[0].outcome.error
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_missing_compiler_is_infrastructure(self, executor, reports):
        await executor.render("no-shell-tool", 1)
        await executor.wait_idle()

        assert reports[0].infrastructure is True
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_missing_renderer_is_infrastructure(self, executor, reports):
        await executor.render("no-react", 1)
        await executor.wait_idle()

        assert reports[0].infrastructure is True
        assert "Cannot find module 'react'" in reports[0].outcome.error
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_timeout(self, make_executor):
        executor = make_executor(session_id="local-timeout", timeout=0.3)
        reports = []
        executor.subscribe(reports.append)

        await executor.render("sleep", 1)
        await executor.wait_idle()

        assert reports[0].outcome.success is False
        assert reports[0].infrastructure is False
        assert "timed out" in reports[0].outcome.error
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_newer_render_supersedes_older(self, executor, reports):
        await executor.render("sleep", 1)
        await executor.render("export default 2", 2)
        await executor.wait_idle()

        assert reports == [SandboxReport(version=2, outcome=RenderOutcome.ok())]
        await executor.destroy()

    @pytest.mark.asyncio
    async def test_destroy_removes_files(self, executor, reports, tmp_path):
        await executor.render("ok", 1)
        await executor.wait_idle()

        await executor.destroy()

        assert not (tmp_path / "renders" / "local-test").exists()
        assert executor.is_destroyed

    def test_scrubbed_env_drops_secrets(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
        env = scrubbed_env()
        assert "ANTHROPIC_API_KEY" not in env


class TestE2BSandboxExecutor:
    """Test the E2B executor against a mocked SDK."""

    def make_sandbox(self, *results):
        sandbox = MagicMock()
        sandbox.sandbox_id = "sbx-123"
        sandbox.commands.run.side_effect = list(results) or [
            SimpleNamespace(exit_code=0, stderr="", stdout=""),
            SimpleNamespace(exit_code=0, stderr="", stdout=""),
        ]
        return sandbox

    def make_executor(self):
        return E2BSandboxExecutor(session_id="e2b-test", template="tpl", command="check", run_command="run")

    @pytest.mark.asyncio
    async def test_success(self):
        sandbox = self.make_sandbox()
        with patch("sciproto.e2b_sandbox_executor.Sandbox") as sandbox_cls:
            sandbox_cls.create.return_value = sandbox
            executor = self.make_executor()
            reports = []
            executor.subscribe(reports.append)

            await executor.render("code", 3)
            await executor.wait_idle()

            sandbox_cls.create.assert_called_once_with(template="tpl", timeout=1800)
            assert sandbox.files.write.call_args_list == [
                call("/home/user/app/renders/v3/App.jsx", "code"),
                call(f"/home/user/app/renders/v3/{HARNESS_FILE}", RENDER_HARNESS),
            ]
            commands = [c.args[0] for c in sandbox.commands.run.call_args_list]
            assert commands == [
                "cd /home/user/app/renders/v3 && check",
                "cd /home/user/app/renders/v3 && run",
            ]
            assert reports == [SandboxReport(version=3, outcome=RenderOutcome.ok())]

            await executor.destroy()
            sandbox.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_compile_error_skips_run(self):
        sandbox = self.make_sandbox(SimpleNamespace(exit_code=1, stderr="Expected ';'", stdout=""))
        with patch("sciproto.e2b_sandbox_executor.Sandbox") as sandbox_cls:
            sandbox_cls.create.return_value = sandbox
            executor = self.make_executor()
            reports = []
            executor.subscribe(reports.append)

            await executor.render("code", 1)
            await executor.wait_idle()

            assert reports[0].outcome == RenderOutcome.failed("Expected ';'")
            assert reports[0].infrastructure is False
            assert sandbox.commands.run.call_count == 1
            await executor.destroy()

    @pytest.mark.asyncio
    async def test_runtime_error(self):
        sandbox = self.make_sandbox(
            SimpleNamespace(exit_code=0, stderr="", stdout=""),
            SimpleNamespace(exit_code=1, stderr="TypeError: Cannot read properties of undefined", stdout=""),
        )
        with patch("sciproto.e2b_sandbox_executor.Sandbox") as sandbox_cls:
            sandbox_cls.create.return_value = sandbox
            executor = self.make_executor()
            reports = []
            executor.subscribe(reports.append)

            await executor.render("code", 1)
            await executor.wait_idle()

            assert reports[0].outcome.success is False
            assert reports[0].infrastructure is False
            assert "TypeError" in reports[0].outcome.error
            await executor.destroy()

    @pytest.mark.asyncio
    async def test_registry_unreachable_is_infrastructure(self):
        sandbox = self.make_sandbox(SimpleNamespace(exit_code=1, stderr="npm error code EAI_AGAIN", stdout=""))
        with patch("sciproto.e2b_sandbox_executor.Sandbox") as sandbox_cls:
            sandbox_cls.create.return_value = sandbox
            executor = self.make_executor()
            reports = []
            executor.subscribe(reports.append)

            await executor.render("code", 1)
            await executor.wait_idle()

            assert reports[0].infrastructure is True
            await executor.destroy()

    @pytest.mark.asyncio
    async def test_sandbox_creation_failure_is_infrastructure(self):
        with patch("sciproto.e2b_sandbox_executor.Sandbox") as sandbox_cls:
            sandbox_cls.create.side_effect = RuntimeError("quota exceeded")
            executor = self.make_executor()
            reports = []
            executor.subscribe(reports.append)

            await executor.render("code", 1)
            await executor.wait_idle()

            assert reports[0].outcome.success is False
            assert reports[0].infrastructure is True
            assert "quota exceeded" in reports[0].outcome.error
            await executor.destroy()


class TestSandboxFactory:
    def test_default_is_browser(self):
        executor = create_sandbox_executor(mode="browser", session_id="f")
        assert isinstance(executor, BrowserSandboxExecutor)

    def test_local(self):
        assert isinstance(create_sandbox_executor(mode="local", session_id="f"), LocalSandboxExecutor)

    def test_e2b(self):
        assert isinstance(create_sandbox_executor(mode="e2b", session_id="f"), E2BSandboxExecutor)
