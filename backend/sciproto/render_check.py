"""
Two-stage render check shared by the local and E2B executors.

1. compile: esbuild bundles App.jsx into App.cjs (packages stay external).
2. run: node loads App.cjs through the harness below, renders the default
   export once with react-dom/server and waits a moment so async failures
   (rejected promises, throwing timers) surface too.

A stage result is mapped onto a RenderOutcome for the code, or raises
SandboxUnavailableError when the toolchain itself failed.
"""

from typing import Optional

from .conversation import RenderOutcome
from .sandbox_executor import (
    SHELL_MISSING_EXIT_CODES,
    SandboxUnavailableError,
    format_command_error,
    is_toolchain_failure,
)

ENTRY_FILE = "App.jsx"
HARNESS_FILE = "render-check.cjs"

COMPILE_STAGE = "compile"
RUN_STAGE = "run"

# Harness exit code when react / react-dom cannot be loaded
HARNESS_SETUP_EXIT_CODE = 3

RENDER_HARNESS = r"""// Load the compiled prototype and render it once on the server.
// Exit 0: rendered. Exit 1: the prototype threw. Exit 3: renderer libraries missing.
const path = require("path");

const SETTLE_MS = 300;

let React;
let ReactDOMServer;
try {
  React = require("react");
  ReactDOMServer = require("react-dom/server");
} catch (err) {
  console.error(`Renderer setup failed: ${err && err.message}`);
  process.exit(3);
}

let failed = false;
function fail(err) {
  if (failed) return;
  failed = true;
  const text = err && err.stack ? String(err.stack) : String(err);
  console.error(text.split("\n").slice(0, 8).join("\n"));
  process.exit(1);
}

process.on("uncaughtException", fail);
process.on("unhandledRejection", fail);

if (typeof globalThis.window === "undefined") {
  globalThis.window = globalThis;
}

try {
  const mod = require(path.join(__dirname, "App.cjs"));
  const App = mod && mod.default ? mod.default : mod;
  if (typeof App !== "function" && !(App && App.$$typeof)) {
    throw new Error("The module must `export default` a React component");
  }
  ReactDOMServer.renderToString(React.createElement(App));
} catch (err) {
  fail(err);
}

setTimeout(() => process.exit(failed ? 1 : 0), SETTLE_MS);
"""


def stage_outcome(
    stage: str,
    exit_code: Optional[int],
    stderr: Optional[str],
    stdout: Optional[str],
) -> Optional[RenderOutcome]:
    """
    Judge one finished stage.

    Returns None when the stage passed, a failed RenderOutcome when the
    code is at fault, and raises SandboxUnavailableError when the toolchain
    is.
    """
    if exit_code == 0:
        return None

    detail = format_command_error(stderr, stdout, exit_code)

    if stage == COMPILE_STAGE and is_toolchain_failure(exit_code, stderr, stdout):
        raise SandboxUnavailableError(f"Render toolchain unavailable: {detail}")

    if stage == RUN_STAGE and (
        exit_code in SHELL_MISSING_EXIT_CODES or exit_code == HARNESS_SETUP_EXIT_CODE
    ):
        raise SandboxUnavailableError(f"Render runtime unavailable: {detail}")

    return RenderOutcome.failed(detail)
