"""
Runtime configuration for the SciProto backend.

Values come from the environment (optionally a project-root .env file).
All keys are optional; defaults suit local development.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Project root is the parent of backend/
PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_MODEL = "claude-sonnet-4-5"

# Compile stage: bundle the JSX module for node, leaving npm packages external
DEFAULT_RENDER_COMMAND = (
    "npx --yes esbuild App.jsx --bundle --platform=node --format=cjs --jsx=automatic "
    "--packages=external --log-level=error --outfile=App.cjs"
)

# Run stage: server-render the compiled module (react and react-dom must resolve,
# e.g. through NODE_PATH for local renders)
DEFAULT_RUN_COMMAND = "node render-check.cjs"

SANDBOX_MODES = ("browser", "local", "e2b")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


def get_sandbox_mode() -> str:
    """Get the current sandbox mode from environment."""
    mode = os.getenv("SANDBOX_MODE", "browser").lower()
    if mode not in SANDBOX_MODES:
        logger.warning(f"Unknown SANDBOX_MODE={mode!r}, falling back to 'browser'")
        return "browser"
    return mode


@dataclass(frozen=True)
class Settings:
    anthropic_api_key: Optional[str]
    model: str
    max_tokens: int
    gateway_max_attempts: int
    thinking_timeout: float
    max_fix_attempts: int
    fix_delay: float
    render_timeout: float
    sandbox_mode: str
    local_render_command: str
    local_run_command: str
    e2b_template: str
    db_path: Path
    save_debounce_seconds: float
    logs_dir: Path


def load_settings() -> Settings:
    """Read settings from the current environment (no caching)."""
    db_path = Path(os.getenv("SCIPROTO_DB_PATH", str(PROJECT_ROOT / "sciproto-db.json")))
    logs_dir = Path(os.getenv("LOGS_DIR", str(PROJECT_ROOT / "logs")))

    return Settings(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        model=os.getenv("CLAUDE_MODEL", DEFAULT_MODEL),
        max_tokens=_get_int("MODEL_MAX_TOKENS", 16000),
        gateway_max_attempts=_get_int("GATEWAY_MAX_ATTEMPTS", 3),
        thinking_timeout=_get_float("THINKING_TIMEOUT", 300.0),
        max_fix_attempts=_get_int("MAX_FIX_ATTEMPTS", 3),
        fix_delay=_get_float("FIX_DELAY", 0.8),
        render_timeout=_get_float("RENDER_TIMEOUT", 60.0),
        sandbox_mode=get_sandbox_mode(),
        local_render_command=os.getenv("LOCAL_RENDER_COMMAND", DEFAULT_RENDER_COMMAND),
        local_run_command=os.getenv("LOCAL_RUN_COMMAND", DEFAULT_RUN_COMMAND),
        e2b_template=os.getenv("E2B_TEMPLATE", "sciproto-renderer"),
        db_path=db_path,
        save_debounce_seconds=_get_float("SAVE_DEBOUNCE_SECONDS", 1.5),
        logs_dir=logs_dir,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load .env once and return the process-wide settings."""
    load_dotenv(PROJECT_ROOT / ".env")
    settings = load_settings()
    logger.info(
        f"Settings loaded: model={settings.model}, sandbox_mode={settings.sandbox_mode}, "
        f"max_fix_attempts={settings.max_fix_attempts}"
    )
    return settings
