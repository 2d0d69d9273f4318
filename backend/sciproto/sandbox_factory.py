"""
Factory for creating sandbox executors based on configuration.
"""
import logging
from typing import Optional

from .config import get_settings
from .sandbox_executor import SandboxExecutor, SendFunc

logger = logging.getLogger(__name__)


def create_sandbox_executor(
    mode: Optional[str] = None,
    session_id: Optional[str] = None,
    send: Optional[SendFunc] = None,
) -> SandboxExecutor:
    """
    Create the sandbox executor for a session.

    Args:
        mode: "browser", "local" or "e2b" (defaults to SANDBOX_MODE)
        session_id: Session ID for logging context
        send: Outbound frame sender, used by the browser executor

    Returns:
        BrowserSandboxExecutor, LocalSandboxExecutor or E2BSandboxExecutor instance
    """
    settings = get_settings()
    mode = (mode or settings.sandbox_mode).lower()

    if mode == "e2b":
        from .e2b_sandbox_executor import E2BSandboxExecutor
        logger.info(f"[{session_id}] Creating E2BSandboxExecutor")
        return E2BSandboxExecutor(session_id=session_id, timeout=settings.render_timeout)
    elif mode == "local":
        from .local_sandbox_executor import LocalSandboxExecutor
        logger.info(f"[{session_id}] Creating LocalSandboxExecutor")
        return LocalSandboxExecutor(session_id=session_id, timeout=settings.render_timeout)
    else:
        from .sandbox_executor import BrowserSandboxExecutor
        logger.info(f"[{session_id}] Creating BrowserSandboxExecutor")
        return BrowserSandboxExecutor(session_id=session_id, send=send)
