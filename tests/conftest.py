"""
Pytest configuration and shared fixtures.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

# Keep the app's module-level store and logs out of the working tree
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="sciproto-tests-"))
os.environ.setdefault("SCIPROTO_DB_PATH", str(_TEST_ROOT / "sciproto-db.json"))
os.environ.setdefault("LOGS_DIR", str(_TEST_ROOT / "logs"))
os.environ["SANDBOX_MODE"] = "browser"

from sciproto import logging_config  # noqa: E402
from sciproto.persistence import JsonFileStore  # noqa: E402
from sciproto.protocol import DoneEvent, ErrorEvent, TextEvent, ToolCallEvent, encode_event  # noqa: E402


@pytest.fixture(autouse=True)
def session_logs(tmp_path, monkeypatch):
    """Write session logs under the test's tmp dir."""
    logs_dir = tmp_path / "logs"
    monkeypatch.setattr(logging_config, "LOGS_BASE_DIR", logs_dir)
    yield logs_dir
    logging_config.close_all_session_loggers()


@pytest.fixture
def store(tmp_path):
    """JSON store backed by a temp file."""
    return JsonFileStore(tmp_path / "db.json")


class ScriptedGateway:
    """
    Model Gateway double: each call to stream() plays the next script.

    A script is a list of StreamEvents (or raw strings), encoded as
    NDJSON lines. Transcripts passed in are recorded.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.transcripts = []

    def add(self, *events):
        self.scripts.append(list(events))

    async def stream(self, transcript):
        self.transcripts.append(transcript)
        script = self.scripts.pop(0) if self.scripts else [DoneEvent()]
        for item in script:
            yield item if isinstance(item, str) else encode_event(item)


def text(content):
    return TextEvent(content=content)


def render_call(code, title=None, call_id=None):
    args = {"code": code}
    if title is not None:
        args["title"] = title
    return ToolCallEvent(name="render_prototype", args=args, id=call_id)


def error(message, retryable=False):
    return ErrorEvent(message=message, retryable=retryable)


@pytest.fixture
def gateway():
    return ScriptedGateway()
