"""
Session-scoped logging for the prototype agent.

Every session gets its own directory with multiple outputs:
- session.log: Main timeline
- websocket.log: WS traffic
- agent.log: Agent loop transitions
- llm_requests.jsonl: Model Gateway requests
- llm_responses.jsonl: Model Gateway responses
- tool_calls.jsonl: render_prototype calls
- sandbox.log: Render dispatch and outcomes
- errors.log: All errors aggregated
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .config import get_settings

# Overridable base directory (tests point this at a tmp dir)
LOGS_BASE_DIR: Optional[Path] = None


def _logs_base_dir() -> Path:
    return LOGS_BASE_DIR or get_settings().logs_dir


class SessionLogger:
    """Session-scoped logger that writes to multiple files."""

    def __init__(self, session_id: str, base_dir: Optional[Path] = None):
        self.session_id = session_id
        self.session_dir = (base_dir or _logs_base_dir()) / session_id
        self.session_dir.mkdir(parents=True, exist_ok=True)

        self.start_time = datetime.now(timezone.utc)
        self._lock = threading.Lock()

        self._session_log = open(self.session_dir / "session.log", "a")
        self._websocket_log = open(self.session_dir / "websocket.log", "a")
        self._agent_log = open(self.session_dir / "agent.log", "a")
        self._llm_requests = open(self.session_dir / "llm_requests.jsonl", "a")
        self._llm_responses = open(self.session_dir / "llm_responses.jsonl", "a")
        self._tool_calls = open(self.session_dir / "tool_calls.jsonl", "a")
        self._sandbox_log = open(self.session_dir / "sandbox.log", "a")
        self._errors_log = open(self.session_dir / "errors.log", "a")

        # Counters for the closing summary
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.request_count = 0
        self.tool_call_count = 0
        self.render_error_count = 0

        self.log_session("SESSION_START", f"session_id={session_id}")

    def _timestamp(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _write(self, file, tag: str, message: str):
        """Write a tagged log line to a file (thread-safe)."""
        with self._lock:
            if file.closed:
                return
            file.write(f"[{self._timestamp()}] [{tag}] {message}\n")
            file.flush()

    def _write_json(self, file, data: dict):
        """Write a JSON line to a file (thread-safe)."""
        with self._lock:
            if file.closed:
                return
            data["timestamp"] = self._timestamp()
            file.write(json.dumps(data, default=str) + "\n")
            file.flush()

    def log_session(self, tag: str, message: str):
        """Log to main session timeline."""
        self._write(self._session_log, tag, message)

    def log_ws_in(self, data: dict):
        self._write(self._websocket_log, "IN", json.dumps(self._summarize_frame(data)))
        self.log_session("WS_IN", f"type={data.get('type', 'unknown')}")

    def log_ws_out(self, data: dict):
        self._write(self._websocket_log, "OUT", json.dumps(self._summarize_frame(data)))
        self.log_session("WS_OUT", f"type={data.get('type', 'unknown')}")

    def log_agent(self, tag: str, message: str):
        """Log agent event (also logs to session timeline)."""
        self._write(self._agent_log, tag, message)
        self.log_session(f"AGENT_{tag}", message)

    def log_llm_request(self, turn_id: str, transcript: list, model: str):
        """Log a Model Gateway request."""
        self.request_count += 1
        data = {
            "turn_id": turn_id,
            "message_count": len(transcript),
            "messages_preview": self._truncate_messages(transcript),
            "model": model,
        }
        self._write_json(self._llm_requests, data)
        self.log_session("LLM_REQUEST", f"turn_id={turn_id}, messages={len(transcript)}")

    def log_llm_response(
        self,
        turn_id: str,
        stop_reason: Optional[str],
        input_tokens: int,
        output_tokens: int,
        text_len: int,
        tool_call: Optional[str] = None,
    ):
        """Log a Model Gateway response and update token counters."""
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        data = {
            "turn_id": turn_id,
            "stop_reason": stop_reason,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
            "text_len": text_len,
            "tool_call": tool_call,
        }
        self._write_json(self._llm_responses, data)
        self.log_session(
            "LLM_RESPONSE",
            f"turn_id={turn_id}, tokens_in={input_tokens}, tokens_out={output_tokens}",
        )

    def log_tool_call(self, tool_call_id: str, tool_name: str, arguments: dict, version: int):
        """Log an accepted render_prototype call."""
        self.tool_call_count += 1
        data = {
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "arguments": self._sanitize_input(arguments),
            "version": version,
        }
        self._write_json(self._tool_calls, data)
        self.log_session("TOOL_CALL", f"tool={tool_name}, version={version}")

    def log_sandbox(self, tag: str, message: str):
        """Log sandbox operation (also logs to session timeline)."""
        self._write(self._sandbox_log, tag, message)
        self.log_session(f"SANDBOX_{tag}", message)

    def log_render_outcome(self, version: int, success: bool, error: Optional[str] = None):
        if not success:
            self.render_error_count += 1
        message = f"version={version}, success={success}"
        if error:
            message += f", error={error[:200]}"
        self.log_sandbox("OUTCOME", message)

    def log_error(self, component: str, error: str, traceback: Optional[str] = None):
        """Log error with optional traceback."""
        self._write(self._errors_log, component, error)
        if traceback:
            self._write(self._errors_log, "TRACEBACK", traceback)
        self.log_session("ERROR", f"[{component}] {error[:100]}")

    def _truncate_messages(self, messages: list) -> list:
        """Summarize the last 3 transcript messages."""
        result = []
        for msg in messages[-3:]:
            content = msg.get("content", "")
            if isinstance(content, list):
                kinds = [block.get("type", "unknown") for block in content if isinstance(block, dict)]
                result.append({"role": msg.get("role"), "blocks": kinds})
            else:
                result.append({"role": msg.get("role"), "content_len": len(str(content))})
        return result

    def _sanitize_input(self, input_data: dict) -> dict:
        """Replace large code payloads with their size."""
        result = {}
        for key, value in input_data.items():
            if key == "code" and isinstance(value, str) and len(value) > 500:
                result[key] = f"<{len(value)} bytes>"
            else:
                result[key] = value
        return result

    def _summarize_frame(self, data: dict) -> dict:
        return {
            k: (f"<{len(v)} chars>" if isinstance(v, str) and len(v) > 500 else v)
            for k, v in data.items()
        }

    def close(self):
        """Close all log files and write final summary."""
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        self.log_session(
            "SESSION_END",
            f"duration={duration:.1f}s, requests={self.request_count}, "
            f"tools={self.tool_call_count}, render_errors={self.render_error_count}, "
            f"tokens_in={self.total_input_tokens}, tokens_out={self.total_output_tokens}",
        )

        with self._lock:
            for f in [
                self._session_log,
                self._websocket_log,
                self._agent_log,
                self._llm_requests,
                self._llm_responses,
                self._tool_calls,
                self._sandbox_log,
                self._errors_log,
            ]:
                f.close()


# Global registry of session loggers
_session_loggers: Dict[str, SessionLogger] = {}
_registry_lock = threading.Lock()


def get_session_logger(session_id: str) -> SessionLogger:
    """Get or create a session logger for the given session ID."""
    with _registry_lock:
        if session_id not in _session_loggers:
            _session_loggers[session_id] = SessionLogger(session_id)
        return _session_loggers[session_id]


def close_session_logger(session_id: str):
    """Close and remove a session logger."""
    with _registry_lock:
        if session_id in _session_loggers:
            _session_loggers[session_id].close()
            del _session_loggers[session_id]


def close_all_session_loggers():
    with _registry_lock:
        for slogger in _session_loggers.values():
            slogger.close()
        _session_loggers.clear()
