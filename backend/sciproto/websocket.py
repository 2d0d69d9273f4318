import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

from .agent import PrototypeAgent
from .config import get_settings
from .logging_config import get_session_logger, close_session_logger
from .persistence import DebouncedSaver, JsonFileStore

logger = logging.getLogger(__name__)

# Grace period before destroying agent after disconnect (60 seconds)
# Allows page reloads and short disconnects without losing session
AGENT_CLEANUP_GRACE_PERIOD = 60

SANDBOX_FRAME_TYPES = ("RENDER_SUCCESS", "RENDER_ERROR")

AgentFactory = Callable[..., PrototypeAgent]


class ConnectionManager:
    """Manages WebSocket connections and their associated agents."""

    def __init__(
        self,
        store: Optional[JsonFileStore] = None,
        agent_factory: Optional[AgentFactory] = None,
        cleanup_grace_period: float = AGENT_CLEANUP_GRACE_PERIOD,
    ):
        self.active_connections: Dict[str, WebSocket] = {}
        self.agents: Dict[str, PrototypeAgent] = {}
        self.store = store
        self.agent_factory = agent_factory or PrototypeAgent
        self.cleanup_grace_period = cleanup_grace_period
        self._connection_lock = asyncio.Lock()
        self._send_locks: Dict[str, asyncio.Lock] = {}  # Per-session send locks keep frame order
        self._turn_tasks: Dict[str, asyncio.Task] = {}  # Chat turns running in the background
        # Pending cleanup tasks for graceful agent destruction
        self._pending_cleanups: Dict[str, asyncio.Task] = {}
        self._saver: Optional[DebouncedSaver] = None
        logger.info("ConnectionManager initialized")

    def _get_saver(self) -> Optional[DebouncedSaver]:
        if self.store is None:
            return None
        if self._saver is None or self._saver.store is not self.store:
            self._saver = DebouncedSaver(self.store, get_settings().save_debounce_seconds)
        return self._saver

    def _sender(self, session_id: str) -> Callable[[dict], Awaitable[None]]:
        async def send(event: dict) -> None:
            await self.send_message(session_id, event)
        return send

    async def _create_agent(
        self,
        session_id: str,
        prototype_id: Optional[str] = None,
        paper_hash: Optional[str] = None,
    ) -> PrototypeAgent:
        """Create an agent, restoring the saved prototype when one exists."""
        key = prototype_id or session_id
        agent = self.agent_factory(
            session_id=session_id,
            on_event=self._sender(session_id),
            saver=self._get_saver(),
            prototype_id=key,
            paper_hash=paper_hash,
        )

        if self.store is not None and prototype_id:
            record = await self.store.aget_prototype(prototype_id)
            if record is not None:
                agent.restore(record)

        if self.store is not None and agent.paper_hash:
            analysis = await self.store.aget_analysis(agent.paper_hash)
            if analysis is not None:
                agent.attach_paper(analysis)

        return agent

    async def connect(
        self,
        websocket: WebSocket,
        session_id: str,
        reconnect: bool = False,
        prototype_id: Optional[str] = None,
        paper_hash: Optional[str] = None,
    ):
        """
        Accept a WebSocket connection and create or reuse an associated agent.

        Args:
            websocket: The WebSocket connection to accept
            session_id: Unique identifier for this session
            reconnect: If True, try to reuse existing agent instead of creating new one
            prototype_id: Saved prototype to restore into a new agent
            paper_hash: Content hash of the paper this prototype is built from
        """
        try:
            session_logger = get_session_logger(session_id)
            session_logger.log_session("WS_CONNECT", f"client connecting (reconnect={reconnect})")

            # Cancel any pending cleanup for this session
            cleanup_task = self._pending_cleanups.pop(session_id, None)
            if cleanup_task and not cleanup_task.done():
                cleanup_task.cancel()
                logger.info(f"[{session_id}] Cancelled pending cleanup - client reconnecting")

            existing_agent = self.agents.get(session_id)
            is_reconnecting = reconnect and existing_agent is not None

            if is_reconnecting:
                agent = existing_agent
                logger.info(f"[{session_id}] Reconnecting to existing agent")
            else:
                if existing_agent is not None:
                    await self._cleanup_agent(session_id)
                # Create agent BEFORE accepting WebSocket
                agent = await self._create_agent(session_id, prototype_id, paper_hash)

            await websocket.accept()

            old_ws = None
            async with self._connection_lock:
                old_ws = self.active_connections.get(session_id)
                self.active_connections[session_id] = websocket
                self.agents[session_id] = agent
                if session_id not in self._send_locks:
                    self._send_locks[session_id] = asyncio.Lock()

            # Close the previous websocket (but keep the agent)
            if old_ws is not None and old_ws is not websocket:
                try:
                    await old_ws.close()
                except RuntimeError:
                    logger.debug(f"[{session_id}] Previous connection already closed")

            logger.info(f"[{session_id}] Client {'reconnected' if is_reconnecting else 'connected'}")
            session_logger.log_session("WS_CONNECTED", f"client {'reconnected' if is_reconnecting else 'connected'}")

            await self.send_message(session_id, {
                "type": "connection",
                "status": "connected",
                "session_id": session_id,
                "reconnected": is_reconnecting,
                "message": "Reconnected to existing session" if is_reconnecting else "Connected to SciProto agent",
                "state": agent.snapshot(),
            })

        except Exception as e:
            logger.error(f"[{session_id}] Error connecting client: {e}", exc_info=True)
            raise

    async def disconnect(self, session_id: str, keep_agent: bool = False):
        """
        Clean up connection and optionally schedule agent cleanup with grace period.

        Args:
            session_id: Session identifier to disconnect
            keep_agent: If True, schedules agent cleanup after grace period instead of immediate cleanup
        """
        try:
            async with self._connection_lock:
                if session_id in self.active_connections:
                    del self.active_connections[session_id]
                    logger.info(f"[{session_id}] Client disconnected (agent_kept={keep_agent})")

                schedule = keep_agent and session_id not in self._pending_cleanups
                if schedule:
                    self._pending_cleanups[session_id] = asyncio.create_task(
                        self._delayed_cleanup(session_id, self.cleanup_grace_period)
                    )
                    logger.info(f"[{session_id}] Scheduled agent cleanup in {self.cleanup_grace_period}s")

            if not keep_agent:
                await self._cleanup_agent(session_id)

        except Exception as e:
            logger.error(f"[{session_id}] Error disconnecting client: {e}", exc_info=True)

    async def _delayed_cleanup(self, session_id: str, delay: float):
        """Wait for grace period, then cleanup agent if client hasn't reconnected."""
        try:
            logger.info(f"[{session_id}] Grace period started ({delay}s)")
            await asyncio.sleep(delay)

            if session_id in self.active_connections:
                logger.info(f"[{session_id}] Client reconnected during grace period - cleanup cancelled")
                return

            logger.info(f"[{session_id}] Grace period expired - cleaning up agent")
            self._pending_cleanups.pop(session_id, None)
            await self._cleanup_agent(session_id)

        except asyncio.CancelledError:
            logger.info(f"[{session_id}] Cleanup cancelled - client reconnected")
        except Exception as e:
            logger.error(f"[{session_id}] Error in delayed cleanup: {e}", exc_info=True)

    async def _cleanup_agent(self, session_id: str):
        """Tear down the session's agent, its background turn and its logger."""
        async with self._connection_lock:
            agent = self.agents.pop(session_id, None)
            turn_task = self._turn_tasks.pop(session_id, None)
            if session_id not in self.active_connections:
                self._send_locks.pop(session_id, None)

        if turn_task and not turn_task.done() and turn_task is not asyncio.current_task():
            turn_task.cancel()
            await asyncio.gather(turn_task, return_exceptions=True)

        if agent is not None:
            try:
                await agent.cleanup()
            except Exception as cleanup_error:
                logger.warning(f"[{session_id}] Error during agent cleanup: {cleanup_error}")
            logger.info(f"[{session_id}] Agent cleaned up")

        if session_id not in self.active_connections:
            close_session_logger(session_id)

    async def send_message(self, session_id: str, message: dict):
        """
        Send a JSON message to a specific client.
        Uses per-session lock to ensure message ordering.

        Args:
            session_id: Target session identifier
            message: Dictionary to send as JSON
        """
        try:
            send_lock = self._send_locks.get(session_id)
            if not send_lock:
                logger.warning(f"[{session_id}] Attempted to send message to non-existent session")
                return

            session_logger = get_session_logger(session_id)
            session_logger.log_ws_out(message)

            async with send_lock:
                websocket = self.active_connections.get(session_id)
                if websocket is not None:
                    await websocket.send_json(message)
                else:
                    logger.warning(f"[{session_id}] Connection closed during send")

        except Exception as e:
            logger.error(f"[{session_id}] Error sending message: {e}", exc_info=True)
            # Connection is broken; keep the agent for a reconnect
            await self.disconnect(session_id, keep_agent=True)

    def _start_turn(self, session_id: str, turn: Awaitable[bool]) -> None:
        """Run a turn in the background so sandbox frames keep flowing."""
        task = asyncio.create_task(self._run_turn(session_id, turn))
        self._turn_tasks[session_id] = task

    async def _run_turn(self, session_id: str, turn: Awaitable[bool]) -> None:
        try:
            await turn
        except asyncio.CancelledError:
            logger.info(f"[{session_id}] Turn cancelled")
            raise
        except Exception as e:
            logger.error(f"[{session_id}] Turn failed: {e}", exc_info=True)
            get_session_logger(session_id).log_error("TURN", str(e))
            await self.send_message(session_id, {
                "type": "error",
                "message": f"Internal error: {str(e)}"
            })
        finally:
            if self._turn_tasks.get(session_id) is asyncio.current_task():
                self._turn_tasks.pop(session_id, None)

    def get_turn_task(self, session_id: str) -> Optional[asyncio.Task]:
        return self._turn_tasks.get(session_id)

    async def handle_message(self, session_id: str, data: dict):
        """
        Process one incoming frame.

        Chat and manual_retry start a background turn; sandbox outcome
        frames are routed to the agent immediately.
        """
        try:
            session_logger = get_session_logger(session_id)
            session_logger.log_ws_in(data)

            logger.info(f"[{session_id}] Received message: type={data.get('type', 'unknown')}")

            agent = self.agents.get(session_id)
            if not agent:
                logger.error(f"[{session_id}] No agent found for session")
                await self.send_message(session_id, {
                    "type": "error",
                    "message": "Session not initialized"
                })
                return

            message_type = data.get("type")

            if message_type == "chat":
                user_message = data.get("message", "")
                if not isinstance(user_message, str) or not user_message.strip():
                    await self.send_message(session_id, {
                        "type": "error",
                        "message": "Empty message received"
                    })
                    return

                if agent.is_busy:
                    logger.warning(f"[{session_id}] Chat already in progress, ignoring message")
                    await self.send_message(session_id, {
                        "type": "busy",
                        "message": "Please wait for the current response to complete"
                    })
                    return

                await self.send_message(session_id, {
                    "type": "chat_received",
                    "message": user_message
                })
                self._start_turn(session_id, agent.submit_turn(user_message))

            elif message_type == "manual_retry":
                self._start_turn(session_id, agent.manual_retry())

            elif message_type == "dismiss_error":
                await agent.dismiss_error()

            elif message_type in SANDBOX_FRAME_TYPES:
                handled = await agent.receive_sandbox_frame(data)
                if not handled:
                    logger.debug(f"[{session_id}] Sandbox frame not routed: {message_type}")

            elif message_type == "ping":
                await self.send_message(session_id, {
                    "type": "pong"
                })

            elif message_type == "reset":
                if agent.is_busy:
                    logger.warning(f"[{session_id}] Cannot reset during active turn")
                    await self.send_message(session_id, {
                        "type": "error",
                        "message": "Cannot reset while a response is in progress"
                    })
                    return

                try:
                    await agent.cleanup()
                    new_agent = await self._create_agent(session_id, paper_hash=agent.paper_hash)
                    self.agents[session_id] = new_agent
                    await self.send_message(session_id, {
                        "type": "reset_complete",
                        "message": "Session reset successfully",
                        "state": new_agent.snapshot(),
                    })
                except Exception as reset_error:
                    logger.error(f"[{session_id}] Reset failed: {reset_error}", exc_info=True)
                    await self.send_message(session_id, {
                        "type": "error",
                        "message": f"Reset failed: {str(reset_error)}"
                    })

            else:
                logger.warning(f"[{session_id}] Unknown message type: {message_type}")
                await self.send_message(session_id, {
                    "type": "error",
                    "message": f"Unknown message type: {message_type}"
                })

        except Exception as e:
            logger.error(f"[{session_id}] Error handling message: {e}", exc_info=True)
            await self.send_message(session_id, {
                "type": "error",
                "message": f"Internal error: {str(e)}"
            })

    async def shutdown(self):
        """Tear down every session (application shutdown)."""
        for session_id in list(self.agents.keys()):
            async with self._connection_lock:
                self.active_connections.pop(session_id, None)
            await self._cleanup_agent(session_id)
        for task in list(self._pending_cleanups.values()):
            task.cancel()
        self._pending_cleanups.clear()

    def get_active_sessions(self) -> list:
        """Get list of active session IDs."""
        return list(self.active_connections.keys())

    def get_session_count(self) -> int:
        """Get count of active sessions."""
        return len(self.active_connections)
