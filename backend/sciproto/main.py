import logging
import uuid
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .collaborators import (
    AnalysisError,
    AnthropicPaperAnalyzer,
    AnthropicTextExtractor,
    ExtractionError,
    MetadataNotFoundError,
    PaperAnalyzer,
    TextExtractor,
    content_hash,
    fetch_paper_metadata,
)
from .config import get_settings
from .conversation import ConversationState
from .gateway import AnthropicGateway, ModelGateway
from .persistence import AnalysisRecord, JsonFileStore, PrototypeRecord, StoreError
from .protocol import NDJSON_MEDIA_TYPE
from .websocket import ConnectionManager


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# Pydantic models
class SessionResponse(BaseModel):
    session_id: str
    created_at: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    active_sessions: int


class AgentRequest(BaseModel):
    history: List[Dict[str, Any]] = Field(default_factory=list)


class PrototypeCreate(BaseModel):
    id: Optional[str] = None
    paper_hash: Optional[str] = None
    title: str = "Untitled Prototype"
    description: str = ""
    code: str = ""
    algorithm_info: str = ""
    history: List[Dict[str, Any]] = Field(default_factory=list)


class PrototypeUpdate(BaseModel):
    title: Optional[str] = None
    code: Optional[str] = None
    history: Optional[List[Dict[str, Any]]] = None


class AnalyzeRequest(BaseModel):
    text: str
    hash: Optional[str] = None
    filename: Optional[str] = None


# Global store and connection manager
store = JsonFileStore(get_settings().db_path)
manager = ConnectionManager(store=store)


def get_store() -> JsonFileStore:
    return store


def get_text_extractor() -> TextExtractor:
    return AnthropicTextExtractor()


def get_analyzer() -> PaperAnalyzer:
    return AnthropicPaperAnalyzer()


def get_gateway() -> ModelGateway:
    return AnthropicGateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting SciProto API")
    yield
    logger.info("Shutting down SciProto API")
    await manager.shutdown()


# Create FastAPI application
app = FastAPI(
    title="SciProto API",
    description="Backend API for turning research papers into interactive prototypes",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",  # Vite default
        "http://127.0.0.1:5173"
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        HealthResponse with current status and metrics
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        active_sessions=manager.get_session_count()
    )


@app.post("/api/session", response_model=SessionResponse)
async def create_session():
    """
    Create a new session.

    Returns:
        SessionResponse with new session ID and creation timestamp
    """
    try:
        # Format: YYYYMMDD-HHMMSS-uuid8chars (e.g., 20251128-143052-a1b2c3d4)
        now = datetime.utcnow()
        timestamp_prefix = now.strftime("%Y%m%d-%H%M%S")
        short_uuid = uuid.uuid4().hex[:8]
        session_id = f"{timestamp_prefix}-{short_uuid}"

        logger.info(f"Created new session: {session_id}")

        return SessionResponse(
            session_id=session_id,
            created_at=now.isoformat()
        )

    except Exception as e:
        logger.error(f"Error creating session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create session")


@app.get("/api/sessions")
async def list_sessions():
    """List all active sessions."""
    return {
        "sessions": manager.get_active_sessions(),
        "count": manager.get_session_count(),
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/api/session/{session_id}/status")
async def get_session_status(session_id: str):
    """
    Check if a session exists and is active.

    Returns:
        Session status, whether it can be reconnected to, and the loop state
    """
    agent = manager.agents.get(session_id)
    return {
        "session_id": session_id,
        "is_active": session_id in manager.active_connections,
        "has_agent": agent is not None,
        "can_reconnect": agent is not None,
        "display_status": agent.display_status if agent else None,
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# MODEL GATEWAY
# =============================================================================


def _history_to_transcript(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Accept either a ready transcript or serialized Message dicts."""
    if history and all("role" in item and "content" in item for item in history):
        return history
    return ConversationState.from_list(history).to_transcript()


@app.post("/api/agent")
async def stream_agent(request: AgentRequest, gateway: ModelGateway = Depends(get_gateway)):
    """
    Run one model turn and stream it back as NDJSON.

    Lines: {"type":"text","content"}, {"type":"tool_call","name","args","id"},
    {"type":"error","message","retryable"}, {"type":"done"}
    """
    try:
        transcript = _history_to_transcript(request.history)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid history: {e}")

    if not transcript:
        raise HTTPException(status_code=400, detail="History must contain at least one user message")

    logger.info(f"Streaming agent turn ({len(transcript)} transcript messages)")
    return StreamingResponse(gateway.stream(transcript), media_type=NDJSON_MEDIA_TYPE)


# =============================================================================
# PROTOTYPES & PAPERS
# =============================================================================


@app.get("/api/prototypes")
async def list_prototypes(store: JsonFileStore = Depends(get_store)):
    records = await store.alist_prototypes()
    return {"prototypes": [r.model_dump() for r in records], "count": len(records)}


@app.get("/api/prototypes/{prototype_id}")
async def get_prototype(prototype_id: str, store: JsonFileStore = Depends(get_store)):
    record = await store.aget_prototype(prototype_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Prototype '{prototype_id}' not found")
    return {"prototype": record.model_dump()}


@app.post("/api/prototypes")
async def save_prototype(body: PrototypeCreate, store: JsonFileStore = Depends(get_store)):
    """Create or overwrite a prototype."""
    if not body.id:
        raise HTTPException(status_code=400, detail="Prototype id is required")

    try:
        saved = await store.aput_prototype(PrototypeRecord(**body.model_dump()))
    except StoreError as e:
        logger.error(f"Error saving prototype {body.id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save prototype")

    logger.info(f"Saved prototype: {saved.id}")
    return {"success": True, "prototype": saved.model_dump()}


@app.patch("/api/prototypes/{prototype_id}")
async def update_prototype(prototype_id: str, body: PrototypeUpdate, store: JsonFileStore = Depends(get_store)):
    """Update code and/or history of an existing prototype."""
    record = await store.aget_prototype(prototype_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Prototype '{prototype_id}' not found")

    changes = body.model_dump(exclude_none=True)
    try:
        saved = await store.aput_prototype(record.model_copy(update=changes))
    except StoreError as e:
        logger.error(f"Error updating prototype {prototype_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update prototype")

    return {"success": True, "prototype": saved.model_dump()}


@app.delete("/api/prototypes/{prototype_id}")
async def delete_prototype(prototype_id: str, store: JsonFileStore = Depends(get_store)):
    try:
        deleted = await store.adelete_prototype(prototype_id)
    except StoreError as e:
        logger.error(f"Error deleting prototype {prototype_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete prototype")

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Prototype '{prototype_id}' not found")
    return {"success": True}


@app.get("/api/papers")
async def list_papers(store: JsonFileStore = Depends(get_store)):
    records = await store.alist_analyses()
    return {"papers": [r.model_dump() for r in records], "count": len(records)}


@app.get("/api/papers/{paper_hash}")
async def get_paper(paper_hash: str, store: JsonFileStore = Depends(get_store)):
    record = await store.aget_analysis(paper_hash)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Paper '{paper_hash}' not found")
    return {"paper": record.model_dump()}


# =============================================================================
# COLLABORATORS
# =============================================================================


@app.post("/api/upload")
async def upload_paper(
    file: UploadFile = File(...),
    store: JsonFileStore = Depends(get_store),
    extractor: TextExtractor = Depends(get_text_extractor),
):
    """
    Extract text from an uploaded PDF.

    Short-circuits on a cached analysis for the same file content.
    """
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    digest = content_hash(data)
    cached = await store.aget_analysis(digest)
    if cached is not None and cached.raw_text:
        logger.info(f"Upload cache hit: {digest[:12]} ({file.filename})")
        response = {"text": cached.raw_text, "hash": digest}
        if cached.analysis is not None:
            response["cachedAnalysis"] = cached.analysis
        return response

    try:
        text = await extractor.extract(data)
    except ExtractionError as e:
        logger.error(f"Extraction failed for {file.filename}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    try:
        await store.aput_analysis(AnalysisRecord(hash=digest, filename=file.filename or "", raw_text=text))
    except StoreError as e:
        # The extracted text is still returned; only the cache entry is lost
        logger.error(f"Failed to cache extraction for {digest[:12]}: {e}", exc_info=True)

    return {"text": text, "hash": digest}


@app.post("/api/analyze")
async def analyze_paper(
    body: AnalyzeRequest,
    store: JsonFileStore = Depends(get_store),
    analyzer: PaperAnalyzer = Depends(get_analyzer),
):
    """
    Produce a structured analysis of paper text.

    With a hash the analysis is cached on that paper's record, so later
    uploads of the same file and prototype sessions started from it reuse it.
    """
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Paper text is required")

    try:
        analysis = await analyzer.analyze(body.text)
    except AnalysisError as e:
        logger.error(f"Analysis failed ({len(body.text)} chars): {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    payload = analysis.model_dump()

    if body.hash:
        existing = await store.aget_analysis(body.hash)
        if existing is not None:
            record = existing.model_copy(update={
                "analysis": payload,
                "raw_text": existing.raw_text or body.text,
                "filename": existing.filename or body.filename or "",
            })
        else:
            record = AnalysisRecord(
                hash=body.hash,
                filename=body.filename or "",
                raw_text=body.text,
                analysis=payload,
            )
        try:
            await store.aput_analysis(record)
            logger.info(f"Cached analysis for {body.hash[:12]}")
        except StoreError as e:
            logger.error(f"Failed to cache analysis for {body.hash[:12]}: {e}", exc_info=True)

    return {"analysis": payload}


@app.get("/api/arxiv/{arxiv_id:path}")
async def get_arxiv_paper(arxiv_id: str):
    try:
        paper = await fetch_paper_metadata(arxiv_id)
    except MetadataNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching arXiv metadata for {arxiv_id}: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Failed to fetch paper metadata")
    return {"paper": paper.model_dump()}


# =============================================================================
# WEBSOCKET
# =============================================================================


@app.websocket("/ws/chat/{session_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    session_id: str,
    reconnect: bool = False,
    prototype_id: Optional[str] = None,
    paper_hash: Optional[str] = None,
):
    """
    WebSocket endpoint for the prototype agent loop.

    Args:
        websocket: WebSocket connection
        session_id: Unique session identifier
        reconnect: If True, try to reconnect to existing session/agent
        prototype_id: Saved prototype to resume (defaults to the session id)
        paper_hash: Content hash of the paper being prototyped

    Inbound frames:
    {
        "type": "chat" | "manual_retry" | "dismiss_error" | "RENDER_SUCCESS" | "RENDER_ERROR" | "ping" | "reset",
        "message": "user message (chat) or error text (RENDER_ERROR)",
        "version": 3
    }

    Outbound frames are the agent's events plus
    "connection" | "chat_received" | "pong" | "reset_complete" | "error".
    """
    try:
        await manager.connect(
            websocket,
            session_id,
            reconnect=reconnect,
            prototype_id=prototype_id or session_id,
            paper_hash=paper_hash,
        )

        logger.info(f"WebSocket connection established: {session_id}")

        # Main message loop
        while True:
            try:
                data = await websocket.receive_json()

                if not isinstance(data, dict):
                    await manager.send_message(session_id, {
                        "type": "error",
                        "message": "Messages must be JSON objects"
                    })
                    continue

                await manager.handle_message(session_id, data)

            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally: {session_id}")
                break

            except RuntimeError as e:
                # WebSocket disconnected unexpectedly
                logger.warning(f"WebSocket runtime error for {session_id}: {e}")
                break

            except Exception as e:
                logger.error(f"Error in message loop for {session_id}: {e}", exc_info=True)
                try:
                    await manager.send_message(session_id, {
                        "type": "error",
                        "message": "Internal server error processing message"
                    })
                except Exception:
                    logger.warning(f"Failed to send error to {session_id}")
                break

    except Exception as e:
        logger.error(f"Error in WebSocket endpoint for {session_id}: {e}", exc_info=True)

    finally:
        # Keep the agent alive for the grace period for a potential reconnect
        if manager.active_connections.get(session_id) is websocket:
            await manager.disconnect(session_id, keep_agent=True)
        logger.info(f"WebSocket connection closed: {session_id} (agent kept for reconnect)")


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "SciProto API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "create_session": "POST /api/session",
            "list_sessions": "/api/sessions",
            "agent": "POST /api/agent",
            "prototypes": "/api/prototypes",
            "papers": "/api/papers",
            "upload": "POST /api/upload",
            "analyze": "POST /api/analyze",
            "arxiv": "/api/arxiv/{arxiv_id}",
            "websocket": "/ws/chat/{session_id}"
        },
        "docs": "/docs",
        "timestamp": datetime.utcnow().isoformat()
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sciproto.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
