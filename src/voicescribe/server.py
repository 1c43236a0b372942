"""
FastAPI Server Entry Point

HTTP + WebSocket surface for the VoiceScribe dictation backend.
The backend owns the whole flow:
  1. POST /model/load loads the Whisper model (progress over the WebSocket)
  2. POST /session/start opens the microphone; partial transcripts stream in
  3. POST /session/stop runs the final pass and returns to ready

Frontend just needs to:
  - Start/stop recording
  - Display state and transcript via WebSocket updates
  - Copy or clear the transcript
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from voicescribe import __version__
from voicescribe.app.dictation_session import DictationSession
from voicescribe.app.inference_client import BusyPolicy, InferenceClient, WhisperEngineFactory
from voicescribe.app.transcription_worker import WorkerInferenceClient
from voicescribe.config import Settings, settings
from voicescribe.data.vocabulary_profiles import ProfileNotFoundError, VocabularyProfileManager
from voicescribe.input.format_bridge import to_normalized_buffer
from voicescribe.models.audio_data import TranscribeOptions, UpdateKind
from voicescribe.utils.exceptions import FormatError, InferenceError
from voicescribe.utils.logger import get_logger

logger = get_logger("Server")


# ============================================================================
# Pydantic Models for API
# ============================================================================

class StatusResponse(BaseModel):
    """Current status response"""
    state: str
    timestamp: str
    progress: Optional[int] = None
    error: Optional[str] = None
    transcript: str = ""
    display_text: str = ""
    no_speech: bool = False
    transcript_error: Optional[str] = None
    model: Optional[str] = None
    busy: bool = False
    captured_seconds: float = 0.0
    vocabulary_profile: Optional[str] = None


class LoadModelRequest(BaseModel):
    model_id: Optional[str] = None


class StartSessionRequest(BaseModel):
    vocabulary_profile: Optional[str] = None


class SessionResponse(BaseModel):
    success: bool
    message: str
    state: str


class TranscriptResponse(BaseModel):
    text: str
    segments: List[Dict[str, Any]] = []
    duration_seconds: Optional[float] = None


# ============================================================================
# WebSocket Connection Manager
# ============================================================================

class ConnectionManager:
    """Manages WebSocket connections for real-time state updates"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients"""
        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to client: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)


# ============================================================================
# VoiceScribe Server
# ============================================================================

class VoiceScribeServer:
    """Holds the inference client and dictation session for the app."""

    def __init__(self, client, session: DictationSession, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.client = client
        self.session = session
        self.connection_manager = ConnectionManager()
        self._loop = loop
        # Session events arrive on capture, refresh and inference threads
        self.session.add_listener(self._forward_event)

    def _forward_event(self, event: dict):
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.connection_manager.broadcast(event), self._loop)

    def get_status(self) -> dict:
        return self.session.status()

    def close(self):
        self.session.close()
        self.client.close()


def _build_client(config: Settings):
    """Inference client for the configured execution mode."""
    factory = WhisperEngineFactory.from_settings(config.model)
    if config.model.execution == "process":
        return WorkerInferenceClient(factory, default_model_id=config.model.model_id)
    return InferenceClient(factory, default_model_id=config.model.model_id)


def _build_session(client, config: Settings) -> DictationSession:
    vocabulary = VocabularyProfileManager()
    if config.transcription.profiles_file:
        vocabulary.load_file(config.transcription.profiles_file)
    return DictationSession(client, config, vocabulary=vocabulary)


# ============================================================================
# FastAPI Application
# ============================================================================

# Global server instance
server: Optional[VoiceScribeServer] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    global server

    logger.info("Starting VoiceScribe Server...")
    client = _build_client(settings).open()
    server = VoiceScribeServer(client, _build_session(client, settings), asyncio.get_running_loop())

    yield

    logger.info("Shutting down VoiceScribe Server...")
    if server:
        server.close()
        server = None


app = FastAPI(
    title="VoiceScribe API",
    description="Local voice dictation backed by Whisper",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_server() -> VoiceScribeServer:
    if not server:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return server


def _session_response(result: dict) -> dict:
    srv = _require_server()
    if not result.get("success"):
        raise HTTPException(status_code=409, detail=result.get("message"))
    return {
        "success": True,
        "message": result.get("message", ""),
        "state": srv.session.state_manager.current_state.value,
    }


# ============================================================================
# REST API Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "VoiceScribe API",
        "status": "running",
        "version": __version__,
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "load_model": "POST /model/load",
            "start": "POST /session/start",
            "stop": "POST /session/stop",
            "copy": "POST /transcript/copy",
            "clear": "POST /transcript/clear",
            "transcribe": "POST /transcribe",
            "devices": "GET /audio/devices",
            "websocket": "WS /ws",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    if not server:
        return {"status": "unhealthy", "reason": "Server not initialized"}

    return {
        "status": "healthy",
        "state": server.session.state_manager.current_state.value,
        "model_ready": server.client.is_ready,
        "timestamp": server.session.state_manager.state_data.timestamp.isoformat()
    }


@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Current state, load progress, transcript and last error."""
    return _require_server().get_status()


@app.post("/model/load", response_model=SessionResponse)
async def load_model(request: Optional[LoadModelRequest] = None):
    """Start loading a model. Progress is reported via /status and the WebSocket."""
    srv = _require_server()
    model_id = request.model_id if request else None
    return _session_response(srv.session.load_model(model_id))


@app.post("/session/start", response_model=SessionResponse)
async def start_session(request: Optional[StartSessionRequest] = None):
    srv = _require_server()
    if request and request.vocabulary_profile is not None:
        try:
            srv.session.set_vocabulary_profile(request.vocabulary_profile)
        except ProfileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
    return _session_response(srv.session.start_recording())


@app.post("/session/stop", response_model=SessionResponse)
async def stop_session():
    srv = _require_server()
    result = await asyncio.to_thread(srv.session.stop_recording)
    return _session_response(result)


@app.post("/transcript/copy")
async def copy_transcript():
    """Transcript text for the clipboard."""
    return {"text": _require_server().session.copy_text()}


@app.post("/transcript/clear")
async def clear_transcript():
    _require_server().session.clear()
    return {"success": True}


@app.post("/transcribe", response_model=TranscriptResponse)
async def transcribe_upload(
    audio: UploadFile = File(...),
    language: Optional[str] = Form(None),
    task: str = Form("transcribe"),
    vocabulary_profile: Optional[str] = Form(None),
):
    """One-shot transcription of an uploaded audio blob."""
    srv = _require_server()
    if not srv.client.is_ready:
        raise HTTPException(status_code=409, detail="Model not loaded")

    try:
        data = await audio.read()
        # Decoding and resampling stay off the event loop
        buffer = await asyncio.to_thread(to_normalized_buffer, data)
    except FormatError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        hint = srv.session.vocabulary.resolve_hint(vocabulary_profile)
    except ProfileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    cfg = srv.session.settings.transcription
    try:
        options = TranscribeOptions(
            language=language or cfg.language,
            task=task,
            chunk_length_s=cfg.chunk_length_s,
            stride_length_s=cfg.stride_length_s,
            vocabulary_hint=hint,
        ).validate()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        future = srv.client.transcribe(buffer, options, kind=UpdateKind.TERMINAL, if_busy=BusyPolicy.QUEUE)
        update = await asyncio.wrap_future(future)
    except InferenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "text": update.text,
        "segments": [{"text": s.text, "start": s.start, "end": s.end} for s in update.segments],
        "duration_seconds": update.duration_s,
    }


@app.get("/audio/devices")
async def list_devices():
    """Input devices reported by PortAudio."""
    # Lazy import: sounddevice needs the PortAudio runtime
    try:
        from voicescribe.input.audio_capture import MicrophoneCapture
    except (ImportError, OSError) as e:
        raise HTTPException(status_code=503, detail=f"Audio capture unavailable: {e}")
    return {"devices": MicrophoneCapture.list_audio_devices()}


# ============================================================================
# WebSocket Endpoint for Real-time Updates
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time updates.

    Sends a 'connected' message with the current status, then forwards
    'state_change' and 'transcript' events as they happen.
    """
    if not server:
        await websocket.close(code=1011, reason="Server not initialized")
        return

    await server.connection_manager.connect(websocket)

    try:
        await websocket.send_json({
            'type': 'connected',
            'state': server.session.state_manager.current_state.value,
            'data': server.get_status()
        })

        while True:
            # Keep-alive; updates are pushed by the session listener
            await websocket.receive_text()

    except WebSocketDisconnect:
        server.connection_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        server.connection_manager.disconnect(websocket)


# ============================================================================
# Run Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voicescribe.server:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level="info"
    )
