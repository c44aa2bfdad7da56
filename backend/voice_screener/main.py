"""
FastAPI Main Application
Interview server: session records, SDP relay, media/transcript storage and analysis.
"""

import re
import uuid
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Union
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from voice_screener import __version__
from voice_screener.config import Settings
from voice_screener.core.constants import MEDIA_CAMERA, MEDIA_COMBINED
from voice_screener.core.models import (
    AnalyzeRequest,
    CreatePositionRequest,
    CreatePositionResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    PathResponse,
    PositionDescriptor,
    PositionRecord,
    SessionListItem,
    SessionRecord,
    StartInterviewRequest,
    StartInterviewResponse,
    StatusUpdateRequest,
)
from voice_screener.prompts.interview import create_interview_prompt
from voice_screener.services.analysis_service import TranscriptAnalyzer, render_markdown_report
from voice_screener.utils.logging_config import setup_logging
from voice_screener.utils.metrics import relay_requests_total, sessions_created_total
from voice_screener.utils.timing import time_operation

logger = logging.getLogger(__name__)

CLIENT_SECRETS_URL = "https://api.openai.com/v1/realtime/client_secrets"
SAFE_TYPE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")
ARTIFACT_DIRS = ("videos", "transcripts", "analysis")


def configure_logging(settings: Settings) -> None:
    """Console logging from the same Settings the CLI reads (JSON when LOG_FORMAT=json)."""
    setup_logging(level=settings.log_level, json_format=settings.log_format.lower() == "json")


def safe_media_type(media_type: str) -> str:
    """Strip a media type tag down to a filename-safe token."""
    return SAFE_TYPE_PATTERN.sub("", media_type)[:50] or "media"


def media_slot(safe_type: str) -> Optional[str]:
    """SessionMedia field for an upload type tag."""
    if MEDIA_COMBINED in safe_type:
        return "combined"
    if MEDIA_CAMERA in safe_type:
        return "camera"
    if "candidate" in safe_type:
        return "candidate_audio"
    if "assistant" in safe_type:
        return "assistant_audio"
    return None


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    analyzer: Optional[TranscriptAnalyzer] = None
) -> FastAPI:
    """
    Build the interview server.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        http_client: Outbound client for provider calls (created at startup when omitted)
        analyzer: Transcript analyzer (built from settings when omitted)
    """

    settings = settings or Settings()
    storage_dir = Path(settings.storage_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        state = app.state
        for name in ARTIFACT_DIRS:
            (storage_dir / name).mkdir(parents=True, exist_ok=True)
        logger.info(f"✓ Storage ready at {storage_dir.resolve()}")

        owns_client = state.http_client is None
        if owns_client:
            state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(state.settings.http_timeout_seconds))

        if state.analyzer is None:
            state.analyzer = TranscriptAnalyzer.from_settings(state.settings)

        if not state.settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set; /session and /token will fail")
        if state.settings.azure_configured:
            logger.info(f"✓ Azure realtime relay enabled (deployment={state.settings.azure_openai_deployment})")

        yield

        logger.info("Shutting down application...")
        state.sessions.clear()
        state.positions.clear()
        if owns_client:
            await state.http_client.aclose()
            state.http_client = None
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Voice Screener API",
        description="Interview sessions, realtime SDP relay, media storage and transcript analysis",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.http_client = http_client
    app.state.analyzer = analyzer
    app.state.sessions = {}
    app.state.positions = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Directories are created at startup
    for name in ARTIFACT_DIRS:
        app.mount(f"/{name}", StaticFiles(directory=str(storage_dir / name), check_dir=False), name=name)

    def get_session_or_404(session_id: str) -> SessionRecord:
        session = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        return session

    def storage_path(*parts: str) -> Path:
        return storage_dir.joinpath(*parts)

    # ==================== Health & metrics ====================

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.

        Returns:
            Health status with component checks (503 when no realtime provider is configured)
        """
        current = app.state.settings
        components = {
            "realtime_credentials": bool(current.openai_api_key),
            "azure_realtime": current.azure_configured,
            "analysis_model": app.state.analyzer is not None and app.state.analyzer.llm is not None,
        }
        health_status = {
            "status": "healthy",
            "version": __version__,
            "timestamp": time.time(),
            "components": components,
            "metrics": {"total_sessions": len(app.state.sessions)},
        }

        if not (components["realtime_credentials"] or components["azure_realtime"]):
            health_status["status"] = "degraded"
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health_status)
        return health_status

    @app.get("/metrics")
    async def metrics():
        """Prometheus-compatible metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ==================== Sessions ====================

    def resolve_max_questions(requested: Optional[int]) -> int:
        if requested and requested > 0:
            return requested
        return app.state.settings.default_max_questions

    def register_session(
        job_title: str,
        job_description: str,
        candidate_name: str,
        max_questions: int,
        use_alternate_provider: bool,
        **extra
    ) -> SessionRecord:
        session_id = uuid.uuid4().hex
        session = SessionRecord(
            session_id=session_id,
            job_title=job_title,
            candidate_name=candidate_name,
            job_description=job_description,
            max_questions=max_questions,
            system_prompt=create_interview_prompt(
                job_title,
                job_description,
                candidate_name or None,
                max_questions
            ),
            use_alternate_provider=use_alternate_provider,
            **extra
        )
        app.state.sessions[session_id] = session
        sessions_created_total.labels(provider="azure" if use_alternate_provider else "openai").inc()

        logger.info(f"Created interview session: {session_id} for {job_title}")
        return session

    @app.post("/api/create-session", response_model=CreateSessionResponse)
    async def create_session(request: CreateSessionRequest):
        """Create an interview session and its interviewer prompt."""
        session = register_session(
            request.job_title,
            request.job_description,
            request.candidate_name or "",
            resolve_max_questions(request.max_questions),
            request.use_alternate_provider
        )
        return CreateSessionResponse(
            session_id=session.session_id,
            interview_link=f"/interview/{session.session_id}"
        )

    @app.get("/api/sessions", response_model=List[SessionListItem])
    async def list_sessions():
        return [
            SessionListItem(**session.model_dump(include=set(SessionListItem.model_fields)))
            for session in app.state.sessions.values()
        ]

    @app.get("/api/session/{session_id}", response_model=Union[SessionRecord, PositionDescriptor])
    async def get_session(session_id: str):
        position = app.state.positions.get(session_id)
        if position is not None:
            return PositionDescriptor(session_id=position.position_id, job_title=position.job_title)
        return get_session_or_404(session_id)

    @app.patch("/api/session/{session_id}/status")
    async def update_status(session_id: str, request: StatusUpdateRequest):
        session = get_session_or_404(session_id)
        session.status = request.status
        logger.info(f"Session {session_id} status -> {request.status}")
        return {"sessionId": session_id, "status": session.status}

    # ==================== Positions ====================

    @app.post("/api/create-position", response_model=CreatePositionResponse)
    async def create_position(request: CreatePositionRequest):
        """Create a position whose link starts a new session for every candidate."""
        position_id = uuid.uuid4().hex
        app.state.positions[position_id] = PositionRecord(
            position_id=position_id,
            job_title=request.job_title,
            job_description=request.job_description,
            max_questions=resolve_max_questions(request.max_questions),
            use_alternate_provider=request.use_alternate_provider
        )
        logger.info(f"Created position: {position_id} for {request.job_title}")
        return CreatePositionResponse(position_id=position_id, interview_link=f"/interview/{position_id}")

    @app.post("/api/position/{position_id}/start-interview", response_model=StartInterviewResponse)
    async def start_interview(position_id: str, request: StartInterviewRequest):
        position = app.state.positions.get(position_id)
        if position is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Position not found")

        session = register_session(
            position.job_title,
            position.job_description,
            request.candidate_name,
            position.max_questions,
            position.use_alternate_provider,
            candidate_email=request.candidate_email,
            position_id=position_id
        )
        position.session_ids.append(session.session_id)
        return StartInterviewResponse(
            session_id=session.session_id,
            interview_link=f"/interview/{session.session_id}"
        )

    # ==================== Realtime relay ====================

    @app.get("/token")
    async def create_token():
        """Mint an ephemeral realtime credential for direct negotiation."""
        current = app.state.settings
        if not current.openai_api_key:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to generate token")

        session_config = {
            "session": {
                "type": "realtime",
                "model": current.realtime_model,
                "audio": {"output": {"voice": current.realtime_voice}},
                "turn_detection": {
                    "type": current.turn_detection_type,
                    "eagerness": current.turn_detection_eagerness,
                },
                "input_audio_transcription": {
                    "model": current.transcription_model,
                    "language": current.transcription_language,
                },
            }
        }
        try:
            response = await app.state.http_client.post(
                CLIENT_SECRETS_URL,
                json=session_config,
                headers={"Authorization": f"Bearer {current.openai_api_key}"}
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Token generation error: {e}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to generate token")

        return JSONResponse(status_code=response.status_code, content=data)

    async def relay_offer(provider: str, url: str, headers: Dict[str, str], offer_sdp: str, params=None) -> Response:
        with time_operation(f"SDP relay ({provider})") as timing:
            try:
                response = await app.state.http_client.post(
                    url,
                    params=params,
                    content=offer_sdp.encode("utf-8"),
                    headers={**headers, "Content-Type": "application/sdp"}
                )
            except httpx.HTTPError as e:
                logger.error(f"{provider} session error: {e}")
                relay_requests_total.labels(provider=provider, status_code="500").inc()
                return PlainTextResponse("Failed to create session", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
            timing.metadata["status_code"] = response.status_code

        relay_requests_total.labels(provider=provider, status_code=str(response.status_code)).inc()
        if response.status_code >= 400:
            logger.error(f"{provider} API error: {response.status_code} {response.text}")
            return PlainTextResponse(response.text, status_code=response.status_code)

        logger.info(f"✓ SDP negotiation successful ({provider})")
        return PlainTextResponse(response.text, media_type="application/sdp")

    @app.post("/session")
    async def negotiate_session(request: Request):
        """Server-side SDP negotiation with the realtime provider."""
        current = app.state.settings
        if not current.openai_api_key:
            logger.error("Missing OPENAI_API_KEY for /session negotiation")
            return PlainTextResponse(
                "Server is not configured with OpenAI credentials",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        offer_sdp = (await request.body()).decode("utf-8", errors="replace")
        if not offer_sdp:
            return PlainTextResponse("Missing SDP offer payload", status_code=status.HTTP_400_BAD_REQUEST)
        if not offer_sdp.startswith("v="):
            logger.warning("SDP does not start with protocol version header; passing through")

        return await relay_offer(
            "openai",
            f"{current.realtime_base_url}/calls",
            {"Authorization": f"Bearer {current.openai_api_key}", "OpenAI-Beta": "realtime=v1"},
            offer_sdp,
            params={"model": current.realtime_model}
        )

    @app.post("/azure/session")
    async def negotiate_azure_session(request: Request):
        """Server-side SDP negotiation with the Azure OpenAI realtime gateway."""
        current = app.state.settings
        if not current.azure_configured:
            logger.error("Azure realtime relay requested but AZURE_OPENAI_* is not configured")
            return PlainTextResponse(
                "Server is not configured with Azure OpenAI credentials",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        offer_sdp = (await request.body()).decode("utf-8", errors="replace")
        if not offer_sdp:
            return PlainTextResponse("Missing SDP offer payload", status_code=status.HTTP_400_BAD_REQUEST)

        endpoint = current.azure_openai_endpoint.rstrip("/")
        return await relay_offer(
            "azure",
            f"{endpoint}/openai/realtime/{current.azure_openai_deployment}/calls",
            {"api-key": current.azure_openai_api_key},
            offer_sdp,
            params={"api-version": current.azure_openai_api_version}
        )

    # ==================== Artifacts ====================

    @app.post("/api/upload-media", response_model=PathResponse)
    async def upload_media(
        request: Request,
        session_id: str = Query("", alias="sessionId"),
        media_type: str = Query("", alias="type")
    ):
        """Store a recorded artifact as {sessionId}-{type}.webm."""
        session_id = session_id.strip()
        media_type = media_type.strip()
        if not session_id or not media_type:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sessionId and type are required")

        payload = await request.body()
        if not payload:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty payload")

        safe_type = safe_media_type(media_type)
        filename = f"{safe_media_type(session_id)}-{safe_type}.webm"
        try:
            storage_path("videos", filename).write_bytes(payload)
        except OSError as e:
            logger.error(f"Error saving media file: {e}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save media")

        final_path = f"/videos/{filename}"
        session = app.state.sessions.get(session_id)
        slot = media_slot(safe_type)
        if session is not None and slot:
            setattr(session.media, slot, final_path)

        logger.info(f"Stored {safe_type} media for {session_id} ({len(payload)} bytes)")
        return PathResponse(path=final_path)

    @app.post("/api/session/{session_id}/transcript", response_model=PathResponse)
    async def save_transcript(session_id: str, request: Request):
        session = get_session_or_404(session_id)
        transcript = (await request.body()).decode("utf-8", errors="replace")
        if not transcript.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Transcript is empty")

        filename = f"{session_id}.txt"
        storage_path("transcripts", filename).write_text(transcript, encoding="utf-8")
        session.transcript_path = f"/transcripts/{filename}"
        logger.info(f"Saved transcript for {session_id} ({len(transcript)} chars)")
        return PathResponse(path=session.transcript_path)

    @app.post("/api/session/{session_id}/analyze", response_model=PathResponse)
    async def analyze_transcript(session_id: str, request: AnalyzeRequest):
        """Analyze a transcript and store the Markdown report."""
        session = get_session_or_404(session_id)
        if not request.transcript.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Transcript is empty")

        with time_operation("Transcript analysis", metadata={"session_id": session_id}):
            report_text = await app.state.analyzer.analyze(request.transcript, session)

        filename = f"{session_id}-analysis.md"
        storage_path("analysis", filename).write_text(
            render_markdown_report(report_text, session.candidate_name, session.job_title),
            encoding="utf-8"
        )
        session.analysis_path = f"/analysis/{filename}"
        return PathResponse(path=session.analysis_path)

    # ==================== Error handlers ====================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom exception handler for HTTP exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "detail": str(exc.detail)}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc):
        """Malformed request bodies are client errors (400), not 422."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "detail": str(exc.errors())}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """Custom exception handler for unexpected exceptions."""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "detail": str(exc)}
        )

    return app


settings = Settings()
configure_logging(settings)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
