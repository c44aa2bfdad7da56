"""
Interview Session Orchestrator
Drives one candidate's interview from session lookup to teardown.

Lifecycle:
1. initialize(): load the session descriptor and try the camera (audio-only if it fails)
2. start(): open the microphone, negotiate the realtime connection
3. control channel open: mark in-progress, push the session config, start the clock,
   send the greeting exactly once
4. every inbound control-channel event is parsed by the provider adapter and fanned
   out to the transcript, usage and termination components, in arrival order
5. teardown (driven by TerminationCoordinator, runs once): release every track, flush
   the recording, emit the cost summary, save the transcript and request analysis

State for one start attempt lives in a SessionContext that is created on start and
discarded on teardown, so callbacks from an earlier connection can never act on a
later one.
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from voice_screener.config import Settings
from voice_screener.core.constants import DATA_CHANNEL_LABEL, SESSION_ENDED_MESSAGE
from voice_screener.core.errors import MediaAccessError, ProtocolError, UploadError, VoiceScreenerError
from voice_screener.core.events import ProtocolErrorEvent, ServerEvent, UnknownEvent
from voice_screener.core.models import SessionDescriptor
from voice_screener.core.termination import TerminationCoordinator
from voice_screener.core.transcript import TranscriptAssembler
from voice_screener.core.usage import UsageAccountant
from voice_screener.prompts.interview import greeting_instructions, session_instructions
from voice_screener.services.backend_client import InterviewBackendClient
from voice_screener.services.base_transport import (
    CaptureFactory,
    ConnectionFactory,
    ControlChannel,
    MediaDevices,
    MediaHandle,
    RealtimeConnection,
    stop_handles,
)
from voice_screener.services.negotiator import TransportNegotiator
from voice_screener.services.provider_adapters import ProviderAdapter, get_provider_adapter
from voice_screener.services.recording import RecordingCoordinator
from voice_screener.utils.logging_config import log_cost_summary, log_session_event
from voice_screener.utils.metrics import (
    active_sessions,
    protocol_events_total,
    record_session_metrics,
    sessions_started_total,
)
from voice_screener.utils.timing import ElapsedTimer

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """Live indicator text"""
    READY = "READY"
    CONNECTING = "CONNECTING..."
    LIVE = "LIVE"
    ENDED = "ENDED"
    ERROR = "ERROR"


class SessionContext:
    """
    Mutable state of one start attempt.

    Created by InterviewSession.start(), replaced on the next start, and released by
    teardown. Nothing here outlives the attempt.
    """

    def __init__(self, connection: RealtimeConnection, termination: TerminationCoordinator):
        self.connection = connection
        self.termination = termination
        self.channel: Optional[ControlChannel] = None
        self.microphone: Optional[MediaHandle] = None
        self.assistant_audio: Optional[MediaHandle] = None
        self.greeting_sent = False
        self.live_at: Optional[float] = None

    @classmethod
    def create(
        cls,
        connection: RealtimeConnection,
        teardown: Callable[[str], Any],
        failsafe_seconds: float
    ) -> "SessionContext":
        return cls(connection, TerminationCoordinator(teardown, failsafe_seconds=failsafe_seconds))

    def release_tracks(self):
        """Stop every track this attempt acquired."""
        self.connection.stop_local_tracks()
        stop_handles([self.microphone, self.assistant_audio])


class InterviewSession:
    """
    Orchestrator for one interview session.

    Args:
        session_id: Interview session identifier
        backend: Session API client
        devices: Camera/microphone access
        connection_factory: Creates a fresh RealtimeConnection per start
        capture_factory: Creates the combined recording capture
        settings: Application settings
        on_tick: Optional elapsed-time display callback (elapsed_seconds, "MM:SS")
    """

    def __init__(
        self,
        session_id: str,
        backend: InterviewBackendClient,
        devices: MediaDevices,
        connection_factory: ConnectionFactory,
        capture_factory: CaptureFactory,
        settings: Optional[Settings] = None,
        on_tick: Optional[Callable[[float, str], None]] = None
    ):
        self.session_id = session_id
        self.backend = backend
        self.devices = devices
        self.connection_factory = connection_factory
        self.settings = settings or Settings()

        self.descriptor: Optional[SessionDescriptor] = None
        self.adapter: Optional[ProviderAdapter] = None
        self.negotiator: Optional[TransportNegotiator] = None

        self.transcript = TranscriptAssembler()
        self.usage = UsageAccountant(self.settings.pricing_rates())
        self.recorder = RecordingCoordinator(capture_factory, self._upload_media)
        self.timer = ElapsedTimer(on_tick=on_tick)

        self.context: Optional[SessionContext] = None
        self.camera: Optional[MediaHandle] = None
        self.camera_status = "Camera pending"

        self.status = SessionStatus.READY
        self.is_active = False
        self.can_start = False
        self.can_stop = False

        self._event_log: List[Dict[str, Any]] = []
        self._save_task: Optional[asyncio.Future] = None
        self._background: Set[asyncio.Future] = set()
        self._ended = asyncio.Event()

    # ---------------------------------------------------------------- properties

    @property
    def camera_available(self) -> bool:
        return self.camera is not None

    @property
    def termination(self) -> Optional[TerminationCoordinator]:
        return self.context.termination if self.context else None

    # ---------------------------------------------------------------- helpers

    def _show_error(self, message: str):
        self.transcript.add_system_message(f"Error: {message}")
        self.status = SessionStatus.ERROR

    def _track(self, future: asyncio.Future) -> asyncio.Future:
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return future

    def _send(self, ctx: SessionContext, event: Dict[str, Any]):
        if ctx.channel is None or not ctx.channel.is_open:
            return
        logger.debug(f"Sending event: {event.get('type')}")
        self._event_log.append({"direction": "out", "at": time.time(), "event": event})
        ctx.channel.send(json.dumps(event))

    async def _upload_media(self, media_type: str, data: bytes, content_type: str) -> Optional[str]:
        return await self.backend.upload_media(self.session_id, media_type, data, content_type)

    async def _open_camera(self):
        try:
            self.camera = await self.devices.open_camera()
            self.camera_status = "Active"
        except MediaAccessError as e:
            logger.warning(f"Camera access error: {e}; continuing audio-only")
            self.camera = None
            self.camera_status = "Camera unavailable"
        self.recorder.attach_camera(self.camera)

    # ---------------------------------------------------------------- lifecycle

    async def initialize(
        self,
        candidate_name: Optional[str] = None,
        candidate_email: Optional[str] = None
    ) -> SessionDescriptor:
        """
        Load the session descriptor and request the camera.

        A position link is first turned into a session for the candidate, which
        needs both candidate_name and candidate_email.

        Raises:
            VoiceScreenerError: If the session cannot be loaded (start stays disabled)
        """
        try:
            descriptor = await self.backend.fetch_session(self.session_id)
            if descriptor.is_position:
                descriptor = await self._start_from_position(descriptor, candidate_name, candidate_email)
            self.descriptor = descriptor
        except VoiceScreenerError as e:
            logger.error(f"Error loading interview session {self.session_id}: {e}")
            self._show_error(str(e))
            raise

        self.adapter = get_provider_adapter(self.descriptor.use_alternate_provider, self.settings)
        self.negotiator = TransportNegotiator(self.backend.client, self.adapter, self.settings)

        await self._open_camera()

        self.can_start = True
        log_session_event(
            logger, self.session_id, "initialized",
            provider=self.adapter.name, camera=self.camera_status
        )
        return self.descriptor

    async def _start_from_position(
        self,
        position: SessionDescriptor,
        candidate_name: Optional[str],
        candidate_email: Optional[str]
    ) -> SessionDescriptor:
        name = (candidate_name or "").strip()
        email = (candidate_email or "").strip()
        if not name or not email:
            raise VoiceScreenerError("Please enter both name and email")

        session_id = await self.backend.start_from_position(position.session_id, name, email)
        descriptor = await self.backend.fetch_session(session_id)
        if descriptor.is_position:
            raise VoiceScreenerError("Failed to start interview: server returned another position")

        logger.info(f"Position {position.session_id} started as session {session_id}")
        self.session_id = session_id
        return descriptor

    async def start(self) -> bool:
        """
        Start the interview: microphone, connection, negotiation.

        Setup failures are reported in the transcript, release everything acquired
        so far and re-enable start.

        Returns:
            True if the connection was negotiated (the session goes live on channel open)
        """
        if not self.can_start or self.descriptor is None:
            logger.warning("Start requested while not ready")
            return False

        self.can_start = False
        self.status = SessionStatus.CONNECTING
        self.transcript.reset()
        self.usage.reset()
        self.recorder.reset()
        self._event_log = []
        self._save_task = None
        self._ended.clear()

        if self.camera is None:
            await self._open_camera()

        ctx = SessionContext.create(
            self.connection_factory(),
            self._teardown,
            self.settings.end_failsafe_seconds
        )
        self.context = ctx

        try:
            ctx.microphone = await self.devices.open_microphone()
            self.recorder.attach_candidate_audio(ctx.microphone)

            ctx.connection.on_remote_audio(lambda handle: self._on_remote_audio(ctx, handle))
            ctx.connection.add_microphone(ctx.microphone)
            ctx.channel = ctx.connection.create_control_channel(
                DATA_CHANNEL_LABEL,
                lambda: self._on_channel_open(ctx),
                lambda message: self._on_channel_message(ctx, message),
                lambda: self._on_channel_close(ctx)
            )

            offer = await ctx.connection.create_offer()
            answer = await self.negotiator.negotiate(offer)
            await ctx.connection.apply_answer(answer)
        except Exception as e:
            logger.error(f"Error starting interview: {e}", exc_info=not isinstance(e, VoiceScreenerError))
            await self._abort_start(ctx, e)
            return False

        log_session_event(logger, self.session_id, "connecting", provider=self.adapter.name)
        return True

    async def _abort_start(self, ctx: SessionContext, error: Exception):
        ctx.termination.cancel()
        if ctx.channel is not None:
            ctx.channel.close()
        ctx.release_tracks()
        try:
            await ctx.connection.close()
        except Exception as e:
            logger.warning(f"Failed to close connection after start error: {e}")

        if self.context is ctx:
            self.context = None
        self.recorder.attach_candidate_audio(None)
        self.recorder.attach_assistant_audio(None)

        sessions_started_total.labels(provider=self.adapter.name, status="failed").inc()
        self._show_error(f"Failed to start interview: {error}")
        self.status = SessionStatus.READY
        self.can_start = True

    async def stop(self):
        """User-initiated stop; no-op when nothing is running or already ended."""
        ctx = self.context
        if ctx is None:
            return
        await ctx.termination.request_stop()

    async def wait_until_ended(self):
        await self._ended.wait()

    async def wait_for_background(self):
        """Await the transcript save/analysis and any other pending best-effort calls."""
        pending = list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        """Final shutdown: stop any live session and release the camera."""
        await self.stop()
        await self.wait_for_background()
        stop_handles([self.camera])
        self.camera = None
        self.recorder.attach_camera(None)

    def export_event_log(self) -> List[Dict[str, Any]]:
        """Inbound and outbound control-channel events of the current session, in order."""
        return list(self._event_log)

    # ---------------------------------------------------------------- callbacks

    async def _on_remote_audio(self, ctx: SessionContext, handle: MediaHandle):
        if ctx is not self.context or ctx.termination.already_ended:
            handle.stop()
            return
        logger.info("Receiving assistant audio track")
        ctx.assistant_audio = handle
        self.recorder.attach_assistant_audio(handle)
        await self.recorder.try_start()

    async def _on_channel_open(self, ctx: SessionContext):
        if ctx is not self.context or ctx.termination.already_ended or ctx.live_at is not None:
            return
        logger.info("Data channel opened")

        self.is_active = True
        self.status = SessionStatus.LIVE
        self.can_stop = True
        ctx.live_at = time.monotonic()
        active_sessions.inc()
        sessions_started_total.labels(provider=self.adapter.name, status="live").inc()

        self._track(asyncio.ensure_future(self.backend.mark_in_progress(self.session_id)))

        language = self.settings.interview_language_name
        self._send(ctx, self.adapter.session_update(
            session_instructions(self.descriptor.system_prompt, language)
        ))
        self.timer.start()
        self._send_greeting(ctx)
        await self.recorder.try_start()
        log_session_event(logger, self.session_id, "live", provider=self.adapter.name)

    def _send_greeting(self, ctx: SessionContext):
        if ctx.greeting_sent:
            return
        ctx.greeting_sent = True
        descriptor = self.descriptor
        self._send(ctx, self.adapter.response_create(greeting_instructions(
            descriptor.system_prompt,
            descriptor.candidate_name,
            descriptor.job_title,
            self.settings.interview_language_name
        )))

    async def _on_channel_message(self, ctx: SessionContext, message: str):
        if ctx is not self.context or ctx.termination.already_ended:
            return

        try:
            raw = json.loads(message)
        except ValueError as e:
            logger.warning(f"Ignoring malformed control-channel message: {e}")
            return
        if not isinstance(raw, dict):
            logger.warning("Ignoring non-object control-channel message")
            return

        self._event_log.append({"direction": "in", "at": time.time(), "event": raw})
        for event in self.adapter.parse(raw):
            await self._dispatch(ctx, event)

    async def _dispatch(self, ctx: SessionContext, event: ServerEvent):
        protocol_events_total.labels(kind=event.kind.value).inc()

        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring unhandled event type: {event.source_type}")
            return
        if isinstance(event, ProtocolErrorEvent):
            error = ProtocolError(event.message, event.code)
            logger.error(f"Realtime error event: {error} (code={error.code})")
            self.transcript.add_system_message(f"Error: {error}")
            return

        self.transcript.handle(event)
        self.usage.handle(event)
        await ctx.termination.handle(event)

    async def _on_channel_close(self, ctx: SessionContext):
        logger.info("Data channel closed")
        if ctx is not self.context or ctx.termination.already_ended or not self.is_active:
            return
        logger.warning("Control channel closed unexpectedly; ending session")
        await ctx.termination.end("channel_closed")

    # ---------------------------------------------------------------- teardown

    async def _teardown(self, reason: str):
        """Single teardown path; TerminationCoordinator guarantees it runs once."""
        ctx = self.context
        if ctx is None:
            return

        try:
            await self._release(ctx)
            self._finish(ctx, reason)
        finally:
            self._ended.set()

    async def _release(self, ctx: SessionContext):
        if ctx.channel is not None:
            ctx.channel.close()
        ctx.release_tracks()
        stop_handles([self.camera])
        try:
            await ctx.connection.close()
        except Exception as e:
            logger.warning(f"Failed to close peer connection: {e}")

        try:
            await self.recorder.stop()
        except Exception as e:
            logger.error(f"Recording flush failed during teardown: {e}", exc_info=True)
        self.camera = None
        self.recorder.attach_camera(None)

    def _finish(self, ctx: SessionContext, reason: str):
        self.timer.stop()
        self.usage.finalize()
        summary = self.usage.summary()
        log_cost_summary(logger, self.session_id, summary.model_dump())

        live_seconds = time.monotonic() - ctx.live_at if ctx.live_at is not None else 0.0
        record_session_metrics(live_seconds, reason, summary.total_cost_usd)
        if self.is_active:
            active_sessions.dec()

        self.is_active = False
        self.status = SessionStatus.ENDED
        self.can_start = True
        self.can_stop = False

        transcript = self.transcript.export()
        if transcript and self._save_task is None:
            self._save_task = self._track(asyncio.ensure_future(self._save_transcript_and_analysis(transcript)))

        self.transcript.add_system_message(SESSION_ENDED_MESSAGE)
        log_session_event(
            logger, self.session_id, "ended",
            reason=reason, elapsed=self.timer.display, recording=self.recorder.uploaded_path
        )

    async def _save_transcript_and_analysis(self, transcript: str):
        try:
            path = await self.backend.save_transcript(self.session_id, transcript)
            logger.info(f"✓ Transcript saved: {path}")
            report = await self.backend.request_analysis(self.session_id, transcript)
            logger.info(f"✓ Analysis saved: {report}")
        except UploadError as e:
            logger.error(f"Failed saving transcript/analysis: {e}")
        except Exception as e:
            logger.error(f"Unexpected error saving transcript/analysis: {e}", exc_info=True)
