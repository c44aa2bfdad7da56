"""Shared fakes for the interview session tests.

The session only talks to devices, the peer connection and the recorder through the
ABCs in services/base_transport.py, so these in-memory versions let every lifecycle
path run without aiortc, ffmpeg or a network.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from voice_screener.config import Settings
from voice_screener.core.errors import MediaAccessError
from voice_screener.services.base_transport import (
    ControlChannel,
    MediaCapture,
    MediaDevices,
    MediaHandle,
    RealtimeConnection,
    call_maybe_async,
)


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class FakeHandle(MediaHandle):
    def __init__(self, kind: str, audio: bool = True, video: bool = False) -> None:
        self.kind = kind
        self._audio = f"{kind}-audio" if audio else None
        self._video = f"{kind}-video" if video else None
        self.stopped = False

    @property
    def audio_track(self) -> Optional[Any]:
        return self._audio

    @property
    def video_track(self) -> Optional[Any]:
        return self._video

    def stop(self) -> None:
        self.stopped = True


class FakeDevices(MediaDevices):
    def __init__(self, camera_fails: bool = False, microphone_fails: bool = False) -> None:
        self.camera_fails = camera_fails
        self.microphone_fails = microphone_fails
        self.cameras: List[FakeHandle] = []
        self.microphones: List[FakeHandle] = []

    async def open_camera(self) -> MediaHandle:
        if self.camera_fails:
            raise MediaAccessError("camera", "permission denied")
        handle = FakeHandle("camera", audio=False, video=True)
        self.cameras.append(handle)
        return handle

    async def open_microphone(self) -> MediaHandle:
        if self.microphone_fails:
            raise MediaAccessError("microphone", "permission denied")
        handle = FakeHandle("microphone")
        self.microphones.append(handle)
        return handle


class FakeCapture(MediaCapture):
    def __init__(self, video_track: Any, audio_tracks: List[Any], data: bytes = b"webm-bytes") -> None:
        self.video_track = video_track
        self.audio_tracks = list(audio_tracks)
        self.data = data
        self.started = False
        self.stop_calls = 0

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> bytes:
        self.stop_calls += 1
        return self.data


class CaptureFactory:
    def __init__(self, data: bytes = b"webm-bytes") -> None:
        self.data = data
        self.captures: List[FakeCapture] = []

    def __call__(self, video_track: Any, audio_tracks: List[Any]) -> FakeCapture:
        capture = FakeCapture(video_track, audio_tracks, self.data)
        self.captures.append(capture)
        return capture


# ---------------------------------------------------------------------------
# Realtime connection
# ---------------------------------------------------------------------------


class FakeChannel(ControlChannel):
    def __init__(self, label: str) -> None:
        self.label = label
        self.sent: List[Dict[str, Any]] = []
        self._open = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def close(self) -> None:
        self._open = False
        self.closed = True

    def sent_types(self) -> List[str]:
        return [event["type"] for event in self.sent]


class FakeConnection(RealtimeConnection):
    def __init__(self, answer_fails: bool = False) -> None:
        self.answer_fails = answer_fails
        self.microphones: List[MediaHandle] = []
        self.channel: Optional[FakeChannel] = None
        self.answer: Optional[str] = None
        self.local_tracks_stopped = False
        self.closed = False
        self._remote_audio: Optional[Callable] = None
        self._on_open: Optional[Callable] = None
        self._on_message: Optional[Callable] = None
        self._on_close: Optional[Callable] = None

    def add_microphone(self, handle: MediaHandle) -> None:
        self.microphones.append(handle)

    def on_remote_audio(self, callback: Callable[[MediaHandle], Any]) -> None:
        self._remote_audio = callback

    def create_control_channel(self, label, on_open, on_message, on_close) -> ControlChannel:
        self.channel = FakeChannel(label)
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        return self.channel

    async def create_offer(self) -> str:
        return "v=0\r\no=- offer\r\n"

    async def apply_answer(self, sdp: str) -> None:
        if self.answer_fails:
            raise ValueError("invalid answer")
        self.answer = sdp

    def stop_local_tracks(self) -> None:
        self.local_tracks_stopped = True

    async def close(self) -> None:
        self.closed = True

    # Provider side

    async def open_channel(self) -> None:
        self.channel._open = True
        await call_maybe_async(self._on_open)

    async def receive(self, event: Dict[str, Any]) -> None:
        await call_maybe_async(self._on_message, json.dumps(event))

    async def receive_raw(self, message: str) -> None:
        await call_maybe_async(self._on_message, message)

    async def close_channel(self) -> None:
        self.channel._open = False
        await call_maybe_async(self._on_close)

    async def deliver_remote_audio(self) -> FakeHandle:
        handle = FakeHandle("assistant")
        await call_maybe_async(self._remote_audio, handle)
        return handle


class ConnectionFactory:
    def __init__(self, answer_fails: bool = False) -> None:
        self.answer_fails = answer_fails
        self.connections: List[FakeConnection] = []

    def __call__(self) -> FakeConnection:
        connection = FakeConnection(self.answer_fails)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


# ---------------------------------------------------------------------------
# Interview server (httpx.MockTransport)
# ---------------------------------------------------------------------------


class FakeInterviewServer:
    """Routes the interview client's HTTP calls; every request is recorded."""

    def __init__(self, descriptor: Optional[Dict[str, Any]] = None) -> None:
        self.descriptor = descriptor or {
            "sessionId": "s1",
            "systemPrompt": "You are interviewing for Backend Engineer.",
            "candidateName": "Ada",
            "jobTitle": "Backend Engineer",
            "useAlternateProvider": False,
        }
        self.requests: List[httpx.Request] = []
        self.relay_status = 201
        self.token_status = 200
        self.direct_status = 201
        self.upload_status = 200
        self.transcript_status = 200
        # Plain-text bodies for 2xx replies that should carry JSON
        self.upload_text: Optional[str] = None
        self.transcript_text: Optional[str] = None
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.start_status = 200

    def paths(self) -> List[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]

    def find(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "api.openai.com":
            if self.direct_status >= 400:
                return httpx.Response(self.direct_status, text="direct rejected")
            return httpx.Response(self.direct_status, text="v=0\r\no=- direct-answer\r\n")

        if request.method == "GET" and path.rsplit("/", 1)[-1] in self.positions:
            return httpx.Response(200, json=self.positions[path.rsplit("/", 1)[-1]])
        if request.method == "POST" and path.endswith("/start-interview"):
            if path.split("/")[3] not in self.positions:
                return httpx.Response(404, json={"error": "Position not found"})
            if self.start_status >= 400:
                return httpx.Response(self.start_status, json={"error": "Failed to start interview"})
            return httpx.Response(200, json={"sessionId": "s1", "interviewLink": "/interview/s1"})
        if request.method == "GET" and path == f"/api/session/{self.descriptor.get('sessionId', 's1')}":
            return httpx.Response(200, json=self.descriptor)
        if request.method == "GET" and path.startswith("/api/session/"):
            return httpx.Response(404, json={"error": "Session not found"})
        if request.method == "PATCH" and path.endswith("/status"):
            return httpx.Response(200, json={"status": "in-progress"})
        if path in ("/session", "/azure/session"):
            if self.relay_status >= 400:
                return httpx.Response(self.relay_status, text="relay rejected")
            return httpx.Response(self.relay_status, text="v=0\r\no=- relay-answer\r\n")
        if path == "/token":
            if self.token_status >= 400:
                return httpx.Response(self.token_status, json={"error": "Failed to generate token"})
            return httpx.Response(200, json={"client_secret": {"value": "ek_test"}})
        if path == "/api/upload-media":
            if self.upload_status >= 400:
                return httpx.Response(self.upload_status, json={"error": "Failed to save media"})
            if self.upload_text is not None:
                return httpx.Response(200, text=self.upload_text)
            media_type = request.url.params.get("type")
            return httpx.Response(200, json={"path": f"/videos/s1-{media_type}.webm"})
        if path.endswith("/transcript"):
            if self.transcript_status >= 400:
                return httpx.Response(self.transcript_status, json={"error": "Transcript is empty"})
            if self.transcript_text is not None:
                return httpx.Response(200, text=self.transcript_text)
            return httpx.Response(200, json={"path": "/transcripts/s1.txt"})
        if path.endswith("/analyze"):
            return httpx.Response(200, json={"path": "/analysis/s1-analysis.md"})
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        gemini_api_key=None,
        azure_openai_endpoint=None,
        azure_openai_api_key=None,
        azure_openai_deployment=None,
        end_failsafe_seconds=0.05,
    )


@pytest.fixture
def server() -> FakeInterviewServer:
    return FakeInterviewServer()


@pytest.fixture
async def http_client(server):
    async with httpx.AsyncClient(base_url="http://interview.test", transport=httpx.MockTransport(server.handler)) as client:
        yield client
