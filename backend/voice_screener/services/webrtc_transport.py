"""
WebRTC Transport Module
aiortc implementation of the realtime connection, local media devices and the
combined WebM capture.

Media tracks are shared through one MediaRelay: the microphone is both sent to the
provider and mixed into the recording, and the assistant's remote audio is both
played back and recorded, so every consumer gets its own relay subscription.
"""

import asyncio
import fractions
import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import av
import numpy as np
from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from voice_screener.config import Settings
from voice_screener.core.constants import MIX_SAMPLE_RATE
from voice_screener.core.errors import MediaAccessError
from voice_screener.services.base_transport import (
    ControlChannel,
    MediaCapture,
    MediaDevices,
    MediaHandle,
    RealtimeConnection,
    call_maybe_async,
)

logger = logging.getLogger(__name__)

MIX_FRAME_SAMPLES = MIX_SAMPLE_RATE // 50  # 20 ms
MIX_MAX_BUFFERED_SAMPLES = MIX_SAMPLE_RATE * 2
VIDEO_WIDTH = 640
VIDEO_HEIGHT = 480
VIDEO_FPS = 30


# ==================== Media handles ====================

class PlayerMediaHandle(MediaHandle):
    """
    A local device opened through MediaPlayer.

    Each access to audio_track / video_track returns an independent relay subscription.
    """

    def __init__(self, player: MediaPlayer, relay: MediaRelay, kind: str):
        self.player = player
        self.relay = relay
        self.kind = kind

    @property
    def audio_track(self) -> Optional[MediaStreamTrack]:
        if self.player.audio is None:
            return None
        return self.relay.subscribe(self.player.audio)

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        if self.player.video is None:
            return None
        return self.relay.subscribe(self.player.video)

    def stop(self):
        for track in (self.player.audio, self.player.video):
            if track is not None:
                track.stop()


class RemoteTrackHandle(MediaHandle):
    """The assistant's audio stream received from the provider."""

    kind = "assistant_audio"

    def __init__(self, track: MediaStreamTrack, relay: MediaRelay):
        self.track = track
        self.relay = relay

    @property
    def audio_track(self) -> Optional[MediaStreamTrack]:
        return self.relay.subscribe(self.track)

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        return None

    def stop(self):
        self.track.stop()


class AiortcMediaDevices(MediaDevices):
    """Camera and microphone via ffmpeg input devices (v4l2, pulse, avfoundation, ...)."""

    def __init__(self, settings: Settings, relay: Optional[MediaRelay] = None):
        self.settings = settings
        self.relay = relay or MediaRelay()

    def _open(self, device: Optional[str], fmt: Optional[str], kind: str, options: Optional[dict] = None) -> PlayerMediaHandle:
        if not device:
            raise MediaAccessError(kind, "no device configured")
        try:
            player = MediaPlayer(device, format=fmt or None, options=options or {})
        except (av.error.FFmpegError, OSError, ValueError) as e:
            raise MediaAccessError(kind, str(e)) from e
        return PlayerMediaHandle(player, self.relay, kind)

    async def open_camera(self) -> MediaHandle:
        handle = self._open(
            self.settings.camera_device,
            self.settings.camera_format,
            "camera",
            {"framerate": str(VIDEO_FPS), "video_size": f"{VIDEO_WIDTH}x{VIDEO_HEIGHT}"}
        )
        if handle.player.video is None:
            handle.stop()
            raise MediaAccessError("camera", "device has no video stream")
        logger.info(f"✓ Camera opened: {self.settings.camera_device}")
        return handle

    async def open_microphone(self) -> MediaHandle:
        handle = self._open(self.settings.microphone_device, self.settings.microphone_format, "microphone")
        if handle.player.audio is None:
            handle.stop()
            raise MediaAccessError("microphone", "device has no audio stream")
        logger.info(f"✓ Microphone opened: {self.settings.microphone_device}")
        return handle


# ==================== Control channel ====================

class AiortcControlChannel(ControlChannel):
    """
    RTCDataChannel wrapper that delivers callbacks strictly in arrival order.

    aiortc emits each event as its own task when handlers are coroutines, so inbound
    events are queued and drained by a single dispatcher instead.
    """

    def __init__(
        self,
        channel: Any,
        on_open: Callable[[], Any],
        on_message: Callable[[str], Any],
        on_close: Callable[[], Any]
    ):
        self.channel = channel
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()

        channel.on("open", lambda: self._queue.put_nowait(("open", None)))
        channel.on("message", lambda message: self._queue.put_nowait(("message", message)))
        channel.on("close", lambda: self._queue.put_nowait(("close", None)))

        self._dispatcher = asyncio.ensure_future(self._dispatch())

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    def send(self, message: str):
        if not self.is_open:
            logger.warning("Control channel not open; dropping outbound event")
            return
        self.channel.send(message)

    def close(self):
        if self.channel.readyState not in ("closing", "closed"):
            self.channel.close()

    async def _dispatch(self):
        while True:
            kind, payload = await self._queue.get()
            try:
                if kind == "open":
                    await call_maybe_async(self._on_open)
                elif kind == "message":
                    if isinstance(payload, bytes):
                        payload = payload.decode("utf-8", errors="replace")
                    await call_maybe_async(self._on_message, payload)
                else:
                    await call_maybe_async(self._on_close)
                    return
            except Exception as e:
                logger.error(f"Control channel {kind} handler failed: {e}", exc_info=True)


# ==================== Peer connection ====================

class AiortcRealtimeConnection(RealtimeConnection):
    """
    RTCPeerConnection to the realtime provider.

    The assistant's remote audio is played on the configured speaker device (or
    discarded when none is configured) and handed to the on_remote_audio callback.
    """

    def __init__(self, settings: Settings, relay: Optional[MediaRelay] = None):
        self.settings = settings
        self.relay = relay or MediaRelay()
        self.pc = RTCPeerConnection()
        self._remote_audio_callback: Optional[Callable[[MediaHandle], Any]] = None
        self._local_handles: List[MediaHandle] = []
        self._playback: Optional[Any] = None
        self._remote_tasks: List[asyncio.Future] = []

        self.pc.on("track", self._on_track)
        self.pc.on("connectionstatechange", self._on_connection_state)

    def add_microphone(self, handle: MediaHandle):
        track = handle.audio_track
        if track is None:
            raise MediaAccessError("microphone", "no audio track to send")
        self.pc.addTrack(track)
        self._local_handles.append(handle)

    def on_remote_audio(self, callback: Callable[[MediaHandle], Any]):
        self._remote_audio_callback = callback

    def _on_track(self, track: MediaStreamTrack):
        if track.kind != "audio":
            return
        logger.info("✓ Remote assistant audio track received")
        handle = RemoteTrackHandle(track, self.relay)
        self._remote_tasks.append(asyncio.ensure_future(self._start_playback(handle)))
        if self._remote_audio_callback is not None:
            self._remote_tasks.append(
                asyncio.ensure_future(call_maybe_async(self._remote_audio_callback, handle))
            )

    async def _start_playback(self, handle: RemoteTrackHandle):
        sink: Any
        if self.settings.speaker_device:
            try:
                sink = MediaRecorder(self.settings.speaker_device, format=self.settings.speaker_format or None)
            except (av.error.FFmpegError, OSError, ValueError) as e:
                logger.warning(f"Speaker unavailable ({e}); assistant audio will not be played")
                sink = MediaBlackhole()
        else:
            sink = MediaBlackhole()
        sink.addTrack(handle.audio_track)
        await sink.start()
        self._playback = sink

    async def _on_connection_state(self):
        logger.info(f"Peer connection state: {self.pc.connectionState}")

    def create_control_channel(
        self,
        label: str,
        on_open: Callable[[], Any],
        on_message: Callable[[str], Any],
        on_close: Callable[[], Any]
    ) -> ControlChannel:
        channel = self.pc.createDataChannel(label)
        return AiortcControlChannel(channel, on_open, on_message, on_close)

    async def create_offer(self) -> str:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def apply_answer(self, sdp: str):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    def stop_local_tracks(self):
        for sender in self.pc.getSenders():
            if sender.track is not None:
                sender.track.stop()
        for handle in self._local_handles:
            handle.stop()
        self._local_handles = []

    async def close(self):
        if self._playback is not None:
            await self._playback.stop()
            self._playback = None
        for task in self._remote_tasks:
            if not task.done():
                task.cancel()
        self._remote_tasks = []
        await self.pc.close()


# ==================== Combined capture ====================

def mix_pcm(chunks: Sequence[np.ndarray], frame_samples: int) -> np.ndarray:
    """
    Sum int16 mono chunks into one frame, zero-padding short chunks and clipping.

    Args:
        chunks: One int16 array per source (may be shorter than frame_samples)
        frame_samples: Output length

    Returns:
        int16 array of frame_samples samples
    """
    mixed = np.zeros(frame_samples, dtype=np.int32)
    for chunk in chunks:
        length = min(len(chunk), frame_samples)
        mixed[:length] += chunk[:length].astype(np.int32)
    return np.clip(mixed, -32768, 32767).astype(np.int16)


class MixedAudioTrack(MediaStreamTrack):
    """
    Audio track summing several source tracks into one mono 48 kHz stream.

    Sources are read by background tasks into per-source buffers; recv() paces itself
    in real time and pads a quiet source with silence, so one idle stream never
    stalls the mix.
    """

    kind = "audio"

    def __init__(self, sources: Sequence[MediaStreamTrack], sample_rate: int = MIX_SAMPLE_RATE):
        super().__init__()
        self.sources = list(sources)
        self.sample_rate = sample_rate
        self.frame_samples = sample_rate // 50
        self._buffers: List[np.ndarray] = [np.zeros(0, dtype=np.int16) for _ in self.sources]
        self._readers: List[asyncio.Task] = []
        self._started_at: Optional[float] = None
        self._pts = 0

    def _ensure_readers(self):
        if not self._readers:
            self._readers = [
                asyncio.ensure_future(self._read(index, source))
                for index, source in enumerate(self.sources)
            ]

    async def _read(self, index: int, source: MediaStreamTrack):
        resampler = av.AudioResampler(format="s16", layout="mono", rate=self.sample_rate)
        while True:
            try:
                frame = await source.recv()
            except MediaStreamError:
                return
            for resampled in resampler.resample(frame):
                samples = resampled.to_ndarray().reshape(-1)
                buffer = np.concatenate([self._buffers[index], samples])
                self._buffers[index] = buffer[-MIX_MAX_BUFFERED_SAMPLES:]

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        self._ensure_readers()
        if self._started_at is None:
            self._started_at = time.time()
        else:
            wait = self._started_at + (self._pts / self.sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        chunks = []
        for index, buffer in enumerate(self._buffers):
            chunks.append(buffer[:self.frame_samples])
            self._buffers[index] = buffer[self.frame_samples:]

        samples = mix_pcm(chunks, self.frame_samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self.sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self.sample_rate)
        self._pts += self.frame_samples
        return frame

    def stop(self):
        for reader in self._readers:
            if not reader.done():
                reader.cancel()
        self._readers = []
        for source in self.sources:
            source.stop()
        super().stop()


class AiortcCombinedCapture(MediaCapture):
    """
    Records one video track plus the mix of the audio tracks into a WebM file
    (VP8 + Opus) and returns its bytes on stop.
    """

    content_type = "video/webm"

    def __init__(self, video_track: MediaStreamTrack, audio_tracks: Sequence[MediaStreamTrack]):
        self.video_track = video_track
        self.mixer = MixedAudioTrack(audio_tracks)
        self._workdir = Path(tempfile.mkdtemp(prefix="voice-screener-"))
        self.path = self._workdir / "combined.webm"
        self._container: Optional[Any] = None
        self._video_stream: Optional[Any] = None
        self._audio_stream: Optional[Any] = None
        self._pumps: List[asyncio.Task] = []

    async def start(self):
        container = av.open(str(self.path), mode="w", format="webm")
        video_stream = container.add_stream("libvpx", rate=VIDEO_FPS)
        video_stream.width = VIDEO_WIDTH
        video_stream.height = VIDEO_HEIGHT
        video_stream.pix_fmt = "yuv420p"
        audio_stream = container.add_stream("libopus", rate=MIX_SAMPLE_RATE)

        self._container = container
        self._video_stream = video_stream
        self._audio_stream = audio_stream
        self._pumps = [
            asyncio.ensure_future(self._pump(self.video_track, video_stream, is_video=True)),
            asyncio.ensure_future(self._pump(self.mixer, audio_stream, is_video=False)),
        ]

    async def _pump(self, track: MediaStreamTrack, stream: Any, is_video: bool):
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                return
            if is_video:
                reformatted = frame.reformat(width=VIDEO_WIDTH, height=VIDEO_HEIGHT, format="yuv420p")
                reformatted.pts = frame.pts
                reformatted.time_base = frame.time_base
                frame = reformatted
            for packet in stream.encode(frame):
                self._container.mux(packet)

    async def stop(self) -> bytes:
        for pump in self._pumps:
            pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps = []
        self.mixer.stop()
        self.video_track.stop()

        if self._container is None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            return b""

        try:
            for stream in (self._video_stream, self._audio_stream):
                for packet in stream.encode(None):
                    self._container.mux(packet)
            self._container.close()
            data = self.path.read_bytes() if self.path.exists() else b""
        finally:
            self._container = None
            shutil.rmtree(self._workdir, ignore_errors=True)

        logger.info(f"✓ Combined recording finalized ({len(data)} bytes)")
        return data


def create_combined_capture(video_track: MediaStreamTrack, audio_tracks: Sequence[MediaStreamTrack]) -> MediaCapture:
    return AiortcCombinedCapture(video_track, audio_tracks)
