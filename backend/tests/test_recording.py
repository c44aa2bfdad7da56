"""Tests for the recording coordinator: start gating and single flush/upload."""

import asyncio
from typing import List, Optional, Tuple

from conftest import CaptureFactory, FakeCapture, FakeHandle

from voice_screener.core.errors import UploadError
from voice_screener.services.recording import RecordingCoordinator


class RecordingUploader:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[Tuple[str, bytes, str]] = []

    async def __call__(self, media_type: str, data: bytes, content_type: str) -> Optional[str]:
        self.calls.append((media_type, data, content_type))
        await asyncio.sleep(0)
        if self.fail:
            raise UploadError(media_type, "server error", 500)
        return f"/videos/s1-{media_type}.webm"


def _attach_all(recorder: RecordingCoordinator) -> None:
    recorder.attach_camera(FakeHandle("camera", audio=False, video=True))
    recorder.attach_candidate_audio(FakeHandle("microphone"))
    recorder.attach_assistant_audio(FakeHandle("assistant"))


class TestStartGating:
    async def test_waits_for_all_sources(self) -> None:
        factory = CaptureFactory()
        recorder = RecordingCoordinator(factory, RecordingUploader())
        recorder.attach_camera(FakeHandle("camera", audio=False, video=True))
        recorder.attach_candidate_audio(FakeHandle("microphone"))

        assert await recorder.try_start() is False
        assert factory.captures == []

        recorder.attach_assistant_audio(FakeHandle("assistant"))
        assert await recorder.try_start() is True
        capture = factory.captures[0]
        assert capture.started is True
        assert capture.video_track == "camera-video"
        assert capture.audio_tracks == ["microphone-audio", "assistant-audio"]

    async def test_starts_only_once(self) -> None:
        factory = CaptureFactory()
        recorder = RecordingCoordinator(factory, RecordingUploader())
        _attach_all(recorder)

        assert await recorder.try_start() is True
        assert await recorder.try_start() is False
        assert len(factory.captures) == 1
        assert recorder.is_active is True

    async def test_camera_without_video_track(self) -> None:
        factory = CaptureFactory()
        recorder = RecordingCoordinator(factory, RecordingUploader())
        _attach_all(recorder)
        recorder.attach_camera(FakeHandle("camera", audio=False, video=False))

        assert await recorder.try_start() is False
        assert factory.captures == []

    async def test_capture_start_failure_leaves_recorder_idle(self) -> None:
        class BrokenCapture(FakeCapture):
            async def start(self) -> None:
                raise RuntimeError("encoder unavailable")

        recorder = RecordingCoordinator(lambda video, audio: BrokenCapture(video, audio), RecordingUploader())
        _attach_all(recorder)

        assert await recorder.try_start() is False
        assert recorder.is_active is False

    async def test_no_start_after_stop(self) -> None:
        recorder = RecordingCoordinator(CaptureFactory(), RecordingUploader())
        await recorder.stop()
        _attach_all(recorder)

        assert await recorder.try_start() is False


class TestFlush:
    async def test_concurrent_stops_upload_once(self) -> None:
        factory = CaptureFactory()
        uploader = RecordingUploader()
        recorder = RecordingCoordinator(factory, uploader)
        _attach_all(recorder)
        await recorder.try_start()

        paths = await asyncio.gather(recorder.stop(), recorder.stop())
        again = await recorder.stop()

        assert paths == ["/videos/s1-combined.webm", "/videos/s1-combined.webm"]
        assert again == "/videos/s1-combined.webm"
        assert uploader.calls == [("combined", b"webm-bytes", "video/webm")]
        assert factory.captures[0].stop_calls == 1
        assert recorder.upload_attempts == 1
        assert recorder.uploaded_path == "/videos/s1-combined.webm"

    async def test_stop_without_capture(self) -> None:
        uploader = RecordingUploader()
        recorder = RecordingCoordinator(CaptureFactory(), uploader)

        assert await recorder.stop() is None
        assert uploader.calls == []

    async def test_empty_recording_is_not_uploaded(self) -> None:
        uploader = RecordingUploader()
        recorder = RecordingCoordinator(CaptureFactory(data=b""), uploader)
        _attach_all(recorder)
        await recorder.try_start()

        assert await recorder.stop() is None
        assert uploader.calls == []
        assert recorder.upload_attempts == 0

    async def test_upload_failure_is_contained(self) -> None:
        uploader = RecordingUploader(fail=True)
        recorder = RecordingCoordinator(CaptureFactory(), uploader)
        _attach_all(recorder)
        await recorder.try_start()

        assert await recorder.stop() is None
        assert recorder.upload_attempts == 1
        assert recorder.uploaded_path is None

    async def test_unexpected_uploader_error_is_contained(self) -> None:
        async def broken_uploader(media_type: str, data: bytes, content_type: str) -> Optional[str]:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")

        recorder = RecordingCoordinator(CaptureFactory(), broken_uploader)
        _attach_all(recorder)
        await recorder.try_start()

        assert await recorder.stop() is None
        assert await recorder.stop() is None
        assert recorder.upload_attempts == 1

    async def test_reset_keeps_camera(self) -> None:
        recorder = RecordingCoordinator(CaptureFactory(), RecordingUploader())
        _attach_all(recorder)
        await recorder.try_start()
        await recorder.stop()

        recorder.reset()

        assert recorder.camera is not None
        assert recorder.candidate_audio is None
        assert recorder.stopped is False
        assert recorder.has_all_sources is False
