"""
Recording Coordinator
Gates, runs and flushes the single combined interview recording.

Three sources arrive independently: camera video, candidate microphone and the
assistant's remote audio. Capture starts only once all three exist. The two audio
sources are mixed into one track and recorded with the camera video into one WebM
artifact, which is uploaded exactly once when the recording stops.
"""

import asyncio
import logging
from typing import Optional

from voice_screener.core.constants import MEDIA_COMBINED
from voice_screener.core.errors import UploadError
from voice_screener.services.base_transport import (
    CaptureFactory,
    MediaCapture,
    MediaHandle,
    Uploader,
)

logger = logging.getLogger(__name__)


class RecordingCoordinator:
    """
    Owns the combined recorder for one interview.

    Args:
        capture_factory: Builds a capture from (video_track, [audio_tracks])
        uploader: Coroutine (media_type, data, content_type) -> stored path
        media_type: Upload type tag for the artifact
    """

    def __init__(self, capture_factory: CaptureFactory, uploader: Uploader, media_type: str = MEDIA_COMBINED):
        self.capture_factory = capture_factory
        self.uploader = uploader
        self.media_type = media_type

        self.camera: Optional[MediaHandle] = None
        self.candidate_audio: Optional[MediaHandle] = None
        self.assistant_audio: Optional[MediaHandle] = None

        self._capture: Optional[MediaCapture] = None
        self._stop_task: Optional[asyncio.Task] = None
        self.uploaded_path: Optional[str] = None
        self.upload_attempts = 0

    # ---------------------------------------------------------------- sources

    def attach_camera(self, handle: Optional[MediaHandle]):
        self.camera = handle

    def attach_candidate_audio(self, handle: Optional[MediaHandle]):
        self.candidate_audio = handle

    def attach_assistant_audio(self, handle: Optional[MediaHandle]):
        self.assistant_audio = handle

    @property
    def has_all_sources(self) -> bool:
        return all([self.camera, self.candidate_audio, self.assistant_audio])

    @property
    def is_active(self) -> bool:
        return self._capture is not None and self._stop_task is None

    @property
    def stopped(self) -> bool:
        return self._stop_task is not None

    def reset(self):
        """Forget the previous interview's sources and recorder (keeps the camera)."""
        self.candidate_audio = None
        self.assistant_audio = None
        self._capture = None
        self._stop_task = None
        self.uploaded_path = None
        self.upload_attempts = 0

    # ---------------------------------------------------------------- lifecycle

    async def try_start(self) -> bool:
        """
        Start capturing if every source is present and nothing is recording yet.

        Returns:
            True if a capture was started by this call
        """
        if not self.has_all_sources:
            return False
        if self._capture is not None or self._stop_task is not None:
            return False

        video_track = self.camera.video_track
        audio_tracks = [
            track for track in (self.candidate_audio.audio_track, self.assistant_audio.audio_track)
            if track is not None
        ]
        if video_track is None or not audio_tracks:
            logger.warning("Missing tracks for combined recording")
            return False

        capture = self.capture_factory(video_track, audio_tracks)
        try:
            await capture.start()
        except Exception as e:
            logger.error(f"Failed to start combined recording: {e}", exc_info=True)
            return False

        self._capture = capture
        logger.info(f"✓ Combined recording started ({len(audio_tracks)} audio sources mixed)")
        return True

    async def stop(self) -> Optional[str]:
        """
        Stop the recording and upload the artifact.

        Resolves only once the artifact was assembled and its upload attempted.
        Concurrent and repeated calls share one flush, so the upload happens at most once.

        Returns:
            Stored path of the upload, if it succeeded
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._flush())
        return await self._stop_task

    async def _flush(self) -> Optional[str]:
        capture = self._capture
        if capture is None:
            return None

        try:
            data = await capture.stop()
        except Exception as e:
            logger.error(f"Failed to finalize combined recording: {e}", exc_info=True)
            return None

        if not data:
            logger.info("Combined recording produced no data; nothing to upload")
            return None

        self.upload_attempts += 1
        try:
            self.uploaded_path = await self.uploader(self.media_type, data, capture.content_type)
        except UploadError as e:
            logger.error(f"Failed to upload {self.media_type} recording: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error uploading {self.media_type} recording: {e}", exc_info=True)
            return None
        return self.uploaded_path
