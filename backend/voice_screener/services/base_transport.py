"""
Abstract Base Transport Module
Defines the interface for realtime connections, media devices and recorders
(aiortc in production, in-memory fakes in tests).
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Sequence


class MediaHandle(ABC):
    """
    An acquired media stream (camera, microphone or remote assistant audio).
    Implementations: PlayerMediaHandle, RemoteTrackHandle
    """

    kind: str = "media"

    @property
    @abstractmethod
    def audio_track(self) -> Optional[Any]:
        """First audio track, if any."""
        pass

    @property
    @abstractmethod
    def video_track(self) -> Optional[Any]:
        """First video track, if any."""
        pass

    @abstractmethod
    def stop(self):
        """Stop every track of this stream and release the device."""
        pass


class ControlChannel(ABC):
    """
    Bidirectional control channel carrying JSON protocol events.
    Implementations: AiortcControlChannel
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    def send(self, message: str):
        """
        Send one serialized event.

        Args:
            message: JSON text
        """
        pass

    @abstractmethod
    def close(self):
        pass


class RealtimeConnection(ABC):
    """
    One realtime peer connection to the speech model provider.
    Implementations: AiortcRealtimeConnection
    """

    @abstractmethod
    def add_microphone(self, handle: MediaHandle):
        """Send the candidate microphone track to the provider."""
        pass

    @abstractmethod
    def on_remote_audio(self, callback: Callable[[MediaHandle], Any]):
        """
        Register the callback invoked when the assistant audio stream arrives.
        The callback may return an awaitable.
        """
        pass

    @abstractmethod
    def create_control_channel(
        self,
        label: str,
        on_open: Callable[[], Any],
        on_message: Callable[[str], Any],
        on_close: Callable[[], Any]
    ) -> ControlChannel:
        """
        Create the control channel. Callbacks may return awaitables.

        Args:
            label: Channel label expected by the provider
            on_open: Called once the channel is usable
            on_message: Called with each inbound text message, in arrival order
            on_close: Called when the channel closes
        """
        pass

    @abstractmethod
    async def create_offer(self) -> str:
        """
        Create and apply the local description.

        Returns:
            Offer SDP text
        """
        pass

    @abstractmethod
    async def apply_answer(self, sdp: str):
        """Apply the provider's answer SDP."""
        pass

    @abstractmethod
    def stop_local_tracks(self):
        """Stop every locally-sent track."""
        pass

    @abstractmethod
    async def close(self):
        pass


class MediaDevices(ABC):
    """
    Access to local capture devices.
    Implementations: AiortcMediaDevices
    """

    @abstractmethod
    async def open_camera(self) -> MediaHandle:
        """
        Raises:
            MediaAccessError: If the camera cannot be opened
        """
        pass

    @abstractmethod
    async def open_microphone(self) -> MediaHandle:
        """
        Raises:
            MediaAccessError: If the microphone cannot be opened
        """
        pass


class MediaCapture(ABC):
    """
    A running capture of one video track and mixed audio into a single artifact.
    Implementations: AiortcCombinedCapture
    """

    content_type: str = "video/webm"

    @abstractmethod
    async def start(self):
        pass

    @abstractmethod
    async def stop(self) -> bytes:
        """
        Stop capturing and assemble the final artifact.

        Returns:
            The complete recording (empty if nothing was captured)
        """
        pass


CaptureFactory = Callable[[Any, Sequence[Any]], MediaCapture]
ConnectionFactory = Callable[[], RealtimeConnection]
Uploader = Callable[[str, bytes, str], Awaitable[Optional[str]]]


async def call_maybe_async(callback: Optional[Callable[..., Any]], *args) -> Any:
    """Invoke a transport callback and await its result if it returned an awaitable."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        return await result
    return result


def stop_handles(handles: List[Optional[MediaHandle]]):
    """Stop every handle that was acquired; ignores missing ones."""
    for handle in handles:
        if handle is not None:
            handle.stop()
