"""
Error Types
Exception hierarchy for interview session setup, media and uploads.
"""

from typing import Optional


class VoiceScreenerError(Exception):
    """Base class for all interview session errors."""
    pass


class NegotiationError(VoiceScreenerError):
    """Raised when neither the relay nor the direct path produced an SDP answer."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} ({self.status_code}): {self.body}" if self.body else f"{base} ({self.status_code})"
        return base


class MediaAccessError(VoiceScreenerError):
    """Raised when a camera or microphone cannot be opened."""

    def __init__(self, device: str, message: str):
        super().__init__(f"{device} unavailable: {message}")
        self.device = device


class UploadError(VoiceScreenerError):
    """Raised when posting a recording, transcript or analysis request fails."""

    def __init__(self, target: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{target} upload failed: {message}")
        self.target = target
        self.status_code = status_code


class ProtocolError(VoiceScreenerError):
    """A server-sent error event on the control channel."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code
