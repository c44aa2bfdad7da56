"""
Interview Backend Client
Async HTTP client for the interview server's session API.
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from voice_screener.core.constants import STATUS_IN_PROGRESS
from voice_screener.core.errors import UploadError, VoiceScreenerError
from voice_screener.core.models import SessionDescriptor, StartInterviewResponse
from voice_screener.utils.metrics import record_upload

logger = logging.getLogger(__name__)


def _stored_path(response: httpx.Response, target: str) -> Optional[str]:
    """Path from a JSON upload reply; any other body is an UploadError."""
    try:
        return response.json().get("path")
    except (ValueError, AttributeError) as e:
        raise UploadError(target, f"unexpected reply: {response.text[:200]!r}", response.status_code) from e


def create_http_client(base_url: str, timeout_seconds: float = 30.0) -> httpx.AsyncClient:
    """Shared AsyncClient for negotiation and session API calls."""
    return httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout_seconds))


class InterviewBackendClient:
    """
    Session API calls made by the interview client.

    Args:
        client: AsyncClient with base_url set to the interview server
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch_session(self, session_id: str) -> SessionDescriptor:
        """
        Load the session descriptor.

        Raises:
            VoiceScreenerError: If the session cannot be loaded
        """
        try:
            response = await self.client.get(f"/api/session/{quote(session_id, safe='')}")
        except httpx.HTTPError as e:
            raise VoiceScreenerError(f"Failed to load interview session: {e}") from e

        if response.status_code == 404:
            raise VoiceScreenerError("Interview session not found")
        if response.status_code >= 400:
            raise VoiceScreenerError(f"Failed to load interview session ({response.status_code})")

        try:
            descriptor = SessionDescriptor.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise VoiceScreenerError(f"Invalid interview session payload: {e}") from e

        if descriptor.session_id is None:
            descriptor = descriptor.model_copy(update={"session_id": session_id})
        if not descriptor.is_position and not descriptor.system_prompt:
            raise VoiceScreenerError("Interview session has no system prompt")
        return descriptor

    async def start_from_position(self, position_id: str, candidate_name: str, candidate_email: str) -> str:
        """
        Create an interview session for a candidate from a position link.

        Returns:
            Identifier of the new session

        Raises:
            VoiceScreenerError: If the server did not create a session
        """
        try:
            response = await self.client.post(
                f"/api/position/{quote(position_id, safe='')}/start-interview",
                json={"candidateName": candidate_name, "candidateEmail": candidate_email}
            )
        except httpx.HTTPError as e:
            raise VoiceScreenerError(f"Failed to start interview: {e}") from e

        if response.status_code >= 400:
            raise VoiceScreenerError(f"Failed to start interview ({response.status_code})")

        try:
            started = StartInterviewResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise VoiceScreenerError(f"Failed to start interview: {e}") from e

        logger.info(f"Started session {started.session_id} from position {position_id}")
        return started.session_id

    async def mark_in_progress(self, session_id: str) -> bool:
        """Best-effort status update; failures are logged and reported as False."""
        try:
            response = await self.client.patch(
                f"/api/session/{quote(session_id, safe='')}/status",
                json={"status": STATUS_IN_PROGRESS}
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Failed to update session status for {session_id}: {e}")
            return False

    async def upload_media(
        self,
        session_id: str,
        media_type: str,
        data: bytes,
        content_type: str = "video/webm"
    ) -> Optional[str]:
        """
        Upload a recorded artifact.

        Returns:
            Stored path reported by the server, or None for an empty artifact

        Raises:
            UploadError: If the upload failed
        """
        if not data:
            return None

        try:
            response = await self.client.post(
                "/api/upload-media",
                params={"sessionId": session_id, "type": media_type},
                content=data,
                headers={"Content-Type": content_type or "application/octet-stream"}
            )
        except httpx.HTTPError as e:
            record_upload(media_type, len(data), success=False)
            raise UploadError(media_type, str(e)) from e

        if response.status_code >= 400:
            record_upload(media_type, len(data), success=False)
            raise UploadError(media_type, response.text or "server error", response.status_code)

        try:
            path = _stored_path(response, media_type)
        except UploadError:
            record_upload(media_type, len(data), success=False)
            raise
        record_upload(media_type, len(data), success=True)
        logger.info(f"✓ Uploaded {media_type} recording ({len(data)} bytes) -> {path}")
        return path

    async def save_transcript(self, session_id: str, transcript: str) -> str:
        """
        Store the plain-text transcript.

        Raises:
            UploadError: If the server rejected the transcript
        """
        try:
            response = await self.client.post(
                f"/api/session/{quote(session_id, safe='')}/transcript",
                content=transcript.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"}
            )
        except httpx.HTTPError as e:
            raise UploadError("transcript", str(e)) from e

        if response.status_code >= 400:
            raise UploadError("transcript", response.text or "server error", response.status_code)
        return _stored_path(response, "transcript") or ""

    async def request_analysis(self, session_id: str, transcript: str) -> str:
        """
        Ask the server to analyze the transcript and store the report.

        Raises:
            UploadError: If the server rejected the request
        """
        try:
            response = await self.client.post(
                f"/api/session/{quote(session_id, safe='')}/analyze",
                json={"transcript": transcript}
            )
        except httpx.HTTPError as e:
            raise UploadError("analysis", str(e)) from e

        if response.status_code >= 400:
            raise UploadError("analysis", response.text or "server error", response.status_code)
        return _stored_path(response, "analysis") or ""
