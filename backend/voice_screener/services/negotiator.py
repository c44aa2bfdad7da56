"""
Transport Negotiator
Exchanges the local SDP offer for the provider's answer.

The relay path posts the offer to the interview server, which holds the provider
credentials. For the direct provider only, a failed relay falls back to minting an
ephemeral credential via /token and posting the offer straight to the provider.
"""

import logging
from typing import Optional

import httpx

from voice_screener.config import Settings
from voice_screener.core.errors import NegotiationError
from voice_screener.services.provider_adapters import ProviderAdapter
from voice_screener.utils.metrics import track_negotiation
from voice_screener.utils.timing import time_operation

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"


class TransportNegotiator:
    """
    Offer/answer exchange for one session.

    Args:
        client: Async HTTP client whose base_url points at the interview server
        adapter: Provider adapter for the session (selects relay path and fallback)
        settings: Provider model and direct-call base URL
    """

    def __init__(self, client: httpx.AsyncClient, adapter: ProviderAdapter, settings: Settings):
        self.client = client
        self.adapter = adapter
        self.settings = settings
        self.last_route: Optional[str] = None

    async def negotiate(self, offer_sdp: str) -> str:
        """
        Get the answer SDP for an offer.

        Returns:
            Answer SDP text

        Raises:
            NegotiationError: If every available path failed (carries the last status/body)
        """
        with time_operation("SDP negotiation", metadata={"provider": self.adapter.name}) as timing:
            try:
                answer = await self._relay(offer_sdp)
                self.last_route = "relay"
            except NegotiationError as relay_error:
                if not self.adapter.supports_direct_fallback:
                    raise
                logger.warning(f"Server negotiation failed, falling back to direct negotiation: {relay_error}")
                answer = await self._direct(offer_sdp)
                self.last_route = "direct"
            timing.metadata["route"] = self.last_route

        logger.info(f"✓ Transport negotiated via {self.last_route} ({self.adapter.name})")
        return answer

    async def _relay(self, offer_sdp: str) -> str:
        path = self.adapter.relay_path
        with track_negotiation("relay"):
            try:
                response = await self.client.post(
                    path,
                    content=offer_sdp.encode("utf-8"),
                    headers={"Content-Type": SDP_CONTENT_TYPE}
                )
            except httpx.HTTPError as e:
                raise NegotiationError(f"Server negotiation failed: {e}") from e

            if response.status_code >= 400:
                raise NegotiationError("Server negotiation failed", response.status_code, response.text)
            return response.text

    async def fetch_ephemeral_key(self) -> str:
        """
        Mint a short-lived provider credential through the server.

        Raises:
            NegotiationError: If the token endpoint fails or returns no secret
        """
        try:
            response = await self.client.get("/token")
        except httpx.HTTPError as e:
            raise NegotiationError(f"Failed to fetch ephemeral token: {e}") from e

        if response.status_code >= 400:
            raise NegotiationError("Failed to fetch ephemeral token", response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise NegotiationError("Token response was not JSON", response.status_code, response.text) from e

        secret = data.get("client_secret") if isinstance(data, dict) else None
        key = None
        if isinstance(secret, dict):
            key = secret.get("value")
        if not key and isinstance(data, dict):
            key = data.get("value")
        if not key:
            raise NegotiationError("Token response missing client secret")
        return key

    async def _direct(self, offer_sdp: str) -> str:
        with track_negotiation("direct"):
            key = await self.fetch_ephemeral_key()
            url = f"{self.settings.realtime_base_url}/calls"
            try:
                response = await self.client.post(
                    url,
                    params={"model": self.settings.realtime_model},
                    content=offer_sdp.encode("utf-8"),
                    headers={
                        "Authorization": f"Bearer {key}",
                        "Content-Type": SDP_CONTENT_TYPE,
                        "OpenAI-Beta": "realtime=v1",
                    }
                )
            except httpx.HTTPError as e:
                raise NegotiationError(f"Realtime API negotiation failed: {e}") from e

            if response.status_code >= 400:
                raise NegotiationError(
                    "Realtime API negotiation failed",
                    response.status_code,
                    response.text
                )
            return response.text
