"""
Services module for voice_screener.
"""

from voice_screener.services.backend_client import InterviewBackendClient, create_http_client
from voice_screener.services.negotiator import TransportNegotiator
from voice_screener.services.provider_adapters import (
    AzureRealtimeAdapter,
    OpenAIRealtimeAdapter,
    ProviderAdapter,
    get_provider_adapter,
)
from voice_screener.services.recording import RecordingCoordinator

__all__ = [
    # Server API
    "InterviewBackendClient",
    "create_http_client",
    "TransportNegotiator",
    # Provider protocol
    "ProviderAdapter",
    "OpenAIRealtimeAdapter",
    "AzureRealtimeAdapter",
    "get_provider_adapter",
    # Recording
    "RecordingCoordinator",
]
