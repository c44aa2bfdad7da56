"""
Application Configuration Module
Handles environment variable loading and application settings.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

from voice_screener.core.models import PricingRates


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    # Realtime speech-to-speech provider
    openai_api_key: Optional[str] = None
    realtime_model: str = "gpt-realtime-mini"
    realtime_base_url: str = "https://api.openai.com/v1/realtime"
    realtime_voice: str = "sage"
    transcription_model: str = "whisper-1"
    transcription_language: str = "en"  # Language code for candidate transcription
    interview_language_name: str = "English"  # Spoken language the interviewer must stick to
    turn_detection_type: str = "semantic_vad"
    turn_detection_eagerness: str = "medium"  # low, medium, high, auto

    # Alternate provider (Azure OpenAI realtime gateway)
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_key: Optional[str] = None
    azure_openai_deployment: Optional[str] = None
    azure_openai_api_version: str = "2024-10-01-preview"

    # Transcript analysis LLM
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_temperature: float = 0.2
    gemini_max_output_tokens: int = 5000
    analysis_timeout_seconds: int = 60

    # Interview client
    server_url: str = "http://localhost:8000"
    end_failsafe_seconds: float = 5.0  # Max wait for goodbye audio after end_interview
    http_timeout_seconds: float = 30.0
    camera_device: Optional[str] = None  # e.g. /dev/video0 (None = audio-only)
    camera_format: Optional[str] = "v4l2"
    microphone_device: str = "default"
    microphone_format: Optional[str] = "pulse"
    speaker_device: Optional[str] = "default"  # Assistant audio playback (None = discard)
    speaker_format: Optional[str] = "pulse"

    # Server storage
    storage_dir: str = "data"
    default_max_questions: int = 10

    # Advisory pricing (USD per 1M tokens unless noted)
    pricing_model_label: str = "gpt-realtime-mini"
    price_text_input: float = 0.6
    price_text_cached_input: float = 0.06
    price_text_output: float = 2.4
    price_audio_input: float = 10.0
    price_audio_cached_input: float = 0.3
    price_audio_output: float = 20.0
    price_transcription_per_minute: float = 0.006  # whisper-1 per minute of user speech

    # Logging
    log_level: str = "INFO"
    log_format: str = ""  # "json" for structured output

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    def pricing_rates(self) -> PricingRates:
        """Build the advisory rate table handed to the usage accountant."""
        return PricingRates(
            model=self.pricing_model_label,
            text_input=self.price_text_input,
            text_cached_input=self.price_text_cached_input,
            text_output=self.price_text_output,
            audio_input=self.price_audio_input,
            audio_cached_input=self.price_audio_cached_input,
            audio_output=self.price_audio_output,
            transcription_per_minute=self.price_transcription_per_minute,
        )

    @property
    def azure_configured(self) -> bool:
        return bool(self.azure_openai_endpoint and self.azure_openai_api_key and self.azure_openai_deployment)
