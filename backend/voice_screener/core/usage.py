"""
Usage Accountant
Accumulates token and speech-duration counters and computes an advisory cost summary.

The cost figures are observability only and will drift from real provider pricing;
the rate table is injected (see Settings.pricing_rates()).
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from voice_screener.core.events import (
    InputAudioCommitted,
    ResponseDone,
    ServerEvent,
    SpeechStarted,
    SpeechStopped,
    UserTranscriptDone,
)
from voice_screener.core.models import CostSummary, PricingRates, UsageLedger

logger = logging.getLogger(__name__)

TOKENS_PER_UNIT = 1_000_000


def _count(value: Any) -> int:
    """Coerce a usage field to a non-negative int (missing/None -> 0)."""
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


class UsageAccountant:
    """
    Owns the UsageLedger for one session.

    Args:
        rates: Advisory pricing table
        clock: Monotonic clock used to time candidate speech
    """

    def __init__(self, rates: Optional[PricingRates] = None, clock: Callable[[], float] = time.monotonic):
        self.rates = rates or PricingRates()
        self._clock = clock
        self.ledger = UsageLedger()
        self._speech_started_at: Optional[float] = None

    @property
    def user_speaking(self) -> bool:
        return self._speech_started_at is not None

    def reset(self):
        self.ledger = UsageLedger()
        self._speech_started_at = None

    # ---------------------------------------------------------------- tokens

    def record_response_usage(self, response_id: Optional[str], usage: Optional[Dict[str, Any]]) -> bool:
        """
        Add one terminal response usage block to the ledger.

        Idempotent per response_id: a repeated terminal event for an id already
        counted is ignored.

        Returns:
            True if the ledger changed
        """
        ledger = self.ledger
        if response_id:
            if response_id in ledger.seen_response_ids:
                logger.debug(f"Ignoring duplicate usage for response {response_id}")
                return False
            ledger.seen_response_ids.add(response_id)

        if not usage:
            return False

        input_details = usage.get("input_token_details") or {}
        output_details = usage.get("output_token_details") or {}

        text_in = _count(input_details.get("text_tokens"))
        audio_in = _count(input_details.get("audio_tokens"))
        text_out = _count(output_details.get("text_tokens"))
        audio_out = _count(output_details.get("audio_tokens"))

        cached_total = _count(input_details.get("cached_tokens"))
        cached_details = input_details.get("cached_tokens_details")
        if cached_details:
            cached_audio = _count(cached_details.get("audio_tokens"))
            if cached_details.get("text_tokens") is not None:
                cached_text = _count(cached_details.get("text_tokens"))
            else:
                cached_text = max(cached_total - cached_audio, 0)
        else:
            # No breakdown: the whole cached count goes to the audio bucket
            cached_audio = cached_total
            cached_text = 0

        ledger.cached_text_input += cached_text
        ledger.cached_audio_input += cached_audio
        ledger.text_input += max(text_in - cached_text, 0)
        ledger.audio_input += max(audio_in - cached_audio, 0)
        ledger.text_output += text_out
        ledger.audio_output += audio_out
        return True

    def record_transcription_usage(self, usage: Optional[Dict[str, Any]]):
        """Accumulate transcription-model usage reported with a user transcript."""
        if not usage:
            return
        self.ledger.transcription_total_tokens += _count(usage.get("total_tokens"))
        details = usage.get("input_token_details") or {}
        self.ledger.transcription_audio_tokens += _count(details.get("audio_tokens"))

    # ---------------------------------------------------------------- speech

    def record_speech_start(self):
        self._speech_started_at = self._clock()

    def record_speech_stop(self):
        if self._speech_started_at is not None:
            elapsed = self._clock() - self._speech_started_at
            self.ledger.speech_duration_seconds += max(elapsed, 0.0)
        self._speech_started_at = None

    def finalize(self):
        """Credit a speaking turn that was still open when the session ended."""
        if self._speech_started_at is not None:
            logger.debug("Closing open speech bracket at teardown")
            self.record_speech_stop()

    # ---------------------------------------------------------------- events

    def handle(self, event: ServerEvent):
        if isinstance(event, ResponseDone):
            self.record_response_usage(event.response_id, event.usage)
        elif isinstance(event, UserTranscriptDone):
            self.record_transcription_usage(event.usage)
        elif isinstance(event, SpeechStarted):
            self.record_speech_start()
        elif isinstance(event, SpeechStopped):
            self.record_speech_stop()
        elif isinstance(event, InputAudioCommitted):
            self.record_transcription_usage(event.usage)
            self.record_speech_stop()

    # ---------------------------------------------------------------- summary

    def summary(self) -> CostSummary:
        """Raw counters plus per-bucket and total advisory cost in USD."""
        ledger = self.ledger
        rates = self.rates

        def per_million(tokens: int, rate: float) -> float:
            return (tokens / TOKENS_PER_UNIT) * rate

        costs = {
            "text_input": per_million(ledger.text_input, rates.text_input),
            "cached_text_input": per_million(ledger.cached_text_input, rates.text_cached_input),
            "text_output": per_million(ledger.text_output, rates.text_output),
            "audio_input": per_million(ledger.audio_input, rates.audio_input),
            "cached_audio_input": per_million(ledger.cached_audio_input, rates.audio_cached_input),
            "audio_output": per_million(ledger.audio_output, rates.audio_output),
            "transcription": (ledger.speech_duration_seconds / 60) * rates.transcription_per_minute,
        }
        total = sum(costs.values())

        return CostSummary(
            model=rates.model,
            response_tokens={
                "text_input": ledger.text_input,
                "audio_input": ledger.audio_input,
                "text_output": ledger.text_output,
                "audio_output": ledger.audio_output,
                "cached_text_input": ledger.cached_text_input,
                "cached_audio_input": ledger.cached_audio_input,
            },
            transcription_tokens={
                "total": ledger.transcription_total_tokens,
                "audio": ledger.transcription_audio_tokens,
            },
            speech_duration_seconds=round(ledger.speech_duration_seconds, 2),
            costs_usd={name: round(value, 6) for name, value in costs.items()},
            total_cost_usd=round(total, 6),
        )
