"""
Provider Adapters Module
Translate each realtime provider's wire protocol into the internal event shape.

The direct realtime API and the Azure OpenAI gateway use different event names and
configuration nesting for the same concepts. Each adapter owns:
- parsing raw control-channel payloads into ServerEvent variants
- the provider-specific session.update payload
- which relay path negotiates the connection and whether a direct fallback exists
"""

import logging
from typing import Any, Dict, FrozenSet, List, Optional

from voice_screener.config import Settings
from voice_screener.core.events import (
    AssistantTranscriptDelta,
    AssistantTranscriptDone,
    FunctionCallRequested,
    InputAudioCommitted,
    ItemEvent,
    OutputAudioStarted,
    OutputAudioStopped,
    ProtocolErrorEvent,
    ResponseCreated,
    ResponseDone,
    ServerEvent,
    SpeechStarted,
    SpeechStopped,
    UnknownEvent,
    UserTranscriptDelta,
    UserTranscriptDone,
)
from voice_screener.core.models import Role
from voice_screener.prompts.interview import end_interview_tool

logger = logging.getLogger(__name__)


ITEM_STAGES = {
    "conversation.item.created": "created",
    "conversation.item.added": "added",
    "conversation.item.done": "done",
}

# Text content kinds in the order they are preferred when reading an item
_TEXT_CONTENT_TYPES = ("text", "input_text", "output_text")
_TRANSCRIPT_CONTENT_TYPES = ("audio", "input_audio")


def extract_item_text(item: Dict[str, Any]) -> str:
    """Best text available inside a conversation item's content parts."""
    content = item.get("content") or []
    if not isinstance(content, list):
        return ""

    for content_type in _TEXT_CONTENT_TYPES:
        for part in content:
            if isinstance(part, dict) and part.get("type") == content_type:
                return part.get("text") or part.get("transcript") or ""

    for content_type in _TRANSCRIPT_CONTENT_TYPES:
        for part in content:
            if isinstance(part, dict) and part.get("type") == content_type:
                transcript = part.get("transcript")
                if isinstance(transcript, str) and transcript:
                    return transcript

    for part in content:
        if isinstance(part, dict):
            transcript = part.get("transcript")
            if isinstance(transcript, str) and transcript:
                return transcript
    return ""


def _role(value: Any) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


def _text(raw: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class ProviderAdapter:
    """
    Base adapter: event names shared by every provider.

    Subclasses extend the assistant transcript name sets and build their own
    session.update payload.
    """

    name = "base"
    relay_path = "/session"
    supports_direct_fallback = False

    ASSISTANT_DELTA_TYPES: FrozenSet[str] = frozenset({
        "response.output_text.delta",
    })
    ASSISTANT_DONE_TYPES: FrozenSet[str] = frozenset({
        "response.output_text.done",
    })
    USER_DELTA_TYPES: FrozenSet[str] = frozenset({
        "conversation.item.input_audio_transcription.delta",
        "conversation.item.input_audio_transcript.delta",
    })
    USER_DONE_TYPES: FrozenSet[str] = frozenset({
        "conversation.item.input_audio_transcription.completed",
        "conversation.item.input_audio_transcription.done",
        "conversation.item.input_audio_transcript.done",
        "conversation.item.input_audio_transcript.completed",
    })
    OUTPUT_ITEM_TYPES: FrozenSet[str] = frozenset({
        "response.output_item.added",
        "response.output_item.done",
    })

    def __init__(self, settings: Settings):
        self.settings = settings

    # ---------------------------------------------------------------- parsing

    def parse(self, raw: Dict[str, Any]) -> List[ServerEvent]:
        """
        Translate one raw payload into zero or more internal events.

        Known event types that carry nothing of interest yield an empty list;
        unrecognised types yield a single UnknownEvent.
        """
        event_type = raw.get("type") or ""

        if event_type in ITEM_STAGES:
            return self._parse_item(event_type, raw)

        if event_type in self.ASSISTANT_DELTA_TYPES:
            delta = raw.get("delta")
            if not delta:
                return []
            return [AssistantTranscriptDelta(
                source_type=event_type,
                item_id=raw.get("item_id"),
                response_id=raw.get("response_id"),
                delta=delta
            )]

        if event_type in self.ASSISTANT_DONE_TYPES:
            text = _text(raw, "transcript", "text", "output_text")
            if not text:
                return []
            return [AssistantTranscriptDone(
                source_type=event_type,
                item_id=raw.get("item_id"),
                response_id=raw.get("response_id"),
                text=text
            )]

        if event_type in self.USER_DELTA_TYPES:
            delta = raw.get("delta")
            if not delta:
                return []
            return [UserTranscriptDelta(source_type=event_type, item_id=raw.get("item_id"), delta=delta)]

        if event_type in self.USER_DONE_TYPES:
            return [UserTranscriptDone(
                source_type=event_type,
                item_id=raw.get("item_id"),
                text=_text(raw, "transcript", "text"),
                usage=raw.get("usage")
            )]

        if event_type in self.OUTPUT_ITEM_TYPES:
            call = self._function_call(raw.get("item") or {}, event_type)
            return [call] if call else []

        if event_type == "response.created":
            response = raw.get("response") or {}
            return [ResponseCreated(source_type=event_type, response_id=response.get("id"))]

        if event_type == "response.done":
            return self._parse_response_done(raw)

        if event_type == "output_audio_buffer.started":
            return [OutputAudioStarted(source_type=event_type)]
        if event_type == "output_audio_buffer.stopped":
            return [OutputAudioStopped(source_type=event_type)]
        if event_type == "input_audio_buffer.speech_started":
            return [SpeechStarted(source_type=event_type)]
        if event_type == "input_audio_buffer.speech_stopped":
            return [SpeechStopped(source_type=event_type)]
        if event_type == "input_audio_buffer.committed":
            return [InputAudioCommitted(
                source_type=event_type,
                item_id=raw.get("item_id"),
                text=_text(raw, "transcript", "text"),
                usage=raw.get("usage")
            )]

        if event_type == "error":
            error = raw.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            return [ProtocolErrorEvent(
                source_type=event_type,
                message=error.get("message") or "An error occurred",
                code=error.get("code")
            )]

        return [UnknownEvent(source_type=event_type, raw=raw)]

    def _parse_item(self, event_type: str, raw: Dict[str, Any]) -> List[ServerEvent]:
        item = raw.get("item") or {}
        events: List[ServerEvent] = []

        item_id = item.get("id")
        if item_id:
            events.append(ItemEvent(
                source_type=event_type,
                stage=ITEM_STAGES[event_type],
                item_id=item_id,
                role=_role(item.get("role")),
                item_type=item.get("type"),
                text=extract_item_text(item)
            ))

        if ITEM_STAGES[event_type] != "created":
            call = self._function_call(item, event_type)
            if call:
                events.append(call)
        return events

    def _parse_response_done(self, raw: Dict[str, Any]) -> List[ServerEvent]:
        event_type = raw.get("type", "response.done")
        response = raw.get("response") or {}
        events: List[ServerEvent] = [ResponseDone(
            source_type=event_type,
            response_id=response.get("id"),
            usage=response.get("usage")
        )]
        output = response.get("output")
        if isinstance(output, list):
            for entry in output:
                if isinstance(entry, dict):
                    call = self._function_call(entry, event_type)
                    if call:
                        events.append(call)
        return events

    @staticmethod
    def _function_call(item: Dict[str, Any], source_type: str) -> Optional[FunctionCallRequested]:
        if item.get("type") != "function_call" or not item.get("name"):
            return None
        return FunctionCallRequested(
            source_type=source_type,
            name=item["name"],
            call_id=item.get("call_id") or item.get("id"),
            arguments=item.get("arguments") or ""
        )

    # ---------------------------------------------------------------- outbound

    def _turn_detection(self) -> Dict[str, Any]:
        return {
            "type": self.settings.turn_detection_type,
            "eagerness": self.settings.turn_detection_eagerness,
        }

    def build_session_config(self, instructions: str) -> Dict[str, Any]:
        raise NotImplementedError

    def session_update(self, instructions: str) -> Dict[str, Any]:
        """session.update event carrying the full session configuration."""
        return {"type": "session.update", "session": self.build_session_config(instructions)}

    @staticmethod
    def response_create(instructions: str) -> Dict[str, Any]:
        return {"type": "response.create", "response": {"instructions": instructions}}


class OpenAIRealtimeAdapter(ProviderAdapter):
    """Direct realtime API (beta and GA event names)."""

    name = "openai"
    relay_path = "/session"
    supports_direct_fallback = True

    ASSISTANT_DELTA_TYPES = ProviderAdapter.ASSISTANT_DELTA_TYPES | {
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
        "response.text.delta",
    }
    ASSISTANT_DONE_TYPES = ProviderAdapter.ASSISTANT_DONE_TYPES | {
        "response.audio_transcript.done",
        "response.output_audio_transcript.done",
        "response.text.done",
    }

    def build_session_config(self, instructions: str) -> Dict[str, Any]:
        return {
            "type": "realtime",
            "instructions": instructions,
            "tools": [end_interview_tool()],
            "input_audio_transcription": {
                "model": self.settings.transcription_model,
                "language": self.settings.transcription_language,
            },
            "turn_detection": self._turn_detection(),
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "voice": self.settings.realtime_voice,
        }


class AzureRealtimeAdapter(ProviderAdapter):
    """Azure OpenAI realtime gateway (GA naming, audio config nested under audio.*)."""

    name = "azure"
    relay_path = "/azure/session"
    supports_direct_fallback = False

    ASSISTANT_DELTA_TYPES = ProviderAdapter.ASSISTANT_DELTA_TYPES | {
        "response.output_audio_transcript.delta",
    }
    ASSISTANT_DONE_TYPES = ProviderAdapter.ASSISTANT_DONE_TYPES | {
        "response.output_audio_transcript.done",
    }

    def build_session_config(self, instructions: str) -> Dict[str, Any]:
        return {
            "type": "realtime",
            "instructions": instructions,
            "tools": [end_interview_tool()],
            "audio": {
                "input": {
                    "transcription": {"model": self.settings.transcription_model},
                    "turn_detection": self._turn_detection(),
                },
                "output": {"voice": self.settings.realtime_voice},
            },
        }


def get_provider_adapter(use_alternate_provider: bool, settings: Settings) -> ProviderAdapter:
    """Pick the adapter for a session descriptor."""
    if use_alternate_provider:
        logger.info("Using Azure realtime adapter")
        return AzureRealtimeAdapter(settings)
    return OpenAIRealtimeAdapter(settings)
