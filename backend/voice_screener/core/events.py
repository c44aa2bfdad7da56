"""
Protocol Events
Internal tagged union for server-sent realtime control-channel events.

Provider adapters (see services/provider_adapters.py) translate raw wire payloads into
these variants. Anything an adapter does not recognise becomes an UnknownEvent so it
can be logged and ignored instead of being matched by accident.
"""

from enum import Enum
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field

from voice_screener.core.models import Role


class EventKind(str, Enum):
    """Discriminator values for internal protocol events"""
    ITEM = "item"
    ASSISTANT_DELTA = "assistant_delta"
    ASSISTANT_DONE = "assistant_done"
    USER_DELTA = "user_delta"
    USER_DONE = "user_done"
    FUNCTION_CALL = "function_call"
    RESPONSE_CREATED = "response_created"
    RESPONSE_DONE = "response_done"
    OUTPUT_AUDIO_STARTED = "output_audio_started"
    OUTPUT_AUDIO_STOPPED = "output_audio_stopped"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    INPUT_COMMITTED = "input_committed"
    ERROR = "error"
    UNKNOWN = "unknown"


class _Event(BaseModel):
    source_type: str = Field(default="", description="Wire event type this was parsed from")


class ItemEvent(_Event):
    """conversation.item.created / added / done"""
    kind: Literal[EventKind.ITEM] = EventKind.ITEM
    stage: Literal["created", "added", "done"] = "created"
    item_id: str
    role: Optional[Role] = None
    item_type: Optional[str] = None
    text: str = ""


class AssistantTranscriptDelta(_Event):
    kind: Literal[EventKind.ASSISTANT_DELTA] = EventKind.ASSISTANT_DELTA
    item_id: Optional[str] = None
    response_id: Optional[str] = None
    delta: str


class AssistantTranscriptDone(_Event):
    kind: Literal[EventKind.ASSISTANT_DONE] = EventKind.ASSISTANT_DONE
    item_id: Optional[str] = None
    response_id: Optional[str] = None
    text: str


class UserTranscriptDelta(_Event):
    kind: Literal[EventKind.USER_DELTA] = EventKind.USER_DELTA
    item_id: Optional[str] = None
    delta: str


class UserTranscriptDone(_Event):
    kind: Literal[EventKind.USER_DONE] = EventKind.USER_DONE
    item_id: Optional[str] = None
    text: str = ""
    usage: Optional[Dict[str, Any]] = None


class FunctionCallRequested(_Event):
    """A model-invoked function call, from whichever event shape carried it."""
    kind: Literal[EventKind.FUNCTION_CALL] = EventKind.FUNCTION_CALL
    name: str
    call_id: Optional[str] = None
    arguments: str = ""

    @property
    def identity(self) -> str:
        return self.call_id or self.name


class ResponseCreated(_Event):
    kind: Literal[EventKind.RESPONSE_CREATED] = EventKind.RESPONSE_CREATED
    response_id: Optional[str] = None


class ResponseDone(_Event):
    kind: Literal[EventKind.RESPONSE_DONE] = EventKind.RESPONSE_DONE
    response_id: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


class OutputAudioStarted(_Event):
    kind: Literal[EventKind.OUTPUT_AUDIO_STARTED] = EventKind.OUTPUT_AUDIO_STARTED


class OutputAudioStopped(_Event):
    kind: Literal[EventKind.OUTPUT_AUDIO_STOPPED] = EventKind.OUTPUT_AUDIO_STOPPED


class SpeechStarted(_Event):
    kind: Literal[EventKind.SPEECH_STARTED] = EventKind.SPEECH_STARTED


class SpeechStopped(_Event):
    kind: Literal[EventKind.SPEECH_STOPPED] = EventKind.SPEECH_STOPPED


class InputAudioCommitted(_Event):
    """input_audio_buffer.committed; some gateways attach the transcript here."""
    kind: Literal[EventKind.INPUT_COMMITTED] = EventKind.INPUT_COMMITTED
    item_id: Optional[str] = None
    text: str = ""
    usage: Optional[Dict[str, Any]] = None


class ProtocolErrorEvent(_Event):
    kind: Literal[EventKind.ERROR] = EventKind.ERROR
    message: str
    code: Optional[str] = None


class UnknownEvent(_Event):
    kind: Literal[EventKind.UNKNOWN] = EventKind.UNKNOWN
    raw: Dict[str, Any] = Field(default_factory=dict)


ServerEvent = Union[
    ItemEvent,
    AssistantTranscriptDelta,
    AssistantTranscriptDone,
    UserTranscriptDelta,
    UserTranscriptDone,
    FunctionCallRequested,
    ResponseCreated,
    ResponseDone,
    OutputAudioStarted,
    OutputAudioStopped,
    SpeechStarted,
    SpeechStopped,
    InputAudioCommitted,
    ProtocolErrorEvent,
    UnknownEvent,
]
