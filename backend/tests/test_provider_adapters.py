"""Tests for wire-protocol parsing and session configuration per provider."""

import pytest

from voice_screener.core.events import (
    AssistantTranscriptDelta,
    AssistantTranscriptDone,
    EventKind,
    FunctionCallRequested,
    ItemEvent,
    ProtocolErrorEvent,
    ResponseDone,
    UnknownEvent,
    UserTranscriptDone,
)
from voice_screener.core.models import Role
from voice_screener.services.provider_adapters import (
    AzureRealtimeAdapter,
    OpenAIRealtimeAdapter,
    extract_item_text,
    get_provider_adapter,
)


@pytest.fixture
def openai_adapter(settings) -> OpenAIRealtimeAdapter:
    return OpenAIRealtimeAdapter(settings)


@pytest.fixture
def azure_adapter(settings) -> AzureRealtimeAdapter:
    return AzureRealtimeAdapter(settings)


class TestExtractItemText:
    def test_text_parts_win_over_transcripts(self) -> None:
        item = {"content": [{"type": "audio", "transcript": "spoken"}, {"type": "text", "text": "typed"}]}
        assert extract_item_text(item) == "typed"

    def test_input_audio_transcript(self) -> None:
        item = {"content": [{"type": "input_audio", "transcript": "I led a team of four."}]}
        assert extract_item_text(item) == "I led a team of four."

    def test_any_transcript_as_last_resort(self) -> None:
        item = {"content": [{"type": "output_audio", "transcript": "Goodbye"}]}
        assert extract_item_text(item) == "Goodbye"

    def test_missing_content(self) -> None:
        assert extract_item_text({}) == ""
        assert extract_item_text({"content": "oops"}) == ""


class TestParse:
    def test_legacy_assistant_transcript_on_direct_provider(self, openai_adapter) -> None:
        events = openai_adapter.parse({
            "type": "response.audio_transcript.delta", "item_id": "a1", "response_id": "r1", "delta": "Hi"
        })
        assert events == [AssistantTranscriptDelta(
            source_type="response.audio_transcript.delta", item_id="a1", response_id="r1", delta="Hi"
        )]

    def test_legacy_names_are_unknown_on_azure(self, azure_adapter) -> None:
        events = azure_adapter.parse({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": "Hi"})
        assert len(events) == 1
        assert isinstance(events[0], UnknownEvent)

    @pytest.mark.parametrize("adapter_name", ["openai_adapter", "azure_adapter"])
    def test_ga_assistant_transcript_on_both(self, adapter_name, request) -> None:
        adapter = request.getfixturevalue(adapter_name)
        events = adapter.parse({
            "type": "response.output_audio_transcript.done", "item_id": "a1", "transcript": "Welcome!"
        })
        assert isinstance(events[0], AssistantTranscriptDone)
        assert events[0].text == "Welcome!"

    @pytest.mark.parametrize("event_type", [
        "conversation.item.input_audio_transcription.completed",
        "conversation.item.input_audio_transcription.done",
        "conversation.item.input_audio_transcript.done",
        "conversation.item.input_audio_transcript.completed",
    ])
    def test_user_transcript_spellings(self, openai_adapter, event_type) -> None:
        events = openai_adapter.parse({"type": event_type, "item_id": "u1", "transcript": "Sure."})
        assert isinstance(events[0], UserTranscriptDone)
        assert events[0].item_id == "u1"
        assert events[0].text == "Sure."

    def test_empty_delta_yields_nothing(self, openai_adapter) -> None:
        assert openai_adapter.parse({"type": "response.output_text.delta", "delta": ""}) == []

    def test_item_created(self, openai_adapter) -> None:
        events = openai_adapter.parse({
            "type": "conversation.item.created",
            "item": {"id": "u1", "role": "user", "type": "message",
                     "content": [{"type": "input_audio", "transcript": None}]},
        })
        assert events == [ItemEvent(
            source_type="conversation.item.created", stage="created",
            item_id="u1", role=Role.USER, item_type="message", text=""
        )]

    def test_function_call_item_done(self, openai_adapter) -> None:
        events = openai_adapter.parse({
            "type": "conversation.item.done",
            "item": {"id": "fc1", "type": "function_call", "name": "end_interview", "call_id": "call_9",
                     "arguments": "{\"reason\": \"Interview completed\"}"},
        })
        assert [event.kind for event in events] == [EventKind.ITEM, EventKind.FUNCTION_CALL]
        assert events[1].call_id == "call_9"
        assert events[1].identity == "call_9"

    def test_function_call_created_stage_is_not_a_call(self, openai_adapter) -> None:
        events = openai_adapter.parse({
            "type": "conversation.item.created",
            "item": {"id": "fc1", "type": "function_call", "name": "end_interview"},
        })
        assert [event.kind for event in events] == [EventKind.ITEM]

    def test_output_item_function_call_uses_item_id_when_no_call_id(self, openai_adapter) -> None:
        events = openai_adapter.parse({
            "type": "response.output_item.done",
            "item": {"id": "fc1", "type": "function_call", "name": "end_interview"},
        })
        assert events == [FunctionCallRequested(
            source_type="response.output_item.done", name="end_interview", call_id="fc1"
        )]

    def test_response_done_carries_usage_and_calls(self, azure_adapter) -> None:
        events = azure_adapter.parse({
            "type": "response.done",
            "response": {
                "id": "r1",
                "usage": {"output_token_details": {"audio_tokens": 5}},
                "output": [
                    {"type": "message", "role": "assistant"},
                    {"type": "function_call", "name": "end_interview", "call_id": "call_1"},
                ],
            },
        })
        assert isinstance(events[0], ResponseDone)
        assert events[0].response_id == "r1"
        assert events[0].usage == {"output_token_details": {"audio_tokens": 5}}
        assert isinstance(events[1], FunctionCallRequested)
        assert len(events) == 2

    @pytest.mark.parametrize("event_type,kind", [
        ("output_audio_buffer.started", EventKind.OUTPUT_AUDIO_STARTED),
        ("output_audio_buffer.stopped", EventKind.OUTPUT_AUDIO_STOPPED),
        ("input_audio_buffer.speech_started", EventKind.SPEECH_STARTED),
        ("input_audio_buffer.speech_stopped", EventKind.SPEECH_STOPPED),
        ("input_audio_buffer.committed", EventKind.INPUT_COMMITTED),
    ])
    def test_buffer_events(self, openai_adapter, event_type, kind) -> None:
        assert openai_adapter.parse({"type": event_type})[0].kind == kind

    def test_error_event_defaults_message(self, openai_adapter) -> None:
        events = openai_adapter.parse({"type": "error", "error": {}})
        assert events == [ProtocolErrorEvent(source_type="error", message="An error occurred")]

    def test_error_event_with_message(self, openai_adapter) -> None:
        event = openai_adapter.parse({"type": "error", "error": {"message": "bad request", "code": "invalid"}})[0]
        assert event.message == "bad request"
        assert event.code == "invalid"

    def test_unrecognised_type(self, openai_adapter) -> None:
        event = openai_adapter.parse({"type": "rate_limits.updated"})[0]
        assert isinstance(event, UnknownEvent)
        assert event.source_type == "rate_limits.updated"


class TestSessionConfig:
    def test_direct_provider_uses_flat_config(self, openai_adapter) -> None:
        update = openai_adapter.session_update("Interview instructions")
        session = update["session"]

        assert update["type"] == "session.update"
        assert session["instructions"] == "Interview instructions"
        assert session["input_audio_transcription"] == {"model": "whisper-1", "language": "en"}
        assert session["turn_detection"] == {"type": "semantic_vad", "eagerness": "medium"}
        assert session["voice"] == "sage"
        assert session["tools"][0]["name"] == "end_interview"

    def test_azure_nests_audio_config(self, azure_adapter) -> None:
        session = azure_adapter.session_update("Interview instructions")["session"]

        assert session["audio"]["input"]["transcription"] == {"model": "whisper-1"}
        assert session["audio"]["input"]["turn_detection"]["type"] == "semantic_vad"
        assert session["audio"]["output"] == {"voice": "sage"}
        assert "input_audio_transcription" not in session
        assert session["tools"][0]["name"] == "end_interview"

    def test_response_create(self) -> None:
        assert OpenAIRealtimeAdapter.response_create("Greet") == {
            "type": "response.create", "response": {"instructions": "Greet"}
        }


class TestAdapterSelection:
    def test_selection_by_descriptor_flag(self, settings) -> None:
        assert isinstance(get_provider_adapter(False, settings), OpenAIRealtimeAdapter)
        assert isinstance(get_provider_adapter(True, settings), AzureRealtimeAdapter)

    def test_routes(self, openai_adapter, azure_adapter) -> None:
        assert (openai_adapter.relay_path, openai_adapter.supports_direct_fallback) == ("/session", True)
        assert (azure_adapter.relay_path, azure_adapter.supports_direct_fallback) == ("/azure/session", False)
