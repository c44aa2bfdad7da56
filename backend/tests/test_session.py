"""End-to-end lifecycle tests for InterviewSession over in-memory transports."""

import asyncio
import json
import logging

import pytest

from conftest import CaptureFactory, ConnectionFactory, FakeDevices

from voice_screener.core.errors import VoiceScreenerError
from voice_screener.core.models import Role
from voice_screener.core.session import InterviewSession, SessionStatus
from voice_screener.services.backend_client import InterviewBackendClient


def _make_session(
    http_client, settings, devices=None, connections=None, captures=None, session_id="s1"
) -> InterviewSession:
    return InterviewSession(
        session_id,
        InterviewBackendClient(http_client),
        devices or FakeDevices(),
        connections or ConnectionFactory(),
        captures or CaptureFactory(),
        settings=settings,
    )


async def _go_live(session: InterviewSession, connections: ConnectionFactory):
    await session.initialize()
    assert await session.start() is True
    connection = connections.last
    await connection.open_channel()
    return connection


ASSISTANT_TURN = [
    {"type": "conversation.item.created", "item": {"id": "a1", "role": "assistant", "type": "message"}},
    {"type": "response.output_audio_transcript.delta", "item_id": "a1", "delta": "Hi Ada, "},
    {"type": "response.output_audio_transcript.delta", "item_id": "a1", "delta": "tell me about yourself."},
    {"type": "response.output_audio_transcript.done", "item_id": "a1", "transcript": "Hi Ada, tell me about yourself."},
]

USER_TURN = [
    {"type": "input_audio_buffer.speech_started"},
    {"type": "conversation.item.created", "item": {"id": "u1", "role": "user", "type": "message"}},
    {"type": "input_audio_buffer.speech_stopped"},
    {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1",
     "transcript": "I build APIs in Python."},
]

GOODBYE = [
    {"type": "output_audio_buffer.started"},
    {"type": "response.done", "response": {
        "id": "r2",
        "usage": {"input_token_details": {"text_tokens": 100, "audio_tokens": 50},
                  "output_token_details": {"text_tokens": 10, "audio_tokens": 400}},
        "output": [{"type": "function_call", "name": "end_interview", "call_id": "call_1",
                    "arguments": "{\"reason\": \"Interview completed\"}"}],
    }},
]


class TestInitialize:
    async def test_loads_descriptor_and_camera(self, http_client, settings) -> None:
        session = _make_session(http_client, settings)

        descriptor = await session.initialize()

        assert descriptor.candidate_name == "Ada"
        assert session.adapter.name == "openai"
        assert session.camera_status == "Active"
        assert session.can_start is True

    async def test_missing_session_keeps_start_disabled(self, http_client, server, settings) -> None:
        server.descriptor["sessionId"] = "other"
        session = _make_session(http_client, settings)

        with pytest.raises(VoiceScreenerError, match="not found"):
            await session.initialize()

        assert session.can_start is False
        assert session.status == SessionStatus.ERROR
        assert session.transcript.export() == "SYSTEM: Error: Interview session not found"

    async def test_camera_failure_is_not_fatal(self, http_client, settings) -> None:
        session = _make_session(http_client, settings, devices=FakeDevices(camera_fails=True))

        await session.initialize()

        assert session.camera_status == "Camera unavailable"
        assert session.can_start is True

    async def test_alternate_provider(self, http_client, server, settings) -> None:
        server.descriptor["useAlternateProvider"] = True
        session = _make_session(http_client, settings)

        await session.initialize()

        assert session.adapter.name == "azure"


    async def test_descriptor_without_session_id(self, http_client, server, settings) -> None:
        del server.descriptor["sessionId"]
        session = _make_session(http_client, settings)

        descriptor = await session.initialize()

        assert descriptor.session_id == "s1"
        assert descriptor.system_prompt.startswith("You are interviewing")
        assert session.can_start is True

    async def test_malformed_descriptor_is_reported(self, http_client, server, settings) -> None:
        server.descriptor["systemPrompt"] = ["not", "a", "prompt"]
        session = _make_session(http_client, settings)

        with pytest.raises(VoiceScreenerError, match="Invalid interview session payload"):
            await session.initialize()

        assert session.can_start is False
        assert session.transcript.export().startswith("SYSTEM: Error: Invalid interview session payload")


class TestPositionLink:
    async def test_position_becomes_a_session(self, http_client, server, settings) -> None:
        server.positions["p1"] = {"sessionId": "p1", "isPosition": True, "jobTitle": "Backend Engineer"}
        session = _make_session(http_client, settings, session_id="p1")

        descriptor = await session.initialize("Ada", "ada@example.com")

        assert session.session_id == "s1"
        assert descriptor.is_position is False
        assert descriptor.candidate_name == "Ada"
        started = server.find("POST", "/api/position/p1/start-interview")[0]
        assert json.loads(started.content) == {"candidateName": "Ada", "candidateEmail": "ada@example.com"}
        assert session.can_start is True

    async def test_position_needs_name_and_email(self, http_client, server, settings) -> None:
        server.positions["p1"] = {"sessionId": "p1", "isPosition": True, "jobTitle": "Backend Engineer"}
        session = _make_session(http_client, settings, session_id="p1")

        with pytest.raises(VoiceScreenerError, match="both name and email"):
            await session.initialize("Ada", " ")

        assert server.find("POST", "/api/position/p1/start-interview") == []
        assert session.session_id == "p1"
        assert session.can_start is False

    async def test_start_interview_rejected(self, http_client, server, settings) -> None:
        server.positions["p1"] = {"sessionId": "p1", "isPosition": True, "jobTitle": "Backend Engineer"}
        server.start_status = 500
        session = _make_session(http_client, settings, session_id="p1")

        with pytest.raises(VoiceScreenerError, match="Failed to start interview"):
            await session.initialize("Ada", "ada@example.com")

        assert session.transcript.export() == "SYSTEM: Error: Failed to start interview (500)"


class TestGoLive:
    async def test_channel_open_configures_and_greets_once(self, http_client, server, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)

        connection = await _go_live(session, connections)
        await connection.open_channel()
        await session.wait_for_background()

        assert session.status == SessionStatus.LIVE
        assert session.is_active is True
        assert session.can_stop is True
        assert connection.answer.startswith("v=0")
        assert connection.channel.label == "oai-events"
        assert connection.channel.sent_types() == ["session.update", "response.create"]
        greeting = connection.channel.sent[1]["response"]["instructions"]
        assert "greeting Ada for the Backend Engineer role" in greeting
        assert server.find("PATCH", "/api/session/s1/status")
        assert session.timer.running is True

        await session.stop()

    async def test_recording_starts_when_assistant_audio_arrives(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        captures = CaptureFactory()
        session = _make_session(http_client, settings, connections=connections, captures=captures)

        connection = await _go_live(session, connections)
        assert captures.captures == []

        await connection.deliver_remote_audio()

        assert len(captures.captures) == 1
        assert captures.captures[0].audio_tracks == ["microphone-audio", "assistant-audio"]
        await session.stop()

    async def test_no_recording_without_camera(self, http_client, server, settings) -> None:
        connections = ConnectionFactory()
        captures = CaptureFactory()
        session = _make_session(
            http_client, settings, devices=FakeDevices(camera_fails=True),
            connections=connections, captures=captures
        )

        connection = await _go_live(session, connections)
        await connection.deliver_remote_audio()
        await session.stop()

        assert captures.captures == []
        assert server.find("POST", "/api/upload-media") == []


class TestConversation:
    async def test_full_interview_ends_after_goodbye_audio(self, http_client, server, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)
        await connection.deliver_remote_audio()

        for event in ASSISTANT_TURN + USER_TURN + GOODBYE:
            await connection.receive(event)

        # end_interview only marks the session; the goodbye is still playing
        assert session.status == SessionStatus.LIVE
        assert session.termination.pending_end is True

        await connection.receive({"type": "output_audio_buffer.stopped"})
        await session.wait_for_background()

        assert session.status == SessionStatus.ENDED
        assert session.termination.end_reason == "playback_stopped"
        assert session.usage.ledger.audio_output == 400

        saved = server.find("POST", "/api/session/s1/transcript")[0]
        assert saved.content.decode() == (
            "ASSISTANT: Hi Ada, tell me about yourself.\n"
            "USER: I build APIs in Python."
        )
        analyzed = server.find("POST", "/api/session/s1/analyze")[0]
        assert json.loads(analyzed.content)["transcript"].startswith("ASSISTANT:")

        upload = server.find("POST", "/api/upload-media")[0]
        assert upload.url.params["type"] == "combined"
        assert upload.content == b"webm-bytes"
        assert session.recorder.uploaded_path == "/videos/s1-combined.webm"

        turns = session.transcript.turns
        assert turns[-1].role == Role.SYSTEM
        assert turns[-1].text == "Interview session ended"

    async def test_failsafe_ends_when_playback_never_stops(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)

        for event in GOODBYE:
            await connection.receive(event)
        await asyncio.wait_for(session.wait_until_ended(), timeout=2)

        assert session.termination.end_reason == "failsafe_timeout"
        assert session.status == SessionStatus.ENDED

    async def test_error_event_is_shown_and_session_continues(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)

        await connection.receive({"type": "error", "error": {"message": "Rate limit reached"}})

        assert session.transcript.turns[-1].text == "Error: Rate limit reached"
        assert session.status == SessionStatus.LIVE
        await session.stop()

    async def test_malformed_messages_are_ignored(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)

        await connection.receive_raw("{not json")
        await connection.receive_raw("[1, 2]")

        assert session.transcript.turns == []
        assert [entry["direction"] for entry in session.export_event_log()] == ["out", "out"]
        await session.stop()

    async def test_event_log_keeps_both_directions_in_order(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)

        await connection.receive(ASSISTANT_TURN[0])
        log = session.export_event_log()

        assert [(entry["direction"], entry["event"]["type"]) for entry in log] == [
            ("out", "session.update"),
            ("out", "response.create"),
            ("in", "conversation.item.created"),
        ]
        await session.stop()


class TestStop:
    async def test_user_stop_tears_down_once(self, http_client, server, settings) -> None:
        connections = ConnectionFactory()
        devices = FakeDevices()
        session = _make_session(http_client, settings, devices=devices, connections=connections)
        connection = await _go_live(session, connections)
        assistant = await connection.deliver_remote_audio()
        await connection.receive(ASSISTANT_TURN[-1])

        await asyncio.gather(session.stop(), session.stop())
        await session.stop()
        await session.wait_for_background()

        assert session.termination.end_reason == "user_stop"
        assert connection.closed is True
        assert connection.channel.closed is True
        assert connection.local_tracks_stopped is True
        assert devices.microphones[0].stopped is True
        assert devices.cameras[0].stopped is True
        assert assistant.stopped is True
        assert len(server.find("POST", "/api/upload-media")) == 1
        assert len(server.find("POST", "/api/session/s1/transcript")) == 1
        assert session.timer.running is False
        assert session.can_start is True
        assert session.can_stop is False

    async def test_empty_transcript_is_not_saved(self, http_client, server, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        await _go_live(session, connections)

        await session.stop()
        await session.wait_for_background()

        assert server.find("POST", "/api/session/s1/transcript") == []

    async def test_non_json_upload_reply_does_not_block_teardown(self, http_client, server, settings) -> None:
        server.upload_text = "<html>stored</html>"
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)
        await connection.deliver_remote_audio()
        await connection.receive(ASSISTANT_TURN[-1])

        await session.stop()
        await asyncio.wait_for(session.wait_until_ended(), timeout=1.0)
        await session.wait_for_background()

        assert session.status == SessionStatus.ENDED
        assert session.timer.running is False
        assert session.recorder.upload_attempts == 1
        assert session.recorder.uploaded_path is None
        assert len(server.find("POST", "/api/session/s1/transcript")) == 1
        assert session.transcript.turns[-1].text == "Interview session ended"

    async def test_non_json_transcript_reply_skips_analysis(self, http_client, server, settings, caplog) -> None:
        server.transcript_text = "saved"
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)
        await connection.receive(ASSISTANT_TURN[-1])

        with caplog.at_level(logging.ERROR, logger="voice_screener.core.session"):
            await session.stop()
            await session.wait_for_background()

        assert server.find("POST", "/api/session/s1/analyze") == []
        assert any("transcript upload failed" in record.getMessage() for record in caplog.records)

    async def test_unexpected_save_error_is_logged(self, http_client, settings, caplog) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)
        await connection.receive(ASSISTANT_TURN[-1])

        async def broken_save(session_id: str, transcript: str) -> str:
            raise RuntimeError("connection pool closed")

        session.backend.save_transcript = broken_save
        with caplog.at_level(logging.ERROR, logger="voice_screener.core.session"):
            await session.stop()
            await session.wait_for_background()

        assert any("connection pool closed" in record.getMessage() for record in caplog.records)

    async def test_unexpected_channel_close_ends_session(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        connection = await _go_live(session, connections)

        await connection.close_channel()

        assert session.termination.end_reason == "channel_closed"
        assert session.status == SessionStatus.ENDED

    async def test_restart_after_end_uses_fresh_state(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        devices = FakeDevices()
        session = _make_session(http_client, settings, devices=devices, connections=connections)
        first = await _go_live(session, connections)
        await first.receive(ASSISTANT_TURN[-1])
        await session.stop()

        assert await session.start() is True
        second = connections.last
        assert second is not first
        assert len(devices.cameras) == 2
        assert session.transcript.turns == []

        # Late events from the first connection are ignored
        await first.receive(ASSISTANT_TURN[-1])
        assert session.transcript.turns == []
        await session.close()


class TestStartFailure:
    async def test_negotiation_failure_releases_everything(self, http_client, server, settings) -> None:
        server.relay_status = 500
        server.token_status = 500
        connections = ConnectionFactory()
        devices = FakeDevices()
        session = _make_session(http_client, settings, devices=devices, connections=connections)
        await session.initialize()

        assert await session.start() is False

        connection = connections.last
        assert connection.closed is True
        assert connection.channel.closed is True
        assert devices.microphones[0].stopped is True
        assert session.status == SessionStatus.READY
        assert session.can_start is True
        assert session.transcript.turns[-1].text.startswith("Error: Failed to start interview:")

    async def test_stale_callbacks_after_failed_start_are_ignored(self, http_client, server, settings) -> None:
        server.relay_status = 500
        server.token_status = 500
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, connections=connections)
        await session.initialize()
        await session.start()

        await connections.last.open_channel()

        assert session.status == SessionStatus.READY
        assert connections.last.channel.sent == []

    async def test_microphone_denied(self, http_client, settings) -> None:
        connections = ConnectionFactory()
        session = _make_session(http_client, settings, devices=FakeDevices(microphone_fails=True), connections=connections)
        await session.initialize()

        assert await session.start() is False
        assert "microphone unavailable" in session.transcript.turns[-1].text
        assert connections.last.closed is True

    async def test_bad_answer_sdp(self, http_client, settings) -> None:
        connections = ConnectionFactory(answer_fails=True)
        session = _make_session(http_client, settings, connections=connections)
        await session.initialize()

        assert await session.start() is False
        assert "invalid answer" in session.transcript.turns[-1].text

    async def test_start_before_initialize_is_refused(self, http_client, settings) -> None:
        session = _make_session(http_client, settings)
        assert await session.start() is False
