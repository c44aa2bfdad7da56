"""
Command Line Interface
Runs a candidate interview from a terminal, or serves the interview API.

    voice-screener interview SESSION_ID [--server-url URL] [--events-out FILE]
    voice-screener interview POSITION_ID --candidate-name NAME --candidate-email EMAIL
    voice-screener serve [--host HOST] [--port PORT]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from aiortc.contrib.media import MediaRelay

from voice_screener import __version__
from voice_screener.config import Settings
from voice_screener.core.errors import VoiceScreenerError
from voice_screener.core.session import InterviewSession
from voice_screener.services.backend_client import InterviewBackendClient, create_http_client
from voice_screener.services.webrtc_transport import (
    AiortcMediaDevices,
    AiortcRealtimeConnection,
    create_combined_capture,
)
from voice_screener.utils.logging_config import get_logger, setup_logging

logger = logging.getLogger(__name__)


class MinuteReporter:
    """on_tick callback that logs the elapsed clock once per minute."""

    def __init__(self):
        self.last_minute = -1

    def __call__(self, elapsed: float, display: str):
        minute = int(elapsed // 60)
        if minute != self.last_minute:
            self.last_minute = minute
            logger.info(f"Interview clock {display}")


async def run_interview(
    session_id: str,
    settings: Settings,
    events_out: Optional[Path] = None,
    candidate_name: Optional[str] = None,
    candidate_email: Optional[str] = None
) -> int:
    """
    Run one interview until the model ends it or the user presses Enter.

    Returns:
        Process exit code
    """
    relay = MediaRelay()
    loop = asyncio.get_running_loop()

    async with create_http_client(settings.server_url, settings.http_timeout_seconds) as client:
        session = InterviewSession(
            session_id,
            InterviewBackendClient(client),
            AiortcMediaDevices(settings, relay),
            lambda: AiortcRealtimeConnection(settings, relay),
            create_combined_capture,
            settings=settings,
            on_tick=MinuteReporter()
        )

        try:
            descriptor = await session.initialize(candidate_name, candidate_email)
        except VoiceScreenerError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Interview: {descriptor.job_title or 'N/A'} / {descriptor.candidate_name or 'candidate'}")
        if session.session_id != session_id:
            print(f"Session: {session.session_id}")
        print(f"Camera: {session.camera_status}")

        if not await session.start():
            for turn in session.transcript.turns:
                print(turn.display_text, file=sys.stderr)
            await session.close()
            return 1

        print("Connecting... press Enter to end the interview.")
        enter = loop.run_in_executor(None, sys.stdin.readline)
        ended = asyncio.ensure_future(session.wait_until_ended())
        try:
            await asyncio.wait({enter, ended}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not ended.done():
                await session.stop()
            await session.wait_until_ended()
            await session.wait_for_background()

            if events_out is not None:
                events_out.write_text(json.dumps(session.export_event_log(), indent=2), encoding="utf-8")
                logger.info(f"Wrote {len(session.export_event_log())} protocol events to {events_out}")

            for turn in session.transcript.turns:
                print(f"{turn.role.value.upper()}: {turn.display_text}")
            print(f"Elapsed: {session.timer.display}")
            await session.close()

    return 0


def serve(host: str, port: int, reload: bool = False):
    import uvicorn
    uvicorn.run(
        "voice_screener.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        timeout_graceful_shutdown=5
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voice-screener",
        description="Voice screening interviews over a realtime speech model"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    interview = subparsers.add_parser("interview", help="Run a candidate interview session")
    interview.add_argument("session_id", help="Interview session identifier")
    interview.add_argument("--server-url", help="Interview server base URL (default: SERVER_URL or localhost:8000)")
    interview.add_argument("--events-out", type=Path, help="Write the control-channel event log as JSON")
    interview.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL)")
    interview.add_argument("--protocol-debug", action="store_true", help="Keep aiortc/aioice debug logs")
    interview.add_argument("--log-file", help="Also write JSON logs to this file")
    interview.add_argument("--candidate-name", help="Candidate name (required for position links)")
    interview.add_argument("--candidate-email", help="Candidate email (required for position links)")

    server = subparsers.add_parser("serve", help="Run the interview API server")
    server.add_argument("--host", default="0.0.0.0")
    server.add_argument("--port", type=int, default=8000)
    server.add_argument("--reload", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        serve(args.host, args.port, args.reload)
        return 0

    settings = Settings()
    if args.server_url:
        settings = settings.model_copy(update={"server_url": args.server_url})

    setup_logging(
        level=args.log_level or settings.log_level,
        json_format=settings.log_format.lower() == "json",
        log_file=args.log_file,
        protocol_debug=args.protocol_debug
    )
    # Tag this module's records (clock, event export) with the interview id
    get_logger(__name__, session_id=args.session_id)

    try:
        return asyncio.run(run_interview(
            args.session_id, settings, args.events_out,
            candidate_name=args.candidate_name, candidate_email=args.candidate_email
        ))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
