"""
Termination Coordinator
Decides when an interview session actually closes.

Three independent end signals are reconciled here:
- the model calls end_interview (may still be speaking its goodbye)
- the assistant's audio playback stops
- the user presses stop

An end_interview call only marks the session as pending; teardown happens when the
goodbye audio finishes, or when the fail-safe timer fires because it never does.
A user stop skips the wait. already_ended is write-once and fences every path so
teardown runs exactly once.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from voice_screener.core.constants import END_FAILSAFE_SECONDS, END_INTERVIEW_TOOL_NAME
from voice_screener.core.events import (
    FunctionCallRequested,
    OutputAudioStarted,
    OutputAudioStopped,
    ServerEvent,
)

logger = logging.getLogger(__name__)

TeardownCallback = Callable[[str], Awaitable[None]]


class TerminationPhase(str, Enum):
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class TerminationCoordinator:
    """
    One-way ACTIVE -> ENDING -> ENDED state machine around a single teardown callback.

    Args:
        teardown: Coroutine run exactly once with the reason that ended the session
        failsafe_seconds: How long to wait for playback to stop after end_interview
        end_tool_name: Function name that signals the end of the interview
    """

    def __init__(
        self,
        teardown: TeardownCallback,
        failsafe_seconds: float = END_FAILSAFE_SECONDS,
        end_tool_name: str = END_INTERVIEW_TOOL_NAME
    ):
        self._teardown = teardown
        self.failsafe_seconds = failsafe_seconds
        self.end_tool_name = end_tool_name

        self.already_ended = False
        self.pending_end = False
        self.output_audio_active = False
        self.end_reason: Optional[str] = None

        self._seen_calls: Set[str] = set()
        self._failsafe_task: Optional[asyncio.Task] = None

    @property
    def phase(self) -> TerminationPhase:
        if self.already_ended:
            return TerminationPhase.ENDED
        if self.pending_end:
            return TerminationPhase.ENDING
        return TerminationPhase.ACTIVE

    @property
    def failsafe_armed(self) -> bool:
        return self._failsafe_task is not None and not self._failsafe_task.done()

    # ---------------------------------------------------------------- signals

    def signal_end(self, source: str, identity: Optional[str] = None) -> bool:
        """
        Record an end-of-interview function call and arm the fail-safe.

        Args:
            source: Wire event type that carried the call (for logs)
            identity: Call identifier used to drop repeats of the same call

        Returns:
            True if this signal was new and the session is now pending end
        """
        if self.already_ended:
            return False

        key = identity or self.end_tool_name
        if key in self._seen_calls:
            logger.debug(f"Duplicate {self.end_tool_name} signal from {source} ignored")
            return False
        self._seen_calls.add(key)

        logger.info(f"{self.end_tool_name} requested (source={source}); waiting for goodbye audio")
        self.pending_end = True
        self._cancel_failsafe()
        self._failsafe_task = asyncio.create_task(self._run_failsafe(source))
        return True

    def on_output_audio_started(self):
        self.output_audio_active = True

    async def on_output_audio_stopped(self):
        self.output_audio_active = False
        if self.pending_end and not self.already_ended:
            await self.end("playback_stopped")

    async def request_stop(self):
        """User-initiated stop; idempotent."""
        await self.end("user_stop")

    async def handle(self, event: ServerEvent):
        if isinstance(event, FunctionCallRequested):
            if event.name == self.end_tool_name:
                self.signal_end(event.source_type or "function_call", event.identity)
        elif isinstance(event, OutputAudioStarted):
            self.on_output_audio_started()
        elif isinstance(event, OutputAudioStopped):
            await self.on_output_audio_stopped()

    # ---------------------------------------------------------------- teardown

    async def end(self, reason: str) -> bool:
        """
        Transition to ENDED and run teardown, unless that already happened.

        Returns:
            True if this call performed the teardown
        """
        self._cancel_failsafe()
        if self.already_ended:
            return False

        self.already_ended = True
        self.end_reason = reason
        logger.info(f"Ending interview session (reason={reason})")
        await self._teardown(reason)
        return True

    async def _run_failsafe(self, source: str):
        await asyncio.sleep(self.failsafe_seconds)
        if self.pending_end and not self.already_ended:
            logger.warning(
                f"Force stopping interview {self.failsafe_seconds:.1f}s after "
                f"{self.end_tool_name} ({source}); playback never stopped"
            )
            await self.end("failsafe_timeout")

    def _cancel_failsafe(self):
        task = self._failsafe_task
        if task is None:
            return
        self._failsafe_task = None
        # The fail-safe itself ends the session; it must not cancel its own teardown
        if task is not asyncio.current_task() and not task.done():
            task.cancel()

    def cancel(self):
        """Drop any armed timer without ending (used when a start attempt is abandoned)."""
        self._cancel_failsafe()
