"""
Timing utilities for measuring operations and the live interview clock.
"""
import asyncio
import time
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional
from datetime import datetime
import json

from voice_screener.core.constants import (
    INTERVIEW_TARGET_SECONDS,
    SOFT_ALERT_SECONDS,
    SOFT_WARNING_SECONDS,
    TIMER_TICK_SECONDS,
)

# Configure timing logger
timing_logger = logging.getLogger("timing")
timing_logger.setLevel(logging.INFO)

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.INFO)
formatter = logging.Formatter(
    '%(asctime)s - TIMING - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
console_handler.setFormatter(formatter)
timing_logger.addHandler(console_handler)

# Prevent propagation to root logger
timing_logger.propagate = False

logger = logging.getLogger(__name__)


class TimingData:
    """Stores timing measurements for an operation."""

    def __init__(self, operation_name: str, start_time: float):
        self.operation_name = operation_name
        self.start_time = start_time
        self.end_time: Optional[float] = None
        self.duration: Optional[float] = None
        self.metadata: Dict[str, Any] = {}

    def complete(self, metadata: Optional[Dict[str, Any]] = None):
        """Mark operation as complete and calculate duration."""
        self.end_time = time.time()
        self.duration = self.end_time - self.start_time
        if metadata:
            self.metadata.update(metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation_name,
            "start_time": datetime.fromtimestamp(self.start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.end_time).isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration, 3) if self.duration is not None else None,
            "metadata": self.metadata
        }

    def log(self):
        if self.duration is not None:
            metadata_str = f" | {json.dumps(self.metadata, default=str)}" if self.metadata else ""
            timing_logger.info(
                f"{self.operation_name}: {self.duration:.3f}s{metadata_str}"
            )


@contextmanager
def time_operation(operation_name: str, log_result: bool = True, metadata: Optional[Dict[str, Any]] = None):
    """
    Context manager for timing operations.

    Usage:
        with time_operation("SDP negotiation") as timing:
            answer = await negotiator.negotiate(offer)
            timing.metadata["route"] = "relay"
    """
    timing = TimingData(operation_name, time.time())
    try:
        yield timing
    finally:
        timing.complete(metadata)
        if log_result:
            timing.log()


def format_elapsed(seconds: float) -> str:
    """Render seconds as MM:SS (minutes keep growing past 59)."""
    total = max(int(seconds), 0)
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


class ElapsedTimer:
    """
    Live interview stopwatch.

    Ticks every TIMER_TICK_SECONDS while running and hands the MM:SS display to
    on_tick. The interview has a soft 15 minute target: one warning is logged once
    5 minutes have passed and one alert once the target is reached. Nothing is
    enforced; the session keeps running.

    Args:
        on_tick: Optional callback receiving (elapsed_seconds, display)
        clock: Monotonic clock
        tick_seconds: Tick interval
    """

    def __init__(
        self,
        on_tick: Optional[Callable[[float, str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_seconds: float = TIMER_TICK_SECONDS
    ):
        self.on_tick = on_tick
        self._clock = clock
        self.tick_seconds = tick_seconds
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self.warned = False
        self.alerted = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(end - self._started_at, 0.0)

    @property
    def display(self) -> str:
        return format_elapsed(self.elapsed)

    @property
    def over_target(self) -> bool:
        return self.elapsed >= INTERVIEW_TARGET_SECONDS

    def start(self):
        """Start from zero. Must be called inside a running event loop."""
        self.stop()
        self._started_at = self._clock()
        self._stopped_at = None
        self.warned = False
        self.alerted = False
        self._task = asyncio.create_task(self._run())

    def stop(self):
        """Freeze the clock; safe to call repeatedly."""
        if self._started_at is not None and self._stopped_at is None:
            self._stopped_at = self._clock()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    def check_thresholds(self):
        """Emit the soft warning and alert once each."""
        elapsed = self.elapsed
        if not self.warned and elapsed >= SOFT_WARNING_SECONDS:
            self.warned = True
            logger.warning(f"Interview running {self.display} (soft warning)")
        if not self.alerted and elapsed >= SOFT_ALERT_SECONDS:
            self.alerted = True
            logger.warning(
                f"Interview reached {self.display}, past the "
                f"{format_elapsed(INTERVIEW_TARGET_SECONDS)} target"
            )

    def tick(self):
        self.check_thresholds()
        if self.on_tick:
            self.on_tick(self.elapsed, self.display)

    async def _run(self):
        while True:
            self.tick()
            await asyncio.sleep(self.tick_seconds)
