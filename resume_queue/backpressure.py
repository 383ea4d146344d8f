"""
Usage/rate-limit detection and dispatch suspension.

Scans executor output for limit signals, computes how long to pause,
and keeps a resume marker on disk so a pause outlives the process that
started it.
"""

import logging
import math
import os
import re
import socket
from datetime import datetime, time as dt_time, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from resume_queue.atomic import AtomicFileWriter
from resume_queue.backoff import BackoffPolicy, CancelToken
from resume_queue.models import ResumeMarker


RESUME_MARKER_FILE_NAME = "resume-marker.json"

# Phrases that signal a limit without saying when it lifts.
# More specific phrases first so the recorded pattern is the precise one.
GENERIC_LIMIT_PATTERNS = (
    "daily usage limit",
    "hourly rate limit",
    "api quota exceeded",
    "service temporarily overloaded",
    "request limit exceeded",
    "usage limit",
    "rate limit",
    "too many requests",
    "please try again later",
    "quota exceeded",
    "temporarily unavailable",
)

_GENERIC_RES = tuple(
    (phrase, re.compile(r"\b" + r"\s+".join(map(re.escape, phrase.split())) + r"\b", re.IGNORECASE))
    for phrase in GENERIC_LIMIT_PATTERNS
)

_CLOCK_ANCHORS = (
    r"blocked\s+until|try\s+again\s+at|available\s+again\s+at|wait\s+until"
    r"|retry\s+at|available\s+at|resets?(?:\s+at)?"
)
CLOCK_TIME_RE = re.compile(
    r"\b(?P<anchor>" + _CLOCK_ANCHORS + r")\s+"
    r"(?P<tomorrow_before>tomorrow\s+(?:at\s+)?)?"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*"
    r"(?P<meridiem>[ap]\.?m\.?)?"
    r"(?P<tomorrow_after>\s+tomorrow)?",
    re.IGNORECASE,
)
RELATIVE_RE = re.compile(
    r"\b(?P<anchor>retry|try\s+again|wait|available(?:\s+again)?|resets?|blocked)\s+(?:in|for)\s+"
    r"(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m)\b",
    re.IGNORECASE,
)


logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    """What timing information a limit signal carries."""
    GENERIC = "generic"
    CLOCK_TIME = "clock_time"
    RELATIVE = "relative"


class BackpressureSignal(BaseModel):
    """A limit condition found in executor output."""

    kind: SignalKind
    pattern: str
    matched_text: str = ""
    hour: Optional[int] = None
    minute: int = 0
    tomorrow: bool = False
    duration_seconds: Optional[int] = None
    task_id: Optional[str] = None
    occurrence_count: int = 1


def _to_24_hour(hour: int, meridiem: Optional[str]) -> Optional[int]:
    if meridiem is None:
        return hour if 0 <= hour <= 23 else None
    if not 1 <= hour <= 12:
        return None
    is_pm = meridiem.lower().startswith("p")
    if hour == 12:
        return 12 if is_pm else 0
    return hour + 12 if is_pm else hour


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def detect(output: str) -> Optional[BackpressureSignal]:
    """
    Find a limit signal in free text.

    Time-anchored phrases (a clock time or "in N hours") win over generic
    limit phrases.
    """
    if not output:
        return None

    for match in CLOCK_TIME_RE.finditer(output):
        minute_text = match.group("minute")
        meridiem = match.group("meridiem")
        # A bare number is not a time ("retry at 3 attempts")
        if minute_text is None and meridiem is None:
            continue
        hour = _to_24_hour(int(match.group("hour")), meridiem)
        minute = int(minute_text) if minute_text else 0
        if hour is None or minute > 59:
            continue
        tomorrow = bool(match.group("tomorrow_before") or match.group("tomorrow_after"))
        return BackpressureSignal(
            kind=SignalKind.CLOCK_TIME,
            pattern=_normalize(match.group(0)),
            matched_text=match.group(0),
            hour=hour,
            minute=minute,
            tomorrow=tomorrow,
        )

    match = RELATIVE_RE.search(output)
    if match:
        amount = float(match.group("amount"))
        unit = match.group("unit").lower()
        seconds = amount * (3600 if unit.startswith("h") else 60)
        return BackpressureSignal(
            kind=SignalKind.RELATIVE,
            pattern=_normalize(match.group(0)),
            matched_text=match.group(0),
            duration_seconds=int(math.ceil(seconds)),
        )

    for phrase, pattern in _GENERIC_RES:
        match = pattern.search(output)
        if match:
            return BackpressureSignal(
                kind=SignalKind.GENERIC,
                pattern=phrase,
                matched_text=match.group(0),
            )

    return None


class BackpressureController:
    """
    Pauses the scheduler when the executor reports a usage or rate limit.

    The pause lives in a resume marker file; any process can see it,
    and `try_auto_resume` clears it once the resume time has passed.
    """

    def __init__(
        self,
        marker_file: Path,
        cooldown_seconds: int = 300,
        backoff_factor: float = 1.5,
        max_wait_seconds: int = 1800,
        min_wait_seconds: int = 60,
        cancel: Optional[CancelToken] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize controller.

        Args:
            marker_file: Path of the persisted resume marker
            cooldown_seconds: Wait for a generic signal seen once
            backoff_factor: Growth per repeated generic signal
            max_wait_seconds: Cap for generic-signal waits
            min_wait_seconds: Floor applied to every computed wait
            cancel: Token that interrupts countdown waits
            clock: Source of "now" (injectable for tests)
        """
        self.marker_file = Path(marker_file)
        self.generic_backoff = BackoffPolicy(
            base=cooldown_seconds,
            multiplier=backoff_factor,
            cap=max_wait_seconds,
            jitter=0.0,
        )
        self.min_wait_seconds = min_wait_seconds
        self.cancel = cancel or CancelToken()
        self.clock = clock
        self._occurrences: Dict[Tuple[Optional[str], str], int] = {}

    # Detection

    def detect(self, output: str) -> Optional[BackpressureSignal]:
        return detect(output)

    def observe(self, output: str, task_id: Optional[str] = None) -> Optional[BackpressureSignal]:
        """Detect a signal and count it against (task_id, pattern)."""
        signal = detect(output)
        if signal is None:
            return None
        key = (task_id, signal.pattern)
        self._occurrences[key] = self._occurrences.get(key, 0) + 1
        signal.task_id = task_id
        signal.occurrence_count = self._occurrences[key]
        logger.info(
            f"Backpressure signal ({signal.kind.value}) '{signal.matched_text}' "
            f"for task {task_id or '-'} (occurrence {signal.occurrence_count})"
        )
        return signal

    def occurrences(self, task_id: Optional[str], pattern: str) -> int:
        return self._occurrences.get((task_id, pattern), 0)

    def reset_occurrences(self, task_id: Optional[str]) -> None:
        """Forget counts for a task (after it completes)."""
        for key in [k for k in self._occurrences if k[0] == task_id]:
            del self._occurrences[key]

    # Timing

    def compute_wait(self, signal: BackpressureSignal, now: Optional[datetime] = None) -> int:
        """
        Seconds to stay paused for a signal.

        Relative durations are used as-is. Clock times resolve to today if
        still ahead of `now`, otherwise tomorrow ("tomorrow" forces the
        next day). Generic signals use the cooldown grown by the backoff
        factor per prior occurrence, capped. Every result is raised to the
        safety floor.
        """
        now = now or self.clock()

        if signal.kind == SignalKind.RELATIVE:
            wait = float(signal.duration_seconds or 0)
        elif signal.kind == SignalKind.CLOCK_TIME:
            target = datetime.combine(now.date(), dt_time(signal.hour, signal.minute), tzinfo=now.tzinfo)
            if signal.tomorrow or target <= now:
                target += timedelta(days=1)
            wait = (target - now).total_seconds()
        else:
            wait = self.generic_backoff.raw_delay(max(1, signal.occurrence_count) - 1)

        return int(math.ceil(max(wait, self.min_wait_seconds)))

    # Pause state

    def load_marker(self) -> Optional[ResumeMarker]:
        data = AtomicFileWriter.read_json(self.marker_file)
        if data is None:
            if self.marker_file.exists():
                logger.warning(f"Unreadable resume marker {self.marker_file}, treating queue as paused")
                return ResumeMarker(reason="unreadable resume marker")
            return None
        try:
            return ResumeMarker.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Invalid resume marker {self.marker_file}: {e}")
            return ResumeMarker(reason="invalid resume marker")

    def is_paused(self) -> bool:
        return self.marker_file.exists()

    def pause(
        self,
        seconds: Optional[float] = None,
        reason: str = "",
        signal: Optional[BackpressureSignal] = None,
        now: Optional[datetime] = None
    ) -> ResumeMarker:
        """
        Suspend dispatch and persist the resume marker.

        Args:
            seconds: Pause length; None pauses until resume() is called
            reason: Free-text reason shown in status output
            signal: Signal that triggered the pause, if any
        """
        now = now or self.clock()
        marker = ResumeMarker(
            pause_time=now.isoformat(),
            resume_time=(now + timedelta(seconds=seconds)).isoformat() if seconds is not None else None,
            triggering_task_id=signal.task_id if signal else None,
            pattern=signal.pattern if signal else None,
            occurrence_count=signal.occurrence_count if signal else 0,
            reason=reason or (f"backpressure: {signal.matched_text}" if signal else "manual pause"),
            hostname=socket.gethostname(),
            pid=os.getpid(),
        )
        AtomicFileWriter.write_json(self.marker_file, marker.model_dump(mode="json"))

        if marker.resume_time:
            logger.warning(f"Queue paused for {seconds:.0f}s until {marker.resume_time} ({marker.reason})")
        else:
            logger.warning(f"Queue paused until manually resumed ({marker.reason})")
        return marker

    def try_auto_resume(self, now: Optional[datetime] = None) -> bool:
        """
        Clear the marker if its resume time has passed.

        Returns:
            True if a pause was lifted by this call
        """
        marker = self.load_marker()
        if marker is None:
            return False

        remaining = marker.remaining_seconds(now or self.clock())
        if remaining is None or remaining > 0:
            return False

        if marker.pattern:
            key = (marker.triggering_task_id, marker.pattern)
            self._occurrences[key] = max(self._occurrences.get(key, 0), marker.occurrence_count)
        self._remove_marker()
        logger.info(f"Resume time {marker.resume_time} reached, queue resumed")
        return True

    def resume(self, reason: str = "manual resume") -> bool:
        """Lift any pause immediately. Returns False if the queue was not paused."""
        if not self.marker_file.exists():
            return False
        self._remove_marker()
        logger.info(f"Queue resumed ({reason})")
        return True

    def _remove_marker(self) -> None:
        try:
            self.marker_file.unlink()
        except FileNotFoundError:
            pass

    def remaining(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds left in the current pause; None if not paused or indefinite."""
        marker = self.load_marker()
        if marker is None:
            return None
        return marker.remaining_seconds(now or self.clock())

    def countdown(
        self,
        on_tick: Optional[Callable[[Optional[int]], None]] = None,
        interval: float = 1.0
    ) -> bool:
        """
        Block until the pause ends, reporting the remaining seconds.

        Returns:
            True when the pause ended (resume time reached or the marker
            was removed); False if cancelled
        """
        while True:
            if self.try_auto_resume() or not self.is_paused():
                return True

            remaining = self.remaining()
            if on_tick is not None:
                on_tick(int(math.ceil(remaining)) if remaining is not None else None)

            step = interval if remaining is None else max(0.0, min(interval, remaining))
            if self.cancel.wait(step):
                return False
