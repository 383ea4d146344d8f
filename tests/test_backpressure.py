"""Tests for resume_queue.backpressure module."""

import json
import threading
import pytest
from datetime import datetime, timedelta

from resume_queue.backoff import CancelToken
from resume_queue.backpressure import (
    BackpressureController,
    BackpressureSignal,
    SignalKind,
    detect,
)


@pytest.fixture
def marker_file(temp_dir):
    return temp_dir / "resume-marker.json"


@pytest.fixture
def controller(marker_file):
    return BackpressureController(marker_file, min_wait_seconds=60)


def at(hour, minute=0):
    return datetime(2025, 3, 10, hour, minute, 0)


class TestDetect:
    """Tests for signal detection in free text."""

    def test_no_signal(self):
        """Test that ordinary output carries no signal."""
        assert detect("All tests passed") is None
        assert detect("") is None

    def test_clock_time(self):
        """Test a clock-time signal."""
        signal = detect("Usage limit reached. You are blocked until 3pm.")
        assert signal.kind == SignalKind.CLOCK_TIME
        assert signal.hour == 15
        assert signal.minute == 0
        assert not signal.tomorrow

    def test_clock_time_with_minutes_and_tomorrow(self):
        """Test hh:mm with a tomorrow qualifier."""
        signal = detect("Please try again at 9:30 AM tomorrow")
        assert signal.kind == SignalKind.CLOCK_TIME
        assert (signal.hour, signal.minute) == (9, 30)
        assert signal.tomorrow

    @pytest.mark.parametrize("text,hour", [
        ("resets at 12am", 0),
        ("resets at 12pm", 12),
        ("available again at 18:45", 18),
    ])
    def test_clock_time_hours(self, text, hour):
        """Test 12-hour edge cases and 24-hour times."""
        assert detect(text).hour == hour

    def test_bare_number_is_not_a_time(self):
        """Test that a number without a time shape is not a clock time."""
        signal = detect("will retry at 3 attempts")
        assert signal is None

    def test_relative(self):
        """Test a relative duration signal."""
        signal = detect("Rate limited, retry in 2 hours")
        assert signal.kind == SignalKind.RELATIVE
        assert signal.duration_seconds == 7200

    def test_relative_minutes(self):
        """Test relative minutes."""
        assert detect("please wait for 15 minutes").duration_seconds == 900

    def test_generic(self):
        """Test a generic limit phrase."""
        signal = detect("Error: 429 Too Many Requests")
        assert signal.kind == SignalKind.GENERIC
        assert signal.pattern == "too many requests"

    def test_specific_generic_phrase_wins(self):
        """Test that the more specific phrase is recorded."""
        assert detect("You hit your daily usage limit").pattern == "daily usage limit"

    def test_timed_signal_beats_generic(self):
        """Test that a time-anchored phrase wins over a generic one."""
        signal = detect("Rate limit exceeded. Try again in 30 minutes.")
        assert signal.kind == SignalKind.RELATIVE


class TestComputeWait:
    """Tests for pause length computation."""

    def test_clock_time_later_today(self, controller):
        """Test that a future time today is used as-is."""
        signal = detect("blocked until 3pm")
        assert controller.compute_wait(signal, now=at(13)) == 7200

    def test_clock_time_already_passed_rolls_to_tomorrow(self, controller):
        """Test that a past time today means tomorrow."""
        signal = detect("blocked until 3pm")
        assert controller.compute_wait(signal, now=at(17)) == 79200

    def test_explicit_tomorrow(self, controller):
        """Test that 'tomorrow' forces the next day even if the time is ahead."""
        signal = detect("try again at 3pm tomorrow")
        assert controller.compute_wait(signal, now=at(13)) == 7200 + 86400

    def test_relative(self, controller):
        """Test that relative durations are used directly."""
        assert controller.compute_wait(detect("retry in 2 hours"), now=at(13)) == 7200

    def test_generic_first_occurrence(self, controller):
        """Test that the first generic signal waits the cooldown."""
        signal = controller.observe("rate limit", task_id="t1")
        assert controller.compute_wait(signal) == 300

    def test_generic_backoff_grows(self, controller):
        """Test that a repeat of the same pattern grows by the factor."""
        controller.observe("rate limit", task_id="t1")
        signal = controller.observe("rate limit", task_id="t1")
        assert signal.occurrence_count == 2
        assert controller.compute_wait(signal) == 450

    def test_generic_backoff_capped(self, controller):
        """Test that generic waits stop at max_wait_seconds."""
        signal = BackpressureSignal(kind=SignalKind.GENERIC, pattern="rate limit", occurrence_count=20)
        assert controller.compute_wait(signal) == 1800

    def test_counts_are_per_task(self, controller):
        """Test that occurrences are tracked per (task, pattern)."""
        controller.observe("rate limit", task_id="t1")
        assert controller.observe("rate limit", task_id="t2").occurrence_count == 1
        controller.reset_occurrences("t1")
        assert controller.occurrences("t1", "rate limit") == 0
        assert controller.occurrences("t2", "rate limit") == 1

    def test_floor(self, controller):
        """Test that short waits are raised to the safety floor."""
        assert controller.compute_wait(detect("retry in 0.5 minutes")) == 60
        signal = detect("available again at 13:00")
        assert controller.compute_wait(signal, now=datetime(2025, 3, 10, 12, 59, 30)) == 60


class TestPauseResume:
    """Tests for the persisted pause state."""

    def test_pause_writes_marker(self, controller, marker_file):
        """Test that pausing persists the resume marker."""
        signal = controller.observe("retry in 2 hours", task_id="t1")
        controller.pause(7200, signal=signal, now=at(13))

        data = json.loads(marker_file.read_text())
        assert data["resume_time"] == at(15).isoformat()
        assert data["triggering_task_id"] == "t1"
        assert data["pattern"] == "retry in 2 hours"
        assert controller.is_paused()

    def test_manual_pause_is_indefinite(self, controller):
        """Test that a pause without a duration never auto-resumes."""
        controller.pause(reason="maintenance")
        marker = controller.load_marker()
        assert marker.resume_time is None
        assert marker.reason == "maintenance"
        assert not controller.try_auto_resume(now=datetime.now() + timedelta(days=30))
        assert controller.resume()
        assert not controller.is_paused()

    def test_resume_when_not_paused(self, controller):
        """Test that resume() reports nothing to lift."""
        assert controller.resume() is False

    def test_auto_resume_after_restart(self, controller, marker_file):
        """Test that a new controller lifts an expired pause and keeps the count."""
        controller.observe("rate limit", task_id="t1")
        signal = controller.observe("rate limit", task_id="t1")
        controller.pause(450, signal=signal, now=at(13))

        restarted = BackpressureController(marker_file)
        assert not restarted.try_auto_resume(now=at(13, 5))
        assert restarted.remaining(now=at(13, 5)) == 150
        assert restarted.try_auto_resume(now=at(13, 8))
        assert not marker_file.exists()
        assert restarted.occurrences("t1", "rate limit") == 2

    def test_unreadable_marker_means_paused(self, controller, marker_file):
        """Test that a corrupt marker keeps the queue paused indefinitely."""
        marker_file.write_text("{ not json")
        marker = controller.load_marker()
        assert marker.resume_time is None
        assert not controller.try_auto_resume()
        assert controller.is_paused()


class TestCountdown:
    """Tests for countdown()."""

    def test_countdown_until_resume_time(self, controller):
        """Test that countdown returns once the pause expires."""
        controller.pause(0.2)
        ticks = []
        assert controller.countdown(on_tick=ticks.append, interval=0.05)
        assert ticks
        assert not controller.is_paused()

    def test_countdown_ends_on_manual_resume(self, controller):
        """Test that removing the marker ends an indefinite countdown."""
        controller.pause()
        threading.Timer(0.1, controller.resume).start()
        ticks = []
        assert controller.countdown(on_tick=ticks.append, interval=0.02)
        assert ticks[0] is None

    def test_countdown_cancelled(self, marker_file):
        """Test that cancelling the token stops the countdown."""
        token = CancelToken()
        controller = BackpressureController(marker_file, cancel=token)
        controller.pause()
        threading.Timer(0.05, token.cancel).start()
        assert controller.countdown(interval=0.02) is False
        assert controller.is_paused()
