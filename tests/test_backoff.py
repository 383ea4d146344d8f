"""Tests for resume_queue.backoff module."""

import random
import threading
import time
import pytest
from pydantic import ValidationError

from resume_queue.backoff import BackoffPolicy, CancelToken


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_raw_delay_grows_and_caps(self):
        """Test exponential growth up to the cap."""
        policy = BackoffPolicy(base=0.1, multiplier=2.0, cap=0.5, jitter=0)
        assert policy.raw_delay(0) == pytest.approx(0.1)
        assert policy.raw_delay(1) == pytest.approx(0.2)
        assert policy.raw_delay(2) == pytest.approx(0.4)
        assert policy.raw_delay(3) == pytest.approx(0.5)

    def test_jitter_stays_in_bounds(self):
        """Test that jittered delays stay within the spread and the cap."""
        policy = BackoffPolicy(base=1.0, multiplier=1.0, cap=10.0, jitter=0.25)
        rng = random.Random(42)
        delays = [policy.delay(0, rng) for _ in range(200)]
        assert all(0.75 <= d <= 1.25 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_cap(self):
        """Test that jitter is capped too."""
        policy = BackoffPolicy(base=1.0, multiplier=1.0, cap=1.0, jitter=0.5)
        rng = random.Random(7)
        assert all(policy.delay(5, rng) <= 1.0 for _ in range(100))

    def test_invalid_multiplier(self):
        """Test that a shrinking multiplier is rejected."""
        with pytest.raises(ValidationError):
            BackoffPolicy(multiplier=0.5)


class TestCancelToken:
    """Tests for CancelToken."""

    def test_wait_times_out(self):
        """Test that an untouched token sleeps and reports not cancelled."""
        token = CancelToken()
        started = time.monotonic()
        assert token.wait(0.05) is False
        assert time.monotonic() - started >= 0.04

    def test_cancel_is_sticky(self):
        """Test that waits return immediately once cancelled."""
        token = CancelToken()
        token.cancel()
        started = time.monotonic()
        assert token.wait(10) is True
        assert token.wait(10) is True
        assert time.monotonic() - started < 1
        assert token.cancelled

    def test_cancel_from_other_thread(self):
        """Test that cancelling interrupts a wait in progress."""
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()
        assert token.wait(10) is True
        assert time.monotonic() - started < 5

    def test_wake_interrupts_once(self):
        """Test that wake ends the current wait without cancelling."""
        token = CancelToken()
        threading.Timer(0.05, token.wake).start()
        started = time.monotonic()
        assert token.wait(10) is False
        assert time.monotonic() - started < 5
        assert not token.cancelled

        started = time.monotonic()
        token.wait(0.05)
        assert time.monotonic() - started >= 0.04
