"""
Backoff policy and cancellable waiting.

Shared by the lock manager (retry delays between acquisition attempts)
and the backpressure controller (cooldown growth for repeated signals).
"""

import random
import threading
from typing import Optional

from pydantic import BaseModel, Field


class BackoffPolicy(BaseModel):
    """
    Exponential backoff: base * multiplier ** attempt, capped, with jitter.

    `jitter` is a fraction of the computed delay; the delay is spread
    uniformly over [delay * (1 - jitter), delay * (1 + jitter)] and then
    capped again.
    """

    base: float = Field(default=0.1, ge=0)
    multiplier: float = Field(default=1.5, ge=1.0)
    cap: float = Field(default=1.0, gt=0)
    jitter: float = Field(default=0.25, ge=0, le=1.0)

    def raw_delay(self, attempt: int) -> float:
        """Delay for the given zero-based attempt without jitter."""
        return min(self.cap, self.base * (self.multiplier ** max(0, attempt)))

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        delay = self.raw_delay(attempt)
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, min(self.cap, delay))


class CancelToken:
    """
    Cancellable sleep built on threading.Event.

    `wait()` returns early when the token is cancelled (from a signal
    handler or another thread) or woken. Waking only interrupts the
    current wait; cancelling is sticky.
    """

    def __init__(self):
        self._event = threading.Event()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Abort the current and all future waits."""
        self._cancelled = True
        self._event.set()

    def wake(self) -> None:
        """Interrupt the current wait without cancelling."""
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`.

        Returns:
            True if the token is cancelled
        """
        if self._cancelled:
            return True
        if seconds > 0:
            self._event.wait(timeout=seconds)
        if not self._cancelled:
            self._event.clear()
        return self._cancelled
