"""
Throttler - Rate limiting and deduplication for outbound motion commands.

Continuous drive values are sampled far more often than the link should
carry them. The Throttler lets a sample through only when the send
interval has elapsed and the speeds actually changed. It never queues:
a suppressed sample is simply superseded by the next one.
"""

import time
from dataclasses import replace
from typing import Callable, Optional

from .types import MotorCommand, ThrottleWindow


class Throttler:
    """
    Decides which commands go out. Pure local decision, no I/O.
    """

    def __init__(self, send_interval: float = 0.05, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize throttler.

        Args:
            send_interval: Minimum seconds between accepted continuous sends
            clock: Monotonic time source (injectable for tests)
        """
        self.send_interval = send_interval
        self._clock = clock
        self._window = ThrottleWindow()

    @property
    def window(self) -> ThrottleWindow:
        """Copy of the current throttle window"""
        return replace(self._window)

    def restore(self, window: ThrottleWindow) -> None:
        """Put back a window saved with .window (used when a continuous or aux write fails)"""
        self._window = replace(window)

    def offer_continuous(self, left: int, right: int) -> Optional[MotorCommand]:
        """
        Offer a continuous drive sample.

        Returns:
            Command to send, or None if rate-limited or unchanged
        """
        now = self._clock()
        window = self._window

        if window.last_sent_at is not None and now - window.last_sent_at < self.send_interval:
            return None

        if left == window.last_left and right == window.last_right:
            return None

        window.last_sent_at = now
        window.last_left = left
        window.last_right = right
        return MotorCommand(left=left, right=right, aux=0)

    def offer_immediate(self, aux: int) -> MotorCommand:
        """Build a command for a discrete directive, bypassing rate and dedup"""
        window = self._window
        window.last_sent_at = self._clock()
        return MotorCommand(left=window.last_left, right=window.last_right, aux=aux)

    def force_stop(self) -> MotorCommand:
        """Return a full stop and reset dedup state to (0, 0)"""
        self._window.last_left = 0
        self._window.last_right = 0
        return MotorCommand.stop()
