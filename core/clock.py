"""
Injectable millisecond clocks.

Every time read in the core goes through a clock object so that replay
windows, heartbeat timeouts and archival aging can be driven
deterministically in tests.
"""

import time
from typing import Optional


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class SystemClock:
    """Wall-clock time source."""

    def __call__(self) -> int:
        return now_ms()


class ManualClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock(start=1_700_000_000_000)
        clock.advance(5000)
    """

    def __init__(self, start: Optional[int] = None):
        self.current = now_ms() if start is None else int(start)

    def __call__(self) -> int:
        return self.current

    def advance(self, ms: int) -> int:
        """Move the clock forward and return the new time."""
        self.current += int(ms)
        return self.current

    def set(self, ms: int):
        self.current = int(ms)
