"""
Resonance Calculator

Affinity score between two nodes' state values, in [0, 1]:

    base     = 1 - |local - remote|
    harmonic = sin(base_frequency * now) * 0.2 + 0.8      (in [0.6, 1.0])
    temporal = exp(-(now - origin_timestamp) / decay_window)
    result   = clamp((base * harmonic * temporal + 1) / 2, 0, 1)

The same instance is used for peer affinity (routing) and for transmission
acceptance so stored values stay comparable.
"""

import math
from typing import Callable, Optional

from .clock import now_ms
from .config import BASE_FREQUENCY, DAY_MS


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class ResonanceCalculator:
    """Pure resonance function over an injectable clock."""

    def __init__(
        self,
        base_frequency: float = BASE_FREQUENCY,
        decay_window_ms: int = 30 * DAY_MS,
        clock: Optional[Callable[[], int]] = None
    ):
        self.base_frequency = base_frequency
        self.decay_window_ms = decay_window_ms
        self.clock = clock or now_ms

    def harmonic(self, now: int) -> float:
        return math.sin(self.base_frequency * now) * 0.2 + 0.8

    def temporal(self, origin_timestamp: int, now: int) -> float:
        return math.exp(-(now - origin_timestamp) / self.decay_window_ms)

    def resonance(
        self,
        local_value: float,
        remote_value: float,
        origin_timestamp: int,
        now: Optional[int] = None
    ) -> float:
        """
        Compute resonance between local_value and remote_value.

        Args:
            local_value: Local affinity state
            remote_value: Remote affinity state
            origin_timestamp: Reference event time (ms) for temporal decay
            now: Evaluation time (ms); defaults to the clock

        Returns:
            Score in [0, 1]
        """
        if now is None:
            now = self.clock()

        base = 1 - abs(local_value - remote_value)
        result = (base * self.harmonic(now) * self.temporal(origin_timestamp, now) + 1) / 2

        return clamp(result)

    __call__ = resonance
