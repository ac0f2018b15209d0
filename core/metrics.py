"""
Observability metrics for transmissions and the peer network.

The integrity and harmonic-convergence values are smoothness measures over
a ring of recent samples. They are reported, never used to accept or
reject anything.
"""

from typing import Dict, Iterable

import numpy as np

SAMPLE_WINDOW = 100


def smoothness(samples: Iterable[float]) -> float:
    """mean(exp(-10 * |s[i] - s[i-1]|)); 1.0 for fewer than two samples."""
    if not isinstance(samples, np.ndarray):
        samples = list(samples)
    values = np.asarray(samples, dtype=np.float64)
    if values.size < 2:
        return 1.0
    return float(np.mean(np.exp(-10.0 * np.abs(np.diff(values)))))


class SampleRing:
    """Fixed-size ring of float samples, newest first, zero-initialised."""

    def __init__(self, size: int = SAMPLE_WINDOW):
        self.values = np.zeros(size, dtype=np.float32)

    def push(self, value: float):
        self.values = np.roll(self.values, 1)
        self.values[0] = value

    def smoothness(self) -> float:
        return smoothness(self.values)

    def __len__(self) -> int:
        return int(self.values.size)


class TransmissionMetrics:
    """Counters and derived metrics of the transmission pipeline."""

    def __init__(self, window: int = SAMPLE_WINDOW):
        self.total_transmissions = 0
        self.accepted = 0
        self.rejected = 0
        self.filtered = 0
        self.duplicates = 0
        self.compression_ratio = 0.0
        self.average_latency = 0.0
        self.integrity = 1.0
        self.signal_strength = SampleRing(window)

    def record_created(self, compression_ratio: float, affinity_level: float):
        self.total_transmissions += 1
        self.compression_ratio = compression_ratio
        self.signal_strength.push(affinity_level)

    def record_accepted(self, compression_ratio: float):
        self.accepted += 1
        self.compression_ratio = compression_ratio

    def record_rejected(self):
        self.rejected += 1

    def record_filtered(self):
        self.filtered += 1

    def record_duplicate(self):
        self.duplicates += 1

    def update(self, latencies: Iterable[float]):
        """Recompute rolling average latency (over Verified entries) and integrity."""
        latencies = list(latencies)
        self.average_latency = float(np.mean(latencies)) if latencies else 0.0
        self.integrity = self.signal_strength.smoothness()

    def snapshot(self) -> Dict:
        return {
            "total_transmissions": self.total_transmissions,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "filtered": self.filtered,
            "duplicates": self.duplicates,
            "compression_ratio": self.compression_ratio,
            "average_latency": self.average_latency,
            "integrity": self.integrity,
        }


class NetworkMetrics:
    """Peer-network level metrics maintained by the connection manager."""

    def __init__(self, window: int = SAMPLE_WINDOW):
        self.average_resonance = 0.0
        self.average_latency = 0.0
        self.stability = 1.0
        self.harmonic_convergence = 1.0
        self.affinity_samples = SampleRing(window)
        self.bandwidth_samples = SampleRing(window)

    def record_message_size(self, size: int):
        self.bandwidth_samples.push(float(size))

    def update(self, resonances: Dict[str, float], strengths: Dict[str, float],
               latencies: Dict[str, float], local_affinity: float):
        """
        Refresh derived values.

        stability = mean over peers of strength * exp(-latency / 1000)
        """
        self.affinity_samples.push(local_affinity)
        self.harmonic_convergence = self.affinity_samples.smoothness()

        if resonances:
            self.average_resonance = float(np.mean(list(resonances.values())))
        else:
            self.average_resonance = 0.0

        if latencies:
            self.average_latency = float(np.mean(list(latencies.values())))
        else:
            self.average_latency = 0.0

        if strengths:
            per_peer = [
                strengths[peer_id] * float(np.exp(-max(0.0, latencies.get(peer_id, 0.0)) / 1000.0))
                for peer_id in strengths
            ]
            self.stability = float(np.mean(per_peer))
        else:
            self.stability = 1.0

    def snapshot(self) -> Dict:
        return {
            "average_resonance": self.average_resonance,
            "average_latency": self.average_latency,
            "stability": self.stability,
            "harmonic_convergence": self.harmonic_convergence,
        }
