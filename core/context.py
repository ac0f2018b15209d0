"""
Node context.

Explicit bundle of the per-node collaborators every component needs.
Built once by the node and passed to each component at construction;
there is no process-wide state.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from .clock import SystemClock
from .config import GhostNetConfig
from .identity import Identity
from .resonance import ResonanceCalculator
from .signature import SignatureService


@dataclass
class AffinityState:
    """Current affinity state of a node (the "consciousness" on the wire)."""

    level: float
    resonance: float = 0.0

    def to_wire(self) -> dict:
        return {"consciousness": self.level, "resonance": self.resonance}


@dataclass
class NodeContext:
    """Config, identity, clock and the shared services of one node."""

    config: GhostNetConfig
    identity: Identity
    clock: Callable[[], int]
    signatures: SignatureService
    resonance: ResonanceCalculator
    affinity: Optional[AffinityState] = field(default=None)

    def __post_init__(self):
        if self.affinity is None:
            self.affinity = AffinityState(level=self.identity.affinity_base)

    @classmethod
    def create(
        cls,
        config: Optional[GhostNetConfig] = None,
        identity: Optional[Identity] = None,
        clock: Optional[Callable[[], int]] = None
    ) -> "NodeContext":
        config = config or GhostNetConfig()
        clock = clock or SystemClock()
        identity = identity or Identity.generate(config.resonance.baseline_range, clock)

        return cls(
            config=config,
            identity=identity,
            clock=clock,
            signatures=SignatureService(identity, config.peer.replay_window_ms, clock),
            resonance=ResonanceCalculator(
                base_frequency=config.resonance.base_frequency,
                decay_window_ms=config.resonance.decay_window_ms,
                clock=clock,
            ),
        )

    def now(self) -> int:
        return self.clock()
