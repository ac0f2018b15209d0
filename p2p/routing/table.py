"""
Resonance Routing Table

Tracks per-peer affinity strength and keeps ranked neighbor lists.

Ranking policy (optimize):
- Strength descending
- Strength differences up to the tie threshold (0.1) count as ties,
  broken by latency ascending

Path finding (find_path):
- Depth-first from the local node, multiplying hop strengths
- Visited nodes are tracked per branch only, so a node may appear again
  on a different branch; within one path it never repeats
- Unreachable targets yield an empty mapping
"""

import time
import logging
from functools import cmp_to_key
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.config import RoutingConfig
from core.resonance import clamp

logger = logging.getLogger(__name__)


LATENCY_SMOOTHING = 0.1  # Weight of the newest latency sample
PATH_SEPARATOR = "->"


@dataclass(frozen=True)
class RoutingEntry:
    """Ranked routes of one node. Replaced, never mutated, on each optimize pass."""

    peer_id: str
    neighbors: Tuple[str, ...]
    strength: float
    latency_estimate: float


class RoutingTable:
    """
    Weighted routing table of the local node.

    The local node's own adjacency lists its directly entangled peers;
    adjacency of other nodes comes from route hints sent by peers.
    """

    def __init__(self, node_id: str, config: Optional[RoutingConfig] = None):
        """
        Initialize routing table.

        Args:
            node_id: Local node's peer ID
            config: Routing tuning (thresholds, depth, route count)
        """
        self.node_id = node_id
        self.config = config or RoutingConfig()

        # Direct affinity strength per peer (peer_id -> [0, 1])
        self._strengths: Dict[str, float] = {}

        # Latency estimate per node in ms
        self._latencies: Dict[str, float] = {}

        # Adjacency (node_id -> neighbor ids); own entry holds direct peers
        self._routes: Dict[str, List[str]] = {node_id: []}

        # Hinted edge strengths learned from route messages ((from, to) -> strength)
        self._edge_strengths: Dict[Tuple[str, str], float] = {}

        # Current ranked entries, swapped as a whole by optimize()
        self._entries: Dict[str, RoutingEntry] = {}

        self.stats = {
            "optimizations": 0,
            "strength_updates": 0,
            "route_hints": 0,
            "peers_removed": 0,
            "last_optimized": 0.0,
        }

        logger.info(f"Initialized routing table for node: {node_id[:16]}...")

    def record_strength(self, peer_id: str, value: float) -> bool:
        """
        Overwrite a peer's strength.

        Re-optimizes only when the change exceeds the significant-change
        threshold (an unknown peer counts as strength 0.0).

        Returns:
            True if optimize() ran
        """
        if peer_id == self.node_id:
            return False

        value = clamp(float(value))
        previous = self._strengths.get(peer_id, 0.0)
        self._strengths[peer_id] = value

        own = self._routes[self.node_id]
        if peer_id not in own:
            own.append(peer_id)

        self.stats["strength_updates"] += 1

        if abs(value - previous) > self.config.significant_change:
            self.optimize()
            return True
        return False

    def record_latency(self, peer_id: str, latency_ms: float):
        """Fold a latency sample into the rolling estimate."""
        latency_ms = max(0.0, float(latency_ms))
        current = self._latencies.get(peer_id)
        if current is None:
            self._latencies[peer_id] = latency_ms
        else:
            self._latencies[peer_id] = current * (1 - LATENCY_SMOOTHING) + latency_ms * LATENCY_SMOOTHING

    def apply_route_hint(self, from_peer: str, hints: Iterable[Tuple[str, float, float]]):
        """
        Store a route fragment advertised by a peer.

        Args:
            from_peer: Peer that sent the fragment
            hints: (neighbor_id, strength, latency) as seen by from_peer
        """
        if from_peer == self.node_id:
            return

        neighbors: List[str] = []
        for neighbor_id, strength, latency in hints:
            if neighbor_id == from_peer or neighbor_id in neighbors:
                continue
            neighbors.append(neighbor_id)
            self._edge_strengths[(from_peer, neighbor_id)] = clamp(float(strength))
            if neighbor_id != self.node_id and neighbor_id not in self._strengths:
                self._latencies.setdefault(neighbor_id, max(0.0, float(latency)))

        # Forget edges the peer no longer advertises
        for key in [k for k in self._edge_strengths if k[0] == from_peer and k[1] not in neighbors]:
            del self._edge_strengths[key]

        self._routes[from_peer] = neighbors
        self.stats["route_hints"] += 1
        self.optimize()

    def remove_peer(self, peer_id: str) -> bool:
        """
        Drop a peer and every route through it, then re-optimize.

        Returns:
            True if the peer was known
        """
        known = (
            peer_id in self._strengths
            or peer_id in self._routes
            or any(peer_id in neighbors for neighbors in self._routes.values())
        )
        if not known or peer_id == self.node_id:
            return False

        self._strengths.pop(peer_id, None)
        self._latencies.pop(peer_id, None)
        self._routes.pop(peer_id, None)

        for node_id, neighbors in self._routes.items():
            if peer_id in neighbors:
                self._routes[node_id] = [n for n in neighbors if n != peer_id]

        for key in [k for k in self._edge_strengths if peer_id in k]:
            del self._edge_strengths[key]

        self.stats["peers_removed"] += 1
        logger.info(f"Removed routes for {peer_id[:16]}...")

        self.optimize()
        return True

    def _compare(self, a: Tuple[str, float, float], b: Tuple[str, float, float]) -> int:
        """Pairwise ordering: strength desc unless within tie threshold, then latency asc."""
        strength_diff = b[1] - a[1]
        if abs(strength_diff) > self.config.tie_threshold:
            return 1 if strength_diff > 0 else -1
        latency_diff = a[2] - b[2]
        if latency_diff == 0:
            return 0
        return 1 if latency_diff > 0 else -1

    def _edge_strength(self, from_node: str, to_node: str) -> float:
        if from_node == self.node_id:
            return self._strengths.get(to_node, 0.0)
        hinted = self._edge_strengths.get((from_node, to_node))
        if hinted is not None:
            return hinted
        return self._strengths.get(to_node, 0.0)

    def optimize(self) -> Dict[str, RoutingEntry]:
        """
        Re-rank every node's neighbor list and publish a new entry set.

        Returns:
            The new peer_id -> RoutingEntry mapping
        """
        new_routes: Dict[str, List[str]] = {}
        new_entries: Dict[str, RoutingEntry] = {}

        for node_id, neighbors in self._routes.items():
            metrics = [
                (
                    neighbor,
                    self._edge_strength(node_id, neighbor),
                    self._latencies.get(neighbor, 0.0),
                )
                for neighbor in neighbors
            ]
            metrics.sort(key=cmp_to_key(self._compare))
            ranked = [m[0] for m in metrics]
            new_routes[node_id] = ranked

            if node_id == self.node_id:
                continue

            new_entries[node_id] = RoutingEntry(
                peer_id=node_id,
                neighbors=tuple(ranked[:self.config.max_routes]),
                strength=self._strengths.get(node_id, 0.0),
                latency_estimate=self._latencies.get(node_id, 0.0),
            )

        for peer_id in self._strengths:
            if peer_id not in new_entries:
                new_entries[peer_id] = RoutingEntry(
                    peer_id=peer_id,
                    neighbors=(),
                    strength=self._strengths[peer_id],
                    latency_estimate=self._latencies.get(peer_id, 0.0),
                )

        self._routes = new_routes
        self._entries = new_entries

        self.stats["optimizations"] += 1
        self.stats["last_optimized"] = time.time()
        return new_entries

    def ranked_routes(self, node_id: Optional[str] = None) -> List[str]:
        """Ranked neighbor ids of a node (default: local node)."""
        return list(self._routes.get(node_id or self.node_id, []))

    def find_path(self, target_id: str) -> Dict[str, float]:
        """
        Find every path from the local node to target_id.

        Returns:
            "hop1->hop2->target" -> cumulative strength; empty if unreachable
        """
        paths: Dict[str, float] = {}
        if target_id == self.node_id:
            return paths

        def traverse(current: str, path: List[str], strength: float, visited: Set[str]):
            if current == target_id:
                paths[PATH_SEPARATOR.join(path)] = strength
                return
            if len(path) >= self.config.max_depth:
                return

            branch_visited = visited | {current}
            for neighbor in self._routes.get(current, []):
                if neighbor in branch_visited:
                    continue
                traverse(
                    neighbor,
                    path + [neighbor],
                    strength * self._edge_strength(current, neighbor),
                    branch_visited,
                )

        traverse(self.node_id, [], 1.0, set())
        return paths

    def get_strength(self, peer_id: str) -> Optional[float]:
        return self._strengths.get(peer_id)

    def get_latency(self, peer_id: str) -> Optional[float]:
        return self._latencies.get(peer_id)

    @property
    def strengths(self) -> Dict[str, float]:
        return dict(self._strengths)

    @property
    def latencies(self) -> Dict[str, float]:
        return {p: self._latencies[p] for p in self._strengths if p in self._latencies}

    def snapshot(self) -> List[RoutingEntry]:
        """Current routing entries, strongest first."""
        return sorted(self._entries.values(), key=lambda e: (-e.strength, e.peer_id))

    def route_fragment(self) -> List[Dict[str, float]]:
        """Direct peers as advertised in route messages."""
        return [
            {
                "peerId": peer_id,
                "strength": self._strengths.get(peer_id, 0.0),
                "latency": self._latencies.get(peer_id, 0.0),
            }
            for peer_id in self._routes.get(self.node_id, [])
        ]

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._strengths or peer_id in self._entries

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "direct_peers": len(self._strengths),
            "known_nodes": len(self._routes),
            "entries": len(self._entries),
        }
