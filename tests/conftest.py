"""
Shared fixtures for the Ghost Net test suite.

Nodes built here share one ManualClock, so signatures, replay windows and
heartbeat ages only move when a test advances the clock. Heartbeat pulses
still run on real (short) timers; the maintenance loop is effectively off
so tests call check_heartbeats() themselves.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

import pytest
import pytest_asyncio

from core.clock import ManualClock
from core.config import GhostNetConfig
from core.context import NodeContext
from core.identity import Identity
from p2p.node import GhostNode
from p2p.transport.memory import MemoryNetwork

START_MS = 1_700_000_000_000


def fast_config(
    peer: Optional[Dict[str, Any]] = None,
    transmission: Optional[Dict[str, Any]] = None,
    **fields
) -> GhostNetConfig:
    """Validated config with short peer timers."""
    data = {
        "peer": {
            "heartbeat_interval_ms": 20,
            "connection_timeout_ms": 300,
            "handshake_timeout_ms": 1000,
            "maintenance_interval_ms": 60000,
            "replay_window_ms": 5000,
            **(peer or {}),
        },
        "transmission": {
            "sweep_interval_ms": 60000,
            **(transmission or {}),
        },
        **fields,
    }
    return GhostNetConfig.load(data)


def make_context(clock: ManualClock, config: Optional[GhostNetConfig] = None, affinity: Optional[float] = None) -> NodeContext:
    context = NodeContext.create(config or fast_config(), clock=clock)
    if affinity is not None:
        context.affinity.level = affinity
    return context


def introduce(a: NodeContext, b: NodeContext):
    """Make two contexts know each other's public keys."""
    a.signatures.register_peer_key(b.identity.id, b.identity.public_key_bytes)
    b.signatures.register_peer_key(a.identity.id, a.identity.public_key_bytes)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll predicate on the event loop until it holds or timeout seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


@pytest.fixture
def clock():
    """Manual clock shared by every component of a test."""
    return ManualClock(start=START_MS)


@pytest.fixture
def context_factory(clock):
    """Build node contexts on the shared clock."""
    def factory(config: Optional[GhostNetConfig] = None, affinity: Optional[float] = None) -> NodeContext:
        return make_context(clock, config, affinity)
    return factory


@pytest.fixture
def wait():
    return wait_until


@pytest_asyncio.fixture
async def node_factory(clock):
    """
    Start GhostNodes on one in-memory network; all are shut down afterwards.

    Usage:
        a = await node_factory()
        b = await node_factory(affinity=0.4, peer={"max_connections": 1})
    """
    network = MemoryNetwork()
    nodes = []

    async def factory(
        address: Optional[str] = None,
        affinity: Optional[float] = None,
        identity: Optional[Identity] = None,
        **overrides
    ) -> GhostNode:
        address = address or f"node-{len(nodes)}"
        node = GhostNode(fast_config(**overrides), network.transport(address), identity, clock)
        if affinity is not None:
            node.context.affinity.level = affinity
        await node.start()
        nodes.append(node)
        return node

    factory.network = network
    yield factory

    for node in nodes:
        if node.running:
            await node.shutdown()


@pytest_asyncio.fixture
async def linked_pair(node_factory, wait):
    """Two nodes with a completed handshake (a dialed b)."""
    a = await node_factory("a")
    b = await node_factory("b")
    entanglement = await a.peers.connect(b.address)
    assert entanglement is not None
    assert await wait(lambda: a.peer_id in b.peers.peers)
    return a, b
