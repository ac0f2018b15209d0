"""
Integration tests for the peer connection manager and node facade.

Nodes run on one in-memory network and one manual clock (see conftest).
"""

import asyncio
import base64
import gzip
import json

import pytest

from core.errors import HandshakeTimeout
from p2p.peer_manager import ConnectionState
from p2p.protocol.messages import MessageCodec, MessageType, canonical_bytes
from p2p.transmission import TransmissionState

from conftest import make_context

pytestmark = pytest.mark.integration


def handle_to(node, peer):
    return node.peers.peers[peer.peer_id].connection_handle


async def send_raw(node, peer, message: dict):
    """Send an already built message dict from node to peer over their connection."""
    await node.transport.send(handle_to(node, peer), json.dumps(message).encode("utf-8"))


# ===== HANDSHAKE =====

class TestHandshake:
    """Test connection establishment."""

    @pytest.mark.asyncio
    async def test_handshake_establishes_both_sides(self, linked_pair):
        a, b = linked_pair

        assert b.peer_id in a.peers.peers
        assert a.peer_id in b.peers.peers
        assert a.peers.peers[b.peer_id].state == ConnectionState.ACTIVE
        assert a.context.signatures.knows(b.peer_id)
        assert b.context.signatures.knows(a.peer_id)
        assert a.peers.stats["handshakes_completed"] == 1
        assert b.peers.stats["handshakes_completed"] == 1

    @pytest.mark.asyncio
    async def test_connect_returns_entanglement(self, node_factory):
        a = await node_factory("a")
        b = await node_factory("b")

        entanglement = await a.peers.connect(b.address)

        assert entanglement.peer_id == b.peer_id
        assert entanglement.connection_handle.outbound is True
        assert entanglement.remote_created_at == b.identity.created_at
        assert a.routing.get_strength(b.peer_id) is not None

    @pytest.mark.asyncio
    async def test_self_connection_refused(self, node_factory, wait):
        a = await node_factory("a")
        twin = await node_factory("twin", identity=a.identity)

        assert await a.connect(twin.address) is None
        assert await wait(lambda: twin.peers.stats["handshake_failures"] == 1)
        assert a.peers.peers == {}
        assert twin.peers.peers == {}

    @pytest.mark.asyncio
    async def test_connect_to_unknown_address(self, node_factory):
        a = await node_factory("a")
        assert await a.connect("nowhere") is None

    @pytest.mark.asyncio
    async def test_outbound_handshake_timeout(self, node_factory):
        a = await node_factory("a", peer={"handshake_timeout_ms": 100})
        node_factory.network.transport("silent")

        with pytest.raises(HandshakeTimeout):
            await a.peers.connect("silent")
        assert a.peers.connections == {}
        assert a.peers.stats["handshake_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_inbound_handshake_timeout(self, node_factory, wait):
        b = await node_factory("b", peer={"handshake_timeout_ms": 100})
        raw = node_factory.network.transport("raw")
        handle = await raw.connect(b.address)

        assert await wait(lambda: b.peers.stats["handshake_timeouts"] == 1)
        assert await wait(lambda: b.peers.connections == {})
        assert handle.id not in raw._ends

    @pytest.mark.asyncio
    async def test_first_message_must_be_handshake(self, node_factory, clock, wait):
        b = await node_factory("b")
        raw = node_factory.network.transport("raw")
        codec = MessageCodec(make_context(clock).signatures)

        handle = await raw.connect(b.address)
        await raw.send(handle, codec.encode(codec.build(
            MessageType.STATE, {"state": {"consciousness": 0.5, "resonance": 0.0}}
        )))

        assert await wait(lambda: b.peers.stats["handshake_failures"] == 1)
        assert await wait(lambda: b.peers.connections == {})
        assert b.peers.peers == {}

    @pytest.mark.asyncio
    async def test_handshake_with_foreign_key_rejected(self, node_factory, clock, wait):
        b = await node_factory("b")
        raw = node_factory.network.transport("raw")
        mallory = make_context(clock)
        victim = make_context(clock)
        codec = MessageCodec(mallory.signatures)

        identity = {**mallory.identity.to_wire(), "publicKey": victim.identity.public_key_bytes.hex()}
        handle = await raw.connect(b.address)
        await raw.send(handle, codec.encode(codec.build(
            MessageType.HANDSHAKE, {"identity": identity, "nonce": "n1"}
        )))

        assert await wait(lambda: b.peers.stats["invalid_signatures"] == 1)
        assert b.peers.peers == {}

    @pytest.mark.asyncio
    async def test_handshake_with_bad_signature_rejected(self, node_factory, clock, wait):
        b = await node_factory("b")
        raw = node_factory.network.transport("raw")
        mallory = make_context(clock)
        codec = MessageCodec(mallory.signatures)

        message = codec.build(MessageType.HANDSHAKE, {"identity": mallory.identity.to_wire(), "nonce": "n1"})
        message["nonce"] = "n2"
        handle = await raw.connect(b.address)
        await raw.send(handle, codec.encode(message))

        assert await wait(lambda: b.peers.stats["handshake_failures"] == 1)
        assert b.peers.stats["invalid_signatures"] == 1
        assert b.peers.peers == {}

    @pytest.mark.asyncio
    async def test_max_connections(self, node_factory, wait):
        a = await node_factory("a")
        b = await node_factory("b", peer={"max_connections": 1})
        c = await node_factory("c")

        assert await a.connect(b.address) is not None
        assert await wait(lambda: a.peer_id in b.peers.peers)
        assert await c.connect(b.address) is None
        assert b.peers.stats["connections_rejected"] == 1
        assert list(b.peers.peers) == [a.peer_id]

    @pytest.mark.asyncio
    async def test_duplicate_peer_refused(self, linked_pair, wait):
        a, b = linked_pair

        assert await a.connect(b.address) is None
        assert await wait(lambda: len(b.peers.connections) == 1)
        assert list(b.peers.peers) == [a.peer_id]
        assert list(a.peers.peers) == [b.peer_id]

    @pytest.mark.asyncio
    async def test_concurrent_handshakes_for_one_identity(self, node_factory, wait):
        a = await node_factory("a")
        twin = await node_factory("twin", identity=a.identity)
        b = await node_factory("b")

        await asyncio.gather(a.connect(b.address), twin.connect(b.address))

        assert await wait(lambda: len(b.peers.connections) == 1)
        assert list(b.peers.peers) == [a.peer_id]
        owner = b.peers.peers[a.peer_id].connection_handle
        assert owner.id in b.peers.connections
        assert await wait(lambda: len(a.peers.peers) + len(twin.peers.peers) == 1)

    @pytest.mark.asyncio
    async def test_replayed_handshake_does_not_claim_peer(self, node_factory, wait):
        a = await node_factory("a")
        b = await node_factory("b", peer={"handshake_timeout_ms": 200})
        raw = node_factory.network.transport("raw")
        captured = a.peers.codec.build(
            MessageType.HANDSHAKE, {"identity": a.identity.to_wire(), "nonce": "captured"}
        )

        handle = await raw.connect(b.address)
        await raw.send(handle, a.peers.codec.encode(captured))

        assert await a.connect(b.address) is not None
        assert await wait(lambda: a.peer_id in b.peers.peers)
        assert b.peers.peers[a.peer_id].connection_handle.address == "a"

        assert await wait(lambda: b.peers.stats["handshake_timeouts"] == 1)
        assert list(b.peers.peers) == [a.peer_id]

    @pytest.mark.asyncio
    async def test_confirmation_must_echo_responder_nonce(self, node_factory, clock, wait):
        b = await node_factory("b")
        raw = node_factory.network.transport("raw")
        mallory = make_context(clock)
        codec = MessageCodec(mallory.signatures)
        identity = mallory.identity.to_wire()

        handle = await raw.connect(b.address)
        await raw.send(handle, codec.encode(codec.build(
            MessageType.HANDSHAKE, {"identity": identity, "nonce": "n1"}
        )))
        await raw.send(handle, codec.encode(codec.build(
            MessageType.HANDSHAKE, {"identity": identity, "nonce": "n1", "replyTo": "guessed"}
        )))

        assert await wait(lambda: b.peers.stats["invalid_signatures"] == 1)
        assert await wait(lambda: b.peers.connections == {})
        assert b.peers.peers == {}


# ===== STATE AND HEARTBEAT =====

class TestStateAndHeartbeat:
    """Test state exchange, pulses and heartbeat timeouts."""

    @pytest.mark.asyncio
    async def test_state_updates_resonance_and_strength(self, node_factory, wait):
        a = await node_factory("a", affinity=0.5)
        b = await node_factory("b", affinity=0.5)
        await a.peers.connect(b.address)

        entanglement = a.peers.peers[b.peer_id]
        assert await wait(lambda: entanglement.resonance > 0)

        expected = a.context.resonance(0.5, 0.5, a.identity.created_at)
        assert entanglement.remote_affinity == 0.5
        assert entanglement.resonance == pytest.approx(expected)
        assert a.routing.get_strength(b.peer_id) == pytest.approx(expected)
        assert 0.0 <= entanglement.resonance <= 1.0

    @pytest.mark.asyncio
    async def test_state_message_updates_receiver_resonance(self, linked_pair, wait):
        a, b = linked_pair
        entanglement = b.peers.peers[a.peer_id]

        await a.set_affinity(0.5)
        assert await wait(lambda: entanglement.remote_affinity == 0.5)

        expected = b.context.resonance(b.context.affinity.level, 0.5, b.identity.created_at)
        assert entanglement.resonance == pytest.approx(expected)
        assert 0.0 <= entanglement.resonance <= 1.0

    @pytest.mark.asyncio
    async def test_set_affinity_reaches_peer(self, linked_pair, wait):
        a, b = linked_pair

        assert await a.set_affinity(1.5) == 1.0
        assert await wait(lambda: b.peers.peers[a.peer_id].remote_affinity == 1.0)

    @pytest.mark.asyncio
    async def test_pulse_refreshes_heartbeat(self, linked_pair, clock, wait):
        a, b = linked_pair
        clock.advance(100)

        assert await wait(lambda: a.peers.peers[b.peer_id].last_heartbeat_at == clock())

    @pytest.mark.asyncio
    async def test_silent_peer_is_disconnected(self, node_factory, clock, wait):
        a = await node_factory("a")
        b = await node_factory("b")
        c = await node_factory("c")
        await a.peers.connect(b.address)
        await a.peers.connect(c.address)
        assert await wait(lambda: a.peer_id in c.peers.peers)

        c.transport.muted = True
        clock.advance(400)
        assert await wait(lambda: a.peers.peers[b.peer_id].last_heartbeat_at == clock())

        assert await a.peers.check_heartbeats() == [c.peer_id]

        assert c.peer_id not in a.peers.peers
        assert c.peer_id not in a.routing
        assert a.find_path(c.peer_id) == {}
        assert c.peer_id not in a.routing.optimize()
        assert c.peer_id in a.peers.dead_peers
        assert b.peer_id in a.peers.peers
        assert await wait(lambda: a.peer_id not in c.peers.peers)

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, linked_pair, wait):
        a, b = linked_pair

        assert await a.peers.disconnect(b.peer_id) is True
        assert await a.peers.disconnect(b.peer_id) is False
        assert a.peers.stats["disconnections"] == 1
        assert await wait(lambda: b.peers.peers == {})
        assert b.peer_id in a.peers.dead_peers


# ===== DISPATCH =====

class TestDispatch:
    """Test per-message authentication and error isolation."""

    @pytest.mark.asyncio
    async def test_unknown_type_is_not_fatal(self, linked_pair, clock, wait):
        a, b = linked_pair
        message = {"type": "gravity-wave", "timestamp": clock(), "peerId": a.peer_id}
        message["signature"] = a.context.signatures.sign(canonical_bytes(message), message["timestamp"])

        await send_raw(a, b, message)

        assert await wait(lambda: b.peers.stats["malformed_messages"] == 1)
        assert a.peer_id in b.peers.peers
        await a.set_affinity(0.9)
        assert await wait(lambda: b.peers.peers[a.peer_id].remote_affinity == 0.9)

    @pytest.mark.asyncio
    async def test_stale_message_dropped(self, linked_pair, clock, wait):
        a, b = linked_pair
        before = b.peers.peers[a.peer_id].remote_affinity
        message = a.peers.codec.build(
            MessageType.STATE,
            {"state": {"consciousness": 0.01, "resonance": 0.0}},
            timestamp=clock() - 6000,
        )

        await send_raw(a, b, message)

        assert await wait(lambda: b.peers.stats["invalid_signatures"] == 1)
        assert b.peers.peers[a.peer_id].remote_affinity == before

    @pytest.mark.asyncio
    async def test_message_claiming_other_sender_dropped(self, node_factory, wait):
        a = await node_factory("a")
        b = await node_factory("b")
        c = await node_factory("c")
        await a.peers.connect(b.address)
        await c.peers.connect(b.address)

        forged = c.peers.codec.build(MessageType.STATE, {"state": {"consciousness": 0.02, "resonance": 0.0}})
        await send_raw(a, b, forged)

        assert await wait(lambda: b.peers.stats["invalid_signatures"] == 1)
        assert b.peers.peers[c.peer_id].remote_affinity != 0.02

    @pytest.mark.asyncio
    async def test_tampered_transmission_rejected(self, linked_pair, wait):
        a, b = linked_pair
        tx = await a.pipeline.create(b"genuine")
        wire = a.pipeline.to_wire(tx)
        wire["payload"] = base64.b64encode(gzip.compress(b"forged")).decode("ascii")

        await send_raw(a, b, a.peers.codec.build(MessageType.TRANSMISSION, {"content": wire}))

        assert await wait(lambda: b.pipeline.metrics.rejected == 1)
        assert tx.id not in b.buffer
        assert b.peers.stats["invalid_signatures"] == 1
        assert a.peer_id in b.peers.peers

    @pytest.mark.asyncio
    async def test_route_hint_broadcast_on_significant_change(self, node_factory, wait):
        a = await node_factory("a", affinity=0.0)
        b = await node_factory("b", affinity=0.0)
        c = await node_factory("c", affinity=1.0)
        await a.peers.connect(b.address)
        await a.peers.connect(c.address)

        assert await wait(lambda: c.peer_id in b.routing.ranked_routes(a.peer_id))
        assert f"{a.peer_id}->{c.peer_id}" in b.find_path(c.peer_id)
        assert a.peers.stats["route_broadcasts"] >= 1

    @pytest.mark.asyncio
    async def test_get_peers_ordering(self, node_factory, wait):
        a = await node_factory("a")
        b = await node_factory("b")
        c = await node_factory("c")
        await a.peers.connect(b.address)
        await a.peers.connect(c.address)
        assert await wait(lambda: all(e.resonance > 0 for e in a.peers.peers.values()))

        a.peers.peers[b.peer_id].resonance = 0.4
        a.peers.peers[c.peer_id].resonance = 0.9
        assert [p["peer_id"] for p in a.get_peers()] == [c.peer_id, b.peer_id]

        a.peers.peers[b.peer_id].resonance = 0.9
        assert [p["peer_id"] for p in a.get_peers()] == sorted([b.peer_id, c.peer_id])


# ===== NODE FACADE =====

class TestGhostNode:
    """Test the host-facing node operations."""

    @pytest.mark.asyncio
    async def test_transmit_reaches_peer(self, linked_pair, wait):
        a, b = linked_pair

        tx = await a.transmit({"msg": "hello"})
        await a.drain()

        assert tx.state == TransmissionState.VERIFIED
        assert await wait(lambda: tx.id in b.buffer)
        received = b.get_transmission(tx.id)
        assert received.state == TransmissionState.VERIFIED
        assert received.received_from == a.peer_id
        assert await b.read_transmission(tx.id) == b'{"msg":"hello"}'

    @pytest.mark.asyncio
    async def test_start_survives_corrupt_snapshot(self, node_factory, tmp_path):
        (tmp_path / "transmissions.msgpack").write_bytes(b"\xc1garbage")

        a = await node_factory("a", persist=True, data_dir=tmp_path)

        assert a.running is True
        assert len(a.buffer) == 0

    @pytest.mark.asyncio
    async def test_transmit_without_peers_settles_locally(self, node_factory):
        a = await node_factory("a")

        tx = await a.transmit(b"alone")
        assert tx.state == TransmissionState.PENDING
        await a.drain()

        assert tx.state == TransmissionState.VERIFIED
        assert await a.read_transmission(tx.id) == b"alone"

    @pytest.mark.asyncio
    async def test_get_state(self, linked_pair):
        a, b = linked_pair
        state = a.get_state()

        assert state["peer_id"] == a.peer_id
        assert state["peers"] == 1
        assert set(state["network"]) >= {"average_resonance", "stability", "harmonic_convergence"}
        assert set(state["buffer"]) >= {"pending", "verified", "archive"}
        assert a.context.affinity.resonance == state["resonance"]

    @pytest.mark.asyncio
    async def test_routing_snapshot(self, linked_pair):
        a, b = linked_pair
        snapshot = a.get_routing_snapshot()

        assert [entry.peer_id for entry in snapshot] == [b.peer_id]

    @pytest.mark.asyncio
    async def test_shutdown_disconnects_everyone(self, linked_pair, wait):
        a, b = linked_pair

        await a.shutdown()

        assert a.running is False
        assert a.peers.peers == {}
        assert a.peers.connections == {}
        assert a.address not in b.transport.network.transports
        assert await wait(lambda: b.peers.peers == {})
