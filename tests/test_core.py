"""
Test suite for the Ghost Net core components.

Tests identity, signatures, resonance, compression, metrics and config.
"""

import math

import numpy as np
import pytest

from core.clock import ManualClock, now_ms
from core.compression import CompressionAlgorithm, CompressionEngine
from core.config import BASE_FREQUENCY, DAY_MS, GhostNetConfig
from core.context import AffinityState, NodeContext
from core.errors import (
    CapacityExceeded,
    CompressionFailure,
    ConfigError,
    GhostNetError,
    HandshakeTimeout,
)
from core.identity import Identity, compute_peer_id
from core.metrics import NetworkMetrics, SampleRing, TransmissionMetrics, smoothness
from core.resonance import ResonanceCalculator, clamp
from core.signature import SignatureService, signing_material

from conftest import START_MS


# ===== IDENTITY =====

@pytest.mark.unit
class TestIdentity:
    """Test node identity generation and persistence."""

    def setup_method(self):
        self.clock = ManualClock(start=START_MS)

    def test_id_is_128_bit_hex_of_public_key(self):
        identity = Identity.generate(clock=self.clock)

        assert len(identity.id) == 32
        int(identity.id, 16)
        assert identity.id == compute_peer_id(identity.public_key_bytes)
        assert identity.created_at == START_MS

    def test_affinity_base_within_baseline_range(self):
        for _ in range(20):
            identity = Identity.generate((0.3, 0.7), self.clock)
            assert 0.3 <= identity.affinity_base <= 0.7

    def test_identity_is_immutable(self):
        identity = Identity.generate(clock=self.clock)
        with pytest.raises(Exception):
            identity.id = "other"

    def test_load_or_generate_keeps_peer_id(self, tmp_path):
        first = Identity.load_or_generate(tmp_path, clock=self.clock)
        second = Identity.load_or_generate(tmp_path, clock=self.clock)

        assert (tmp_path / "node_key.pem").exists()
        assert first.id == second.id
        assert first.signing_secret == second.signing_secret

    def test_to_wire_carries_public_key(self):
        identity = Identity.generate(clock=self.clock)
        wire = identity.to_wire()

        assert wire["id"] == identity.id
        assert wire["createdAt"] == START_MS
        assert bytes.fromhex(wire["publicKey"]) == identity.public_key_bytes


# ===== SIGNATURES =====

@pytest.mark.unit
class TestSignatureService:
    """Test signing, verification and the replay window."""

    def setup_method(self):
        self.clock = ManualClock(start=START_MS)
        self.alice = Identity.generate(clock=self.clock)
        self.bob = Identity.generate(clock=self.clock)
        self.alice_sigs = SignatureService(self.alice, 5000, self.clock)
        self.bob_sigs = SignatureService(self.bob, 5000, self.clock)
        self.bob_sigs.register_peer_key(self.alice.id, self.alice.public_key_bytes)

    def test_sign_is_deterministic(self):
        assert self.alice_sigs.sign(b"payload", START_MS) == self.alice_sigs.sign(b"payload", START_MS)

    def test_timestamp_is_part_of_signed_material(self):
        assert self.alice_sigs.sign(b"payload", START_MS) != self.alice_sigs.sign(b"payload", START_MS + 1)
        assert signing_material("id", 5, b"x") == b"id|5|x"

    def test_verify_within_replay_window(self):
        tag = self.alice_sigs.sign(b"payload", START_MS)

        assert self.bob_sigs.verify(self.alice.id, b"payload", START_MS, tag) is True

        self.clock.advance(5000)
        assert self.bob_sigs.verify(self.alice.id, b"payload", START_MS, tag) is True

    def test_verify_rejects_stale_timestamp_with_valid_tag(self):
        tag = self.alice_sigs.sign(b"payload", START_MS)
        self.clock.advance(5001)

        assert self.bob_sigs.verify(self.alice.id, b"payload", START_MS, tag) is False
        assert self.bob_sigs.stats["stale"] == 1

    def test_verify_rejects_future_timestamp_outside_window(self):
        future = START_MS + 6000
        tag = self.alice_sigs.sign(b"payload", future)

        assert self.bob_sigs.verify(self.alice.id, b"payload", future, tag) is False

    def test_verify_rejects_tampered_payload(self):
        tag = self.alice_sigs.sign(b"payload", START_MS)
        assert self.bob_sigs.verify(self.alice.id, b"payloaD", START_MS, tag) is False

    def test_verify_never_raises(self):
        tag = self.alice_sigs.sign(b"payload", START_MS)

        assert self.bob_sigs.verify(None, b"payload", START_MS, tag) is False
        assert self.bob_sigs.verify(self.alice.id, None, START_MS, tag) is False
        assert self.bob_sigs.verify(self.alice.id, b"payload", None, tag) is False
        assert self.bob_sigs.verify(self.alice.id, b"payload", START_MS, "") is False
        assert self.bob_sigs.verify(self.alice.id, b"payload", START_MS, "not-hex") is False
        assert self.bob_sigs.verify(self.alice.id, b"payload", "soon", tag) is False

    def test_unknown_signer_is_rejected(self):
        tag = self.bob_sigs.sign(b"payload", START_MS)
        assert self.alice_sigs.verify(self.bob.id, b"payload", START_MS, tag) is False

    def test_register_peer_key_requires_matching_id(self):
        assert self.alice_sigs.register_peer_key(self.alice.id, self.bob.public_key_bytes) is False
        assert self.alice_sigs.register_peer_key(self.bob.id, self.bob.public_key_bytes) is True
        assert self.alice_sigs.knows(self.bob.id)


# ===== RESONANCE =====

@pytest.mark.unit
class TestResonance:
    """Test the resonance formula."""

    def setup_method(self):
        self.calculator = ResonanceCalculator(BASE_FREQUENCY, 30 * DAY_MS)

    def test_bounded_for_all_inputs(self):
        now = START_MS
        for local in np.linspace(0.0, 1.0, 11):
            for remote in np.linspace(0.0, 1.0, 11):
                for age in (0, 1, 1000, DAY_MS, 365 * DAY_MS):
                    value = self.calculator.resonance(float(local), float(remote), now - age, now)
                    assert 0.0 <= value <= 1.0

    def test_matches_formula(self):
        now = START_MS
        origin = now - 3 * DAY_MS
        base = 1 - abs(0.2 - 0.7)
        harmonic = math.sin(BASE_FREQUENCY * now) * 0.2 + 0.8
        temporal = math.exp(-(now - origin) / (30 * DAY_MS))

        expected = (base * harmonic * temporal + 1) / 2
        assert self.calculator.resonance(0.2, 0.7, origin, now) == pytest.approx(expected)

    def test_harmonic_range(self):
        for now in range(START_MS, START_MS + 5000, 37):
            assert 0.6 <= self.calculator.harmonic(now) <= 1.0

    def test_decays_towards_half(self):
        now = START_MS
        fresh = self.calculator.resonance(0.5, 0.5, now, now)
        old = self.calculator.resonance(0.5, 0.5, now - 3650 * DAY_MS, now)

        assert fresh > old
        assert old == pytest.approx(0.5, abs=1e-6)

    def test_uses_clock_when_now_omitted(self):
        clock = ManualClock(start=START_MS)
        calculator = ResonanceCalculator(clock=clock)
        assert calculator(0.4, 0.6, START_MS) == calculator.resonance(0.4, 0.6, START_MS, START_MS)

    def test_clamp(self):
        assert clamp(-0.5) == 0.0
        assert clamp(1.5) == 1.0
        assert clamp(0.25) == 0.25


# ===== COMPRESSION =====

@pytest.mark.unit
class TestCompression:
    """Test compression engine functionality."""

    def setup_method(self):
        self.engine = CompressionEngine()

    @pytest.mark.parametrize("algorithm", list(CompressionAlgorithm))
    def test_round_trip(self, algorithm):
        data = b"Ghost net transmission payload. " * 50
        result = self.engine.compress(data, algorithm)
        assert self.engine.decompress(result.compressed_data, algorithm) == data

    @pytest.mark.parametrize("algorithm", list(CompressionAlgorithm))
    def test_round_trip_empty(self, algorithm):
        result = self.engine.compress(b"", algorithm)
        assert self.engine.decompress(result.compressed_data, algorithm) == b""
        assert result.compression_ratio == 1.0

    @pytest.mark.parametrize("algorithm", list(CompressionAlgorithm))
    def test_bounded_decompression(self, algorithm):
        data = b"\0" * 100000
        result = self.engine.compress(data, algorithm)

        assert self.engine.decompress(result.compressed_data, algorithm, max_size=len(data)) == data
        with pytest.raises(CompressionFailure):
            self.engine.decompress(result.compressed_data, algorithm, max_size=1000)
        assert self.engine.stats["failures"] == 1

    def test_default_is_gzip(self):
        result = self.engine.compress(b"hello")
        assert result.algorithm == CompressionAlgorithm.GZIP

    def test_ratio_is_compressed_over_raw(self):
        data = b"a" * 10000
        result = self.engine.compress(data)
        assert result.compression_ratio == result.compressed_size / len(data)
        assert result.compression_ratio < 1.0

    def test_corrupt_input_raises_compression_failure(self):
        with pytest.raises(CompressionFailure):
            self.engine.decompress(b"definitely not gzip", "gzip")
        assert self.engine.stats["failures"] == 1

    def test_unknown_algorithm(self):
        with pytest.raises(CompressionFailure):
            self.engine.compress(b"data", "lzma-turbo")

    @pytest.mark.asyncio
    async def test_async_round_trip(self):
        result = await self.engine.compress_async(b"async payload", "zstd")
        assert await self.engine.decompress_async(result.compressed_data, "zstd") == b"async payload"


# ===== METRICS =====

@pytest.mark.unit
class TestMetrics:
    """Test smoothness and metric snapshots."""

    def test_smoothness_of_constant_signal_is_one(self):
        assert smoothness([0.5] * 10) == pytest.approx(1.0)

    def test_smoothness_of_short_signal(self):
        assert smoothness([]) == 1.0
        assert smoothness([0.3]) == 1.0

    def test_smoothness_formula(self):
        samples = [0.0, 0.1, 0.4]
        expected = (math.exp(-1.0) + math.exp(-3.0)) / 2
        assert smoothness(samples) == pytest.approx(expected)

    def test_sample_ring_newest_first(self):
        ring = SampleRing(size=3)
        for value in (0.1, 0.2, 0.3, 0.4):
            ring.push(value)

        assert len(ring) == 3
        assert ring.values.tolist() == pytest.approx([0.4, 0.3, 0.2])

    def test_transmission_metrics_counters(self):
        metrics = TransmissionMetrics()
        metrics.record_created(0.5, 0.6)
        metrics.record_accepted(0.25)
        metrics.record_rejected()
        metrics.record_filtered()
        metrics.update([10.0, 30.0])

        snapshot = metrics.snapshot()
        assert snapshot["total_transmissions"] == 1
        assert snapshot["accepted"] == 1
        assert snapshot["rejected"] == 1
        assert snapshot["filtered"] == 1
        assert snapshot["compression_ratio"] == 0.25
        assert snapshot["average_latency"] == 20.0
        assert 0.0 <= snapshot["integrity"] <= 1.0

    def test_network_stability(self):
        metrics = NetworkMetrics()
        metrics.update(
            resonances={"p1": 0.8, "p2": 0.6},
            strengths={"p1": 1.0, "p2": 0.5},
            latencies={"p1": 0.0, "p2": 1000.0},
            local_affinity=0.5,
        )

        assert metrics.average_resonance == pytest.approx(0.7)
        assert metrics.stability == pytest.approx((1.0 + 0.5 * math.exp(-1.0)) / 2)

    def test_network_metrics_without_peers(self):
        metrics = NetworkMetrics()
        metrics.update({}, {}, {}, 0.5)
        assert metrics.snapshot()["average_resonance"] == 0.0
        assert metrics.snapshot()["stability"] == 1.0


# ===== CONFIG =====

@pytest.mark.unit
class TestConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        config = GhostNetConfig()

        assert config.resonance.base_frequency == BASE_FREQUENCY
        assert config.resonance.decay_window_ms == 30 * DAY_MS
        assert config.transmission.resonance_threshold == 0.3
        assert config.routing.significant_change == 0.1
        assert config.peer.max_connections == 33
        assert config.peer.replay_window_ms == 5000
        assert config.peer.handshake_timeout_ms == 10000
        assert config.transmission.compression == "gzip"

    def test_connection_timeout_must_exceed_heartbeat(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"peer": {"heartbeat_interval_ms": 5000, "connection_timeout_ms": 5000}})

    def test_max_connections_limit(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"peer": {"max_connections": 101}})

    def test_inverted_baseline_range(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"resonance": {"baseline_range": [0.8, 0.2]}})

    def test_threshold_outside_unit_interval(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"transmission": {"resonance_threshold": 1.5}})

    def test_unknown_codec(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"transmission": {"compression": "rar"}})

    def test_wrong_type_is_config_error(self):
        with pytest.raises(ConfigError):
            GhostNetConfig.load({"peer": {"listen_port": "not-a-port"}})

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GHOSTNET_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("GHOSTNET_PORT", "4100")
        monkeypatch.setenv("GHOSTNET_RESONANCE_THRESHOLD", "0.45")
        monkeypatch.setenv("GHOSTNET_PERSIST", "true")

        config = GhostNetConfig.from_env()

        assert config.peer.listen_port == 4100
        assert config.transmission.resonance_threshold == 0.45
        assert config.persist is True
        assert config.snapshot_path == tmp_path / "transmissions.msgpack"


# ===== CONTEXT AND ERRORS =====

@pytest.mark.unit
class TestContextAndErrors:
    """Test the node context and the error taxonomy."""

    def test_manual_clock_defaults_to_wall_clock(self):
        before = now_ms()
        clock = ManualClock()

        assert clock() >= before
        assert clock.advance(250) == clock.current
        assert ManualClock(start=START_MS)() == START_MS

    def test_context_defaults_affinity_to_identity_base(self):
        context = NodeContext.create(clock=ManualClock(start=START_MS))

        assert context.affinity.level == context.identity.affinity_base
        assert context.now() == START_MS
        assert context.signatures.identity is context.identity

    def test_affinity_wire_shape(self):
        assert AffinityState(0.4, 0.7).to_wire() == {"consciousness": 0.4, "resonance": 0.7}

    def test_error_codes(self):
        assert HandshakeTimeout("1.2.3.4:5", 10000).code == "handshake_timeout"
        assert CapacityExceeded("archive", 3).tier == "archive"
        assert isinstance(CompressionFailure(), GhostNetError)
        assert ConfigError("bad").message == "bad"
