"""
Transmission Pipeline

Outbound: compress -> sign -> store Pending
Inbound:  verify -> decompress -> resonance gate -> store Verified

The auth tag is an Ed25519 signature by the origin over the canonical JSON
of the transmission header (id, origin, affinity, codec, sizes and the
SHA-256 of the compressed payload), signed at the transmission's created_at.
Any mutation of the payload after signing changes the digest and fails
verification.
"""

import os
import hmac
import json
import base64
import hashlib
import binascii
import logging
from typing import Any, Dict, Optional, Set, Union

from pydantic import ValidationError

from core.config import TransmissionConfig
from core.context import AffinityState, NodeContext
from core.compression import CompressionEngine
from core.errors import CompressionFailure, MalformedMessage, SignatureInvalid
from core.identity import Identity
from core.metrics import TransmissionMetrics
from p2p.protocol.messages import TransmissionWire

from .buffer import Transmission, TransmissionBuffer, TransmissionState

logger = logging.getLogger(__name__)


Content = Union[bytes, bytearray, str, Dict[str, Any]]


def encode_content(content: Content) -> bytes:
    """Raw bytes of transmission content (dicts are sent as compact JSON)."""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    if isinstance(content, str):
        return content.encode("utf-8")
    if isinstance(content, dict):
        return json.dumps(content, sort_keys=True, separators=(",", ":")).encode("utf-8")
    raise TypeError(f"Unsupported transmission content type: {type(content).__name__}")


class TransmissionPipeline:
    """
    Creates, verifies and gates transmissions for one node.

    Usage:
        pipeline = TransmissionPipeline(context)
        tx = await pipeline.create(b"hello")
        wire = pipeline.to_wire(tx)
        ...
        accepted = await other_pipeline.process(wire, from_peer=node_id)
    """

    def __init__(
        self,
        context: NodeContext,
        buffer: Optional[TransmissionBuffer] = None,
        compression: Optional[CompressionEngine] = None,
        metrics: Optional[TransmissionMetrics] = None
    ):
        self.context = context
        self.config: TransmissionConfig = context.config.transmission
        self.buffer = buffer or TransmissionBuffer(self.config, context.clock)
        self.compression = compression or CompressionEngine(
            default_algorithm=CompressionEngine.resolve(self.config.compression)
        )
        self.metrics = metrics or TransmissionMetrics()

        # Ids currently between verification and storage
        self._in_flight: Set[str] = set()

    @staticmethod
    def generate_id(timestamp: int) -> str:
        """256-bit hex id from 32 random bytes and the creation timestamp."""
        return hashlib.sha256(os.urandom(32) + str(int(timestamp)).encode("utf-8")).hexdigest()

    @staticmethod
    def auth_material(tx: Transmission) -> bytes:
        """Canonical bytes covered by a transmission's auth tag."""
        header = {
            "id": tx.id,
            "createdAt": tx.created_at,
            "originPeerId": tx.origin_peer_id,
            "affinity": tx.affinity_at_creation,
            "resonance": tx.origin_resonance,
            "algorithm": tx.algorithm,
            "rawSize": tx.raw_size,
            "payloadDigest": hashlib.sha256(tx.payload).hexdigest(),
        }
        return json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8")

    async def create(
        self,
        content: Content,
        identity: Optional[Identity] = None,
        affinity_state: Optional[AffinityState] = None
    ) -> Transmission:
        """
        Compress, sign and store a new transmission as Pending.

        Args:
            content: Bytes, text or a JSON-serializable dict
            identity: Signing identity (must be the local node's)
            affinity_state: State to stamp on the transmission (default: current)

        Raises:
            CompressionFailure: if the content is too large or the codec fails
        """
        identity = identity or self.context.identity
        if identity.id != self.context.identity.id:
            raise ValueError("Transmissions can only be signed by the local identity")
        affinity_state = affinity_state or self.context.affinity

        raw = encode_content(content)
        if len(raw) > self.config.max_payload_size:
            raise CompressionFailure(
                f"Payload of {len(raw)} bytes exceeds maximum of {self.config.max_payload_size}"
            )

        result = await self.compression.compress_async(raw)

        created_at = self.context.now()
        tx = Transmission(
            id=self.generate_id(created_at),
            created_at=created_at,
            origin_peer_id=identity.id,
            affinity_at_creation=float(affinity_state.level),
            payload=result.compressed_data,
            auth_tag="",
            algorithm=result.algorithm.value,
            raw_size=result.original_size,
            origin_resonance=float(affinity_state.resonance),
        )
        tx.auth_tag = self.context.signatures.sign(self.auth_material(tx), created_at)

        self.buffer.add_pending(tx)
        self.metrics.record_created(result.compression_ratio, affinity_state.level)

        logger.debug(
            f"Created transmission {tx.id[:16]}... "
            f"({tx.raw_size} -> {len(tx.payload)} bytes, {tx.algorithm})"
        )
        return tx

    def to_wire(self, tx: Transmission) -> Dict[str, Any]:
        """Transmission object as carried in a transmission message's content."""
        return {
            "id": tx.id,
            "createdAt": tx.created_at,
            "originPeerId": tx.origin_peer_id,
            "affinity": tx.affinity_at_creation,
            "resonance": tx.origin_resonance,
            "algorithm": tx.algorithm,
            "rawSize": tx.raw_size,
            "payload": base64.b64encode(tx.payload).decode("ascii"),
            "authTag": tx.auth_tag,
        }

    @staticmethod
    def from_wire(content: Dict[str, Any]) -> Transmission:
        """
        Parse a wire transmission object.

        Raises:
            MalformedMessage: if fields are missing or the payload is not base64
        """
        try:
            wire = TransmissionWire.model_validate(content)
        except ValidationError as e:
            raise MalformedMessage(f"Invalid transmission: {e.errors()[0]['loc']}")

        try:
            payload = base64.b64decode(wire.payload, validate=True)
        except (binascii.Error, ValueError):
            raise MalformedMessage("Transmission payload is not valid base64")

        return Transmission(
            id=wire.id,
            created_at=wire.created_at,
            origin_peer_id=wire.origin_peer_id,
            affinity_at_creation=wire.affinity,
            payload=payload,
            auth_tag=wire.auth_tag,
            algorithm=wire.algorithm,
            raw_size=wire.raw_size,
            origin_resonance=wire.resonance,
        )

    def verify(self, tx: Transmission) -> bool:
        """Check the origin's tag and the freshness of created_at."""
        return self.context.signatures.verify(
            tx.origin_peer_id,
            self.auth_material(tx),
            tx.created_at,
            tx.auth_tag,
        )

    def gate(self, tx: Transmission) -> float:
        """Resonance of a transmission against the current local affinity."""
        return self.context.resonance(
            self.context.affinity.level,
            tx.affinity_at_creation,
            tx.created_at,
        )

    async def process(self, incoming: Dict[str, Any], from_peer: str) -> Optional[Transmission]:
        """
        Handle an inbound transmission.

        Returns:
            The stored Verified transmission, or None for duplicates and
            transmissions below the resonance threshold

        Raises:
            MalformedMessage: unparseable transmission object
            SignatureInvalid: bad or stale tag (nothing stored)
            CompressionFailure: payload does not decompress or exceeds the size
                limit (nothing stored)
        """
        tx = self.from_wire(incoming)

        if tx.id in self.buffer or tx.id in self._in_flight:
            self.metrics.record_duplicate()
            logger.debug(f"Duplicate transmission {tx.id[:16]}... from {from_peer[:16]}...")
            return None

        if not self.verify(tx):
            self.metrics.record_rejected()
            raise SignatureInvalid(
                f"Transmission {tx.id[:16]}... from {from_peer[:16]}... failed verification"
            )

        if tx.raw_size > self.config.max_payload_size:
            self.metrics.record_rejected()
            raise CompressionFailure(
                f"Transmission {tx.id[:16]}... declares {tx.raw_size} bytes, "
                f"maximum is {self.config.max_payload_size}"
            )

        self._in_flight.add(tx.id)
        try:
            try:
                raw = await self.compression.decompress_async(
                    tx.payload, tx.algorithm, max_size=tx.raw_size
                )
            except CompressionFailure:
                self.metrics.record_rejected()
                raise

            if len(raw) != tx.raw_size:
                self.metrics.record_rejected()
                raise CompressionFailure(
                    f"Transmission {tx.id[:16]}... decompressed to {len(raw)} bytes, "
                    f"expected {tx.raw_size}"
                )

            tx.resonance = self.gate(tx)
            if tx.resonance < self.config.resonance_threshold:
                self.metrics.record_filtered()
                logger.debug(
                    f"Filtered transmission {tx.id[:16]}... "
                    f"(resonance {tx.resonance:.3f} < {self.config.resonance_threshold})"
                )
                return None

            now = self.context.now()
            tx.received_from = from_peer
            tx.latency = float(max(0, now - tx.created_at))
            self.buffer.promote(tx)

            ratio = len(tx.payload) / tx.raw_size if tx.raw_size else 1.0
            self.metrics.record_accepted(ratio)
            self.update_metrics()

            logger.debug(f"Accepted transmission {tx.id[:16]}... (resonance {tx.resonance:.3f})")
            return tx

        finally:
            self._in_flight.discard(tx.id)

    def settle(self, tx: Transmission) -> bool:
        """
        Promote a local Pending transmission once it has been handed to the network.

        The tag is recomputed and compared, then the transmission is gated
        against the current local affinity. Failing either drops it.

        Returns:
            True if the transmission is now Verified
        """
        if tx.id not in self.buffer.pending:
            return tx.state == TransmissionState.VERIFIED

        expected = self.context.signatures.sign(self.auth_material(tx), tx.created_at)
        if not hmac.compare_digest(expected, tx.auth_tag):
            self.buffer.drop(tx.id)
            self.metrics.record_rejected()
            logger.warning(f"Local transmission {tx.id[:16]}... failed re-verification")
            return False

        tx.resonance = self.gate(tx)
        if tx.resonance < self.config.resonance_threshold:
            self.buffer.drop(tx.id)
            self.metrics.record_filtered()
            logger.debug(f"Local transmission {tx.id[:16]}... filtered at settle")
            return False

        tx.latency = float(max(0, self.context.now() - tx.created_at))
        self.buffer.promote(tx)
        self.update_metrics()
        return True

    async def read(self, tx: Union[Transmission, str]) -> bytes:
        """Decompressed content of a stored transmission."""
        if isinstance(tx, str):
            stored = self.buffer.get(tx)
            if stored is None:
                raise KeyError(f"Unknown transmission: {tx}")
            tx = stored
        self.buffer.touch(tx.id)
        return await self.compression.decompress_async(tx.payload, tx.algorithm)

    def update_metrics(self):
        """Refresh rolling latency over Verified entries and the integrity score."""
        self.metrics.update(tx.latency for tx in self.buffer.verified.values())

    async def start(self):
        await self.buffer.start(on_sweep=self._after_sweep)

    async def stop(self):
        await self.buffer.stop()

    async def _after_sweep(self):
        self.update_metrics()
        if self.context.config.persist:
            await self.buffer.flush(self.context.config.snapshot_path)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.metrics.snapshot(),
            "buffer": self.buffer.get_stats(),
            "compression": self.compression.get_stats(),
        }
