"""
Signature Service

Produces and verifies authentication tags bound to a signer id and a
timestamp. Tags are deterministic Ed25519 signatures over

    "<signer_id>|<timestamp>|" + payload

so the timestamp is part of the signed material. Verification rejects any
timestamp outside the replay window before looking at the tag.

This is authentication only. Nothing here provides confidentiality.
"""

import logging
from typing import Callable, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from .clock import now_ms
from .identity import Identity, compute_peer_id

logger = logging.getLogger(__name__)


DEFAULT_REPLAY_WINDOW_MS = 5000


def signing_material(signer_id: str, timestamp: int, payload: Union[bytes, str]) -> bytes:
    """Canonical bytes covered by a tag."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return f"{signer_id}|{int(timestamp)}|".encode("utf-8") + payload


class SignatureService:
    """
    Signs with the local identity and verifies tags from known peers.

    Peer public keys are learned from handshakes. A key is only accepted
    for the peer id it hashes to, so ids cannot be claimed with a foreign key.
    """

    def __init__(
        self,
        identity: Identity,
        replay_window_ms: int = DEFAULT_REPLAY_WINDOW_MS,
        clock: Optional[Callable[[], int]] = None
    ):
        self.identity = identity
        self.replay_window_ms = replay_window_ms
        self.clock = clock or now_ms

        self._peer_keys: Dict[str, ed25519.Ed25519PublicKey] = {
            identity.id: identity.signing_key.public_key()
        }

        self.stats = {
            "signed": 0,
            "verified": 0,
            "rejected": 0,
            "stale": 0,
        }

    def sign(self, payload: Union[bytes, str], timestamp: int) -> str:
        """
        Sign payload at timestamp with the local identity.

        Returns:
            Hex-encoded tag
        """
        tag = self.identity.sign_bytes(signing_material(self.identity.id, timestamp, payload))
        self.stats["signed"] += 1
        return tag.hex()

    def register_peer_key(self, peer_id: str, public_key_bytes: bytes) -> bool:
        """
        Remember a peer's public key.

        Returns:
            False if the key does not belong to peer_id or is not a valid key
        """
        if compute_peer_id(public_key_bytes) != peer_id:
            logger.warning(f"Public key does not match claimed id {peer_id[:16]}...")
            return False
        try:
            self._peer_keys[peer_id] = ed25519.Ed25519PublicKey.from_public_bytes(public_key_bytes)
        except ValueError:
            logger.warning(f"Invalid public key for {peer_id[:16]}...")
            return False
        return True

    def knows(self, peer_id: str) -> bool:
        return peer_id in self._peer_keys

    def is_fresh(self, timestamp: int, now: Optional[int] = None) -> bool:
        """True if timestamp lies within the replay window around now."""
        current = self.clock() if now is None else now
        return abs(current - int(timestamp)) <= self.replay_window_ms

    def verify(
        self,
        signer_id: Optional[str],
        payload: Union[bytes, str, None],
        timestamp: Optional[int],
        tag: Optional[str]
    ) -> bool:
        """
        Verify a tag. Never raises.

        Returns False when any field is missing, the timestamp is stale,
        the signer is unknown, or the tag does not match.
        """
        if not signer_id or payload is None or timestamp is None or not tag:
            self.stats["rejected"] += 1
            return False

        try:
            if not self.is_fresh(timestamp):
                self.stats["stale"] += 1
                self.stats["rejected"] += 1
                logger.debug(f"Stale signature from {str(signer_id)[:16]}... at {timestamp}")
                return False

            key = self._peer_keys.get(signer_id)
            if key is None:
                self.stats["rejected"] += 1
                logger.debug(f"No key for signer {str(signer_id)[:16]}...")
                return False

            key.verify(bytes.fromhex(tag), signing_material(signer_id, timestamp, payload))

        except (InvalidSignature, ValueError, TypeError):
            self.stats["rejected"] += 1
            return False

        self.stats["verified"] += 1
        return True

    def get_stats(self) -> Dict:
        return {**self.stats, "known_keys": len(self._peer_keys)}
