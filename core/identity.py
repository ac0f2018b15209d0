"""
Node identity.

Each Ghost Net node has:
- Ed25519 signing key (the signing secret)
- 128-bit id derived from the public key hash (self-certifying)
- Creation timestamp (reference event for resonance decay)
- Affinity base drawn from the configured baseline range
"""

import os
import random
import hashlib
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives import serialization

from .clock import now_ms

logger = logging.getLogger(__name__)

KEY_FILE = "node_key.pem"
PEER_ID_HEX_LENGTH = 32  # 128 bits


def compute_peer_id(public_key_bytes: bytes) -> str:
    """Derive the 128-bit hex peer id from raw Ed25519 public key bytes."""
    return hashlib.sha256(public_key_bytes).hexdigest()[:PEER_ID_HEX_LENGTH]


def _raw_public_bytes(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


@dataclass(frozen=True)
class Identity:
    """Immutable cryptographic identity of the local node."""

    id: str
    created_at: int
    affinity_base: float
    signing_key: ed25519.Ed25519PrivateKey = field(repr=False, compare=False)

    @property
    def public_key_bytes(self) -> bytes:
        return _raw_public_bytes(self.signing_key.public_key())

    @property
    def signing_secret(self) -> bytes:
        """Raw private key bytes."""
        return self.signing_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )

    def sign_bytes(self, material: bytes) -> bytes:
        return self.signing_key.sign(material)

    def to_wire(self) -> Dict[str, Union[str, int, float]]:
        """Public part of the identity, as carried by handshake messages."""
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "affinityBase": self.affinity_base,
            "publicKey": self.public_key_bytes.hex(),
        }

    @classmethod
    def from_key(
        cls,
        signing_key: ed25519.Ed25519PrivateKey,
        baseline_range: Tuple[float, float] = (0.3, 0.7),
        clock: Optional[Callable[[], int]] = None
    ) -> "Identity":
        low, high = baseline_range
        affinity = min(1.0, max(0.0, random.uniform(low, high)))
        return cls(
            id=compute_peer_id(_raw_public_bytes(signing_key.public_key())),
            created_at=(clock or now_ms)(),
            affinity_base=affinity,
            signing_key=signing_key,
        )

    @classmethod
    def generate(
        cls,
        baseline_range: Tuple[float, float] = (0.3, 0.7),
        clock: Optional[Callable[[], int]] = None
    ) -> "Identity":
        """Create a fresh in-memory identity."""
        return cls.from_key(ed25519.Ed25519PrivateKey.generate(), baseline_range, clock)

    @classmethod
    def load_or_generate(
        cls,
        data_dir: Union[str, Path],
        baseline_range: Tuple[float, float] = (0.3, 0.7),
        clock: Optional[Callable[[], int]] = None
    ) -> "Identity":
        """
        Load the signing key from data_dir or generate and save a new one.

        The peer id is stable across restarts; created_at and the affinity
        base are fresh for every process.
        """
        key_path = Path(data_dir) / KEY_FILE

        if key_path.exists():
            with open(key_path, "rb") as f:
                signing_key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(signing_key, ed25519.Ed25519PrivateKey):
                raise ValueError(f"{key_path} does not hold an Ed25519 key")
            logger.info("Loaded existing node identity")
        else:
            os.makedirs(data_dir, exist_ok=True)
            signing_key = ed25519.Ed25519PrivateKey.generate()
            pem = signing_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            )
            with open(key_path, "wb") as f:
                f.write(pem)
            logger.info("Generated new node identity")

        return cls.from_key(signing_key, baseline_range, clock)
