"""
Ghost Net Exceptions

Error taxonomy for the overlay core. None of these are fatal to the
process: the worst outcome is a dropped connection or a discarded message.
"""

from typing import Optional


class GhostNetError(Exception):
    """Base exception for Ghost Net errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or "ghostnet_error"
        super().__init__(self.message)


class SignatureInvalid(GhostNetError):
    """Signature verification failed or the timestamp is outside the replay window."""

    def __init__(self, message: str = "Invalid or stale signature", code: str = "signature_invalid"):
        super().__init__(message, code)


class MalformedMessage(GhostNetError):
    """Message could not be parsed or is missing a required field."""

    def __init__(self, message: str = "Malformed message", code: str = "malformed_message"):
        super().__init__(message, code)


class HandshakeTimeout(GhostNetError):
    """No valid handshake arrived within the handshake timeout."""

    def __init__(self, peer: str = "unknown", timeout_ms: int = 0):
        self.peer = peer
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Handshake with {peer} timed out after {timeout_ms}ms",
            "handshake_timeout"
        )


class CompressionFailure(GhostNetError):
    """Compression or decompression of a transmission payload failed."""

    def __init__(self, message: str = "Compression failed", code: str = "compression_failure"):
        super().__init__(message, code)


class CapacityExceeded(GhostNetError):
    """A buffer tier is full. The oldest entry is evicted and the operation proceeds."""

    def __init__(self, tier: str, capacity: int):
        self.tier = tier
        self.capacity = capacity
        super().__init__(f"{tier} buffer at capacity ({capacity})", "capacity_exceeded")


class ConfigError(GhostNetError):
    """Invalid node configuration."""

    def __init__(self, message: str):
        super().__init__(message, "config_error")
