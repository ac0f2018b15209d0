"""
Ghost Net node configuration.

Sections are pydantic models so that defaults and their meaning live in
one place. All durations are integer milliseconds.

Environment overrides (see GhostNetConfig.from_env):
    GHOSTNET_ENV, GHOSTNET_DATA_DIR, GHOSTNET_LOG_LEVEL, GHOSTNET_PERSIST,
    GHOSTNET_HOST, GHOSTNET_PORT, GHOSTNET_MAX_CONNECTIONS,
    GHOSTNET_HEARTBEAT_INTERVAL_MS, GHOSTNET_CONNECTION_TIMEOUT_MS,
    GHOSTNET_HANDSHAKE_TIMEOUT_MS, GHOSTNET_REPLAY_WINDOW_MS,
    GHOSTNET_RESONANCE_THRESHOLD, GHOSTNET_ARCHIVE_AGE_MS,
    GHOSTNET_MAX_ARCHIVE_SIZE, GHOSTNET_COMPRESSION
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

logger = logging.getLogger(__name__)


# Fine structure constant, the harmonic base of every resonance computation
BASE_FREQUENCY = 0.0072973525693
DAY_MS = 1000 * 60 * 60 * 24
MAX_CONNECTION_LIMIT = 100
SUPPORTED_CODECS = ("gzip", "zlib", "zstd", "lz4", "brotli", "none")


class ResonanceConfig(BaseModel):
    """Parameters of the resonance (affinity) formula."""

    base_frequency: float = Field(
        default=BASE_FREQUENCY,
        description="Harmonic oscillation frequency applied to the current time in ms"
    )
    decay_window_ms: int = Field(
        default=30 * DAY_MS,
        description="Temporal decay constant for the age of the reference event"
    )
    baseline_range: Tuple[float, float] = Field(
        default=(0.3, 0.7),
        description="Range from which a new identity draws its affinity base"
    )


class RoutingConfig(BaseModel):
    """Routing table tuning."""

    significant_change: float = Field(
        default=0.1, description="Strength change that triggers re-optimization"
    )
    tie_threshold: float = Field(
        default=0.1, description="Strength differences up to this are ties broken by latency"
    )
    max_routes: int = Field(default=8, description="Neighbors kept per routing entry")
    max_depth: int = Field(default=5, description="Maximum hops explored by find_path")


class PeerConfig(BaseModel):
    """Peer connection lifecycle settings."""

    listen_host: str = Field(default="0.0.0.0", description="Host for the TCP host shell")
    listen_port: int = Field(default=3000, description="Port for the TCP host shell")
    max_connections: int = Field(default=33, description="Maximum concurrent connections")
    heartbeat_interval_ms: int = Field(default=5000, description="Pulse interval per peer")
    connection_timeout_ms: int = Field(
        default=15000, description="Peers silent for longer than this are disconnected"
    )
    handshake_timeout_ms: int = Field(default=10000, description="Time allowed to complete a handshake")
    replay_window_ms: int = Field(default=5000, description="Maximum accepted clock skew of signed messages")
    maintenance_interval_ms: int = Field(default=5000, description="Heartbeat timeout check interval")
    inbox_size: int = Field(default=256, description="Bounded per-connection message queue")


class TransmissionConfig(BaseModel):
    """Transmission buffer and pipeline settings."""

    resonance_threshold: float = Field(
        default=0.3, description="Minimum resonance for an inbound transmission to be kept"
    )
    compression: str = Field(default="gzip", description="Payload codec")
    max_payload_size: int = Field(default=50 * 1024 * 1024, description="Largest raw payload accepted")
    max_pending: int = Field(default=1000, description="Pending tier capacity")
    pending_timeout_ms: int = Field(default=30000, description="Pending entries older than this are dropped")
    max_verified: int = Field(default=10000, description="Verified tier capacity")
    max_archive_size: int = Field(default=100000, description="Archived tier capacity")
    archive_age_ms: int = Field(default=60 * 60 * 1000, description="Verified entries idle this long are archived")
    sweep_interval_ms: int = Field(default=60000, description="Archival sweep interval")


class GhostNetConfig(BaseModel):
    """Root configuration of a Ghost Net node."""

    environment: str = Field(default="development", description="Deployment environment")
    data_dir: Path = Field(default=Path("./ghostnet_data"), description="Identity key and snapshots")
    snapshot_file: str = Field(default="transmissions.msgpack", description="Buffer snapshot file name")
    persist: bool = Field(default=False, description="Flush the buffer snapshot on shutdown")
    log_level: str = Field(default="INFO", description="Logging level used by the CLI")

    resonance: ResonanceConfig = Field(default_factory=ResonanceConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    peer: PeerConfig = Field(default_factory=PeerConfig)
    transmission: TransmissionConfig = Field(default_factory=TransmissionConfig)

    @property
    def snapshot_path(self) -> Path:
        return Path(self.data_dir) / self.snapshot_file

    @classmethod
    def load(cls, data: Optional[Dict[str, Any]] = None) -> "GhostNetConfig":
        """
        Build and validate a configuration from a (possibly nested) dict.

        Raises:
            ConfigError: if a field has the wrong type or a constraint fails
        """
        try:
            config = cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        return config.validate_config()

    @classmethod
    def from_env(cls) -> "GhostNetConfig":
        """Build a configuration from GHOSTNET_* environment variables."""
        peer: Dict[str, Any] = {}
        transmission: Dict[str, Any] = {}
        data: Dict[str, Any] = {"peer": peer, "transmission": transmission}

        data["environment"] = os.getenv("GHOSTNET_ENV", "development")
        data["data_dir"] = os.getenv("GHOSTNET_DATA_DIR", "./ghostnet_data")
        data["log_level"] = os.getenv("GHOSTNET_LOG_LEVEL", "INFO")
        data["persist"] = os.getenv("GHOSTNET_PERSIST", "false").lower() == "true"

        env_fields = [
            ("GHOSTNET_HOST", peer, "listen_host"),
            ("GHOSTNET_PORT", peer, "listen_port"),
            ("GHOSTNET_MAX_CONNECTIONS", peer, "max_connections"),
            ("GHOSTNET_HEARTBEAT_INTERVAL_MS", peer, "heartbeat_interval_ms"),
            ("GHOSTNET_CONNECTION_TIMEOUT_MS", peer, "connection_timeout_ms"),
            ("GHOSTNET_HANDSHAKE_TIMEOUT_MS", peer, "handshake_timeout_ms"),
            ("GHOSTNET_REPLAY_WINDOW_MS", peer, "replay_window_ms"),
            ("GHOSTNET_RESONANCE_THRESHOLD", transmission, "resonance_threshold"),
            ("GHOSTNET_ARCHIVE_AGE_MS", transmission, "archive_age_ms"),
            ("GHOSTNET_MAX_ARCHIVE_SIZE", transmission, "max_archive_size"),
            ("GHOSTNET_COMPRESSION", transmission, "compression"),
        ]
        for env_name, section, key in env_fields:
            value = os.getenv(env_name)
            if value is not None:
                section[key] = value

        return cls.load(data)

    def validate_config(self) -> "GhostNetConfig":
        """
        Cross-field checks that pydantic field types cannot express.

        Returns:
            self, for chaining

        Raises:
            ConfigError: describing the first violated constraint
        """
        low, high = self.resonance.baseline_range
        if not 0.0 <= low < high <= 1.0:
            raise ConfigError(f"Invalid baseline range: {low} >= {high} or outside [0, 1]")

        if self.resonance.decay_window_ms <= 0:
            raise ConfigError("decay_window_ms must be positive")

        for name in ("significant_change", "tie_threshold"):
            value = getattr(self.routing, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"routing.{name} must be within [0, 1], got {value}")

        if self.routing.max_routes < 1 or self.routing.max_depth < 1:
            raise ConfigError("routing.max_routes and routing.max_depth must be at least 1")

        peer = self.peer
        if peer.max_connections > MAX_CONNECTION_LIMIT:
            raise ConfigError(f"max_connections exceeds limit of {MAX_CONNECTION_LIMIT}")
        if peer.max_connections < 1:
            raise ConfigError("max_connections must be at least 1")

        for name in (
            "heartbeat_interval_ms", "connection_timeout_ms", "handshake_timeout_ms",
            "replay_window_ms", "maintenance_interval_ms", "inbox_size"
        ):
            if getattr(peer, name) <= 0:
                raise ConfigError(f"peer.{name} must be positive")

        if peer.connection_timeout_ms <= peer.heartbeat_interval_ms:
            raise ConfigError("connection_timeout_ms must be greater than heartbeat_interval_ms")

        tx = self.transmission
        if not 0.0 <= tx.resonance_threshold <= 1.0:
            raise ConfigError(f"resonance_threshold must be within [0, 1], got {tx.resonance_threshold}")
        if tx.compression not in SUPPORTED_CODECS:
            raise ConfigError(f"Unsupported compression codec: {tx.compression}")

        for name in (
            "max_payload_size", "max_pending", "pending_timeout_ms", "max_verified",
            "max_archive_size", "archive_age_ms", "sweep_interval_ms"
        ):
            if getattr(tx, name) <= 0:
                raise ConfigError(f"transmission.{name} must be positive")

        return self


def setup_logging(config: GhostNetConfig):
    """Configure root logging for a host process (CLI). Library code never calls this."""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
