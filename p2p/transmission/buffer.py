"""
Transmission Buffer

Owns the three transmission tiers and their retention policy:

    Pending --promote--> Verified --idle > archive_age--> Archived --overflow--> evicted

- Every tier is insertion ordered; capacity overflow evicts the oldest
  entry of that tier (verified overflow moves it into the archive)
- Archive overflow evicts strictly FIFO by archive insertion
- The id -> signature map is owned here and entries are removed together
  with the transmission they belong to
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

import msgpack

from core.clock import now_ms
from core.config import TransmissionConfig
from core.errors import CapacityExceeded

logger = logging.getLogger(__name__)


SNAPSHOT_VERSION = 1


class TransmissionState(Enum):
    """Lifecycle state of a transmission."""
    PENDING = "pending"
    VERIFIED = "verified"
    ARCHIVED = "archived"


@dataclass
class Transmission:
    """A signed, compressed unit of content."""

    id: str
    created_at: int
    origin_peer_id: str
    affinity_at_creation: float
    payload: bytes
    auth_tag: str
    state: TransmissionState = TransmissionState.PENDING
    algorithm: str = "gzip"
    raw_size: int = 0
    origin_resonance: float = 0.0
    resonance: Optional[float] = None
    received_from: Optional[str] = None
    latency: float = 0.0
    last_access: int = 0

    def touch(self, now: int):
        """Advance last_access; never moves backwards."""
        self.last_access = max(self.last_access, int(now))

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "origin_peer_id": self.origin_peer_id,
            "affinity_at_creation": self.affinity_at_creation,
            "payload": self.payload,
            "auth_tag": self.auth_tag,
            "state": self.state.value,
            "algorithm": self.algorithm,
            "raw_size": self.raw_size,
            "origin_resonance": self.origin_resonance,
            "resonance": self.resonance,
            "received_from": self.received_from,
            "latency": self.latency,
            "last_access": self.last_access,
        }

    @classmethod
    def from_record(cls, record: Dict) -> "Transmission":
        return cls(**{**record, "state": TransmissionState(record["state"])})


class TransmissionBuffer:
    """
    Pending / verified / archived storage with bounded size.

    All mutation happens on the event loop that owns the node.
    """

    def __init__(
        self,
        config: Optional[TransmissionConfig] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        """
        Initialize transmission buffer.

        Args:
            config: Capacities and ages
            clock: Millisecond clock
        """
        self.config = config or TransmissionConfig()
        self.clock = clock or now_ms

        self.pending: "OrderedDict[str, Transmission]" = OrderedDict()
        self.verified: "OrderedDict[str, Transmission]" = OrderedDict()
        self.archived: "OrderedDict[str, Transmission]" = OrderedDict()

        # Signature per stored transmission (id -> auth tag)
        self.signatures: Dict[str, str] = {}

        self._sweep_task: Optional[asyncio.Task] = None
        self._on_sweep: Optional[Callable[[], Awaitable[None]]] = None

        self.stats = {
            "pending_added": 0,
            "promoted": 0,
            "archived": 0,
            "evicted_pending": 0,
            "evicted_archive": 0,
            "expired_pending": 0,
            "capacity_events": 0,
            "sweeps": 0,
        }

    def __contains__(self, tx_id: str) -> bool:
        return tx_id in self.pending or tx_id in self.verified or tx_id in self.archived

    def __len__(self) -> int:
        return len(self.pending) + len(self.verified) + len(self.archived)

    def get(self, tx_id: str) -> Optional[Transmission]:
        for tier in (self.verified, self.pending, self.archived):
            if tx_id in tier:
                return tier[tx_id]
        return None

    def signature_of(self, tx_id: str) -> Optional[str]:
        return self.signatures.get(tx_id)

    def add_pending(self, tx: Transmission) -> Transmission:
        """Store a transmission awaiting verification."""
        if len(self.pending) >= self.config.max_pending:
            self._capacity_event("pending", self.config.max_pending)
            oldest_id, _ = self.pending.popitem(last=False)
            self.signatures.pop(oldest_id, None)
            self.stats["evicted_pending"] += 1
            logger.warning(f"Evicted oldest pending transmission {oldest_id[:16]}...")

        tx.state = TransmissionState.PENDING
        tx.touch(self.clock())
        self.pending[tx.id] = tx
        self.signatures[tx.id] = tx.auth_tag
        self.stats["pending_added"] += 1
        return tx

    def promote(self, tx: Transmission) -> Transmission:
        """
        Move a transmission into the verified tier.

        Accepts entries from pending or new inbound transmissions.
        """
        self.pending.pop(tx.id, None)

        if tx.id not in self.verified and len(self.verified) >= self.config.max_verified:
            self._capacity_event("verified", self.config.max_verified)
            _, oldest = self.verified.popitem(last=False)
            self._archive(oldest)
            self._trim_archive()

        tx.state = TransmissionState.VERIFIED
        tx.touch(self.clock())
        self.verified[tx.id] = tx
        self.signatures[tx.id] = tx.auth_tag
        self.stats["promoted"] += 1
        return tx

    def touch(self, tx_id: str) -> Optional[Transmission]:
        """Record an access to a verified transmission (delays archival)."""
        tx = self.verified.get(tx_id)
        if tx is not None:
            tx.touch(self.clock())
        return tx

    def drop(self, tx_id: str) -> bool:
        """Remove a transmission from whichever tier holds it."""
        for tier in (self.pending, self.verified, self.archived):
            if tier.pop(tx_id, None) is not None:
                self.signatures.pop(tx_id, None)
                return True
        return False

    def _archive(self, tx: Transmission):
        tx.state = TransmissionState.ARCHIVED
        self.archived[tx.id] = tx
        self.stats["archived"] += 1

    def _trim_archive(self) -> int:
        evicted = 0
        while len(self.archived) > self.config.max_archive_size:
            oldest_id, _ = self.archived.popitem(last=False)
            self.signatures.pop(oldest_id, None)
            evicted += 1
        if evicted:
            self.stats["evicted_archive"] += evicted
            logger.debug(f"Evicted {evicted} archived transmissions")
        return evicted

    def _capacity_event(self, tier: str, capacity: int):
        event = CapacityExceeded(tier, capacity)
        self.stats["capacity_events"] += 1
        logger.warning(f"{event.message}, evicting oldest entry")

    def sweep(self, now: Optional[int] = None) -> Dict[str, int]:
        """
        Periodic retention pass.

        1. Verified entries idle longer than archive_age move to the archive
        2. Archive is trimmed oldest-first to max_archive_size
        3. Pending entries older than pending_timeout are dropped

        Returns:
            Counts of archived, evicted and expired entries
        """
        if now is None:
            now = self.clock()

        cutoff = now - self.config.archive_age_ms
        stale = [tx for tx in self.verified.values() if tx.last_access < cutoff]
        for tx in stale:
            del self.verified[tx.id]
            self._archive(tx)

        evicted = self._trim_archive()

        pending_cutoff = now - self.config.pending_timeout_ms
        expired = [tx_id for tx_id, tx in self.pending.items() if tx.created_at < pending_cutoff]
        for tx_id in expired:
            del self.pending[tx_id]
            self.signatures.pop(tx_id, None)
        self.stats["expired_pending"] += len(expired)

        self.stats["sweeps"] += 1
        if stale or evicted or expired:
            logger.info(
                f"Sweep: archived {len(stale)}, evicted {evicted}, "
                f"expired {len(expired)} pending"
            )

        return {"archived": len(stale), "evicted": evicted, "expired": len(expired)}

    async def start(self, on_sweep: Optional[Callable[[], Awaitable[None]]] = None):
        """Start the periodic sweep task."""
        if self._sweep_task is not None:
            return
        self._on_sweep = on_sweep
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Archival sweep every {self.config.sweep_interval_ms}ms")

    async def stop(self):
        """Cancel the sweep task."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        await asyncio.gather(self._sweep_task, return_exceptions=True)
        self._sweep_task = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval_ms / 1000)
            try:
                self.sweep()
                if self._on_sweep is not None:
                    await self._on_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Archival sweep failed: {e}")

    def snapshot(self) -> bytes:
        """msgpack snapshot of the verified and archived tiers."""
        return msgpack.packb({
            "version": SNAPSHOT_VERSION,
            "verified": [tx.to_record() for tx in self.verified.values()],
            "archived": [tx.to_record() for tx in self.archived.values()],
        }, use_bin_type=True)

    def restore(self, data: bytes) -> int:
        """
        Load a snapshot produced by snapshot(). Existing ids are kept.

        Returns:
            Number of transmissions restored
        """
        snapshot = msgpack.unpackb(data, raw=False)
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version: {snapshot.get('version')}")

        # Decode everything before touching the tiers
        entries = [
            (tier, Transmission.from_record(record))
            for tier_name, tier in (("verified", self.verified), ("archived", self.archived))
            for record in snapshot.get(tier_name, [])
        ]

        restored = 0
        for tier, tx in entries:
            if tx.id in self:
                continue
            tier[tx.id] = tx
            self.signatures[tx.id] = tx.auth_tag
            restored += 1

        while len(self.verified) > self.config.max_verified:
            _, oldest = self.verified.popitem(last=False)
            self._archive(oldest)
        self._trim_archive()
        return restored

    async def flush(self, path: Union[str, Path]) -> bool:
        """
        Best-effort write of the snapshot to path.

        Returns:
            False if the write failed (logged, not raised)
        """
        data = self.snapshot()
        path = Path(path)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.warning(f"Buffer flush to {path} failed: {e}")
            return False

        logger.info(f"Flushed {len(self.verified) + len(self.archived)} transmissions to {path}")
        return True

    async def load(self, path: Union[str, Path]) -> int:
        """
        Best-effort restore of a snapshot from path.

        Returns:
            Number restored; 0 if the file is missing, unreadable or not a
            valid snapshot (logged, not raised)
        """
        path = Path(path)
        if not path.exists():
            return 0
        try:
            data = await asyncio.to_thread(path.read_bytes)
            restored = self.restore(data)
        except (OSError, msgpack.UnpackException, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable snapshot {path}: {e}")
            return 0
        logger.info(f"Restored {restored} transmissions from {path}")
        return restored

    def ids(self, state: TransmissionState) -> List[str]:
        tier = {
            TransmissionState.PENDING: self.pending,
            TransmissionState.VERIFIED: self.verified,
            TransmissionState.ARCHIVED: self.archived,
        }[state]
        return list(tier.keys())

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "pending": len(self.pending),
            "verified": len(self.verified),
            "archive": len(self.archived),
            "signatures": len(self.signatures),
        }
