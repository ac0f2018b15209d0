"""
Transmission payload compression.

Multi-codec engine used by the transmission pipeline. gzip is the default
wire codec; zlib, zstd, lz4 and brotli are available for nodes that agree
on them. Compression and decompression are CPU-bound, so the pipeline runs
them through the async wrappers, which hand the work to a worker thread.
"""

import io
import gzip
import zlib
import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import brotli
import lz4.frame as lz4
import zstandard as zstd

from .errors import CompressionFailure

logger = logging.getLogger(__name__)

# Input fed to the brotli decoder per step when output is bounded
BROTLI_FEED_SIZE = 256


class CompressionAlgorithm(Enum):
    """Supported payload codecs."""
    NONE = "none"
    GZIP = "gzip"    # Wire default
    ZLIB = "zlib"
    ZSTD = "zstd"
    LZ4 = "lz4"
    BROTLI = "brotli"


@dataclass
class CompressionResult:
    """Result of a compression operation."""
    algorithm: CompressionAlgorithm
    compressed_data: bytes
    original_size: int
    compressed_size: int
    compression_time_ms: float

    @property
    def compression_ratio(self) -> float:
        """
        Compressed size over raw size (lower is better).

        Empty input has no meaningful ratio and reports 1.0.
        """
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size


class CompressionEngine:
    """
    Codec dispatcher with usage statistics.

    Any codec error is surfaced as CompressionFailure.
    """

    def __init__(
        self,
        default_algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP,
        gzip_level: int = 6,
        zstd_level: int = 3,
    ):
        """
        Initialize compression engine.

        Args:
            default_algorithm: Codec used when none is specified
            gzip_level: gzip/zlib level (1-9)
            zstd_level: Zstandard level (1-22)
        """
        self.default_algorithm = default_algorithm
        self.gzip_level = gzip_level
        self.zstd_level = zstd_level

        self.stats: Dict[str, Any] = {
            "total_compressed": 0,
            "total_decompressed": 0,
            "total_original_bytes": 0,
            "total_compressed_bytes": 0,
            "failures": 0,
            "algorithm_usage": {},
        }

        self.compressors: Dict[CompressionAlgorithm, Callable[[bytes], bytes]] = {
            CompressionAlgorithm.NONE: lambda d: d,
            CompressionAlgorithm.GZIP: lambda d: gzip.compress(d, compresslevel=self.gzip_level),
            CompressionAlgorithm.ZLIB: lambda d: zlib.compress(d, level=self.gzip_level),
            CompressionAlgorithm.ZSTD: lambda d: zstd.ZstdCompressor(level=self.zstd_level).compress(d),
            CompressionAlgorithm.LZ4: lz4.compress,
            CompressionAlgorithm.BROTLI: lambda d: brotli.compress(d, quality=11),
        }
        self.decompressors: Dict[CompressionAlgorithm, Callable[[bytes], bytes]] = {
            CompressionAlgorithm.NONE: lambda d: d,
            CompressionAlgorithm.GZIP: gzip.decompress,
            CompressionAlgorithm.ZLIB: zlib.decompress,
            CompressionAlgorithm.ZSTD: self._decompress_zstd,
            CompressionAlgorithm.LZ4: lz4.decompress,
            CompressionAlgorithm.BROTLI: brotli.decompress,
        }
        # Decoders that stop once `limit` output bytes have been produced
        self.bounded_decompressors: Dict[CompressionAlgorithm, Callable[[bytes, int], bytes]] = {
            CompressionAlgorithm.NONE: lambda d, limit: d[:limit],
            CompressionAlgorithm.GZIP: lambda d, limit: self._inflate_bounded(d, limit, wbits=31),
            CompressionAlgorithm.ZLIB: lambda d, limit: self._inflate_bounded(d, limit, wbits=15),
            CompressionAlgorithm.ZSTD: self._zstd_bounded,
            CompressionAlgorithm.LZ4: lambda d, limit: lz4.LZ4FrameDecompressor().decompress(d, max_length=limit),
            CompressionAlgorithm.BROTLI: self._brotli_bounded,
        }

    @staticmethod
    def resolve(algorithm) -> CompressionAlgorithm:
        """Accept an enum member or its string value."""
        if isinstance(algorithm, CompressionAlgorithm):
            return algorithm
        try:
            return CompressionAlgorithm(str(algorithm).lower())
        except ValueError:
            raise CompressionFailure(f"Unsupported compression algorithm: {algorithm}")

    def compress(self, data: bytes, algorithm=None) -> CompressionResult:
        """
        Compress data.

        Args:
            data: Raw bytes
            algorithm: Codec (None = engine default)

        Returns:
            CompressionResult with compressed bytes and sizes

        Raises:
            CompressionFailure: if the codec fails
        """
        algorithm = self.resolve(algorithm or self.default_algorithm)

        start = time.perf_counter()
        try:
            compressed = self.compressors[algorithm](bytes(data))
        except Exception as e:
            self.stats["failures"] += 1
            raise CompressionFailure(f"{algorithm.value} compression failed: {e}") from e
        elapsed_ms = (time.perf_counter() - start) * 1000

        self._update_stats(algorithm, len(data), len(compressed))

        return CompressionResult(
            algorithm=algorithm,
            compressed_data=compressed,
            original_size=len(data),
            compressed_size=len(compressed),
            compression_time_ms=elapsed_ms,
        )

    def decompress(self, compressed_data: bytes, algorithm, max_size: Optional[int] = None) -> bytes:
        """
        Decompress data.

        Args:
            compressed_data: Codec output
            algorithm: Codec that produced it
            max_size: Largest acceptable output. Decoding stops one byte past
                it, so hostile input never expands beyond the bound.

        Raises:
            CompressionFailure: on corrupt input, unknown codec or output
                larger than max_size
        """
        algorithm = self.resolve(algorithm)
        try:
            if max_size is None:
                data = self.decompressors[algorithm](bytes(compressed_data))
            else:
                data = self.bounded_decompressors[algorithm](bytes(compressed_data), max_size + 1)
        except Exception as e:
            self.stats["failures"] += 1
            raise CompressionFailure(f"{algorithm.value} decompression failed: {e}") from e

        if max_size is not None and len(data) > max_size:
            self.stats["failures"] += 1
            raise CompressionFailure(
                f"{algorithm.value} output exceeds limit of {max_size} bytes"
            )

        self.stats["total_decompressed"] += 1
        return data

    async def compress_async(self, data: bytes, algorithm=None) -> CompressionResult:
        return await asyncio.to_thread(self.compress, data, algorithm)

    async def decompress_async(
        self,
        compressed_data: bytes,
        algorithm,
        max_size: Optional[int] = None
    ) -> bytes:
        return await asyncio.to_thread(self.decompress, compressed_data, algorithm, max_size)

    def _decompress_zstd(self, data: bytes) -> bytes:
        # Streaming object: does not require the content size in the frame header
        return zstd.ZstdDecompressor().decompressobj().decompress(data)

    @staticmethod
    def _inflate_bounded(data: bytes, limit: int, wbits: int) -> bytes:
        return zlib.decompressobj(wbits=wbits).decompress(data, limit)

    @staticmethod
    def _zstd_bounded(data: bytes, limit: int) -> bytes:
        reader = zstd.ZstdDecompressor().stream_reader(io.BytesIO(data))
        chunks = []
        size = 0
        while size < limit:
            chunk = reader.read(min(65536, limit - size))
            if not chunk:
                break
            chunks.append(chunk)
            size += len(chunk)
        return b"".join(chunks)

    @staticmethod
    def _brotli_bounded(data: bytes, limit: int) -> bytes:
        decompressor = brotli.Decompressor()
        chunks = []
        size = 0
        for offset in range(0, len(data), BROTLI_FEED_SIZE):
            chunk = decompressor.process(data[offset:offset + BROTLI_FEED_SIZE])
            chunks.append(chunk)
            size += len(chunk)
            if size >= limit:
                break
        return b"".join(chunks)

    def _update_stats(self, algorithm: CompressionAlgorithm, original_size: int, compressed_size: int):
        self.stats["total_compressed"] += 1
        self.stats["total_original_bytes"] += original_size
        self.stats["total_compressed_bytes"] += compressed_size

        usage = self.stats["algorithm_usage"]
        usage[algorithm.value] = usage.get(algorithm.value, 0) + 1

    def get_stats(self) -> Dict[str, Any]:
        """Get compression statistics."""
        original = self.stats["total_original_bytes"]
        overall_ratio = (
            self.stats["total_compressed_bytes"] / original
            if original > 0
            else 1.0
        )
        return {
            **self.stats,
            "overall_compression_ratio": overall_ratio,
        }
