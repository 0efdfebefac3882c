"""
Compression helpers for large text payloads and file chunks

Compression is only attempted when it is likely to pay off: payloads under
1KB are sent as-is, and so is data whose byte entropy is above 7 bits/byte
(already compressed media, archives, ciphertext).
"""
import math
import zlib
import logging
from collections import Counter
from typing import Optional

from clipsync.common.errors import CompressionError

logger = logging.getLogger(__name__)

MIN_COMPRESS_SIZE = 1024
ENTROPY_THRESHOLD = 7.0
COMPRESSION_LEVEL = 6


def calculate_entropy(data: bytes) -> float:
    """Shannon entropy of the byte distribution, in bits per byte"""
    if not data:
        return 0.0

    total = len(data)
    entropy = 0.0
    for count in Counter(data).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy


def should_compress(data: bytes) -> bool:
    """Whether compressing data is worth the CPU"""
    if len(data) < MIN_COMPRESS_SIZE:
        return False
    return calculate_entropy(data) < ENTROPY_THRESHOLD


def compress(data: bytes) -> Optional[bytes]:
    """
    Compress data

    Returns:
        Compressed bytes, or None when the output would not be smaller than
        the input. Callers fall back to sending the raw bytes.
    """
    compressed = zlib.compress(data, COMPRESSION_LEVEL)
    if len(compressed) >= len(data):
        logger.debug(f"Compression not beneficial ({len(data)} -> {len(compressed)} bytes)")
        return None
    return compressed


def decompress(data: bytes, original_size: int) -> bytes:
    """
    Decompress data into a buffer of exactly original_size bytes

    Raises:
        CompressionError: If the stream is corrupt or the recovered length
            differs from original_size
    """
    if original_size is None or original_size < 0:
        raise CompressionError(f"Invalid original size: {original_size}")

    decompressor = zlib.decompressobj()
    try:
        # One extra byte so an oversized stream shows up as a length mismatch
        result = decompressor.decompress(data, original_size + 1)
    except zlib.error as e:
        raise CompressionError(f"Decompression failed: {e}")

    if len(result) != original_size or not decompressor.eof:
        raise CompressionError(
            f"Decompressed size mismatch: expected {original_size}, got {len(result)}"
        )
    return result
