"""
Deckforge - Cache Value Codec

JSON serialization, zlib compression and size estimation for cached values.
"""
from __future__ import annotations

import json
import sys
import zlib
from typing import Any, Tuple, Union

import numpy as np

from core.errors import CacheError

Payload = Union[str, bytes, Any]


def serialize(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise CacheError(
            f"Failed to serialize value: {e}",
            operation="serialize",
            cause=e,
        ) from e


def deserialize(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as e:
        raise CacheError(
            f"Failed to deserialize value: {e}",
            operation="deserialize",
            cause=e,
        ) from e


def compress(payload: str) -> bytes:
    return zlib.compress(payload.encode("utf-8"))


def decompress(blob: bytes) -> str:
    try:
        return zlib.decompress(blob).decode("utf-8")
    except (zlib.error, UnicodeDecodeError) as e:
        raise CacheError(
            f"Failed to decompress value: {e}",
            operation="decompress",
            cause=e,
        ) from e


def estimate_size(payload: Payload) -> int:
    """Estimate the memory footprint of a stored payload in bytes."""
    if isinstance(payload, str):
        return len(payload.encode("utf-8"))
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    if isinstance(payload, np.ndarray):
        return payload.nbytes
    return sys.getsizeof(payload)


def encode(
    value: Any,
    serialize_value: bool = True,
    compress_value: bool = True,
    compression_threshold: int = 1024,
) -> Tuple[Payload, bool, bool, int]:
    """
    Encode a value for storage.

    Returns ``(payload, serialized, compressed, size)``. Only serialized
    text larger than ``compression_threshold`` bytes is compressed, and
    only when compression actually shrinks it.
    """
    payload: Payload = value
    serialized = False
    compressed = False

    if serialize_value:
        payload = serialize(value)
        serialized = True

    if compress_value and isinstance(payload, str):
        raw_size = estimate_size(payload)
        if raw_size > compression_threshold:
            blob = compress(payload)
            if len(blob) < raw_size:
                payload = blob
                compressed = True

    return payload, serialized, compressed, estimate_size(payload)


def decode(payload: Payload, serialized: bool, compressed: bool) -> Any:
    if compressed:
        payload = decompress(payload)
    if serialized:
        return deserialize(payload)
    return payload
