# storage/snapshot.py
"""
Versioned, gzip-compressed container for serialized ANN indexes.

Container layout (before compression):
    MAGIC (6 bytes) | version (1 byte) | backend name length (1 byte)
    | backend name (utf-8) | payload

Stored as a blob record ``{"compressed": True, "version": N, "data": bytes}``.
A record with ``compressed`` false is the legacy format: raw payload bytes
with no container.
"""

import gzip
import zlib
from typing import Any

from ..errors import SnapshotFormatError

MAGIC = b"RCSNAP"
FORMAT_VERSION = 1
LEGACY_BACKEND = "legacy"


def encode_snapshot(payload: bytes, backend_name: str) -> dict[str, Any]:
    name = backend_name.encode("utf-8")
    if len(name) > 255:
        raise ValueError("backend name must encode to at most 255 bytes")
    container = MAGIC + bytes([FORMAT_VERSION, len(name)]) + name + payload
    return {
        "compressed": True,
        "version": FORMAT_VERSION,
        "data": gzip.compress(container),
    }


def decode_snapshot(record: dict[str, Any]) -> tuple[str, bytes]:
    """
    Decode a stored snapshot record.

    Returns:
        (backend_name, payload)

    Raises:
        SnapshotFormatError: Unknown version, bad magic, or corrupt data
    """
    data = record.get("data")
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        raise SnapshotFormatError("snapshot record has no data")

    if not record.get("compressed", False):
        return LEGACY_BACKEND, bytes(data)

    version = record.get("version", FORMAT_VERSION)
    if version != FORMAT_VERSION:
        raise SnapshotFormatError(f"unsupported snapshot version {version}")

    try:
        container = gzip.decompress(bytes(data))
    except (OSError, EOFError, zlib.error) as e:
        raise SnapshotFormatError(f"snapshot decompression failed: {e}") from e

    header_len = len(MAGIC) + 2
    if len(container) < header_len or not container.startswith(MAGIC):
        raise SnapshotFormatError("snapshot container has bad magic")
    if container[len(MAGIC)] != FORMAT_VERSION:
        raise SnapshotFormatError(f"unsupported container version {container[len(MAGIC)]}")

    name_len = container[len(MAGIC) + 1]
    name_end = header_len + name_len
    if len(container) < name_end:
        raise SnapshotFormatError("snapshot container is truncated")

    backend_name = container[header_len:name_end].decode("utf-8", errors="replace")
    return backend_name, container[name_end:]
