"""Binary codec for the cache map stored in the shared memory segment.

Layout (big-endian):

- map header: version (uint8), entry count (uint32)
- per entry: key length (uint32), payload tag (uint8), expires_at (float64),
  payload length (uint32), followed by the UTF-8 key and the payload bytes

Payloads are tagged: integers use a compact two's complement fast path, bytes are
stored verbatim and everything else is pickled. Payloads stay encoded in the decoded
map and are only unpickled when a value is actually read.
"""

from __future__ import annotations

import pickle
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from shmcache.errors import DecodeError

if TYPE_CHECKING:
    from collections.abc import Mapping

CODEC_VERSION = 1
MAP_HEADER = struct.Struct(">BI")
ENTRY_HEADER = struct.Struct(">IBdI")
TAG_INT = 0x01
TAG_BYTES = 0x02
TAG_PICKLE = 0x03
KNOWN_TAGS = frozenset((TAG_INT, TAG_BYTES, TAG_PICKLE))
NEVER = 0.0


def _int_to_bytes(value: int) -> bytes:
    return value.to_bytes((value.bit_length() + 8) // 8, "big", signed=True)


def _int_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, "big", signed=True)


@dataclass(frozen=True, slots=True)
class Payload:
    """A cached value in encoded form, discriminated by tag."""

    tag: int
    data: bytes

    @classmethod
    def wrap(cls, value: Any) -> Payload:  # noqa: ANN401
        """Encode a value, picking the most compact tag that round-trips it."""
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(TAG_INT, _int_to_bytes(value))
        if isinstance(value, (bytes, bytearray)):
            return cls(TAG_BYTES, bytes(value))
        return cls(TAG_PICKLE, pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL))

    def unwrap(self) -> Any:  # noqa: ANN401
        """Decode the stored value.

        Raises:
            DecodeError: If the payload cannot be decoded.
        """
        if self.tag == TAG_INT:
            return _int_from_bytes(self.data)
        if self.tag == TAG_BYTES:
            return self.data
        if self.tag == TAG_PICKLE:
            try:
                return pickle.loads(self.data)  # noqa: S301
            except Exception as e:
                msg = f"Failed to unpickle cached value: {e}"
                raise DecodeError(msg) from e
        msg = f"Unknown payload tag {self.tag:#04x}"
        raise DecodeError(msg)

    def as_int(self) -> int:
        """Interpret the stored value as an integer.

        Raises:
            ValueError: If the value is not integer-like (e.g. a non-numeric string).
            TypeError: If the value has no integer interpretation.
            DecodeError: If the payload cannot be decoded.
        """
        if self.tag == TAG_INT:
            return _int_from_bytes(self.data)
        return int(self.unwrap())


@dataclass(frozen=True, slots=True)
class Entry:
    """A payload paired with its absolute expiration timestamp (0 = never)."""

    payload: Payload
    expires_at: float = NEVER

    def is_expired(self, now: float) -> bool:
        """Return True if the entry has a deadline and it has passed."""
        return self.expires_at != NEVER and now > self.expires_at


def encode_map(entries: Mapping[str, Entry]) -> bytes:
    """Serialize a cache map to bytes."""
    parts = [MAP_HEADER.pack(CODEC_VERSION, len(entries))]
    for key, entry in entries.items():
        key_bytes = key.encode("utf-8")
        payload = entry.payload
        parts.append(ENTRY_HEADER.pack(len(key_bytes), payload.tag, entry.expires_at, len(payload.data)))
        parts.append(key_bytes)
        parts.append(payload.data)
    return b"".join(parts)


def decode_map(blob: bytes) -> dict[str, Entry]:
    """Deserialize a cache map.

    Args:
        blob: Bytes produced by encode_map, or b"" for an empty segment.

    Returns:
        The decoded map; empty for an empty blob.

    Raises:
        DecodeError: If the blob is not a well-formed encoded map.
    """
    if not blob:
        return {}
    try:
        version, count = MAP_HEADER.unpack_from(blob, 0)
    except struct.error as e:
        msg = f"Truncated map header ({len(blob)} bytes)"
        raise DecodeError(msg) from e
    if version != CODEC_VERSION:
        msg = f"Unsupported codec version: {version} (expected {CODEC_VERSION})"
        raise DecodeError(msg)

    entries: dict[str, Entry] = {}
    offset = MAP_HEADER.size
    for index in range(count):
        try:
            key_len, tag, expires_at, payload_len = ENTRY_HEADER.unpack_from(blob, offset)
        except struct.error as e:
            msg = f"Truncated header for entry {index} at offset {offset}"
            raise DecodeError(msg) from e
        offset += ENTRY_HEADER.size
        key_end = offset + key_len
        end = key_end + payload_len
        if end > len(blob):
            msg = f"Entry {index} runs past the end of the blob ({end} > {len(blob)})"
            raise DecodeError(msg)
        if tag not in KNOWN_TAGS:
            msg = f"Unknown payload tag {tag:#04x} for entry {index}"
            raise DecodeError(msg)
        try:
            key = blob[offset:key_end].decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"Entry {index} has an invalid key"
            raise DecodeError(msg) from e
        entries[key] = Entry(Payload(tag, blob[key_end:end]), expires_at)
        offset = end

    if offset != len(blob):
        msg = f"{len(blob) - offset} trailing bytes after {count} entries"
        raise DecodeError(msg)
    return entries
