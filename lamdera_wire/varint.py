"""
Unsigned varint codec used for frame length prefixes.

Each byte carries 7 payload bits, least significant group first; the high bit
is set on every byte except the last.
"""

from __future__ import annotations
from typing import Tuple

MAX_VARINT_BYTES = 5


class InvalidVarint(ValueError):
    """Raised when a varint does not terminate within MAX_VARINT_BYTES."""
    pass


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a varint."""
    if value < 0:
        raise ValueError(f"varint value must be non-negative, got {value}")

    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0x7F)
    return bytes(out)


def decode_varint(buffer: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decode a varint starting at ``offset``.

    Returns:
        (value, bytes_read)

    Raises:
        InvalidVarint: no terminating byte within MAX_VARINT_BYTES, or the
            buffer ran out first.
    """
    result = 0
    shift = 0
    end = min(len(buffer), offset + MAX_VARINT_BYTES)

    for bytes_read, index in enumerate(range(offset, end), start=1):
        byte = buffer[index]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, bytes_read
        shift += 7

    raise InvalidVarint(f"Invalid varint at offset {offset}")
