from __future__ import annotations
import logging
from typing import Optional

from lamdera_wire.log import get_logger
from lamdera_wire.utils import buffer_to_hex, round_half_up
from lamdera_wire.varint import InvalidVarint, decode_varint, encode_varint

logger = get_logger(__name__)

DEFAULT_DISCRIMINANT = 0x00
MIN_BUFFER_LENGTH = 2

# Producers that don't double the length use roughly this multiplier instead.
LEGACY_LENGTH_DIVISOR = 40.6875
LEGACY_THRESHOLD = 10


def encode_frame(message: str, discriminant: int = DEFAULT_DISCRIMINANT) -> bytes:
    """Build ``discriminant | varint(2 * len(payload)) | payload``."""
    payload = message.encode('utf-8')
    return bytes([discriminant]) + encode_varint(len(payload) * 2) + payload


def resolve_declared_length(encoded_length: int, available: int, trace: bool = False) -> int:
    """
    Reconcile the varint length prefix against the bytes actually present.

    Two incompatible producers exist: the usual one doubles the payload length,
    a legacy one multiplies it by ~40.7. Some frames carry the raw length.
    """
    if encoded_length > available * LEGACY_THRESHOLD:
        if trace:
            logger.debug("   Using legacy encoding (/%s)", LEGACY_LENGTH_DIVISOR)
        return round_half_up(encoded_length / LEGACY_LENGTH_DIVISOR)
    if abs(encoded_length / 2 - available) < 1:
        return encoded_length // 2
    if abs(encoded_length - available) < 1:
        return encoded_length
    return encoded_length // 2


def decode_frame(buffer: bytes, expected_discriminant: int = DEFAULT_DISCRIMINANT,
                 trace: bool = False) -> Optional[str]:
    """
    Decode one frame back into its message string.

    Returns None for anything malformed: short buffer, wrong discriminant,
    bad varint or fewer payload bytes than declared. Never raises.
    With ``trace`` set, each step is logged at DEBUG with a hex dump.
    """
    tracing = trace and logger.isEnabledFor(logging.DEBUG)
    if tracing:
        logger.debug("decode_frame: %d bytes [%s], expected discriminant %d",
                     len(buffer), buffer_to_hex(buffer), expected_discriminant)

    if len(buffer) < MIN_BUFFER_LENGTH:
        if tracing:
            logger.debug("   Buffer too short")
        return None

    if buffer[0] != expected_discriminant:
        if tracing:
            logger.debug("   Discriminant mismatch: got %d", buffer[0])
        return None

    try:
        encoded_length, bytes_read = decode_varint(buffer, 1)
    except InvalidVarint as e:
        if tracing:
            logger.debug("   Varint decode error: %s", e)
        return None

    header_length = 1 + bytes_read
    available = len(buffer) - header_length
    declared = resolve_declared_length(encoded_length, available, tracing)

    if tracing:
        logger.debug("   varint=%d declared=%d header=%d available=%d",
                     encoded_length, declared, header_length, available)

    if available < declared:
        if tracing:
            logger.debug("   Not enough message bytes: declared %d, available %d", declared, available)
        return None

    return bytes(buffer[header_length:header_length + declared]).decode('utf-8', errors='replace')
