from __future__ import annotations
import math
from typing import Iterable


def buffer_to_hex(buffer: Iterable[int]) -> str:
    """Space separated lowercase hex, e.g. b'\\x00\\x0a' -> '00 0a'."""
    return ' '.join(f"{b:02x}" for b in buffer)


def round_half_up(value: float) -> int:
    """Round to nearest integer with .5 going up (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))
