"""Zigzag variable-length integers as used inside log records."""

from __future__ import annotations

_U64_MASK = (1 << 64) - 1


def zigzag_encode(value: int) -> int:
    """Map a signed 64-bit integer onto an unsigned one (0, -1, 1, -2 -> 0, 1, 2, 3)."""
    return ((value << 1) ^ (value >> 63)) & _U64_MASK


def zigzag_decode(value: int) -> int:
    """Invert :func:`zigzag_encode`."""
    value &= _U64_MASK
    return (value >> 1) ^ -(value & 1)


def encode_varint(value: int) -> bytes:
    """Encode a signed integer as a zigzag varint."""
    encoded = zigzag_encode(value)
    out = bytearray()
    while encoded >= 0x80:
        out.append((encoded & 0x7F) | 0x80)
        encoded >>= 7
    out.append(encoded)
    return bytes(out)


def decode_varint(data: bytes) -> tuple[int, int]:
    """Decode a zigzag varint from the start of ``data``.

    Returns the value and the number of bytes consumed. Raises
    :class:`ValueError` when the varint is unterminated or too long.
    """
    value = 0
    shift = 0
    for position, byte in enumerate(data, start=1):
        value = (value | ((byte & 0x7F) << shift)) & _U64_MASK
        if not byte & 0x80:
            return zigzag_decode(value), position
        shift += 7
        if shift >= 64:
            raise ValueError("varint is too long")
    raise ValueError("unterminated varint")