"""
Unsigned LEB128 varints, as used by multiformats and CAR record framing.

    value 300 -> 0xac 0x02   (low 7 bits first, high bit = "more bytes follow")

Values are capped at 63 bits (9 encoded bytes), the multiformats limit.
"""

from __future__ import annotations

MAX_VARINT_BYTES = 9
MAX_VARINT_VALUE = (1 << 63) - 1


class VarintError(ValueError):
    """Malformed or out-of-range varint."""


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned varint."""
    if not isinstance(value, int) or value < 0 or value > MAX_VARINT_VALUE:
        raise VarintError(f"Varint out of range: {value!r}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint at ``offset``. Returns (value, next_offset).

    Rejects truncated input, over-long encodings and non-minimal forms
    (trailing 0x00 continuation bytes).
    """
    value = 0
    shift = 0
    for i in range(MAX_VARINT_BYTES):
        pos = offset + i
        if pos >= len(data):
            raise VarintError(f"Truncated varint at offset {offset}")
        byte = data[pos]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            if byte == 0 and i > 0:
                raise VarintError(f"Non-minimal varint at offset {offset}")
            return value, pos + 1
        shift += 7
    raise VarintError(f"Varint longer than {MAX_VARINT_BYTES} bytes at offset {offset}")
