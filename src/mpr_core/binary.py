"""binary.py — Alignment-safe numeric reads from byte buffers.

Every multi-byte read copies the requested bytes into a fresh ``bytes``
object before ``struct`` interprets them, so the result never depends on the
alignment of *offset* inside the source buffer.  Buffers may be ``bytes``,
``bytearray`` or ``memoryview``.
"""

import struct

from .errors import MalformedStream

LITTLE_ENDIAN = "<"
BIG_ENDIAN = ">"


def copy_bytes(data, offset: int, size: int) -> bytes:
    """Return a private copy of ``data[offset:offset + size]``.

    Raises:
        MalformedStream: If fewer than *size* bytes remain.
    """
    end = offset + size
    if offset < 0 or end > len(data):
        raise MalformedStream(
            f"need {size} bytes, only {max(len(data) - offset, 0)} remain", offset
        )
    return bytes(data[offset:end])


def unpack_values(
    data, offset: int, code: str, count: int = 1, byte_order: str = LITTLE_ENDIAN
) -> tuple:
    """Unpack *count* values of struct type *code* starting at *offset*."""
    fmt = f"{byte_order}{count}{code}"
    return struct.unpack(fmt, copy_bytes(data, offset, struct.calcsize(fmt)))


def read_uint16(data, offset: int, byte_order: str = LITTLE_ENDIAN) -> int:
    return unpack_values(data, offset, "H", 1, byte_order)[0]


def read_int16(data, offset: int, byte_order: str = LITTLE_ENDIAN) -> int:
    return unpack_values(data, offset, "h", 1, byte_order)[0]


def read_uint32(data, offset: int, byte_order: str = LITTLE_ENDIAN) -> int:
    return unpack_values(data, offset, "I", 1, byte_order)[0]


def read_float32(data, offset: int, byte_order: str = LITTLE_ENDIAN) -> float:
    return unpack_values(data, offset, "f", 1, byte_order)[0]
