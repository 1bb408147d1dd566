"""Table-driven CRC-32 as used by the GUID partition table.

This is the reflected CRC-32/ISO-HDLC variant (polynomial 0xEDB88320, initial
value and final XOR 0xFFFFFFFF), the same algorithm ``zlib.crc32`` implements.
"""

from __future__ import annotations

from .typing_ import ReadableBuffer

__all__ = ["POLYNOMIAL", "crc32"]


POLYNOMIAL = 0xEDB88320  # reflected form of 0x04C11DB7
_MASK = 0xFFFFFFFF


def _make_table(polynomial: int) -> tuple[int, ...]:
    """Return the 256-entry lookup table for the reflected ``polynomial``."""
    table = []
    for byte in range(256):
        value = byte
        for _ in range(8):
            if value & 1:
                value = (value >> 1) ^ polynomial
            else:
                value >>= 1
        table.append(value)
    return tuple(table)


_TABLE = _make_table(POLYNOMIAL)


def crc32(data: ReadableBuffer, value: int = 0) -> int:
    """Return the CRC-32 of ``data`` as an unsigned 32-bit ``int``.

    ``value`` is the checksum of any preceding data and can be used to compute the
    checksum of data split into several chunks, like with ``zlib.crc32``.
    """
    crc = value ^ _MASK
    for byte in memoryview(data).cast("B"):
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ _MASK
