"""Exception classes and helper functions used across ``tegraparts``."""

from __future__ import annotations

__all__ = [
    "ParseError",
    "FormatError",
    "ValidationError",
    "ReadError",
    "DEFAULT_SECTOR_SIZE",
    "sectors_needed",
]


DEFAULT_SECTOR_SIZE = 512  # used whenever a device does not report one


class ParseError(ValueError):
    """Exception raised if a structure -- for example a partition table or a
    configuration block -- could not be decoded from the data passed.

    Common base class of ``FormatError`` and ``ValidationError``.
    """


class FormatError(ParseError):
    """Exception raised if the data does not carry the signature, version or marker
    identifying the structure to decode.

    This usually means that the structure is not present at the location read from.
    """


class ValidationError(ParseError):
    """Exception raised if the data looks like the structure to decode but violates
    one of its invariants, for example a checksum mismatch or an unexpected value
    in a field with a fixed meaning.
    """


class ReadError(OSError):
    """Exception raised if a buffer could not be read from a file or block device."""


def sectors_needed(size: int, sector_size: int) -> int:
    """Return how many whole sectors of ``sector_size`` bytes are needed to hold
    ``size`` bytes.
    """
    if sector_size <= 0:
        raise ValueError("Sector size must be greater than 0")
    if size < 0:
        raise ValueError("Size must be zero or positive")
    return -(-size // sector_size)
