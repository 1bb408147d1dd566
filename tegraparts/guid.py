"""Decoding of GUIDs and UTF-16 names as stored in GPT structures."""

from __future__ import annotations

from uuid import UUID

from .typing_ import ReadableBuffer

__all__ = ["GUID_SIZE", "decode_identifier", "format_identifier", "decode_utf16_name"]


GUID_SIZE = 16


def decode_identifier(b: ReadableBuffer) -> UUID:
    """Decode a 16-byte mixed-endian GUID.

    The first three fields (4, 2 and 2 bytes) are stored little-endian, the last
    two fields (2 and 6 bytes) are stored as-is. The returned ``UUID`` holds the
    fields in canonical order, so ``str()`` gives the usual 8-4-4-4-12 form.
    """
    b = bytes(b)
    if len(b) != GUID_SIZE:
        raise ValueError(f"GUID must be {GUID_SIZE} bytes long, got {len(b)} bytes")
    return UUID(bytes_le=b)


def format_identifier(b: ReadableBuffer) -> str:
    """Return the canonical lowercase string form of a 16-byte mixed-endian GUID."""
    return str(decode_identifier(b))


def decode_utf16_name(b: ReadableBuffer, max_length: int | None = None) -> str:
    """Decode a fixed-width UTF-16LE name field.

    Decoding stops at the first NUL code unit or at the end of the buffer; a
    trailing odd byte is ignored. Code units which cannot be decoded are replaced
    by U+FFFD. If ``max_length`` is given, the result is truncated to that many
    characters.
    """
    if max_length is not None and max_length < 0:
        raise ValueError("Maximum length must be zero or positive")

    view = memoryview(b).cast("B")
    end = view.nbytes - view.nbytes % 2
    for offset in range(0, end, 2):
        if view[offset] == 0 and view[offset + 1] == 0:
            end = offset
            break

    name = bytes(view[:end]).decode("utf-16-le", errors="replace")
    if max_length is not None:
        name = name[:max_length]
    return name
