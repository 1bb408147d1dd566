"""Types used across the package."""

from __future__ import annotations

from os import PathLike
from typing import TYPE_CHECKING, Union

from typing_extensions import Buffer, TypeAlias

__all__ = [
    "StrPath",
    "ReadableBuffer",
]


# `PathLike` cannot be subscripted at runtime.
if TYPE_CHECKING:
    StrPath: TypeAlias = Union[str, PathLike[str]]

# bytes, bytearray, memoryview, mmap, ...
ReadableBuffer: TypeAlias = Buffer
