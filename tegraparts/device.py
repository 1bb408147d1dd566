"""Read-only access to files and block devices.

A device represents either a regular file (e.g. a dump of an eMMC) or a block
device the partition tables and config blocks are read from.
"""

from __future__ import annotations

import logging
import os
import sys
from stat import S_ISBLK, S_ISREG
from types import TracebackType
from typing import TYPE_CHECKING, Any

from .base import DEFAULT_SECTOR_SIZE, ReadError

if sys.platform == "linux":
    from .linux import device_sector_size, device_size
else:
    device_sector_size = None

    def device_size(fd: int) -> int:
        """Return the size of a block device in bytes."""
        return os.lseek(fd, 0, os.SEEK_END)


if TYPE_CHECKING:
    from .typing_ import StrPath

__all__ = ["Device"]


log = logging.getLogger(__name__)


if hasattr(os, "pread"):
    _read = os.pread
else:

    def _read(fd: int, size: int, pos: int) -> bytes:
        """Read `size` bytes from file descriptor `fd` starting at byte `pos`."""
        os.lseek(fd, pos, os.SEEK_SET)
        return os.read(fd, size)


def _query_sector_size(fd: int, path: StrPath) -> int:
    """Return the logical sector size of the block device `fd`, falling back to
    `DEFAULT_SECTOR_SIZE` if it cannot be determined.
    """
    if device_sector_size is not None:
        try:
            return device_sector_size(fd)
        except OSError as e:
            log.warning(
                f"{path} - Failed to get sector size ({e}), assuming default value "
                f"{DEFAULT_SECTOR_SIZE}"
            )
            return DEFAULT_SECTOR_SIZE

    log.warning(
        f"{path} - Sector size cannot be queried on platform {sys.platform!r}, "
        f"assuming default value {DEFAULT_SECTOR_SIZE}"
    )
    return DEFAULT_SECTOR_SIZE


class Device:
    """Regular file or block device opened for reading.

    Do not use `__init__` directly, use `Device.open()` instead.
    """

    def __init__(
        self,
        fd: int,
        path: StrPath,
        size: int,
        sector_size: int,
        block_device: bool,
    ):
        self._fd = fd
        self._path = str(path)
        self._size = size
        self._sector_size = sector_size
        self._block_device = block_device
        self._closed = False

        log.debug(f"Opened device {self}")
        log.debug(f"{self} - Size: {size} bytes, sector size: {sector_size} bytes")

    @classmethod
    def open(cls, path: StrPath, *, sector_size: int | None = None) -> Device:
        """Open block device or regular file at `path` for reading.

        The sector size of a block device is queried from the operating system. For
        regular files, `sector_size` is used, which defaults to 512 bytes.
        """
        flags = os.O_RDONLY | getattr(os, "O_BINARY", 0)
        fd = os.open(path, flags)

        try:
            stat = os.fstat(fd)

            if S_ISBLK(stat.st_mode):
                if sector_size is not None:
                    raise ValueError("Sector size cannot be set for block devices")
                size = device_size(fd)
                real_sector_size = _query_sector_size(fd, path)
                return cls(fd, path, size, real_sector_size, True)

            if S_ISREG(stat.st_mode):
                if sector_size is None:
                    sector_size = DEFAULT_SECTOR_SIZE
                if sector_size <= 0:
                    raise ValueError("Sector size must be greater than 0")
                return cls(fd, path, stat.st_size, sector_size, False)

            raise ValueError("File is neither a block device nor a regular file")

        except BaseException:
            os.close(fd)
            raise

    def read_at(self, pos: int, size: int) -> bytes:
        """Read `size` bytes from the device starting at byte `pos`.

        A negative `pos` is relative to the end of the device. Raises `ReadError`
        if the requested range cannot be read completely.
        """
        self.check_closed()

        if size < 0:
            raise ValueError("Amount of bytes to read must be zero or positive")
        if pos < 0:
            pos += self._size
        if pos < 0 or pos + size > self._size:
            raise ReadError(
                f"{self} - Cannot read {size} bytes at offset {pos:#x}, out of device "
                f"bounds ({self._size} bytes)"
            )
        if size == 0:
            return b""

        try:
            b = _read(self._fd, size, pos)
        except OSError as e:
            raise ReadError(
                f"{self} - Failed to read {size} bytes at offset {pos:#x}: {e}"
            ) from e

        if len(b) != size:
            raise ReadError(
                f"{self} - Did not read the expected amount of bytes at offset "
                f"{pos:#x} (expected {size} bytes, got {len(b)} bytes)"
            )
        return b

    def close(self) -> None:
        """Close the underlying file descriptor.

        This method has no effect if the device is already closed.
        """
        if self._closed:
            return
        os.close(self._fd)
        self._closed = True
        log.debug(f"Closed device {self}")

    def __enter__(self) -> Device:
        """Context management protocol."""
        self.check_closed()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType,
    ) -> None:
        """Context management protocol."""
        self.close()

    @property
    def block_device(self) -> bool:
        """Whether the device is a block device instead of a regular file."""
        return self._block_device

    @property
    def size(self) -> int:
        """Size of the device in bytes."""
        return self._size

    @property
    def sector_size(self) -> int:
        """Logical sector size of the device in bytes."""
        return self._sector_size

    @property
    def closed(self) -> bool:
        return self._closed

    def check_closed(self) -> None:
        """Raise `ValueError` if the underlying file descriptor is closed."""
        if self._closed:
            raise ValueError("I/O operation on closed device")

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Device):
            return self._path == other._path
        return NotImplemented

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._path}, size={self._size})"
