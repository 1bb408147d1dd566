"""Block device queries for Linux systems."""

from __future__ import annotations

import sys

assert sys.platform == "linux"  # skipcq: BAN-B101

import os
from ctypes import c_uint
from fcntl import ioctl

__all__ = ["device_size", "device_sector_size"]


BLKSSZGET = 0x1268


def device_size(fd: int) -> int:
    """Return the size of a block device in bytes.

    :param fd: File descriptor for the block device.
    """
    return os.lseek(fd, 0, os.SEEK_END)


def device_sector_size(fd: int) -> int:
    """Return the logical sector size of a block device.

    Raises ``OSError`` if the sector size cannot be queried.

    :param fd: File descriptor for the block device.
    """
    logical = c_uint()  # see blkdev.h
    ioctl(fd, BLKSSZGET, logical)
    return logical.value
