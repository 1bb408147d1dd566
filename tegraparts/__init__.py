"""Decoding of the partition tables and configuration blocks found on the eMMC of
NVIDIA Tegra based Toradex modules.
"""

from .base import FormatError, ParseError, ReadError, ValidationError
from .configblock import ConfigBlock
from .device import Device
from .gpt import Table as GptTable
from .nvtegra import PartitionTable

__all__ = [
    "ConfigBlock",
    "Device",
    "GptTable",
    "PartitionTable",
    "ParseError",
    "FormatError",
    "ValidationError",
    "ReadError",
]
