"""Command line entry points.

- ``tegraparts`` lists the NVIDIA Tegra partition table of the second eMMC boot
  area partition and the GPT found in the last sector of the eMMC user area.
- ``trdx-configblock`` shows the Toradex configuration block of a module.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from importlib.metadata import version
from typing import Sequence

from . import configblock, gpt, nvtegra, report
from .base import ParseError
from .device import Device

__all__ = ["main_parts", "main_configblock"]


log = logging.getLogger(__name__)


DEFAULT_BOOT_DEVICE = "/dev/mmcblk0boot1"
DEFAULT_GPT_DEVICE = "/dev/mmcblk0"
SKIP_SECTOR_SIZE = 4096  # unit of --skip values given in sectors


def skip(value: str) -> int:
    """Convert a ``--skip`` option value ``N[s|b]`` to a byte offset.

    ``N`` is an integer in any notation accepted by ``int(x, 0)``, optionally
    followed by ``s`` (sectors of 4096 bytes, the default) or ``b`` (bytes).
    """
    unit = SKIP_SECTOR_SIZE
    if value.endswith("b"):
        unit = 1
        value = value[:-1]
    elif value.endswith("s"):
        value = value[:-1]
    try:
        return int(value, 0) * unit
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid offset {value!r}") from None


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--version", action="version", version=version("tegraparts"))
    parser.add_argument(
        "--debug", dest="log_level", action="store_const", const=logging.DEBUG,
        default=logging.WARNING, help="Print debug messages")


def get_parts_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tegraparts",
        description="List the NVIDIA Tegra partition table and the GPT of an eMMC.")
    _add_common_arguments(parser)
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Show hexdumps of the partition tables")
    parser.add_argument(
        "boot_device", nargs="?", default=DEFAULT_BOOT_DEVICE, metavar="BOOTDEV",
        help="Device holding the Tegra partition table; default: %(default)s")
    parser.add_argument(
        "gpt_device", nargs="?", default=DEFAULT_GPT_DEVICE, metavar="GPTDEV",
        help="Device holding the GPT in its last sector; default: %(default)s")
    return parser


def get_configblock_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trdx-configblock",
        description="Show the Toradex configuration block of a module.",
        epilog="If BLOCKDEV is omitted, the default locations (according to the "
        "BSP release) are searched.")
    _add_common_arguments(parser)
    parser.add_argument(
        "-s", "--skip", type=skip, metavar="N[s|b]",
        help="Offset of the config block in 4096-byte sectors (s) or bytes (b); "
        "negative values are relative to the end of the device and must be "
        "attached to the option, as in --skip=-512b or -s-512b")
    parser.add_argument(
        "device", nargs="?", metavar="BLOCKDEV",
        help="Device holding the config block")
    return parser


def list_partitions(conf: argparse.Namespace) -> None:
    print(f"Using boot device {conf.boot_device}, GPT device {conf.gpt_device}")

    with Device.open(conf.boot_device) as boot_device:
        b = boot_device.read_at(0, nvtegra.TABLE_SIZE)
    if conf.verbose:
        print("\nPartition table dump:")
        for line in report.hexdump(b):
            print(line)
    table = nvtegra.PartitionTable.from_bytes(b)
    for line in report.format_partition_table(table):
        print(line)

    if not table.has_gpt:
        print("No GPT found or no block device file specified")
        return

    with Device.open(conf.gpt_device) as gpt_device:
        gpt_table = gpt.Table.from_device(gpt_device)
        lss = gpt_device.sector_size
    if conf.verbose:
        print("\nGPT header dump:")
        for line in report.hexdump(gpt_table.header_sector):
            print(line)
    print()
    for line in report.format_gpt(gpt_table, lss, verbose=conf.verbose):
        print(line)


def show_config_block(conf: argparse.Namespace) -> None:
    if conf.device is not None:
        offset = configblock.ARG_PARTITION_OFFSET if conf.skip is None else conf.skip
        locations = [(conf.device, offset)]
    else:
        locations = [
            (path, offset if conf.skip is None else conf.skip)
            for path, offset in configblock.DEFAULT_LOCATIONS
        ]

    for path, offset in locations:
        try:
            with Device.open(path) as device:
                block = configblock.read_config_block(device, offset)
        except OSError as e:
            log.error(f"Failed to read config block from {path}: {e}")
            continue
        if block is not None:
            print(f"Toradex config block found on {path}")
            for line in report.format_config_block(block):
                print(line)
            return

    raise ParseError("No valid Toradex config block found")


def _run(parser: argparse.ArgumentParser, func, args: Sequence[str] | None) -> int:
    """Parse *args* with *parser* and run *func* with the result. Returns the exit
    code of the application.

    If ``DEBUG=1`` is found in the environment, top-level exceptions are raised
    with a full back-trace instead of being printed.
    """
    try:
        debug = int(os.environ["DEBUG"])
    except (KeyError, ValueError):
        debug = 0

    conf = parser.parse_args(args)
    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=logging.DEBUG if debug else conf.log_level)
    try:
        func(conf)
    except (OSError, ValueError) as e:
        if debug:
            raise
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main_parts(args: Sequence[str] | None = None) -> int:
    """Entry point of :program:`tegraparts`."""
    return _run(get_parts_parser(), list_partitions, args)


def main_configblock(args: Sequence[str] | None = None) -> int:
    """Entry point of :program:`trdx-configblock`."""
    return _run(get_configblock_parser(), show_config_block, args)
