"""Toradex configuration block.

The configuration block is a stream of tags, each consisting of a 4-byte tag
header and a payload whose length is given in 4-byte words. It holds the hardware
revision and product id of the module as well as its Ethernet address, whose NIC
specific part doubles as the serial number of the module.

Based on the Toradex u-boot BSP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterator

from typing_extensions import Annotated

from .base import FormatError
from .bytestruct import ByteStruct
from .typing_ import ReadableBuffer

if TYPE_CHECKING:
    from .device import Device

__all__ = [
    "ConfigBlock",
    "Tag",
    "HardwareInfo",
    "EthernetAddress",
    "iter_tags",
    "model_name",
    "read_config_block",
    "BLOCK_SIZE",
    "DEFAULT_LOCATIONS",
    "EMMC_BOOT_OFFSET",
    "ARG_PARTITION_OFFSET",
]


log = logging.getLogger(__name__)


BLOCK_SIZE = 512

TAG_VALID = 0xCF01  # first tag of every config block
TAG_MAC = 0x0000
TAG_HW = 0x0008

TAG_FLAG_VALID = 0x1
TAG_LENGTH_MASK = 0x3FFF  # lower 14 bits of the first tag header word
TAG_FLAGS_SHIFT = 14
WORD_SIZE = 4  # tag payload lengths are given in 4-byte words

# BSP >= 2.3: last 512 bytes of the first eMMC boot area partition
EMMC_BOOT_OFFSET = -BLOCK_SIZE
# BSP < 2.3: start of the "ARG" partition, sector 0xc00 of 4096 bytes
ARG_PARTITION_OFFSET = 0x00000C00 * 4096

DEFAULT_LOCATIONS = (
    ("/dev/mmcblk0boot0", EMMC_BOOT_OFFSET),
    ("/dev/mmcblk0", ARG_PARTITION_OFFSET),
)

MODULES = MappingProxyType(
    {
        0: "invalid",
        1: "Colibri PXA270 312MHz",
        2: "Colibri PXA270 520MHz",
        3: "Colibri PXA320 806MHz",
        4: "Colibri PXA300 208MHz",
        5: "Colibri PXA310 624MHz",
        6: "Colibri PXA320 806MHz IT",
        7: "Colibri PXA300 208MHz XT",
        8: "Colibri PXA270 312MHz",
        9: "Colibri PXA270 520MHz",
        10: "Colibri VF50 128MB",
        11: "Colibri VF61 256MB",
        12: "Colibri VF61 256MB IT",
        13: "Colibri VF50 128MB IT",
        14: "Colibri iMX6 Solo 256MB",
        15: "Colibri iMX6 DualLite 512MB",
        16: "Colibri iMX6 Solo 256MB IT",
        17: "Colibri iMX6 DualLite 512MB IT",
        20: "Colibri T20 256MB",
        21: "Colibri T20 512MB",
        22: "Colibri T20 512MB IT",
        23: "Colibri T30 1GB",
        24: "Colibri T20 256MB IT",
        25: "Apalis T30 2GB",
        26: "Apalis T30 1GB",
        27: "Apalis iMX6 Quad 1GB",
        28: "Apalis iMX6 Quad 2GB IT",
        29: "Apalis iMX6 Dual 512MB",
        30: "Colibri T30 1GB IT",
        31: "Apalis T30 1GB IT",
    }
)


def model_name(product_id: int) -> str | None:
    """Return the name of the module with product id ``product_id``.

    Returns ``None`` for product ids not known to this package.
    """
    return MODULES.get(product_id)


@dataclass(frozen=True)
class Tag(ByteStruct):
    """Tag header.

    The first word holds the payload length (lower 14 bits) and the flags (upper
    2 bits).
    """

    length_flags: Annotated[int, 2]
    id: Annotated[int, 2]

    @classmethod
    def new(cls, id_: int, length: int, flags: int = TAG_FLAG_VALID) -> Tag:
        if not 0 <= length <= TAG_LENGTH_MASK:
            raise ValueError(f"Invalid tag length {length}, must fit into 14 bits")
        if not 0 <= flags <= 0x3:
            raise ValueError(f"Invalid tag flags {flags}, must fit into 2 bits")
        return cls(length | flags << TAG_FLAGS_SHIFT, id_)

    @property
    def length(self) -> int:
        """Payload length in 4-byte words."""
        return self.length_flags & TAG_LENGTH_MASK

    @property
    def flags(self) -> int:
        return self.length_flags >> TAG_FLAGS_SHIFT

    @property
    def valid(self) -> bool:
        return bool(self.flags & TAG_FLAG_VALID)


@dataclass(frozen=True)
class HardwareInfo(ByteStruct):
    """Payload of the hardware information tag."""

    ver_major: Annotated[int, 2]
    ver_minor: Annotated[int, 2]
    ver_assembly: Annotated[int, 2]
    product_id: Annotated[int, 2]

    @property
    def model(self) -> str | None:
        return model_name(self.product_id)

    @property
    def version(self) -> str:
        """Hardware version in the usual "V1.1A" notation."""
        assembly = chr(ord("A") + self.ver_assembly)
        return f"V{self.ver_major}.{self.ver_minor}{assembly}"


@dataclass(frozen=True)
class EthernetAddress(ByteStruct):
    """Payload of the Ethernet address tag."""

    oui: Annotated[bytes, 3]  # organizationally unique identifier
    nic: Annotated[bytes, 3]  # NIC specific part

    @property
    def serial(self) -> int:
        """Serial number of the module, which is the NIC specific part read as a
        big-endian number.
        """
        return int.from_bytes(self.nic, "big")

    def __str__(self) -> str:
        return ":".join(f"{byte:02x}" for byte in self.oui + self.nic)


_PAYLOAD_TYPES: dict[int, type[ByteStruct]] = {
    TAG_MAC: EthernetAddress,
    TAG_HW: HardwareInfo,
}


def iter_tags(b: ReadableBuffer, offset: int = len(Tag)) -> Iterator[tuple[int, Tag]]:
    """Yield ``(payload_offset, tag)`` for the tags of the tag stream in ``b``,
    starting with the tag header at ``offset``.

    Iteration stops at the first tag without the valid flag. It also stops if the
    next tag header would extend past the end of ``b``, so a corrupt length field
    never leads to reading outside of ``b``.
    """
    view = memoryview(b).cast("B")
    while offset + len(Tag) <= view.nbytes:
        tag = Tag.from_buffer(view, offset)
        if not tag.valid:
            return
        payload_offset = offset + len(Tag)
        yield payload_offset, tag
        offset = payload_offset + tag.length * WORD_SIZE

    log.warning(f"Tag stream exceeds the end of the config block at offset {offset}")


@dataclass(frozen=True)
class ConfigBlock:
    """Decoded Toradex configuration block.

    ``hardware`` and ``ethernet`` are ``None`` if the according tag was not found.
    """

    hardware: HardwareInfo | None
    ethernet: EthernetAddress | None
    unknown_tags: tuple[int, ...] = ()

    @classmethod
    def from_bytes(cls, b: ReadableBuffer) -> ConfigBlock:
        """Parse configuration block from the ``BLOCK_SIZE`` bytes ``b``.

        Raises ``FormatError`` if ``b`` does not start with a valid config block tag.
        """
        b = bytes(b)
        if len(b) < BLOCK_SIZE:
            raise ValueError(
                f"Config block must be {BLOCK_SIZE} bytes long, got {len(b)} bytes"
            )
        b = b[:BLOCK_SIZE]

        first = Tag.from_buffer(b)
        if not first.valid or first.id != TAG_VALID:
            raise FormatError("No valid Toradex config block found")

        hardware = None
        ethernet = None
        unknown_tags = []

        for payload_offset, tag in iter_tags(b):
            payload_type = _PAYLOAD_TYPES.get(tag.id)
            if payload_type is None:
                log.warning(
                    f"Unknown tag id {tag.id:#06x} found in Toradex config block"
                )
                unknown_tags.append(tag.id)
                continue

            if payload_offset + len(payload_type) > len(b):
                log.warning(
                    f"Payload of tag {tag.id:#06x} at offset {payload_offset} exceeds "
                    f"the end of the config block"
                )
                break

            if tag.id == TAG_MAC:
                ethernet = EthernetAddress.from_buffer(b, payload_offset)
            else:
                hardware = HardwareInfo.from_buffer(b, payload_offset)

        return cls(hardware, ethernet, tuple(unknown_tags))

    @property
    def serial(self) -> int | None:
        if self.ethernet is None:
            return None
        return self.ethernet.serial


def read_config_block(device: Device, offset: int) -> ConfigBlock | None:
    """Read the configuration block at byte ``offset`` of ``device``.

    A negative ``offset`` is relative to the end of the device. Returns ``None``
    if no config block is found there, so the caller may try another location.
    """
    position = offset if offset >= 0 else device.size + offset
    b = device.read_at(offset, BLOCK_SIZE)
    try:
        block = ConfigBlock.from_bytes(b)
    except FormatError:
        log.warning(
            f"No valid Toradex config block found on {device} at {position:#010x}"
        )
        return None

    log.info(f"Toradex config block found on {device} at {position:#010x}")
    return block
