"""GUID partition table stored in the last sector of a device.

On Tegra based modules the GPT header is not located at LBA 1 but in the last
logical sector of the eMMC user area, which is where this module looks for it.

See https://uefi.org/specifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import UUID

from typing_extensions import Annotated

from .base import FormatError, ValidationError, sectors_needed
from .bytestruct import ByteStruct
from .crc import crc32
from .guid import decode_identifier, decode_utf16_name
from .typing_ import ReadableBuffer

if TYPE_CHECKING:
    from .device import Device

__all__ = [
    "Table",
    "GptHeader",
    "GptEntry",
    "parse_header",
    "parse_entries",
    "partition_array_sectors",
]


log = logging.getLogger(__name__)


SIGNATURE = b"EFI PART"
CRC32_OFFSET = 16  # position of the header CRC32 field within the header
CRC32_SIZE = 4

PARTITION_NAME_MAX_LEN = 36  # 36 characters, 72 bytes with encoding UTF-16LE


@dataclass(frozen=True)
class GptHeader(ByteStruct):
    """GPT header."""

    signature: Annotated[bytes, 8]
    revision: Annotated[int, 4]
    header_size: Annotated[int, 4]
    header_crc32: Annotated[int, 4]
    reserved: Annotated[bytes, 4]
    current_lba: Annotated[int, 8]
    backup_lba: Annotated[int, 8]
    first_usable_lba: Annotated[int, 8]
    last_usable_lba: Annotated[int, 8]
    disk_guid_raw: Annotated[bytes, 16]
    part_table_lba: Annotated[int, 8]
    num_entries: Annotated[int, 4]
    entry_size: Annotated[int, 4]
    part_table_crc32: Annotated[int, 4]

    @property
    def disk_guid(self) -> UUID:
        return decode_identifier(self.disk_guid_raw)

    @property
    def partition_array_size(self) -> int:
        """Size of the partition entry array in bytes."""
        return self.num_entries * self.entry_size


@dataclass(frozen=True)
class GptEntry(ByteStruct):
    """GPT partition entry."""

    type_guid_raw: Annotated[bytes, 16]
    part_guid_raw: Annotated[bytes, 16]
    first_lba: Annotated[int, 8]
    last_lba: Annotated[int, 8]  # inclusive
    attributes: Annotated[int, 8]
    name_raw: Annotated[bytes, 72]

    @property
    def type(self) -> UUID:
        return decode_identifier(self.type_guid_raw)

    @property
    def guid(self) -> UUID:
        return decode_identifier(self.part_guid_raw)

    @property
    def name(self) -> str:
        return decode_utf16_name(self.name_raw, PARTITION_NAME_MAX_LEN)

    @property
    def length_lba(self) -> int:
        return self.last_lba - self.first_lba + 1

    @property
    def empty(self) -> bool:
        """Whether the entry is unused (partition type GUID all zeroes)."""
        return self.type_guid_raw == b"\x00" * 16

    def __repr__(self) -> str:
        return (
            f"gpt.{self.__class__.__name__}(first_lba={self.first_lba}, "
            f"last_lba={self.last_lba}, type={self.type!r}, "
            f"attributes={hex(self.attributes)}, guid={self.guid!r}, "
            f"name={self.name!r})"
        )


def header_checksum(header: ReadableBuffer) -> bytes:
    """Return the CRC32 of the GPT header ``header`` in its on-disk form.

    ``header`` must be exactly as long as the header size declared in it. The
    checksum is computed over a copy of ``header`` with the CRC32 field zeroed.
    """
    working_copy = bytearray(header)
    working_copy[CRC32_OFFSET : CRC32_OFFSET + CRC32_SIZE] = b"\x00" * CRC32_SIZE
    return crc32(working_copy).to_bytes(CRC32_SIZE, "little")


def parse_header(sector: ReadableBuffer) -> GptHeader:
    """Parse and validate the GPT header found at the start of ``sector``.

    Raises ``FormatError`` if the signature does not match and ``ValidationError``
    if the header size is out of range or the header CRC32 does not match.
    """
    sector = bytes(sector)
    if len(sector) < len(GptHeader):
        raise ValueError(
            f"GPT header sector must be at least {len(GptHeader)} bytes long, got "
            f"{len(sector)} bytes"
        )

    if sector[: len(SIGNATURE)] != SIGNATURE:
        raise FormatError(f"Invalid GPT signature {sector[: len(SIGNATURE)]!r}")

    header = GptHeader.from_buffer(sector)

    if not len(GptHeader) <= header.header_size <= len(sector):
        raise ValidationError(
            f"Header size specified in GPT header must be in range "
            f"({len(GptHeader)}, {len(sector)}), got {header.header_size}"
        )

    stored = sector[CRC32_OFFSET : CRC32_OFFSET + CRC32_SIZE]
    calculated = header_checksum(sector[: header.header_size])
    if calculated != stored:
        raise ValidationError(
            f"Invalid GPT header CRC32 {stored[::-1].hex()}, calculated "
            f"{calculated[::-1].hex()}"
        )

    return header


def partition_array_sectors(num_entries: int, entry_size: int, lss: int) -> int:
    """Return how many sectors of ``lss`` bytes a partition entry array with
    ``num_entries`` entries of ``entry_size`` bytes occupies.

    Whole sectors are always read, so the last one might only be partly filled.
    """
    return sectors_needed(num_entries * entry_size, lss)


def parse_entries(header: GptHeader, array: ReadableBuffer) -> tuple[GptEntry, ...]:
    """Parse all ``header.num_entries`` partition entries of the partition entry
    array ``array``, empty ones included.

    ``array`` may be longer than the array itself (e.g. padded to whole sectors).
    """
    if header.entry_size < len(GptEntry):
        raise ValidationError(
            f"GPT partition entry size must be a minimum of {len(GptEntry)} bytes, "
            f"got {header.entry_size} bytes"
        )
    array = memoryview(array).cast("B")
    if array.nbytes < header.partition_array_size:
        raise ValidationError(
            f"GPT partition entry array is {array.nbytes} bytes long, expected at "
            f"least {header.partition_array_size} bytes"
        )

    return tuple(
        GptEntry.from_buffer(array, index * header.entry_size)
        for index in range(header.num_entries)
    )


class Table:
    """GUID partition table.

    Do not use ``__init__`` directly, use ``Table.from_device()`` or
    ``Table.from_bytes()`` instead.
    """

    def __init__(
        self,
        header: GptHeader,
        entries: tuple[GptEntry, ...],
        partition_array_valid: bool,
        header_sector: bytes,
    ):
        self._header = header
        self._header_sector = header_sector
        self._entries = entries
        self._partition_array_valid = partition_array_valid

    @classmethod
    def from_bytes(cls, sector: ReadableBuffer, array: ReadableBuffer) -> Table:
        """Parse partition table from the header sector ``sector`` and the partition
        entry array ``array``.
        """
        header = parse_header(sector)
        entries = parse_entries(header, array)

        array_bytes = bytes(memoryview(array).cast("B")[: header.partition_array_size])
        array_valid = crc32(array_bytes) == header.part_table_crc32
        if not array_valid:
            log.warning("CRC32 of GPT partition entry array does not match")

        return cls(header, entries, array_valid, bytes(sector))

    @classmethod
    def from_device(cls, device: Device) -> Table:
        """Parse partition table from the last sector of ``device``."""
        lss = device.sector_size
        sector = device.read_at(-lss, lss)
        header = parse_header(sector)

        array_sectors = partition_array_sectors(
            header.num_entries, header.entry_size, lss
        )
        offset = header.part_table_lba * lss
        log.debug(
            f"{device} - Reading {array_sectors} sectors of GPT partition entries at "
            f"offset {offset:#x}"
        )
        array = device.read_at(offset, array_sectors * lss)
        return cls.from_bytes(sector, array)

    @property
    def header(self) -> GptHeader:
        return self._header

    @property
    def header_sector(self) -> bytes:
        """The whole sector the header was parsed from."""
        return self._header_sector

    @property
    def disk_guid(self) -> UUID:
        return self._header.disk_guid

    @property
    def entries(self) -> tuple[GptEntry, ...]:
        """All partition entries declared by the header, empty ones included."""
        return self._entries

    @property
    def partitions(self) -> tuple[GptEntry, ...]:
        """Non-empty partition entries."""
        return tuple(entry for entry in self._entries if not entry.empty)

    @property
    def partition_array_valid(self) -> bool:
        """Whether the CRC32 of the partition entry array matches the header."""
        return self._partition_array_valid

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Table):
            return self._header == other._header and self._entries == other._entries
        return NotImplemented

    def __repr__(self) -> str:
        return (
            f"gpt.{self.__class__.__name__}({len(self.partitions)}, "
            f"disk_guid={self.disk_guid!r})"
        )
