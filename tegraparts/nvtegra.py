"""Proprietary NVIDIA Tegra partition table.

Found at the start of the second eMMC boot area partition of Tegra based modules
(e.g. Toradex Apalis T30). The table repeats every 4096 bytes; only the first copy
is decoded.

Layout based on https://github.com/Stuw/ac100-tools and
https://github.com/AndroidRoot/BlobTools.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator

from typing_extensions import Annotated

from .base import FormatError, ValidationError
from .bytestruct import ByteStruct
from .typing_ import ReadableBuffer

__all__ = [
    "PartitionTable",
    "PartitionTableHeader",
    "PartitionRecord",
    "iter_partition_records",
    "TABLE_SIZE",
    "MAX_PARTITIONS",
]


log = logging.getLogger(__name__)


TABLE_SIZE = 4096
MAX_PARTITIONS = 24  # never seen more in practice

VERSION = 0x00000100
ID_SENTINEL = 128  # ids >= 128 mark the end of the valid records

BCT_ID = 2
BCT_NAME = b"BCT\x00"
GPT_NAME = b"GPT"  # compared without the terminating NUL


@dataclass(frozen=True)
class PartitionTableHeader(ByteStruct):
    """Header of the partition table, directly followed by the partition records."""

    unknown_1: Annotated[bytes, 8]  # 0x08b8d9e8, 0x0fffffff
    version: Annotated[int, 4]
    table_size: Annotated[int, 4]  # actual size of the table in bytes
    unknown_2: Annotated[bytes, 16]  # signature or checksum
    unknown_3: Annotated[bytes, 16]  # always zero
    unknown_4: Annotated[bytes, 16]  # copy of the first 16 bytes
    num_parts: Annotated[int, 4]
    unknown_5: Annotated[bytes, 4]

    def validate(self) -> None:
        if self.version != VERSION:
            raise FormatError(
                f"Invalid partition table version {self.version:#010x}, expected "
                f"{VERSION:#010x}"
            )


@dataclass(frozen=True)
class PartitionRecord(ByteStruct):
    """Partition record of the partition table.

    Sector values are given in units of the boot device the table describes.
    """

    id: Annotated[int, 4]
    name: Annotated[bytes, 4]
    allocation_policy: Annotated[int, 4]
    unknown_1: Annotated[bytes, 8]  # 0x03000000 (version?), 0x00000000
    name2: Annotated[bytes, 4]
    fs_type: Annotated[int, 4]
    unknown_2: Annotated[bytes, 12]
    virt_start_sector: Annotated[int, 4]
    unknown_3: Annotated[bytes, 4]
    virt_size: Annotated[int, 4]
    unknown_4: Annotated[bytes, 4]
    start_sector: Annotated[int, 4]
    unknown_5: Annotated[bytes, 4]
    end_sector: Annotated[int, 4]
    unknown_6: Annotated[bytes, 4]
    type: Annotated[int, 4]
    unknown_7: Annotated[bytes, 4]

    @classmethod
    def new(
        cls,
        id_: int,
        name: str,
        *,
        allocation_policy: int = 0,
        fs_type: int = 0,
        virt_start_sector: int = 0,
        virt_size: int = 0,
        start_sector: int = 0,
        end_sector: int = 0,
        type_: int = 0,
    ) -> PartitionRecord:
        """New partition record with both name fields set to ``name`` and all
        unknown fields zeroed.
        """
        name_bytes = name.encode("ascii")
        if len(name_bytes) > 4:
            raise ValueError(f"Partition name must be at most 4 bytes, got {name!r}")
        name_bytes = name_bytes.ljust(4, b"\x00")
        return cls(
            id_,
            name_bytes,
            allocation_policy,
            b"\x00" * 8,
            name_bytes,
            fs_type,
            b"\x00" * 12,
            virt_start_sector,
            b"\x00" * 4,
            virt_size,
            b"\x00" * 4,
            start_sector,
            b"\x00" * 4,
            end_sector,
            b"\x00" * 4,
            type_,
            b"\x00" * 4,
        )

    @property
    def display_name(self) -> str:
        """First three characters of the name, as shown by the vendor tools."""
        name = self.name[:3].split(b"\x00", 1)[0]
        return name.decode("ascii", errors="replace")

    @property
    def is_gpt(self) -> bool:
        """Whether this record marks the presence of a GPT on the user area."""
        return (
            self.name[: len(GPT_NAME)] == GPT_NAME
            and self.name2[: len(GPT_NAME)] == GPT_NAME
        )

    def __repr__(self) -> str:
        return (
            f"nvtegra.{self.__class__.__name__}(id={self.id}, "
            f"name={self.name!r}, start_sector={self.start_sector:#x}, "
            f"end_sector={self.end_sector:#x})"
        )


_RECORDS_START = len(PartitionTableHeader)


def _record_offset(index: int) -> int:
    return _RECORDS_START + index * len(PartitionRecord)


def _check_bct(record: PartitionRecord) -> None:
    """Raise ``ValidationError`` if ``record`` is not a valid BCT record."""
    if record.id != BCT_ID:
        raise ValidationError(
            f"Invalid partition id {record.id} in BCT, expected {BCT_ID}"
        )
    if record.name != BCT_NAME or record.name2 != BCT_NAME:
        raise ValidationError(
            f"Invalid name for BCT (got {record.name!r} and {record.name2!r}, "
            f"expected {BCT_NAME!r})"
        )
    if record.start_sector != 0:
        raise ValidationError(
            f"Invalid start sector {record.start_sector:#x} for BCT, expected 0"
        )


def iter_partition_records(
    b: ReadableBuffer, num_parts: int
) -> Iterator[tuple[int, PartitionRecord]]:
    """Yield ``(index, record)`` for the partition records following the BCT
    record.

    Records are decoded lazily, in table order. The scan is limited by
    ``MAX_PARTITIONS`` first, then by ``num_parts``, and stops early at the first
    record whose id is at least 128.
    """
    for index in range(1, min(MAX_PARTITIONS, num_parts)):
        record = PartitionRecord.from_buffer(b, _record_offset(index))
        if record.id >= ID_SENTINEL:
            log.warning(f"Invalid id {record.id} in partition record #{index:02}")
            return
        yield index, record


class PartitionTable:
    """NVIDIA Tegra partition table.

    Do not use ``__init__`` directly, use ``PartitionTable.from_bytes()`` instead.
    """

    def __init__(
        self,
        header: PartitionTableHeader,
        partitions: tuple[PartitionRecord, ...],
        gpt_index: int | None,
    ):
        self._header = header
        self._partitions = partitions
        self._gpt_index = gpt_index

    @classmethod
    def from_bytes(cls, b: ReadableBuffer) -> PartitionTable:
        """Parse partition table from the first ``TABLE_SIZE`` bytes of a boot
        area partition.
        """
        b = bytes(b)
        if len(b) != TABLE_SIZE:
            raise ValueError(
                f"Partition table must be {TABLE_SIZE} bytes long, got {len(b)} bytes"
            )

        header = PartitionTableHeader.from_buffer(b)
        log.debug(
            f"Partition table with {header.num_parts} partitions, "
            f"size={header.table_size}"
        )

        bct = PartitionRecord.from_buffer(b, _record_offset(0))
        _check_bct(bct)

        partitions = [bct]
        gpt_index = None
        for index, record in iter_partition_records(b, header.num_parts):
            partitions.append(record)
            if record.is_gpt:
                if gpt_index is not None:
                    log.warning(
                        f"Multiple GPT records found (#{gpt_index:02} and "
                        f"#{index:02}), using #{index:02}"
                    )
                gpt_index = index

        return cls(header, tuple(partitions), gpt_index)

    @property
    def header(self) -> PartitionTableHeader:
        return self._header

    @property
    def partitions(self) -> tuple[PartitionRecord, ...]:
        """BCT record followed by every record visited during the scan."""
        return self._partitions

    @property
    def gpt_index(self) -> int | None:
        """Index of the record marking the presence of a GPT, if any."""
        return self._gpt_index

    @property
    def gpt_partition(self) -> PartitionRecord | None:
        if self._gpt_index is None:
            return None
        return self._partitions[self._gpt_index]

    @property
    def has_gpt(self) -> bool:
        """Whether a GPT is to be expected in the last sector of the user area."""
        return self._gpt_index is not None

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, PartitionTable):
            return (
                self._header == other._header
                and self._partitions == other._partitions
                and self._gpt_index == other._gpt_index
            )
        return NotImplemented

    def __repr__(self) -> str:
        return (
            f"nvtegra.{self.__class__.__name__}({len(self._partitions)}, "
            f"gpt_index={self._gpt_index!r})"
        )
