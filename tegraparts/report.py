"""Human-readable output of decoded structures."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from .configblock import ConfigBlock
    from .gpt import GptEntry, Table
    from .nvtegra import PartitionRecord, PartitionTable
    from .typing_ import ReadableBuffer

__all__ = [
    "hexdump",
    "format_partition_record",
    "format_partition_table",
    "format_gpt_entry",
    "format_gpt",
    "format_config_block",
]


HEXDUMP_WIDTH = 16
GPT_NAME_DISPLAY_LEN = 19


def hexdump(b: ReadableBuffer) -> Iterator[str]:
    """Yield the lines of a canonical hex+ASCII dump of ``b``.

    Example line::

        00000000  45 46 49 20 50 41 52 54  00 00 01 00 5c 00 00 00  |EFI PART....\\...|
    """
    view = memoryview(b).cast("B")
    for offset in range(0, view.nbytes, HEXDUMP_WIDTH):
        chunk = bytes(view[offset : offset + HEXDUMP_WIDTH])
        left = " ".join(f"{byte:02x}" for byte in chunk[:8])
        right = " ".join(f"{byte:02x}" for byte in chunk[8:])
        text = "".join(chr(byte) if 0x20 <= byte < 0x7F else "." for byte in chunk)
        yield f"{offset:08x}  {left:<23}  {right:<23}  |{text}|"


def format_partition_record(index: int, record: PartitionRecord) -> str:
    return (
        f"  #{index:02} id={record.id:02} [{record.display_name:<3}] "
        f"policy={record.allocation_policy} fs={record.fs_type} "
        f"virt={record.virt_start_sector:#010x}+{record.virt_size:#010x} "
        f"sectors={record.start_sector:#010x}-{record.end_sector:#010x} "
        f"type={record.type}"
    )


def format_partition_table(table: PartitionTable) -> Iterator[str]:
    header = table.header
    yield (
        f"nvtegra partition table ({header.num_parts} partitions, "
        f"size={header.table_size})"
    )
    for index, record in enumerate(table.partitions):
        yield format_partition_record(index, record)


def format_gpt_entry(index: int, entry: GptEntry) -> str:
    name = entry.name[:GPT_NAME_DISPLAY_LEN]
    return (
        f"  #{index:02} name={name} type={entry.type} uuid={entry.guid} "
        f"attr={entry.attributes:#x} start={entry.first_lba:#x} "
        f"size={entry.length_lba}"
    )


def format_gpt(table: Table, lss: int, *, verbose: bool = False) -> Iterator[str]:
    """Yield the report lines of the GUID partition table ``table`` read from a
    device with a logical sector size of ``lss``.

    Every entry declared by the header is listed, empty ones included. With
    ``verbose`` set, each entry is preceded by a dump of its raw bytes.
    """
    header = table.header
    offset = header.part_table_lba * lss
    yield (
        f"GUID partition table ({header.num_entries} partitions, "
        f"size={header.partition_array_size}, sector {header.part_table_lba:#x}, "
        f"offset {offset:#x})"
    )
    for index, entry in enumerate(table.entries):
        if verbose:
            yield f"GPT entry {index} dump:"
            yield from hexdump(bytes(entry))
        yield format_gpt_entry(index, entry)


def format_config_block(block: ConfigBlock) -> Iterator[str]:
    hardware = block.hardware
    if hardware is None:
        yield "Model:  unknown"
    else:
        model = hardware.model or f"unknown module (product id {hardware.product_id})"
        yield f"Model:  Toradex {model} {hardware.version}"

    if block.ethernet is None:
        yield "Serial: unknown"
        yield "MAC:    unknown"
    else:
        yield f"Serial: {block.ethernet.serial:08}"
        yield f"MAC:    {block.ethernet}"
