"""Fixtures and image builders used across the test suite."""

import os
import shutil
import struct
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from tempfile import mkstemp
from uuid import UUID

import pytest

from tegraparts.configblock import BLOCK_SIZE, TAG_VALID, Tag
from tegraparts.crc import crc32
from tegraparts.gpt import SIGNATURE, GptEntry, GptHeader, header_checksum
from tegraparts.nvtegra import TABLE_SIZE, PartitionRecord, PartitionTableHeader

LINUX_FS_TYPE = UUID('0fc63daf-8483-4772-8e79-3d69d8477de4')
DISK_GUID = UUID('12345678-9abc-def0-1234-56789abcdef0')


@pytest.fixture
def tempfile():
    """Fixture providing a new temporary file for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary file.
    """
    fd, path_str = mkstemp()
    os.close(fd)  # we are going to use a Path object instead
    path = Path(path_str)
    yield path
    path.unlink(missing_ok=True)  # clean up


@pytest.fixture
def make_tempfile():
    """Fixture providing a function which writes the ``bytes`` passed to a new
    temporary file and returns its path.
    """
    paths = []

    def make(content):
        fd, path_str = mkstemp()
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
        paths.append(Path(path_str))
        return paths[-1]

    yield make
    for path in paths:
        path.unlink(missing_ok=True)


# nvtegra


def bct_record(**kwargs):
    kwargs.setdefault('end_sector', 0x7FF)
    return PartitionRecord.new(2, 'BCT', **kwargs)


def make_partition_table(records, num_parts=None, table_size=TABLE_SIZE):
    """Return the ``TABLE_SIZE`` bytes of a partition table holding ``records``.

    ``num_parts`` defaults to the amount of records passed.
    """
    if num_parts is None:
        num_parts = len(records)
    header = PartitionTableHeader(
        b'\xe8\xd9\xb8\x08\xff\xff\xff\x0f',
        0x100,
        table_size,
        b'\x5a' * 16,
        b'\x00' * 16,
        b'\xe8\xd9\xb8\x08\xff\xff\xff\x0f' + b'\x00' * 8,
        num_parts,
        b'\x00' * 4,
    )
    b = bytearray(TABLE_SIZE)
    b[: len(header)] = bytes(header)
    offset = len(header)
    for record in records:
        b[offset : offset + len(record)] = bytes(record)
        offset += len(record)
    return bytes(b)


def set_version(b, version):
    """Return partition table ``b`` with its version field replaced."""
    b = bytearray(b)
    struct.pack_into('<I', b, 8, version)
    return bytes(b)


def typical_records():
    """BCT record followed by the records of a typical Apalis T30 boot partition."""
    return [
        bct_record(allocation_policy=1, fs_type=1, virt_size=0x800, type_=18),
        PartitionRecord.new(
            3, 'PT', start_sector=0x800, end_sector=0x9FF, virt_start_sector=0x800
        ),
        PartitionRecord.new(
            4, 'EBT', start_sector=0xA00, end_sector=0x19FF, virt_start_sector=0xA00
        ),
        PartitionRecord.new(
            7,
            'GPT',
            start_sector=0x1A00,
            end_sector=0x1A01,
            virt_start_sector=0x1A00,
        ),
    ]


# GPT


def make_entry(name, first_lba, last_lba, type_=LINUX_FS_TYPE, guid=None, attr=0):
    if guid is None:
        guid = UUID(int=first_lba)
    return GptEntry(
        type_.bytes_le,
        guid.bytes_le,
        first_lba,
        last_lba,
        attr,
        name.encode('utf-16-le').ljust(72, b'\x00'),
    )


def make_gpt_header(array, num_entries, *, last_lba, part_table_lba=2):
    """Return a GPT header with a correct header CRC32 describing the partition
    entry array ``array``.
    """
    header = GptHeader(
        SIGNATURE,
        0x00010000,
        92,
        0,
        b'\x00' * 4,
        last_lba,
        1,
        34,
        last_lba - 33,
        DISK_GUID.bytes_le,
        part_table_lba,
        num_entries,
        128,
        crc32(array[: num_entries * 128]),
    )
    checksum = header_checksum(bytes(header))
    return replace(header, header_crc32=int.from_bytes(checksum, 'little'))


def make_gpt_image(entries, *, num_entries=4, sectors=64, lss=512, part_table_lba=2):
    """Return the bytes of a device of ``sectors`` sectors with a GPT in its last
    sector and the partition entry array starting at ``part_table_lba``.
    """
    array = bytearray(num_entries * 128)
    for index, entry in enumerate(entries):
        array[index * 128 : (index + 1) * 128] = bytes(entry)
    array = bytes(array)

    header = make_gpt_header(
        array, num_entries, last_lba=sectors - 1, part_table_lba=part_table_lba
    )
    image = bytearray(sectors * lss)
    offset = part_table_lba * lss
    image[offset : offset + len(array)] = array
    image[-lss : -lss + len(header)] = bytes(header)
    return bytes(image)


def typical_entries():
    return [
        make_entry('APP', 0x1A02, 0x3FFFF),
        make_entry('CAC', 0x40000, 0x4FFFF, attr=0x1),
    ]


# Config block


def make_config_block(tags, size=BLOCK_SIZE):
    """Return ``size`` bytes holding a config block made of the config block marker
    tag followed by ``tags``, a sequence of ``(tag, payload)`` pairs.

    ``payload`` is written as-is after the tag header, so it is possible to craft
    tags whose length does not match their payload.
    """
    b = bytearray(size)
    b[:4] = bytes(Tag.new(TAG_VALID, 0))
    offset = 4
    for tag, payload in tags:
        b[offset : offset + 4] = bytes(tag)
        offset += 4
        b[offset : offset + len(payload)] = payload
        offset += len(payload)
    return bytes(b[:size])


MAC_PAYLOAD = b'\x00\x14\x2d\x00\x12\x34\x00\x00'  # padded to whole words
HW_PAYLOAD = struct.pack('<HHHH', 1, 1, 0, 25)  # Apalis T30 2GB V1.1A


# Block devices


@pytest.fixture
def block_device(request, tempfile):
    """Fixture providing a loop device for testing purposes.

    Parametrized using a ``tuple`` of (content of the block device, logical sector
    size of the block device). Skips the test if no loop device can be set up.

    Returns a string representing the path of the block device.
    """
    if sys.platform != 'linux':
        pytest.skip('Loop devices are only supported on Linux')
    if shutil.which('losetup') is None:
        pytest.skip('losetup not found')

    content, lss = request.param
    with tempfile.open('wb') as f:
        f.write(content)

    # Create loop device
    backfile_path = tempfile.absolute()
    completed_process = subprocess.run(
        ['losetup', '-fL', '-b', str(lss), '--show', backfile_path],
        capture_output=True,
        encoding='utf-8',
    )
    if completed_process.returncode != 0:
        pytest.skip(f'Cannot create loop device: {completed_process.stderr.strip()}')
    device_path = completed_process.stdout.rstrip()
    yield device_path

    # Clean up
    subprocess.run(['losetup', '-d', device_path])
