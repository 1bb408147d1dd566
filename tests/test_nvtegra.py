"""Tests for the ``nvtegra`` module."""

import logging

import pytest
from conftest import bct_record, make_partition_table, set_version, typical_records

from tegraparts.base import FormatError, ParseError, ValidationError
from tegraparts.nvtegra import (
    MAX_PARTITIONS,
    TABLE_SIZE,
    PartitionRecord,
    PartitionTable,
    PartitionTableHeader,
    iter_partition_records,
)


def record(id_, name='DAT', **kwargs):
    return PartitionRecord.new(id_, name, **kwargs)


def test_layout():
    """Test the sizes of the on-disk structures."""
    assert len(PartitionTableHeader) == 72
    assert len(PartitionRecord) == 80


def test_typical_table():
    """Test decoding a typical table with a GPT record."""
    table = PartitionTable.from_bytes(make_partition_table(typical_records()))

    assert table.header.version == 0x100
    assert table.header.num_parts == 4
    assert table.header.table_size == TABLE_SIZE
    assert [r.id for r in table.partitions] == [2, 3, 4, 7]
    assert [r.display_name for r in table.partitions] == ['BCT', 'PT', 'EBT', 'GPT']
    assert table.has_gpt
    assert table.gpt_index == 3
    assert table.gpt_partition == table.partitions[3]
    assert table.gpt_partition.start_sector == 0x1A00
    assert table.gpt_partition.end_sector == 0x1A01

    bct = table.partitions[0]
    assert bct.allocation_policy == 1
    assert bct.fs_type == 1
    assert bct.virt_size == 0x800
    assert bct.type == 18


def test_record_field_offsets():
    """Test that the record fields are decoded from their documented offsets."""
    b = bytearray(make_partition_table([bct_record()], num_parts=2))
    offset = 72 + 80
    fields = {
        0: 9,  # id
        8: 3,  # allocation policy
        24: 4,  # fs type
        40: 0x100,  # virtual start sector
        48: 0x200,  # virtual size
        56: 0x300,  # start sector
        64: 0x4FF,  # end sector
        72: 5,  # type
    }
    for field_offset, value in fields.items():
        position = offset + field_offset
        b[position : position + 4] = value.to_bytes(4, 'little')
    b[offset + 4 : offset + 8] = b'GPT\x00'
    b[offset + 20 : offset + 24] = b'GPT\x00'

    table = PartitionTable.from_bytes(b)
    r = table.partitions[1]
    assert (r.id, r.allocation_policy, r.fs_type) == (9, 3, 4)
    assert (r.virt_start_sector, r.virt_size) == (0x100, 0x200)
    assert (r.start_sector, r.end_sector, r.type) == (0x300, 0x4FF, 5)
    assert r.name == r.name2 == b'GPT\x00'
    assert table.gpt_index == 1


def test_bct_only():
    """Test a table with only the BCT record."""
    table = PartitionTable.from_bytes(make_partition_table([bct_record()]))
    assert len(table.partitions) == 1
    assert not table.has_gpt
    assert table.gpt_index is None
    assert table.gpt_partition is None


@pytest.mark.parametrize('version', [0, 0x101, 0x200, 0xFFFFFFFF])
def test_fail_version(version):
    """Test that a table with an unexpected version is rejected."""
    b = set_version(make_partition_table(typical_records()), version)
    with pytest.raises(FormatError):
        PartitionTable.from_bytes(b)


@pytest.mark.parametrize(
    'bct',
    [
        PartitionRecord.new(3, 'BCT'),
        PartitionRecord.new(2, 'BCX'),
        PartitionRecord.new(2, 'BCT', start_sector=1),
        record(0),
    ],
)
def test_fail_bct(bct):
    """Test that a table whose first record is not the BCT is rejected."""
    b = make_partition_table([bct] + typical_records()[1:])
    with pytest.raises(ValidationError):
        PartitionTable.from_bytes(b)


def test_fail_bct_name2():
    """Test that both name fields of the BCT record are checked."""
    b = bytearray(make_partition_table(typical_records()))
    b[72 + 20 : 72 + 24] = b'XXX\x00'
    with pytest.raises(ParseError):
        PartitionTable.from_bytes(b)


def test_fail_empty():
    """Test that an all-zero boot area is not mistaken for a partition table."""
    with pytest.raises(ParseError):
        PartitionTable.from_bytes(bytes(TABLE_SIZE))


@pytest.mark.parametrize('size', [0, 72, TABLE_SIZE - 1, TABLE_SIZE + 1])
def test_fail_size(size):
    """Test that anything but exactly ``TABLE_SIZE`` bytes is rejected."""
    with pytest.raises(ValueError):
        PartitionTable.from_bytes(bytes(size))


@pytest.mark.parametrize('sentinel', [128, 129, 0x80000000, 0xFFFFFFFF])
def test_sentinel(sentinel, caplog):
    """Test that the scan stops at the first record with an id of at least 128 and
    ignores everything after it, GPT records included.
    """
    records = typical_records()[:2] + [record(sentinel), record(9, 'GPT')]
    with caplog.at_level(logging.WARNING, logger='tegraparts.nvtegra'):
        table = PartitionTable.from_bytes(make_partition_table(records))

    assert [r.id for r in table.partitions] == [2, 3]
    assert not table.has_gpt
    assert 'Invalid id' in caplog.text


def test_id_127_is_valid():
    """Test that an id of 127 does not terminate the scan."""
    records = [bct_record(), record(127), record(5, 'GPT')]
    table = PartitionTable.from_bytes(make_partition_table(records))
    assert [r.id for r in table.partitions] == [2, 127, 5]
    assert table.gpt_index == 2


@pytest.mark.parametrize('num_parts', [0, 1, 2, 3])
def test_num_parts_limit(num_parts):
    """Test that records beyond the declared number of partitions are not visited,
    even if they are invalid or mark a GPT.
    """
    records = [bct_record(), record(3), record(4), record(0xFFFF), record(5, 'GPT')]
    table = PartitionTable.from_bytes(make_partition_table(records, num_parts))

    assert len(table.partitions) == max(num_parts, 1)
    assert not table.has_gpt


@pytest.mark.parametrize('num_parts', [MAX_PARTITIONS, MAX_PARTITIONS + 1, 1000])
def test_max_partitions_limit(num_parts):
    """Test that at most ``MAX_PARTITIONS`` records are visited regardless of the
    declared number of partitions.
    """
    records = [bct_record()]
    records += [record(index + 2) for index in range(1, MAX_PARTITIONS)]
    records.append(record(99, 'GPT'))  # record #24, never visited
    assert len(records) == MAX_PARTITIONS + 1

    table = PartitionTable.from_bytes(make_partition_table(records, num_parts))
    assert len(table.partitions) == MAX_PARTITIONS
    assert not table.has_gpt


def test_multiple_gpt_records(caplog):
    """Test that the last of several GPT records is used and that a warning is
    logged.
    """
    records = [bct_record(), record(3, 'GPT'), record(4), record(5, 'GPT')]
    with caplog.at_level(logging.WARNING, logger='tegraparts.nvtegra'):
        table = PartitionTable.from_bytes(make_partition_table(records))

    assert table.gpt_index == 3
    assert table.gpt_partition.id == 5
    assert 'Multiple GPT records' in caplog.text


@pytest.mark.parametrize(
    ['name', 'name2', 'is_gpt'],
    [
        (b'GPT\x00', b'GPT\x00', True),
        (b'GPTX', b'GPTY', True),  # only the first three bytes are compared
        (b'GPT\x00', b'DAT\x00', False),
        (b'DAT\x00', b'GPT\x00', False),
        (b'GP\x00\x00', b'GP\x00\x00', False),
        (b'gpt\x00', b'gpt\x00', False),
    ],
)
def test_is_gpt(name, name2, is_gpt):
    """Test detection of the GPT marker record."""
    r = PartitionRecord.new(5, 'DAT')
    b = bytearray(bytes(r))
    b[4:8] = name
    b[20:24] = name2
    assert PartitionRecord.from_bytes(b).is_gpt == is_gpt


def test_iter_partition_records_lazy():
    """Test that records are decoded one at a time, so a consumer may stop early
    without later records being decoded.
    """
    b = bytearray(make_partition_table(typical_records()))
    b[-1] = 0xFF  # make sure nothing depends on the end of the table
    iterator = iter_partition_records(b, 4)
    index, first = next(iterator)
    assert index == 1
    assert first.id == 3


def test_unknown_fields_preserved():
    """Test that the ``bytes`` form of a parsed record equals its on-disk form,
    unknown fields included.
    """
    b = bytearray(bytes(record(3)))
    b[12:20] = b'\x00\x00\x00\x03\xde\xad\xbe\xef'
    b[76:80] = b'\x01\x02\x03\x04'
    parsed = PartitionRecord.from_bytes(b)
    assert bytes(parsed) == bytes(b)
    assert parsed.unknown_7 == b'\x01\x02\x03\x04'


def test_record_new_fail_name():
    """Test that names longer than the name field are rejected."""
    with pytest.raises(ValueError):
        PartitionRecord.new(3, 'TOOLONG')


@pytest.mark.parametrize(
    ['name', 'display_name'],
    [
        (b'BCT\x00', 'BCT'),
        (b'PT\x00\x00', 'PT'),
        (b'A\x00B\x00', 'A'),
        (b'\x00EB\x00', ''),
        (b'APPX', 'APP'),
    ],
)
def test_display_name(name, display_name):
    """Test that the displayed name ends at the first NUL byte and is at most three
    characters long.
    """
    b = bytearray(bytes(PartitionRecord.new(5, 'DAT')))
    b[4:8] = name
    assert PartitionRecord.from_bytes(b).display_name == display_name
