"""GPT partition table encoding for localdisk images.

This module handles the on-disk partition table of a raw image file:
- Writing a protective MBR, primary GPT header and entry array, and the
  backup entry array and header at the end of the disk
- Reading the table back and checking signature and CRC32 fields
- Streaming bytes into and out of a partition's byte range

The layout of every structure follows the UEFI specification (chapter 5).
"""
from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Sequence

from nydus_localdisk.domain import SECTOR_SIZE, PartitionPlan
from nydus_localdisk.logging import LoggerFactory

from .exceptions import PartitionEncodingError

log = LoggerFactory.for_disk()

GPT_SIGNATURE = b"EFI PART"
GPT_REVISION = 0x00010000
GPT_HEADER_SIZE = 92
GPT_ENTRY_COUNT = 128
GPT_ENTRY_SIZE = 128
GPT_TABLE_SECTORS = GPT_ENTRY_COUNT * GPT_ENTRY_SIZE // SECTOR_SIZE
# Sectors reserved at the end of the disk: backup entries plus backup header
GPT_BACKUP_SECTORS = GPT_TABLE_SECTORS + 1
GPT_NAME_UNITS = 36

LINUX_FILESYSTEM_GUID = uuid.UUID("0fc63daf-8483-4772-8e79-3d69d8477de4")

_HEADER = struct.Struct("<8sIIIIQQQQ16sQIII")
_ENTRY = struct.Struct("<16s16sQQQ72s")
_EMPTY_GUID = b"\x00" * 16


@dataclass(frozen=True)
class PartitionEntry:
    """A populated GPT partition entry."""

    index: int
    type_guid: uuid.UUID
    guid: uuid.UUID
    first_lba: int
    last_lba: int
    name: str
    attributes: int = 0

    @property
    def offset(self) -> int:
        return self.first_lba * SECTOR_SIZE

    @property
    def size_bytes(self) -> int:
        return (self.last_lba - self.first_lba + 1) * SECTOR_SIZE


@dataclass(frozen=True)
class PartitionTable:
    """Decoded GPT of a disk image."""

    disk_guid: uuid.UUID
    total_sectors: int
    first_usable_lba: int
    last_usable_lba: int
    partitions: tuple[PartitionEntry, ...]


def usable_lba_range(total_sectors: int) -> tuple[int, int]:
    """First and last LBA available to partitions on a disk of this size."""
    first_usable = 2 + GPT_TABLE_SECTORS
    last_usable = total_sectors - GPT_BACKUP_SECTORS - 1
    return first_usable, last_usable


def _encode_name(name: str) -> bytes:
    encoded = name.encode("utf-16-le")
    if len(encoded) > GPT_NAME_UNITS * 2:
        raise PartitionEncodingError(
            f"Partition name {name!r} exceeds {GPT_NAME_UNITS} UTF-16 code units"
        )
    return encoded.ljust(GPT_NAME_UNITS * 2, b"\x00")


def _decode_name(raw: bytes) -> str:
    return raw.decode("utf-16-le", errors="replace").split("\x00", 1)[0]


def _check_extents(
    partitions: Sequence[PartitionPlan], first_usable: int, last_usable: int
) -> None:
    if len(partitions) > GPT_ENTRY_COUNT:
        raise PartitionEncodingError(
            f"{len(partitions)} partitions exceed the {GPT_ENTRY_COUNT} GPT entries"
        )
    previous_end = first_usable - 1
    for part in partitions:
        if part.end_sector < part.start_sector:
            raise PartitionEncodingError(
                f"Partition {part.index} ends before it starts "
                f"({part.start_sector}-{part.end_sector})"
            )
        if part.start_sector <= previous_end:
            raise PartitionEncodingError(
                f"Partition {part.index} at sector {part.start_sector} overlaps "
                f"the previous extent ending at {previous_end}"
            )
        if part.end_sector > last_usable:
            raise PartitionEncodingError(
                f"Partition {part.index} ends at sector {part.end_sector}, "
                f"beyond the last usable sector {last_usable}"
            )
        previous_end = part.end_sector


def _build_entries(partitions: Sequence[PartitionPlan]) -> bytes:
    table = bytearray(GPT_ENTRY_COUNT * GPT_ENTRY_SIZE)
    for slot, part in enumerate(partitions):
        _ENTRY.pack_into(
            table,
            slot * GPT_ENTRY_SIZE,
            LINUX_FILESYSTEM_GUID.bytes_le,
            part.guid.bytes_le,
            part.start_sector,
            part.end_sector,
            0,
            _encode_name(part.name),
        )
    return bytes(table)


def _build_header(
    *,
    current_lba: int,
    backup_lba: int,
    first_usable: int,
    last_usable: int,
    disk_guid: uuid.UUID,
    entries_lba: int,
    entries_crc: int,
) -> bytes:
    fields = [
        GPT_SIGNATURE,
        GPT_REVISION,
        GPT_HEADER_SIZE,
        0,  # header CRC, computed over the header with this field zeroed
        0,
        current_lba,
        backup_lba,
        first_usable,
        last_usable,
        disk_guid.bytes_le,
        entries_lba,
        GPT_ENTRY_COUNT,
        GPT_ENTRY_SIZE,
        entries_crc,
    ]
    header_crc = zlib.crc32(_HEADER.pack(*fields)) & 0xFFFFFFFF
    fields[3] = header_crc
    return _HEADER.pack(*fields)


def _build_protective_mbr(total_sectors: int) -> bytes:
    mbr = bytearray(SECTOR_SIZE)
    # Single 0xEE entry covering the whole disk, CHS fields saturated
    mbr[446:454] = bytes([0x00, 0x00, 0x02, 0x00, 0xEE, 0xFF, 0xFF, 0xFF])
    struct.pack_into("<II", mbr, 454, 1, min(total_sectors - 1, 0xFFFFFFFF))
    mbr[510] = 0x55
    mbr[511] = 0xAA
    return bytes(mbr)


def apply_partition_table(
    disk_path: Path,
    disk_guid: uuid.UUID,
    partitions: Sequence[PartitionPlan],
) -> PartitionTable:
    """Write a protective MBR and GPT describing ``partitions`` to a disk file.

    The disk file must already exist at its final size.

    Raises:
        PartitionEncodingError: If the extents do not fit the disk or the
            file cannot be written
    """
    disk_path = Path(disk_path)
    try:
        disk_size = disk_path.stat().st_size
    except OSError as error:
        raise PartitionEncodingError(
            f"Cannot stat disk image {disk_path}: {error}", path=str(disk_path)
        ) from error
    if disk_size % SECTOR_SIZE:
        raise PartitionEncodingError(
            f"Disk image size {disk_size} is not a multiple of {SECTOR_SIZE}",
            path=str(disk_path),
        )
    total_sectors = disk_size // SECTOR_SIZE
    first_usable, last_usable = usable_lba_range(total_sectors)
    if last_usable < first_usable:
        raise PartitionEncodingError(
            f"Disk image of {disk_size} bytes is too small for a GPT",
            path=str(disk_path),
        )
    _check_extents(partitions, first_usable, last_usable)

    entries = _build_entries(partitions)
    entries_crc = zlib.crc32(entries) & 0xFFFFFFFF
    backup_lba = total_sectors - 1
    backup_entries_lba = total_sectors - GPT_BACKUP_SECTORS
    primary = _build_header(
        current_lba=1,
        backup_lba=backup_lba,
        first_usable=first_usable,
        last_usable=last_usable,
        disk_guid=disk_guid,
        entries_lba=2,
        entries_crc=entries_crc,
    )
    backup = _build_header(
        current_lba=backup_lba,
        backup_lba=1,
        first_usable=first_usable,
        last_usable=last_usable,
        disk_guid=disk_guid,
        entries_lba=backup_entries_lba,
        entries_crc=entries_crc,
    )

    try:
        with open(disk_path, "r+b") as f:
            f.seek(0)
            f.write(_build_protective_mbr(total_sectors))
            f.seek(SECTOR_SIZE)
            f.write(primary.ljust(SECTOR_SIZE, b"\x00"))
            f.seek(2 * SECTOR_SIZE)
            f.write(entries)
            f.seek(backup_entries_lba * SECTOR_SIZE)
            f.write(entries)
            f.seek(backup_lba * SECTOR_SIZE)
            f.write(backup.ljust(SECTOR_SIZE, b"\x00"))
    except OSError as error:
        raise PartitionEncodingError(
            f"Failed to write partition table to {disk_path}: {error}",
            path=str(disk_path),
        ) from error

    log.info(f"Build GPT table with {len(partitions)} layers")
    return PartitionTable(
        disk_guid=disk_guid,
        total_sectors=total_sectors,
        first_usable_lba=first_usable,
        last_usable_lba=last_usable,
        partitions=tuple(
            PartitionEntry(
                index=part.index,
                type_guid=LINUX_FILESYSTEM_GUID,
                guid=part.guid,
                first_lba=part.start_sector,
                last_lba=part.end_sector,
                name=part.name,
            )
            for part in partitions
        ),
    )


def read_partition_table(disk_path: Path) -> PartitionTable:
    """Read and verify the primary GPT of a disk image.

    Raises:
        PartitionEncodingError: On a missing signature, a CRC mismatch or
            an unreadable file
    """
    disk_path = Path(disk_path)
    try:
        with open(disk_path, "rb") as f:
            total_sectors = disk_path.stat().st_size // SECTOR_SIZE
            f.seek(SECTOR_SIZE)
            header = f.read(GPT_HEADER_SIZE)
            if len(header) < GPT_HEADER_SIZE:
                raise PartitionEncodingError(
                    f"No GPT header in {disk_path}", path=str(disk_path)
                )
            (
                signature,
                _revision,
                header_size,
                header_crc,
                _reserved,
                _current_lba,
                _backup_lba,
                first_usable,
                last_usable,
                disk_guid,
                entries_lba,
                entry_count,
                entry_size,
                entries_crc,
            ) = _HEADER.unpack(header)
            if signature != GPT_SIGNATURE:
                raise PartitionEncodingError(
                    f"Invalid GPT signature in {disk_path}", path=str(disk_path)
                )
            zeroed = header[:16] + b"\x00\x00\x00\x00" + header[20:]
            if zlib.crc32(zeroed) & 0xFFFFFFFF != header_crc:
                raise PartitionEncodingError(
                    f"GPT header CRC mismatch in {disk_path}", path=str(disk_path)
                )
            if header_size != GPT_HEADER_SIZE or entry_size != GPT_ENTRY_SIZE:
                raise PartitionEncodingError(
                    f"Unsupported GPT header ({header_size}/{entry_size}) in {disk_path}",
                    path=str(disk_path),
                )
            f.seek(entries_lba * SECTOR_SIZE)
            entries = f.read(entry_count * entry_size)
    except OSError as error:
        raise PartitionEncodingError(
            f"Failed to read partition table from {disk_path}: {error}",
            path=str(disk_path),
        ) from error

    if zlib.crc32(entries) & 0xFFFFFFFF != entries_crc:
        raise PartitionEncodingError(
            f"GPT entry array CRC mismatch in {disk_path}", path=str(disk_path)
        )

    partitions = []
    for slot in range(entry_count):
        type_guid, guid, first_lba, last_lba, attributes, name = _ENTRY.unpack_from(
            entries, slot * entry_size
        )
        if type_guid == _EMPTY_GUID:
            continue
        partitions.append(
            PartitionEntry(
                index=slot,
                type_guid=uuid.UUID(bytes_le=type_guid),
                guid=uuid.UUID(bytes_le=guid),
                first_lba=first_lba,
                last_lba=last_lba,
                name=_decode_name(name),
                attributes=attributes,
            )
        )

    return PartitionTable(
        disk_guid=uuid.UUID(bytes_le=disk_guid),
        total_sectors=total_sectors,
        first_usable_lba=first_usable,
        last_usable_lba=last_usable,
        partitions=tuple(partitions),
    )


def write_partition_contents(
    disk_file: BinaryIO,
    entry: PartitionEntry,
    reader: BinaryIO,
    buffer_size: int,
) -> int:
    """Copy ``reader`` into the partition's byte range, up to its size.

    Returns:
        Number of bytes written
    """
    disk_file.seek(entry.offset)
    remaining = entry.size_bytes
    written = 0
    while remaining > 0:
        chunk = reader.read(min(buffer_size, remaining))
        if not chunk:
            break
        disk_file.write(chunk)
        written += len(chunk)
        remaining -= len(chunk)
    return written


def iter_partition_contents(
    disk_file: BinaryIO, entry: PartitionEntry, chunk_size: int
) -> Iterator[bytes]:
    """Yield the bytes of a partition in chunks."""
    disk_file.seek(entry.offset)
    remaining = entry.size_bytes
    while remaining > 0:
        chunk = disk_file.read(min(chunk_size, remaining))
        if not chunk:
            return
        remaining -= len(chunk)
        yield chunk
