"""Write fetched layer blobs into a GPT localdisk image."""
from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO, Sequence

from nydus_localdisk.config import settings
from nydus_localdisk.domain import DiskPlan, FetchedBlob
from nydus_localdisk.logging import LoggerFactory
from nydus_localdisk.storage.exceptions import DiskAllocationError, PartitionWriteError
from nydus_localdisk.storage.partition_table import (
    PartitionEntry,
    apply_partition_table,
    write_partition_contents,
)

log = LoggerFactory.for_disk()


def allocate_disk_image(output_path: Path, size: int) -> Path:
    """Create (or replace) a sparse raw file of exactly ``size`` bytes."""
    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as f:
            f.truncate(size)
    except OSError as error:
        raise DiskAllocationError(str(output_path), size, str(error)) from error
    return output_path


def write_partition(
    disk_file: BinaryIO,
    entry: PartitionEntry,
    blob_path: Path,
    buffer_size: int,
) -> int:
    """Size a blob file to its partition and copy it into the disk image.

    Raises:
        PartitionWriteError: On I/O failure or a short write
    """
    expected = entry.size_bytes
    try:
        os.truncate(blob_path, expected)
        with open(blob_path, "rb", buffering=buffer_size) as reader:
            written = write_partition_contents(disk_file, entry, reader, buffer_size)
    except OSError as error:
        raise PartitionWriteError(entry.index, expected, reason=str(error)) from error
    if written != expected:
        log.error(f"returned {written} bytes written instead of {expected}")
        raise PartitionWriteError(entry.index, expected, written)
    log.debug(f"Wrote {written} bytes from {blob_path} to partition {entry.index}")
    return written


def build_disk_image(
    plan: DiskPlan,
    output_path: Path,
    blobs: Sequence[FetchedBlob],
    *,
    buffer_size: int | None = None,
) -> Path:
    """Allocate a disk image, apply the GPT and write each partition in order.

    Args:
        plan: Partition layout from plan_disk()
        output_path: Disk image file to create
        blobs: Fetched blobs, index-aligned with the plan's partitions
        buffer_size: Copy buffer size (default: copy_buffer_size setting)

    Returns:
        Path to the written disk image
    """
    if buffer_size is None:
        buffer_size = settings.get_int(
            "copy_buffer_size", settings.DEFAULT_COPY_BUFFER_SIZE
        )
    if len(blobs) < len(plan.partitions):
        missing = plan.partitions[len(blobs)]
        raise PartitionWriteError(
            missing.index, missing.size_bytes, reason="no fetched blob for partition"
        )

    log.info("Prepare Write datas to localdisk image file")
    output_path = allocate_disk_image(output_path, plan.total_disk_size)
    table = apply_partition_table(output_path, plan.disk_guid, plan.partitions)

    try:
        disk_file = open(output_path, "r+b")
    except OSError as error:
        first = table.partitions[0]
        raise PartitionWriteError(
            first.index, first.size_bytes, reason=f"{output_path}: {error}"
        ) from error
    with disk_file:
        for entry, blob in zip(table.partitions, blobs):
            write_partition(disk_file, entry, blob.local_path, buffer_size)

    log.info(f"Localdisk image file has been written in: {output_path}")
    return output_path
