"""Localdisk image verification using SHA256 checksums."""
from __future__ import annotations

import hashlib
import time
from pathlib import Path
from typing import BinaryIO, Sequence

from nydus_localdisk.config import settings
from nydus_localdisk.domain import FetchedBlob, ValidationResult
from nydus_localdisk.logging import LoggerFactory
from nydus_localdisk.storage.exceptions import (
    IntegrityMismatchError,
    PartitionEncodingError,
)
from nydus_localdisk.storage.partition_table import (
    PartitionEntry,
    iter_partition_contents,
    read_partition_table,
)

log = LoggerFactory.for_disk().bind(tags=["disk", "verify"])


def compute_file_sha256(path: Path, chunk_size: int) -> str:
    """Compute SHA256 checksum of a local file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_partition_sha256(
    disk_file: BinaryIO, entry: PartitionEntry, chunk_size: int
) -> tuple[str, int]:
    """Compute SHA256 checksum of a partition's full byte range.

    Returns:
        (hex digest, number of bytes read)
    """
    digest = hashlib.sha256()
    read_len = 0
    for chunk in iter_partition_contents(disk_file, entry, chunk_size):
        digest.update(chunk)
        read_len += len(chunk)
    return digest.hexdigest(), read_len


def validate_disk_image(
    disk_path: Path,
    blobs: Sequence[FetchedBlob],
    layer_limit: int | None = None,
    *,
    chunk_size: int | None = None,
) -> ValidationResult:
    """Verify each partition of a disk image against its fetched blob.

    Compares the partition bytes with the local blob file the builder copied
    from. Registry digests are checked when the blobs are downloaded.

    Args:
        disk_path: Disk image written by build_disk_image()
        blobs: Fetched blobs, index-aligned with the partitions
        layer_limit: Number of leading partitions to check (default: all blobs)
        chunk_size: Read size (default: copy_buffer_size setting)

    Returns:
        ValidationResult with one entry per checked partition

    Raises:
        IntegrityMismatchError: If any partition does not match
        PartitionEncodingError: If the partition table cannot be read
    """
    start_time = time.time()
    if chunk_size is None:
        chunk_size = settings.get_int(
            "copy_buffer_size", settings.DEFAULT_COPY_BUFFER_SIZE
        )
    limit = len(blobs) if layer_limit is None else min(layer_limit, len(blobs))
    log.info(f"Validating {limit} partitions in {disk_path}")

    table = read_partition_table(disk_path)
    partitions = {entry.index: entry for entry in table.partitions}
    result = ValidationResult()

    try:
        with open(disk_path, "rb") as disk_file:
            for index in range(limit):
                entry = partitions.get(index)
                if entry is None:
                    log.error(f"Partition {index} is missing from {disk_path}")
                    result.per_partition_ok.append(False)
                    result.error_count += 1
                    continue

                target_hash, read_len = compute_partition_sha256(
                    disk_file, entry, chunk_size
                )
                if read_len != entry.size_bytes:
                    log.error(
                        f"returned {read_len} bytes read instead of {entry.size_bytes}"
                    )
                source_hash = compute_file_sha256(blobs[index].local_path, chunk_size)

                if read_len == entry.size_bytes and target_hash == source_hash:
                    log.info(
                        f"The data in partition {index} is correct, sha256: {target_hash}"
                    )
                    result.per_partition_ok.append(True)
                else:
                    log.error(
                        f"Data corrupted in partition {index}, "
                        f"sha256: {target_hash} not equal {source_hash}"
                    )
                    result.per_partition_ok.append(False)
                    result.error_count += 1
    except OSError as error:
        raise PartitionEncodingError(
            f"Failed to read back {disk_path}: {error}", path=str(disk_path)
        ) from error

    if result.error_count:
        raise IntegrityMismatchError(result.failed_indices, result)

    log.info(f"Image validated in {time.time() - start_time:.3f} s")
    return result
