"""Partition layout planning for localdisk images.

Pure computation: sizes in, sector extents out. No I/O happens here.
"""
from __future__ import annotations

import uuid

from nydus_localdisk.domain import SECTOR_SIZE, DiskPlan, ImageInfo, PartitionPlan
from nydus_localdisk.logging import LoggerFactory
from nydus_localdisk.storage.exceptions import (
    InternalConsistencyError,
    PartitionEncodingError,
)
from nydus_localdisk.storage.partition_table import GPT_BACKUP_SECTORS

log = LoggerFactory.for_disk()

MIB = 1024 * 1024
# 1 MiB partition alignment, expressed in sectors
PARTITION_ALIGNMENT = MIB // SECTOR_SIZE
FIRST_PARTITION_SECTOR = PARTITION_ALIGNMENT
BLOB_ID_HALF = 32


def align_up(x: int, a: int) -> int:
    """Round up x to a multiple of a (a power of two), e.g. x=6, a=4 -> 8."""
    return (x + a - 1) & ~(a - 1)


def round_up(value: int, nearest: int) -> int:
    """Round up value to a multiple of nearest using ceiling division."""
    return -(-value // nearest) * nearest


def split_blob_id(encoded: str) -> tuple[str, str]:
    """Split a 64 hex character blob id into a partition name and GUID seed.

    The GPT name field holds 36 characters, so the id is stored in two halves.
    """
    if len(encoded) < 2 * BLOB_ID_HALF:
        raise PartitionEncodingError(
            f"Blob id {encoded!r} is shorter than {2 * BLOB_ID_HALF} characters"
        )
    name = encoded[:BLOB_ID_HALF]
    guid_seed = encoded[BLOB_ID_HALF : 2 * BLOB_ID_HALF]
    try:
        uuid.UUID(hex=guid_seed)
    except ValueError as error:
        raise PartitionEncodingError(
            f"Blob id {encoded!r} is not hexadecimal"
        ) from error
    return name, guid_seed


def truncate_blob_id(encoded: str) -> uuid.UUID:
    """Build a GUID from the first 32 hex characters of a blob id."""
    try:
        return uuid.UUID(hex=encoded[:BLOB_ID_HALF])
    except ValueError as error:
        raise PartitionEncodingError(
            f"Blob id {encoded!r} cannot seed a disk GUID"
        ) from error


def _sectors_for(size: int) -> int:
    sectors = round_up(size, SECTOR_SIZE) // SECTOR_SIZE
    masked = align_up(size, SECTOR_SIZE) // SECTOR_SIZE
    if sectors != masked:
        raise InternalConsistencyError("partition sectors", sectors, masked)
    return sectors


def resolve_layer_limit(image: ImageInfo, layer_limit: int | None) -> int:
    """Validate a layer limit against an image, defaulting to every layer."""
    if not image.layers:
        raise ValueError(f"Image {image.source_ref} has no layers")
    if layer_limit is None:
        return image.layer_count
    if not 1 <= layer_limit <= image.layer_count:
        raise ValueError(
            f"layer limit {layer_limit} must be between 1 and {image.layer_count}"
        )
    return layer_limit


def plan_partitions(image: ImageInfo, layer_limit: int) -> tuple[PartitionPlan, ...]:
    """Compute 1 MiB aligned partition extents for the first layers.

    Each partition ends at ``start + ceil(size / 512)`` (inclusive) and the
    next one starts on the following 1 MiB boundary at least 1 MiB later.
    """
    partitions = []
    start = FIRST_PARTITION_SECTOR
    for index, layer in enumerate(image.layers[:layer_limit]):
        end = start + _sectors_for(layer.size)
        name, guid_seed = split_blob_id(layer.encoded)
        partitions.append(
            PartitionPlan(
                index=index,
                start_sector=start,
                end_sector=end,
                name=name,
                guid_seed=guid_seed,
            )
        )
        start = round_up(end + PARTITION_ALIGNMENT, PARTITION_ALIGNMENT)
    return tuple(partitions)


def compute_disk_size(total_size: int, layer_count: int) -> int:
    """Align the layer bytes plus 1 MiB per layer and one spare MiB to 512.

    Raises:
        InternalConsistencyError: If ceiling division and bit-mask rounding
            disagree
    """
    input_size = total_size + (layer_count + 1) * MIB
    disk_size = round_up(input_size, SECTOR_SIZE)
    disk_size2 = align_up(input_size, SECTOR_SIZE)
    if disk_size != disk_size2:
        raise InternalConsistencyError("diskSize", disk_size, disk_size2)
    log.info(
        f"Align input data size {input_size} Byte to a multiple of disk sector "
        f"size ({SECTOR_SIZE} Byte): {disk_size} Byte"
    )
    return disk_size


def plan_disk(image: ImageInfo, layer_limit: int | None = None) -> DiskPlan:
    """Plan the GPT layout and size of a localdisk image.

    Args:
        image: Classified image, bootstrap first
        layer_limit: Number of leading layers to include (default: all)

    Returns:
        DiskPlan with one partition per included layer
    """
    limit = resolve_layer_limit(image, layer_limit)
    partitions = plan_partitions(image, limit)
    included_size = sum(layer.size for layer in image.layers[:limit])
    disk_size = compute_disk_size(included_size, limit)

    # The last partition and the backup GPT must fit behind it
    required = (partitions[-1].end_sector + 1 + GPT_BACKUP_SECTORS) * SECTOR_SIZE
    if required > disk_size:
        log.debug(f"Grow disk size {disk_size} Byte to {required} Byte for backup GPT")
        disk_size = required

    seed = image.manifest_digest or image.bootstrap.digest
    disk_guid = truncate_blob_id(seed.split(":", 1)[-1])

    return DiskPlan(
        total_disk_size=disk_size,
        partitions=partitions,
        disk_guid=disk_guid,
    )
