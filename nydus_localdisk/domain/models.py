"""Domain model for Nydus localdisk conversion.

Immutable value objects passed between the pipeline phases. Dicts from
registry JSON are turned into these at the edge and never travel further.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

SECTOR_SIZE = 512


# ==============================================================================
# Layer Domain
# ==============================================================================


class MediaType(Enum):
    """Role of a manifest layer in a Nydus image."""

    BOOTSTRAP = "application/vnd.oci.image.layer.v1.tar+gzip"
    BLOB = "application/vnd.oci.image.layer.nydus.blob.v1"
    OTHER = "other"

    @classmethod
    def from_string(cls, media_type: str | None) -> MediaType:
        if media_type == cls.BOOTSTRAP.value:
            return cls.BOOTSTRAP
        if media_type == cls.BLOB.value:
            return cls.BLOB
        return cls.OTHER


@dataclass(frozen=True)
class LayerDescriptor:
    """A content-addressed layer listed in an image manifest."""

    digest: str  # e.g., "sha256:1a2b..."
    size: int  # Size in bytes as advertised by the registry
    media_type: MediaType
    raw_media_type: str | None = None  # Media type string from the manifest

    @property
    def algorithm(self) -> str:
        """Digest algorithm (e.g., "sha256")."""
        return self.digest.split(":", 1)[0]

    @property
    def encoded(self) -> str:
        """Hex part of the digest, without the algorithm prefix."""
        return self.digest.split(":", 1)[-1]

    @classmethod
    def from_manifest_dict(cls, layer: dict[str, Any]) -> LayerDescriptor:
        """Convert a manifest layer entry to a LayerDescriptor.

        Raises:
            KeyError: If digest or size is missing
            ValueError: If size is not an integer
        """
        raw_media_type = layer.get("mediaType")
        return cls(
            digest=layer["digest"],
            size=int(layer["size"]),
            media_type=MediaType.from_string(raw_media_type),
            raw_media_type=raw_media_type,
        )


@dataclass(frozen=True)
class ImageInfo:
    """Classified layers of a Nydus image, bootstrap first."""

    source_ref: str
    layers: tuple[LayerDescriptor, ...]
    total_size: int
    manifest_digest: str | None = None

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    @property
    def bootstrap(self) -> LayerDescriptor:
        return self.layers[0]


# ==============================================================================
# Disk Layout Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionPlan:
    """Sector extent of one layer partition.

    ``end_sector`` is the inclusive last LBA, the way GPT stores it.
    """

    index: int
    start_sector: int
    end_sector: int
    name: str
    guid_seed: str  # 32 hex characters

    @property
    def guid(self) -> uuid.UUID:
        return uuid.UUID(hex=self.guid_seed)

    @property
    def sector_count(self) -> int:
        return self.end_sector - self.start_sector + 1

    @property
    def offset(self) -> int:
        """Byte offset of the partition in the disk image."""
        return self.start_sector * SECTOR_SIZE

    @property
    def size_bytes(self) -> int:
        return self.sector_count * SECTOR_SIZE


@dataclass(frozen=True)
class DiskPlan:
    """Partition layout and total size of a localdisk image."""

    total_disk_size: int
    partitions: tuple[PartitionPlan, ...]
    disk_guid: uuid.UUID

    @property
    def total_sectors(self) -> int:
        return self.total_disk_size // SECTOR_SIZE


# ==============================================================================
# Fetch / Validation Domain
# ==============================================================================


@dataclass(frozen=True)
class FetchedBlob:
    """A layer downloaded to local storage."""

    layer_index: int
    local_path: Path
    digest: str
    size: int


@dataclass
class ValidationResult:
    """Per-partition outcome of an integrity check."""

    per_partition_ok: list[bool] = field(default_factory=list)
    error_count: int = 0

    @property
    def ok(self) -> bool:
        return self.error_count == 0

    @property
    def failed_indices(self) -> list[int]:
        return [index for index, ok in enumerate(self.per_partition_ok) if not ok]
