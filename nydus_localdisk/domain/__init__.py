"""Domain models for Nydus localdisk conversion."""

from __future__ import annotations

from .models import (
    SECTOR_SIZE,
    DiskPlan,
    FetchedBlob,
    ImageInfo,
    LayerDescriptor,
    MediaType,
    PartitionPlan,
    ValidationResult,
)


__all__ = [
    "SECTOR_SIZE",
    "DiskPlan",
    "FetchedBlob",
    "ImageInfo",
    "LayerDescriptor",
    "MediaType",
    "PartitionPlan",
    "ValidationResult",
]
