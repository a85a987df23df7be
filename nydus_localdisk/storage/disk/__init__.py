"""GPT localdisk image layout, build and verification.

Main Functions:
    - plan_disk(): Compute partition extents and disk size from layer sizes
    - build_disk_image(): Allocate the image, apply the GPT, write partitions
    - validate_disk_image(): SHA256 verification of every written partition

Helper Functions:
    - align_up() / round_up(): The two independent size rounding formulas
    - split_blob_id(): Partition name and GUID seed from a layer digest
"""

from .builder import allocate_disk_image, build_disk_image, write_partition
from .layout import (
    FIRST_PARTITION_SECTOR,
    MIB,
    PARTITION_ALIGNMENT,
    align_up,
    compute_disk_size,
    plan_disk,
    plan_partitions,
    round_up,
    split_blob_id,
    truncate_blob_id,
)
from .verification import (
    compute_file_sha256,
    compute_partition_sha256,
    validate_disk_image,
)

__all__ = [
    # Layout
    "plan_disk",
    "plan_partitions",
    "compute_disk_size",
    "align_up",
    "round_up",
    "split_blob_id",
    "truncate_blob_id",
    "FIRST_PARTITION_SECTOR",
    "PARTITION_ALIGNMENT",
    "MIB",
    # Build
    "allocate_disk_image",
    "build_disk_image",
    "write_partition",
    # Verification
    "validate_disk_image",
    "compute_file_sha256",
    "compute_partition_sha256",
]
