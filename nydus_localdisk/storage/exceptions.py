"""Custom exceptions for the localdisk conversion pipeline.

Every phase raises one of these instead of exiting, so the command-line driver
is the only place that decides how a failure ends the run.

Exception Hierarchy:
    LocalDiskError (base)
        ├── ReferenceResolutionError
        ├── ManifestFetchError
        ├── BlobDownloadError
        ├── LayerClassificationError
        │   ├── MissingBootstrapError
        │   └── MultipleBootstrapError
        ├── InternalConsistencyError
        ├── DiskAllocationError
        ├── PartitionEncodingError
        ├── PartitionWriteError
        └── IntegrityMismatchError

Usage:
    from nydus_localdisk.storage.exceptions import PartitionWriteError

    if written != entry.size_bytes:
        raise PartitionWriteError(index, entry.size_bytes, written)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from nydus_localdisk.domain import ValidationResult


class LocalDiskError(Exception):
    """Base exception for all localdisk conversion failures."""

    phase = "convert"


class ReferenceResolutionError(LocalDiskError):
    """Image reference could not be parsed."""

    phase = "resolve"

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Invalid image reference {reference!r}: {reason}")


class ManifestFetchError(LocalDiskError):
    """Image manifest could not be fetched or is not an image manifest."""

    phase = "resolve"

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Failed to fetch manifest for {reference}: {reason}")


class BlobDownloadError(LocalDiskError):
    """One or more layer blobs failed to download.

    ``failures`` maps each failing digest to its reason. A single failure
    and the aggregate raised by the fetcher share this type.
    """

    phase = "fetch"

    def __init__(self, failures: dict[str, str]):
        self.failures = dict(failures)
        details = "; ".join(
            f"{digest}: {reason}" for digest, reason in self.failures.items()
        )
        count = len(self.failures)
        super().__init__(
            f"Failed to download {count} blob{'s' if count != 1 else ''}: {details}"
        )

    @classmethod
    def single(cls, digest: str, reason: str) -> BlobDownloadError:
        return cls({digest: reason})

    @property
    def digests(self) -> list[str]:
        return list(self.failures)


class LayerClassificationError(LocalDiskError):
    """Base exception for manifest layer classification problems."""

    phase = "classify"


class MissingBootstrapError(LayerClassificationError):
    """Manifest has no bootstrap layer."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No bootstrap layer found in image {reference}")


class MultipleBootstrapError(LayerClassificationError):
    """Manifest has more than one bootstrap layer."""

    def __init__(self, reference: str, digests: Sequence[str]):
        self.reference = reference
        self.digests = list(digests)
        super().__init__(
            f"Image {reference} has {len(self.digests)} bootstrap layers: "
            f"{', '.join(self.digests)}"
        )


class InternalConsistencyError(LocalDiskError):
    """Two independent size computations disagreed."""

    phase = "plan"

    def __init__(self, what: str, first: int, second: int):
        self.what = what
        self.first = first
        self.second = second
        super().__init__(f"internal error: {what} {first} not equal {second}")


class DiskAllocationError(LocalDiskError):
    """Raw disk image file could not be created at the planned size."""

    phase = "build"

    def __init__(self, path: str, size: int, reason: str):
        self.path = path
        self.size = size
        self.reason = reason
        super().__init__(f"Failed to allocate {size} byte disk image {path}: {reason}")


class PartitionEncodingError(LocalDiskError):
    """Partition table could not be encoded or decoded."""

    phase = "build"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class PartitionWriteError(LocalDiskError):
    """Layer bytes could not be written into their partition."""

    phase = "build"

    def __init__(
        self,
        index: int,
        expected: int,
        written: int | None = None,
        reason: str = "",
    ):
        self.index = index
        self.expected = expected
        self.written = written
        self.reason = reason
        if reason:
            msg = f"Failed to write partition {index}: {reason}"
        else:
            msg = f"Partition {index}: wrote {written} bytes instead of {expected}"
        super().__init__(msg)


class IntegrityMismatchError(LocalDiskError):
    """One or more partitions do not match their fetched blobs."""

    phase = "validate"

    def __init__(self, indices: Sequence[int], result: ValidationResult | None = None):
        self.indices = list(indices)
        self.result = result
        self.error_count = len(self.indices)
        joined = ", ".join(str(index) for index in self.indices)
        super().__init__(
            f"The generated image is corrupted in {self.error_count} "
            f"partition{'s' if self.error_count != 1 else ''} ({joined}), "
            f"please try convert again"
        )
