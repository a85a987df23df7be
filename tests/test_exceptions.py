"""Tests for localdisk exception classes."""

import pytest

from nydus_localdisk.domain import ValidationResult
from nydus_localdisk.storage.exceptions import (
    BlobDownloadError,
    DiskAllocationError,
    IntegrityMismatchError,
    InternalConsistencyError,
    LayerClassificationError,
    LocalDiskError,
    ManifestFetchError,
    MissingBootstrapError,
    MultipleBootstrapError,
    PartitionEncodingError,
    PartitionWriteError,
    ReferenceResolutionError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error",
        [
            ReferenceResolutionError("bad ref", "empty"),
            ManifestFetchError("docker.io/library/x:latest", "manifest not found"),
            BlobDownloadError.single("sha256:abc", "timeout"),
            MissingBootstrapError("x"),
            MultipleBootstrapError("x", ["sha256:a", "sha256:b"]),
            InternalConsistencyError("diskSize", 1, 2),
            DiskAllocationError("/tmp/output.img", 10, "ENOSPC"),
            PartitionEncodingError("bad table"),
            PartitionWriteError(0, 512, 100),
            IntegrityMismatchError([1]),
        ],
    )
    def test_all_errors_inherit_from_base(self, error):
        assert isinstance(error, LocalDiskError)
        assert isinstance(error, Exception)

    def test_bootstrap_errors_are_classification_errors(self):
        assert issubclass(MissingBootstrapError, LayerClassificationError)
        assert issubclass(MultipleBootstrapError, LayerClassificationError)

    @pytest.mark.parametrize(
        "error_type, phase",
        [
            (ReferenceResolutionError, "resolve"),
            (ManifestFetchError, "resolve"),
            (BlobDownloadError, "fetch"),
            (MissingBootstrapError, "classify"),
            (InternalConsistencyError, "plan"),
            (PartitionWriteError, "build"),
            (IntegrityMismatchError, "validate"),
        ],
    )
    def test_phase(self, error_type, phase):
        assert error_type.phase == phase


class TestErrorDetails:
    """Test messages and attributes."""

    def test_internal_consistency_message(self):
        error = InternalConsistencyError("diskSize", 1024, 1536)
        assert str(error) == "internal error: diskSize 1024 not equal 1536"
        assert (error.first, error.second) == (1024, 1536)

    def test_blob_download_aggregates_failures(self):
        error = BlobDownloadError({"sha256:a": "timeout", "sha256:b": "digest mismatch"})

        assert error.digests == ["sha256:a", "sha256:b"]
        assert "2 blobs" in str(error)
        assert "sha256:b: digest mismatch" in str(error)

    def test_blob_download_single(self):
        error = BlobDownloadError.single("sha256:a", "HTTP 500")
        assert error.failures == {"sha256:a": "HTTP 500"}
        assert "1 blob:" in str(error)

    def test_multiple_bootstrap_lists_digests(self):
        error = MultipleBootstrapError("img", ["sha256:a", "sha256:b"])
        assert error.digests == ["sha256:a", "sha256:b"]
        assert "2 bootstrap layers" in str(error)

    def test_partition_write_short_write(self):
        error = PartitionWriteError(1, 4096, 100)
        assert (error.index, error.expected, error.written) == (1, 4096, 100)
        assert "wrote 100 bytes instead of 4096" in str(error)

    def test_partition_write_with_reason(self):
        error = PartitionWriteError(2, 4096, reason="Input/output error")
        assert str(error) == "Failed to write partition 2: Input/output error"

    def test_integrity_mismatch(self):
        result = ValidationResult(per_partition_ok=[True, False], error_count=1)
        error = IntegrityMismatchError([1], result)

        assert error.indices == [1]
        assert error.error_count == 1
        assert error.result is result
        assert "please try convert again" in str(error)

    def test_partition_encoding_path(self):
        error = PartitionEncodingError("Invalid GPT signature", path="/tmp/x.img")
        assert error.path == "/tmp/x.img"
        assert str(error) == "Invalid GPT signature"
