"""
Pytest configuration and shared fixtures for nydus-localdisk tests.

This module provides synthetic layers, a fake registry client and fetched blob
files used across the test modules.
"""

import asyncio
import hashlib
import random
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from nydus_localdisk.domain import FetchedBlob, ImageInfo, LayerDescriptor, MediaType
from nydus_localdisk.services.registry import ResolvedManifest


BOOTSTRAP_SIZE = 1_000_000
BLOB_SIZE = 2_500_000


def make_layer(data: bytes, media_type: MediaType = MediaType.BLOB) -> LayerDescriptor:
    """Build a descriptor whose digest really matches ``data``."""
    raw = media_type.value if media_type is not MediaType.OTHER else "application/octet-stream"
    return LayerDescriptor(
        digest="sha256:" + hashlib.sha256(data).hexdigest(),
        size=len(data),
        media_type=media_type,
        raw_media_type=raw,
    )


def fake_digest(seed: str) -> str:
    return "sha256:" + hashlib.sha256(seed.encode()).hexdigest()


def write_blobs(directory: Path, layers: List[LayerDescriptor], contents: List[bytes]):
    """Write layer contents the way the fetcher names them."""
    directory.mkdir(parents=True, exist_ok=True)
    blobs = []
    for index, (layer, data) in enumerate(zip(layers, contents)):
        prefix = "bootstrap-" if index == 0 else "blob-"
        path = directory / (prefix + layer.encoded)
        path.write_bytes(data)
        blobs.append(
            FetchedBlob(layer_index=index, local_path=path, digest=layer.digest, size=len(data))
        )
    return blobs


class FakeRegistryClient:
    """In-memory stand-in for RegistryClient."""

    def __init__(
        self,
        blobs: Dict[str, bytes],
        *,
        layers: Optional[List[LayerDescriptor]] = None,
        manifest_digest: str = fake_digest("manifest"),
        failures: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
        chunk_size: int = 64 * 1024,
    ):
        self.blobs = blobs
        self.layers = layers or []
        self.manifest_digest = manifest_digest
        self.failures = failures or {}
        self.delays = delays or {}
        self.chunk_size = chunk_size
        self.requested: List[str] = []
        self.completed: List[str] = []
        self.cancelled: List[str] = []
        self.active = 0
        self.max_active = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def resolve_manifest(self, ref):
        return ResolvedManifest(
            digest=self.manifest_digest,
            media_type="application/vnd.oci.image.manifest.v1+json",
            layers=tuple(self.layers),
        )

    async def fetch_blob(self, ref, digest, expected_size=None):
        self.requested.append(digest)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(digest, 0)
            if delay:
                await asyncio.sleep(delay)
            if digest in self.failures:
                raise self.failures[digest]
            data = self.blobs[digest]
            for offset in range(0, len(data), self.chunk_size):
                yield data[offset : offset + self.chunk_size]
                await asyncio.sleep(0)
            self.completed.append(digest)
        except asyncio.CancelledError:
            self.cancelled.append(digest)
            raise
        finally:
            self.active -= 1


# ==============================================================================
# Layer Fixtures
# ==============================================================================


@pytest.fixture
def bootstrap_bytes() -> bytes:
    """1,000,000 bytes of deterministic bootstrap content."""
    return random.Random(1).randbytes(BOOTSTRAP_SIZE)


@pytest.fixture
def blob_bytes() -> bytes:
    """2,500,000 bytes of deterministic blob content."""
    return random.Random(2).randbytes(BLOB_SIZE)


@pytest.fixture
def synthetic_layers(bootstrap_bytes, blob_bytes) -> List[LayerDescriptor]:
    return [
        make_layer(bootstrap_bytes, MediaType.BOOTSTRAP),
        make_layer(blob_bytes, MediaType.BLOB),
    ]


@pytest.fixture
def synthetic_image(synthetic_layers) -> ImageInfo:
    """Two-layer image: bootstrap of 1,000,000 bytes and blob of 2,500,000."""
    return ImageInfo(
        source_ref="localhost:5000/ubuntu-nydus",
        layers=tuple(synthetic_layers),
        total_size=BOOTSTRAP_SIZE + BLOB_SIZE,
        manifest_digest=fake_digest("manifest"),
    )


@pytest.fixture
def fetched_blobs(tmp_path, synthetic_layers, bootstrap_bytes, blob_bytes):
    """Synthetic layers already written to tmp_path/workdir."""
    return write_blobs(
        tmp_path / "workdir", synthetic_layers, [bootstrap_bytes, blob_bytes]
    )


@pytest.fixture
def fake_client(synthetic_layers, bootstrap_bytes, blob_bytes) -> FakeRegistryClient:
    return FakeRegistryClient(
        {
            synthetic_layers[0].digest: bootstrap_bytes,
            synthetic_layers[1].digest: blob_bytes,
        },
        layers=list(synthetic_layers),
    )
