"""Tests for concurrent blob downloads (services/fetcher.py)."""

import asyncio

import pytest

from conftest import FakeRegistryClient, make_layer
from nydus_localdisk.config import settings
from nydus_localdisk.domain import ImageInfo, LayerDescriptor, MediaType
from nydus_localdisk.services.fetcher import (
    blob_file_name,
    download_blob,
    fetch_image,
    prepare_dir,
)
from nydus_localdisk.services.registry import parse_reference
from nydus_localdisk.storage.exceptions import BlobDownloadError, LocalDiskError

REFERENCE = parse_reference("localhost:5000/ubuntu-nydus")


def many_layer_image(count, size=10_000):
    contents = [bytes([index]) * size for index in range(count)]
    layers = [make_layer(contents[0], MediaType.BOOTSTRAP)] + [
        make_layer(data, MediaType.BLOB) for data in contents[1:]
    ]
    image = ImageInfo(
        source_ref="localhost:5000/many",
        layers=tuple(layers),
        total_size=size * count,
    )
    client = FakeRegistryClient(
        {layer.digest: data for layer, data in zip(layers, contents)},
        layers=layers,
        chunk_size=1000,
    )
    return image, client


class TestBlobFileName:
    """Tests for local file naming."""

    def test_bootstrap_prefix(self, synthetic_layers):
        name = blob_file_name(synthetic_layers[0], 0)
        assert name == "bootstrap-" + synthetic_layers[0].encoded

    def test_blob_prefix(self, synthetic_layers):
        name = blob_file_name(synthetic_layers[1], 1)
        assert name == "blob-" + synthetic_layers[1].encoded


class TestPrepareDir:
    """Tests for prepare_dir()."""

    def test_creates_missing_dir(self, tmp_path):
        path = prepare_dir(tmp_path / "a" / "b")
        assert path.is_dir()

    def test_clears_existing_contents(self, tmp_path):
        target = tmp_path / "workdir"
        (target / "nested").mkdir(parents=True)
        (target / "old.img").write_bytes(b"stale")
        (target / "nested" / "file").write_bytes(b"stale")

        prepare_dir(target)

        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_replaces_file(self, tmp_path):
        target = tmp_path / "workdir"
        target.write_bytes(b"not a dir")

        prepare_dir(target)

        assert target.is_dir()

    def test_refuses_root(self):
        with pytest.raises(LocalDiskError, match="filesystem root"):
            prepare_dir("/")


class TestDownloadBlob:
    """Tests for download_blob()."""

    @pytest.mark.asyncio
    async def test_downloads_and_verifies(self, tmp_path, fake_client, synthetic_layers, blob_bytes):
        path = tmp_path / "blob"

        blob = await download_blob(fake_client, REFERENCE, synthetic_layers[1], 1, path)

        assert path.read_bytes() == blob_bytes
        assert blob.size == len(blob_bytes)
        assert blob.layer_index == 1
        assert blob.digest == synthetic_layers[1].digest

    @pytest.mark.asyncio
    async def test_digest_mismatch(self, tmp_path, fake_client, synthetic_layers):
        layer = synthetic_layers[1]
        fake_client.blobs[layer.digest] = b"x" * layer.size

        with pytest.raises(BlobDownloadError, match="digest mismatch") as exc_info:
            await download_blob(fake_client, REFERENCE, layer, 1, tmp_path / "blob")

        assert exc_info.value.digests == [layer.digest]

    @pytest.mark.asyncio
    async def test_size_mismatch(self, tmp_path, fake_client, synthetic_layers):
        layer = synthetic_layers[1]
        fake_client.blobs[layer.digest] = b"short"

        with pytest.raises(BlobDownloadError, match="expected"):
            await download_blob(fake_client, REFERENCE, layer, 1, tmp_path / "blob")

    @pytest.mark.asyncio
    async def test_unsupported_algorithm(self, tmp_path, fake_client, synthetic_layers):
        layer = make_layer(b"data")
        layer = LayerDescriptor(
            digest="nope:" + layer.encoded, size=layer.size, media_type=layer.media_type
        )

        with pytest.raises(BlobDownloadError, match="unsupported digest algorithm"):
            await download_blob(fake_client, REFERENCE, layer, 1, tmp_path / "blob")

    @pytest.mark.asyncio
    async def test_timeout_is_not_reported_as_local_io(self, tmp_path, fake_client, synthetic_layers):
        layer = synthetic_layers[1]
        fake_client.failures = {layer.digest: asyncio.TimeoutError()}
        path = tmp_path / "blob"

        with pytest.raises(BlobDownloadError) as exc_info:
            await download_blob(fake_client, REFERENCE, layer, 1, path)

        assert exc_info.value.failures == {layer.digest: "timed out"}

    @pytest.mark.asyncio
    async def test_unwritable_path(self, tmp_path, fake_client, synthetic_layers):
        with pytest.raises(BlobDownloadError):
            await download_blob(
                fake_client, REFERENCE, synthetic_layers[0], 0, tmp_path / "missing" / "blob"
            )


class TestFetchImage:
    """Tests for fetch_image()."""

    @pytest.mark.asyncio
    async def test_fetches_every_layer(
        self, tmp_path, synthetic_image, fake_client, bootstrap_bytes, blob_bytes
    ):
        target = tmp_path / "workdir"

        blobs = await fetch_image(synthetic_image, target, fake_client, concurrency=2)

        assert [blob.layer_index for blob in blobs] == [0, 1]
        assert blobs[0].local_path.name.startswith("bootstrap-")
        assert blobs[1].local_path.name.startswith("blob-")
        assert blobs[0].local_path.read_bytes() == bootstrap_bytes
        assert blobs[1].local_path.read_bytes() == blob_bytes

    @pytest.mark.asyncio
    async def test_resets_target_dir(self, tmp_path, synthetic_image, fake_client):
        target = tmp_path / "workdir"
        target.mkdir()
        (target / "output.img").write_bytes(b"old")

        await fetch_image(synthetic_image, target, fake_client)

        assert not (target / "output.img").exists()

    @pytest.mark.asyncio
    async def test_layer_limit(self, tmp_path, synthetic_image, fake_client):
        blobs = await fetch_image(synthetic_image, tmp_path / "w", fake_client, layer_limit=1)

        assert len(blobs) == 1
        assert fake_client.requested == [synthetic_image.layers[0].digest]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [1, 2, 3])
    async def test_concurrency_bound(self, tmp_path, concurrency):
        image, client = many_layer_image(8)

        blobs = await fetch_image(image, tmp_path / "w", client, concurrency=concurrency)

        assert len(blobs) == 8
        assert client.max_active <= concurrency

    @pytest.mark.asyncio
    async def test_unbounded_concurrency(self, tmp_path):
        image, client = many_layer_image(6)

        await fetch_image(image, tmp_path / "w", client, concurrency=0)

        assert client.max_active == 6

    @pytest.mark.asyncio
    async def test_failure_cancels_pending_downloads(self, tmp_path):
        image, client = many_layer_image(4)
        failing = image.layers[1].digest
        client.failures = {failing: RuntimeError("connection reset")}
        for layer in image.layers:
            if layer.digest != failing:
                client.delays[layer.digest] = 5

        with pytest.raises(BlobDownloadError) as exc_info:
            await fetch_image(image, tmp_path / "w", client, concurrency=0)

        assert exc_info.value.failures == {failing: "connection reset"}
        assert sorted(client.cancelled) == sorted(
            layer.digest for layer in image.layers if layer.digest != failing
        )
        assert client.completed == []

    @pytest.mark.asyncio
    async def test_simultaneous_failures_aggregated(self, tmp_path):
        image, client = many_layer_image(3)
        client.failures = {
            image.layers[1].digest: BlobDownloadError.single(image.layers[1].digest, "HTTP 500"),
            image.layers[2].digest: RuntimeError("timeout"),
        }

        with pytest.raises(BlobDownloadError) as exc_info:
            await fetch_image(image, tmp_path / "w", client, concurrency=0)

        failures = exc_info.value.failures
        assert failures[image.layers[1].digest] == "HTTP 500"
        assert failures[image.layers[2].digest] == "timeout"

    @pytest.mark.asyncio
    async def test_default_concurrency_from_settings(self, tmp_path, monkeypatch):
        image, client = many_layer_image(5)
        monkeypatch.setitem(settings.settings_store.values, "fetch_concurrency", 2)

        await fetch_image(image, tmp_path / "w", client)

        assert client.max_active <= 2

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_tasks(self, tmp_path):
        image, client = many_layer_image(3)
        client.delays = {layer.digest: 5 for layer in image.layers}

        task = asyncio.ensure_future(fetch_image(image, tmp_path / "w", client, concurrency=0))
        while len(client.requested) < 3:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)
        assert len(client.cancelled) == 3
