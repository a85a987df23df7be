"""Concurrent download of image layers to local storage.

Every layer is fetched by its own asyncio task. A semaphore bounds how many
run at once; the first failure cancels the tasks still running and all
failures are raised together as one BlobDownloadError.
"""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import time
from pathlib import Path

from nydus_localdisk.config import settings
from nydus_localdisk.domain import FetchedBlob, ImageInfo, LayerDescriptor
from nydus_localdisk.logging import LoggerFactory
from nydus_localdisk.storage.exceptions import BlobDownloadError, LocalDiskError

from .registry import ImageReference, RegistryClient, parse_reference

log = LoggerFactory.for_fetch()

BLOB_PREFIX = "blob-"
BOOTSTRAP_PREFIX = "bootstrap-"


def blob_file_name(layer: LayerDescriptor, index: int) -> str:
    """Local file name of a layer: bootstrap-<hex> at index 0, blob-<hex> after."""
    prefix = BOOTSTRAP_PREFIX if index == 0 else BLOB_PREFIX
    return prefix + layer.encoded


def prepare_dir(path: Path) -> Path:
    """Remove and recreate a directory."""
    path = Path(path)
    if path.resolve() == Path(path.resolve().anchor):
        raise LocalDiskError(f"Refusing to reset filesystem root {path}")
    try:
        if path.exists() or path.is_symlink():
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        path.mkdir(parents=True)
    except OSError as error:
        raise LocalDiskError(f"Failed to prepare directory {path}: {error}") from error
    return path


async def download_blob(
    client: RegistryClient,
    reference: ImageReference,
    layer: LayerDescriptor,
    index: int,
    path: Path,
) -> FetchedBlob:
    """Stream one layer to ``path`` and check its size and digest.

    Raises:
        BlobDownloadError: On network or I/O failure, or a size or digest mismatch
    """
    try:
        hasher = hashlib.new(layer.algorithm)
    except ValueError as error:
        raise BlobDownloadError.single(
            layer.digest, f"unsupported digest algorithm {layer.algorithm!r}"
        ) from error

    written = 0
    try:
        with open(path, "wb") as out:
            async for chunk in client.fetch_blob(reference, layer.digest, layer.size):
                out.write(chunk)
                hasher.update(chunk)
                written += len(chunk)
                log.bind(tags=["fetch", "progress"]).trace(
                    f"{layer.digest}: {written}/{layer.size} bytes"
                )
    except asyncio.TimeoutError as error:
        # TimeoutError is an OSError on Python 3.11+
        raise BlobDownloadError.single(layer.digest, "timed out") from error
    except OSError as error:
        raise BlobDownloadError.single(layer.digest, f"{path}: {error}") from error

    if written != layer.size:
        raise BlobDownloadError.single(
            layer.digest, f"received {written} bytes, expected {layer.size}"
        )
    actual = f"{layer.algorithm}:{hasher.hexdigest()}"
    if actual != layer.digest:
        raise BlobDownloadError.single(layer.digest, f"digest mismatch, got {actual}")

    log.info(f"Downloaded blob to: {path} ({written} Bytes)")
    return FetchedBlob(layer_index=index, local_path=path, digest=layer.digest, size=written)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def fetch_image(
    image: ImageInfo,
    target_dir: Path,
    client: RegistryClient,
    *,
    reference: ImageReference | None = None,
    layer_limit: int | None = None,
    concurrency: int | None = None,
) -> list[FetchedBlob]:
    """Download image layers into a freshly reset ``target_dir``.

    Args:
        image: Classified image, bootstrap first
        target_dir: Directory to reset and download into
        client: Registry client shared by all download tasks
        reference: Parsed reference (default: parsed from image.source_ref)
        layer_limit: Number of leading layers to fetch (default: all)
        concurrency: Maximum parallel downloads; 0 means unbounded
            (default: fetch_concurrency setting)

    Returns:
        Fetched blobs, index-aligned with image.layers

    Raises:
        BlobDownloadError: Listing every layer that failed
    """
    start_time = time.time()
    target_dir = Path(target_dir)
    log.info(f"Download blobs in {target_dir}")
    prepare_dir(target_dir)

    if reference is None:
        reference = parse_reference(image.source_ref)
    if concurrency is None:
        concurrency = settings.get_int("fetch_concurrency", settings.DEFAULT_FETCH_CONCURRENCY)
    layers = image.layers if layer_limit is None else image.layers[:layer_limit]
    if not layers:
        return []

    semaphore = asyncio.Semaphore(concurrency) if concurrency > 0 else None

    async def worker(index: int, layer: LayerDescriptor) -> FetchedBlob:
        path = target_dir / blob_file_name(layer, index)
        if semaphore is None:
            return await download_blob(client, reference, layer, index, path)
        async with semaphore:
            return await download_blob(client, reference, layer, index, path)

    tasks = [
        asyncio.ensure_future(worker(index, layer)) for index, layer in enumerate(layers)
    ]
    try:
        _done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        log.warning(f"Cancelled {len(pending)} pending downloads after a failure")

    failures: dict[str, str] = {}
    for task, layer in zip(tasks, layers):
        if task.cancelled():
            continue
        error = task.exception()
        if error is None:
            continue
        if isinstance(error, BlobDownloadError):
            failures.update(error.failures)
        else:
            failures[layer.digest] = _describe(error)
        log.error(f"Failed to download {layer.digest}: {_describe(error)}")

    if failures:
        raise BlobDownloadError(failures)

    log.info(
        f"Downloaded {len(layers)} blobs successfully in {time.time() - start_time:.3f} s"
    )
    return [task.result() for task in tasks]
