"""Classify manifest layers into the bootstrap-first order of a Nydus image."""

from __future__ import annotations

from typing import Iterable

from nydus_localdisk.domain import ImageInfo, LayerDescriptor, MediaType
from nydus_localdisk.logging import get_logger
from nydus_localdisk.storage.exceptions import (
    MissingBootstrapError,
    MultipleBootstrapError,
)

from .registry import ImageReference, RegistryClient

log = get_logger(source="classify", tags=["classify", "manifest"])


def classify_layers(
    source_ref: str,
    layers: Iterable[LayerDescriptor],
    manifest_digest: str | None = None,
) -> ImageInfo:
    """Put the bootstrap layer first and the blob layers after it.

    Blob layers keep their manifest order. Layers of any other media type
    are dropped and do not count toward ``total_size``.

    Raises:
        MissingBootstrapError: If the manifest has no bootstrap layer
        MultipleBootstrapError: If it has more than one
    """
    bootstraps: list[LayerDescriptor] = []
    blobs: list[LayerDescriptor] = []
    for layer in layers:
        if layer.media_type is MediaType.BOOTSTRAP:
            bootstraps.append(layer)
        elif layer.media_type is MediaType.BLOB:
            blobs.append(layer)
        else:
            log.warning(
                f"Skipping layer {layer.digest} with media type {layer.raw_media_type!r}"
            )

    if not bootstraps:
        raise MissingBootstrapError(source_ref)
    if len(bootstraps) > 1:
        raise MultipleBootstrapError(source_ref, [layer.digest for layer in bootstraps])

    ordered = tuple(bootstraps + blobs)
    return ImageInfo(
        source_ref=source_ref,
        layers=ordered,
        total_size=sum(layer.size for layer in ordered),
        manifest_digest=manifest_digest,
    )


async def get_image_info(
    client: RegistryClient, reference: ImageReference, source_ref: str | None = None
) -> ImageInfo:
    """Resolve a reference's manifest and classify its layers."""
    manifest = await client.resolve_manifest(reference)
    image = classify_layers(
        source_ref or str(reference), manifest.layers, manifest.digest
    )
    log.info(
        f"Image {image.source_ref} has {image.layer_count} layers "
        f"({image.total_size} Bytes)"
    )
    return image
