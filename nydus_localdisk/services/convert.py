"""Convert a Nydus image from a registry into a GPT localdisk image.

Phases run strictly one after another: resolve, classify, fetch (parallel),
plan, build, validate. Any failure raises out of convert_image() and leaves
the files written so far in place.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from nydus_localdisk.domain import FetchedBlob, ImageInfo
from nydus_localdisk.logging import operation_context
from nydus_localdisk.storage.disk import build_disk_image, plan_disk, validate_disk_image
from nydus_localdisk.storage.exceptions import LocalDiskError

from .fetcher import fetch_image
from .manifest import get_image_info
from .registry import RegistryClient, parse_reference

OUTPUT_IMAGE_NAME = "output.img"


def part_image_name(part_number: int) -> str:
    return f"{OUTPUT_IMAGE_NAME}.part{part_number}"


def incremental_layer_limits(layer_count: int) -> list[int]:
    """Layer limits of the incremental part files, one per blob layer.

    A Nydus image needs the bootstrap plus at least one blob, so parts start
    at two layers. A bootstrap-only image yields a single one-layer part.
    """
    if layer_count < 2:
        return [layer_count]
    return list(range(2, layer_count + 1))


async def download_image(
    source: str,
    target_dir: Path,
    *,
    layer_limit: int | None = None,
    concurrency: int | None = None,
) -> tuple[ImageInfo, list[FetchedBlob]]:
    """Resolve ``source`` and download its layers into ``target_dir``."""
    reference = parse_reference(source)
    async with RegistryClient() as client:
        image = await get_image_info(client, reference, source)
        if layer_limit is not None and not 1 <= layer_limit <= image.layer_count:
            raise LocalDiskError(
                f"Layer limit {layer_limit} must be between 1 and {image.layer_count}"
            )
        blobs = await fetch_image(
            image,
            target_dir,
            client,
            reference=reference,
            layer_limit=layer_limit,
            concurrency=concurrency,
        )
    return image, blobs


def build_and_validate(
    image: ImageInfo,
    blobs: list[FetchedBlob],
    output_path: Path,
    layer_limit: int | None = None,
) -> Path:
    """Plan, build and validate one disk image from fetched blobs."""
    plan = plan_disk(image, layer_limit)
    build_disk_image(plan, output_path, blobs)
    validate_disk_image(output_path, blobs, len(plan.partitions))
    return output_path


def link_final_part(target_dir: Path, part_path: Path) -> Path:
    """Point ``output.img`` at the last part file with a relative symlink."""
    link = target_dir / OUTPUT_IMAGE_NAME
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(part_path.name)
    return link


def convert_image(
    source: str,
    target_dir: Path,
    *,
    with_temps: bool = False,
    layer_limit: int | None = None,
    concurrency: int | None = None,
) -> Path:
    """Convert the image ``source`` into ``target_dir/output.img``.

    Args:
        source: Image reference (e.g., localhost:5000/ubuntu-nydus)
        target_dir: Work directory; it is reset before downloading
        with_temps: Write output.img.partN files with a growing number of
            layers and link output.img to the last one
        layer_limit: Only fetch and write the first layers
        concurrency: Maximum parallel blob downloads

    Returns:
        Path to output.img
    """
    target_dir = Path(target_dir)
    with operation_context("convert", image=source, target=str(target_dir)) as log:
        image, blobs = asyncio.run(
            download_image(
                source,
                target_dir,
                layer_limit=layer_limit,
                concurrency=concurrency,
            )
        )

        if not with_temps:
            return build_and_validate(
                image, blobs, target_dir / OUTPUT_IMAGE_NAME, layer_limit
            )

        part_path = None
        for part_number, limit in enumerate(incremental_layer_limits(len(blobs)), start=1):
            part_path = target_dir / part_image_name(part_number)
            log.info(f"Building {part_path.name} with {limit} layers")
            build_and_validate(image, blobs, part_path, limit)

        link = link_final_part(target_dir, part_path)
        log.info(f"Linked {link} to {part_path.name}")
        return link
