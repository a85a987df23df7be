"""HTTP client for OCI distribution registries.

Resolves image manifests and streams layer blobs. One client (and one
aiohttp session) is shared by every concurrent blob download.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

import aiohttp

from nydus_localdisk.config import settings
from nydus_localdisk.domain import LayerDescriptor
from nydus_localdisk.logging import LoggerFactory
from nydus_localdisk.storage.exceptions import (
    BlobDownloadError,
    ManifestFetchError,
    ReferenceResolutionError,
)

log = LoggerFactory.for_registry()

DEFAULT_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", DEFAULT_REGISTRY}
DEFAULT_TAG = "latest"

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_ACCEPT = ", ".join((OCI_MANIFEST, DOCKER_MANIFEST))

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"{_COMPONENT}(?:/{_COMPONENT})*")
_TAG_RE = re.compile(r"[\w][\w.-]{0,127}")
_DIGEST_RE = re.compile(r"[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}")
_CHALLENGE_RE = re.compile(r'(\w+)="([^"]*)"')


# ==============================================================================
# Image References
# ==============================================================================


@dataclass(frozen=True)
class ImageReference:
    """A parsed ``[registry/]repository[:tag][@digest]`` reference."""

    registry: str
    repository: str
    tag: str | None = DEFAULT_TAG
    digest: str | None = None

    @property
    def reference(self) -> str:
        """Manifest reference: the digest when pinned, else the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def host(self) -> str:
        """Registry host without port."""
        return self.registry.rsplit(":", 1)[0] if ":" in self.registry else self.registry

    def __str__(self) -> str:
        text = f"{self.registry}/{self.repository}"
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


def parse_reference(text: str) -> ImageReference:
    """Parse an image reference with Docker Hub defaults.

    Examples:
        localhost:5000/ubuntu-nydus -> localhost:5000, ubuntu-nydus, latest
        ubuntu -> registry-1.docker.io, library/ubuntu, latest

    Raises:
        ReferenceResolutionError: If the reference is malformed
    """
    if not text or not text.strip() or text != text.strip():
        raise ReferenceResolutionError(text, "reference is empty or padded")

    name, _, digest = text.partition("@")
    if digest and not _DIGEST_RE.fullmatch(digest):
        raise ReferenceResolutionError(text, f"invalid digest {digest!r}")

    components = name.split("/")
    first = components[0]
    if len(components) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry = first
        components = components[1:]
    else:
        registry = DEFAULT_REGISTRY

    tag = None
    last = components[-1]
    if ":" in last:
        last, tag = last.rsplit(":", 1)
        components[-1] = last
        if not _TAG_RE.fullmatch(tag):
            raise ReferenceResolutionError(text, f"invalid tag {tag!r}")

    repository = "/".join(components)
    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if "/" not in repository:
            repository = f"library/{repository}"
    if not _REPOSITORY_RE.fullmatch(repository):
        raise ReferenceResolutionError(text, f"invalid repository {repository!r}")

    if tag is None and not digest:
        tag = DEFAULT_TAG
    return ImageReference(
        registry=registry, repository=repository, tag=tag, digest=digest or None
    )


# ==============================================================================
# Registry Client
# ==============================================================================


@dataclass(frozen=True)
class ResolvedManifest:
    """Digest and ordered layer list of an image manifest."""

    digest: str
    media_type: str
    layers: tuple[LayerDescriptor, ...]


def parse_manifest(
    reference: str, body: bytes, content_type: str, digest: str
) -> ResolvedManifest:
    """Parse an image manifest body into its layer descriptors.

    Raises:
        ManifestFetchError: If the body is not a single-image manifest
    """
    try:
        data = json.loads(body)
    except ValueError as error:
        raise ManifestFetchError(reference, f"invalid manifest JSON: {error}") from error
    if not isinstance(data, dict):
        raise ManifestFetchError(reference, "manifest is not a JSON object")

    media_type = data.get("mediaType") or content_type.split(";", 1)[0].strip()
    if media_type in (OCI_INDEX, DOCKER_MANIFEST_LIST) or "manifests" in data:
        raise ManifestFetchError(reference, "manifest must be an image")

    raw_layers = data.get("layers")
    if not isinstance(raw_layers, list):
        raise ManifestFetchError(reference, "manifest has no layer list")
    try:
        layers = tuple(LayerDescriptor.from_manifest_dict(layer) for layer in raw_layers)
    except (KeyError, TypeError, ValueError) as error:
        raise ManifestFetchError(reference, f"malformed layer entry: {error}") from error

    return ResolvedManifest(digest=digest, media_type=media_type, layers=layers)


class RegistryClient:
    """Async client for the OCI distribution API.

    Usage:
        async with RegistryClient() as client:
            manifest = await client.resolve_manifest(ref)
            async for chunk in client.fetch_blob(ref, digest, size):
                ...
    """

    def __init__(
        self,
        *,
        timeout_seconds: int | None = None,
        insecure_registries: Iterable[str] | None = None,
        chunk_size: int | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize registry client.

        Args:
            timeout_seconds: Total timeout of manifest and token requests, and
                the connect and read-idle timeout of blob downloads
            insecure_registries: Hosts reached over plain HTTP
            chunk_size: Size of streamed blob chunks
            session: Existing session to use instead of creating one
        """
        if timeout_seconds is None:
            timeout_seconds = settings.get_int(
                "request_timeout_seconds", settings.DEFAULT_REQUEST_TIMEOUT_SECONDS
            )
        if insecure_registries is None:
            insecure_registries = settings.get_setting("insecure_registries", [])
        if chunk_size is None:
            chunk_size = settings.get_int(
                "copy_buffer_size", settings.DEFAULT_COPY_BUFFER_SIZE
            )
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        # Blob bodies may stream for longer than any fixed total
        self.blob_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=timeout_seconds, sock_read=timeout_seconds
        )
        self.insecure_registries = set(insecure_registries)
        self.chunk_size = chunk_size
        self.session = session
        self._owns_session = session is None
        self._tokens: dict[tuple[str, str], str] = {}

    async def __aenter__(self) -> RegistryClient:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    def base_url(self, ref: ImageReference) -> str:
        insecure = ref.registry in self.insecure_registries or ref.host in self.insecure_registries
        scheme = "http" if insecure else "https"
        return f"{scheme}://{ref.registry}/v2/{ref.repository}"

    def _headers(self, ref: ImageReference, accept: str | None = None) -> dict[str, str]:
        headers = {}
        if accept:
            headers["Accept"] = accept
        token = self._tokens.get((ref.registry, ref.repository))
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _authenticate(self, ref: ImageReference, challenge: str) -> bool:
        """Fetch an anonymous pull token for a ``WWW-Authenticate`` challenge.

        Returns:
            True if a token was stored
        """
        scheme, _, params = challenge.partition(" ")
        if scheme.lower() != "bearer":
            log.error(f"Unsupported auth challenge from {ref.registry}: {challenge!r}")
            return False
        fields = dict(_CHALLENGE_RE.findall(params))
        realm = fields.get("realm")
        if not realm:
            log.error(f"Auth challenge from {ref.registry} has no realm")
            return False
        query = {"scope": fields.get("scope") or f"repository:{ref.repository}:pull"}
        if fields.get("service"):
            query["service"] = fields["service"]

        try:
            async with self.session.get(realm, params=query) as resp:
                if resp.status != 200:
                    log.error(f"Token request to {realm} failed with status {resp.status}")
                    return False
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.error(f"Token request to {realm} timed out")
            return False
        except (aiohttp.ClientError, ValueError) as e:
            log.error(f"Token request to {realm} failed: {e}")
            return False

        token = None
        if isinstance(data, dict):
            token = data.get("token") or data.get("access_token")
        if not token:
            log.error(f"Token response from {realm} has no token")
            return False
        self._tokens[(ref.registry, ref.repository)] = token
        log.debug(f"Authenticated pull access to {ref.registry}/{ref.repository}")
        return True

    async def resolve_manifest(self, ref: ImageReference) -> ResolvedManifest:
        """Fetch and parse the image manifest for a reference.

        Raises:
            ManifestFetchError: Not found, network error, timeout or not an image
        """
        url = f"{self.base_url(ref)}/manifests/{ref.reference}"
        for attempt in range(2):
            challenge = ""
            try:
                async with self.session.get(
                    url, headers=self._headers(ref, accept=MANIFEST_ACCEPT)
                ) as resp:
                    if resp.status == 401 and attempt == 0:
                        challenge = resp.headers.get("WWW-Authenticate", "")
                    elif resp.status == 401:
                        raise ManifestFetchError(str(ref), "unauthorized")
                    elif resp.status == 404:
                        raise ManifestFetchError(str(ref), "manifest not found")
                    elif resp.status != 200:
                        raise ManifestFetchError(
                            str(ref), f"unexpected status {resp.status}"
                        )
                    else:
                        body = await resp.read()
                        digest = resp.headers.get("Docker-Content-Digest") or (
                            "sha256:" + hashlib.sha256(body).hexdigest()
                        )
                        manifest = parse_manifest(
                            str(ref), body, resp.headers.get("Content-Type", ""), digest
                        )
                        log.info(
                            f"Resolved {ref} to {manifest.digest} "
                            f"({len(manifest.layers)} layers)"
                        )
                        return manifest
            except asyncio.TimeoutError as e:
                log.error(f"Timed out while fetching manifest for {ref}")
                raise ManifestFetchError(str(ref), "timed out") from e
            except aiohttp.ClientError as e:
                log.error(f"Network error while fetching manifest for {ref}: {e}")
                raise ManifestFetchError(str(ref), f"network error: {e}") from e

            if not await self._authenticate(ref, challenge):
                raise ManifestFetchError(str(ref), "authentication failed")

        raise ManifestFetchError(str(ref), "unauthorized")

    async def fetch_blob(
        self,
        ref: ImageReference,
        digest: str,
        expected_size: int | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream a blob's bytes in chunks.

        Raises:
            BlobDownloadError: Not found, network error, timeout or unauthorized
        """
        url = f"{self.base_url(ref)}/blobs/{digest}"
        for attempt in range(2):
            challenge = ""
            try:
                async with self.session.get(
                    url, headers=self._headers(ref), timeout=self.blob_timeout
                ) as resp:
                    if resp.status == 401 and attempt == 0:
                        challenge = resp.headers.get("WWW-Authenticate", "")
                    elif resp.status == 401:
                        raise BlobDownloadError.single(digest, "unauthorized")
                    elif resp.status == 404:
                        raise BlobDownloadError.single(digest, "blob not found")
                    elif resp.status != 200:
                        raise BlobDownloadError.single(
                            digest, f"unexpected status {resp.status}"
                        )
                    else:
                        if (
                            expected_size is not None
                            and resp.content_length is not None
                            and resp.content_length != expected_size
                        ):
                            log.warning(
                                f"Blob {digest} advertised {resp.content_length} bytes, "
                                f"manifest says {expected_size}"
                            )
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            yield chunk
                        return
            except asyncio.TimeoutError as e:
                log.error(f"Timed out while downloading {digest}")
                raise BlobDownloadError.single(digest, "timed out") from e
            except aiohttp.ClientError as e:
                log.error(f"Network error while downloading {digest}: {e}")
                raise BlobDownloadError.single(digest, f"network error: {e}") from e

            if not await self._authenticate(ref, challenge):
                raise BlobDownloadError.single(digest, "authentication failed")
