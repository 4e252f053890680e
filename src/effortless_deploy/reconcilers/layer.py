"""Dependency-package layer version reconciler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from ..exceptions import ValidationError, is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

HASH_MARKER = "hash:"
MAX_DIRECT_UPLOAD_BYTES = 50 * 1024 * 1024


def layer_description(content_hash: str) -> str:
    return f"effortless dependencies {HASH_MARKER}{content_hash}"


@dataclass(frozen=True)
class LayerSpec:
    name: str
    content_hash: str
    runtime: str
    archive: Callable[[], bytes]
    """Builds the zip only when no published version matches the hash."""


@dataclass(frozen=True)
class LiveLayer:
    arn: str
    version: int


@dataclass(frozen=True)
class LayerVersion:
    arn: str
    version: int
    description: str
    created: str

    @property
    def content_hash(self) -> str | None:
        if HASH_MARKER not in self.description:
            return None
        return self.description.split(HASH_MARKER, 1)[1].split()[0]


async def list_layer_versions(client: Any, layer_name: str) -> list[LayerVersion]:
    """All published versions of a layer, newest first."""
    versions: list[LayerVersion] = []
    kwargs: dict[str, Any] = {"LayerName": layer_name}
    while True:
        try:
            response = await client.list_layer_versions(**kwargs)
        except ClientError as e:
            if is_not_found(e):
                return []
            raise
        for item in response.get("LayerVersions", []):
            versions.append(
                LayerVersion(
                    arn=item["LayerVersionArn"],
                    version=int(item["Version"]),
                    description=item.get("Description", ""),
                    created=item.get("CreatedDate", ""),
                )
            )
        marker = response.get("NextMarker")
        if not marker:
            break
        kwargs["Marker"] = marker
    return sorted(versions, key=lambda v: v.version, reverse=True)


async def delete_layer_versions(
    client: Any, layer_name: str, keep: set[int] | None = None
) -> list[int]:
    """Delete every version not in ``keep``. Returns the deleted version numbers."""
    deleted: list[int] = []
    for version in await list_layer_versions(client, layer_name):
        if keep and version.version in keep:
            continue
        await client.delete_layer_version(LayerName=layer_name, VersionNumber=version.version)
        logger.info("Deleted layer %s version %d", layer_name, version.version)
        deleted.append(version.version)
    return deleted


class LayerReconciler(Reconciler[LayerSpec, LiveLayer]):
    """
    Reuse the published version carrying the content hash or publish a new one.

    Layer versions are immutable, so an update reports the matching version
    unchanged.
    """

    resource_type = ResourceType.DEPENDENCY_PACKAGE

    def name(self, spec: LayerSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("lambda")

    async def find(self, spec: LayerSpec) -> LiveLayer | None:
        client = await self._client()
        for version in await list_layer_versions(client, spec.name):
            if version.content_hash == spec.content_hash:
                return LiveLayer(arn=version.arn, version=version.version)
        return None

    def diff(self, spec: LayerSpec, live: LiveLayer) -> set[str]:
        return set()

    async def create(self, spec: LayerSpec) -> DeploymentResult:
        archive = spec.archive()
        if len(archive) > MAX_DIRECT_UPLOAD_BYTES:
            raise ValidationError(
                "layer",
                spec.name,
                f"Archive is {len(archive)} bytes; direct uploads are limited to "
                f"{MAX_DIRECT_UPLOAD_BYTES} bytes",
            )
        client = await self._client()
        response = await client.publish_layer_version(
            LayerName=spec.name,
            Description=layer_description(spec.content_hash),
            Content={"ZipFile": archive},
            CompatibleRuntimes=[spec.runtime],
        )
        logger.info("Published layer %s version %s", spec.name, response["Version"])
        return result_for(
            self,
            response["LayerVersionArn"],
            spec.name,
            DeploymentStatus.CREATED,
            version=int(response["Version"]),
        )

    async def update(self, spec: LayerSpec, live: LiveLayer, changed: set[str]) -> DeploymentResult:
        return self.result(spec, live, DeploymentStatus.UNCHANGED)

    def result(self, spec: LayerSpec, live: LiveLayer, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status, version=live.version)
