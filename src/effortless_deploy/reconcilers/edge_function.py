"""CloudFront viewer-request functions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from ..clients import GLOBAL_REGION
from ..exceptions import is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

FUNCTION_RUNTIME = "cloudfront-js-2.0"


@dataclass(frozen=True)
class ViewerFunctionSpec:
    name: str
    rewrite_urls: bool = True
    redirect_www_domain: str | None = None

    @property
    def code(self) -> str:
        """JavaScript source executed by CloudFront on each viewer request."""
        lines = ["function handler(event) {", "  var request = event.request;"]
        if self.redirect_www_domain:
            primary = self.redirect_www_domain.removeprefix("www.")
            lines += [
                "  var host = request.headers.host && request.headers.host.value;",
                f"  if (host === '{self.redirect_www_domain}') {{",
                "    return {",
                "      statusCode: 301,",
                "      statusDescription: 'Moved Permanently',",
                f"      headers: {{ location: {{ value: 'https://{primary}' + request.uri }} }}",
                "    };",
                "  }",
            ]
        if self.rewrite_urls:
            lines += [
                "  var uri = request.uri;",
                "  if (uri.endsWith('/')) {",
                "    request.uri += 'index.html';",
                "  } else if (!uri.includes('.')) {",
                "    request.uri += '/index.html';",
                "  }",
            ]
        lines += ["  return request;", "}"]
        return "\n".join(lines)

    @property
    def comment(self) -> str:
        parts = []
        if self.rewrite_urls:
            parts.append("URL rewrite")
        if self.redirect_www_domain:
            parts.append("www redirect")
        return "effortless: " + (" + ".join(parts) or "viewer request")


@dataclass(frozen=True)
class LiveViewerFunction:
    arn: str
    code: str
    etag: str


async def _read_code(payload: Any) -> str:
    if payload is None:
        return ""
    if hasattr(payload, "read"):
        payload = await payload.read()
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    return str(payload)


async def list_functions(client: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {}
    while True:
        response = await client.list_functions(**kwargs)
        function_list = response.get("FunctionList", {})
        items.extend(function_list.get("Items", []))
        marker = function_list.get("NextMarker")
        if not marker:
            return items
        kwargs["Marker"] = marker


class ViewerFunctionReconciler(Reconciler[ViewerFunctionSpec, LiveViewerFunction]):
    """
    Publish the viewer-request function whose code matches the desired definition.

    CloudFront Functions cannot carry tags; they are tracked by name
    prefix instead (see :func:`cleanup_orphaned_functions`).
    """

    resource_type = ResourceType.DISTRIBUTION
    kind = "viewer-function"

    def name(self, spec: ViewerFunctionSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("cloudfront", GLOBAL_REGION)

    async def find(self, spec: ViewerFunctionSpec) -> LiveViewerFunction | None:
        client = await self._client()
        existing = next((f for f in await list_functions(client) if f.get("Name") == spec.name), None)
        if existing is None:
            return None
        try:
            response = await client.get_function(Name=spec.name, Stage="LIVE")
        except ClientError as e:
            if not is_not_found(e):
                raise
            # Created but never published
            response = await client.get_function(Name=spec.name, Stage="DEVELOPMENT")
        return LiveViewerFunction(
            arn=existing["FunctionMetadata"]["FunctionARN"],
            code=await _read_code(response.get("FunctionCode")),
            etag=response.get("ETag", ""),
        )

    def diff(self, spec: ViewerFunctionSpec, live: LiveViewerFunction) -> set[str]:
        return {"code"} if live.code != spec.code else set()

    async def create(self, spec: ViewerFunctionSpec) -> DeploymentResult:
        client = await self._client()
        response = await client.create_function(
            Name=spec.name,
            FunctionConfig={"Comment": spec.comment, "Runtime": FUNCTION_RUNTIME},
            FunctionCode=spec.code.encode("utf-8"),
        )
        await client.publish_function(Name=spec.name, IfMatch=response["ETag"])
        arn = response["FunctionSummary"]["FunctionMetadata"]["FunctionARN"]
        return result_for(self, arn, spec.name, DeploymentStatus.CREATED)

    async def update(
        self, spec: ViewerFunctionSpec, live: LiveViewerFunction, changed: set[str]
    ) -> DeploymentResult:
        client = await self._client()
        described = await client.describe_function(Name=spec.name)
        response = await client.update_function(
            Name=spec.name,
            IfMatch=described["ETag"],
            FunctionConfig={"Comment": spec.comment, "Runtime": FUNCTION_RUNTIME},
            FunctionCode=spec.code.encode("utf-8"),
        )
        await client.publish_function(Name=spec.name, IfMatch=response["ETag"])
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(
        self, spec: ViewerFunctionSpec, live: LiveViewerFunction, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status)


async def cleanup_orphaned_functions(
    client: Any, prefix: str, active_arns: set[str]
) -> list[str]:
    """
    Delete viewer functions named ``prefix*`` that no distribution uses.

    Failures are logged per function and never raised.

    Returns:
        Names of the deleted functions
    """
    deleted: list[str] = []
    for function in await list_functions(client):
        name = function.get("Name", "")
        arn = function.get("FunctionMetadata", {}).get("FunctionARN")
        if not name.startswith(prefix) or not arn or arn in active_arns:
            continue
        try:
            described = await client.describe_function(Name=name)
            await client.delete_function(Name=name, IfMatch=described["ETag"])
        except ClientError as e:
            logger.warning("Could not delete viewer function %s: %s", name, e)
            continue
        logger.info("Deleted orphaned viewer function %s", name)
        deleted.append(name)
    return deleted
