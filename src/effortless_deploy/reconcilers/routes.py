"""HTTP API (route collection) and per-handler route reconcilers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from ..exceptions import is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType
from .base import Reconciler, result_for
from .function import (
    account_from_arn,
    ensure_invoke_permission,
    permission_statement_ids,
    region_from_arn,
)

logger = logging.getLogger(__name__)

CORS_CONFIGURATION = {
    "AllowOrigins": ["*"],
    "AllowMethods": ["*"],
    "AllowHeaders": ["*"],
}


def api_endpoint(api_id: str, region: str) -> str:
    return f"https://{api_id}.execute-api.{region}.amazonaws.com"


def api_arn(api_id: str, region: str) -> str:
    return f"arn:aws:apigateway:{region}::/apis/{api_id}"


async def _paginate(method: Any, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        response = await method(**kwargs)
        items.extend(response.get("Items", []))
        token = response.get("NextToken")
        if not token:
            return items
        kwargs["NextToken"] = token


# ---------------------------------------------------------------------------
# Route collection (one HTTP API per project stage)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApiSpec:
    name: str
    region: str


@dataclass(frozen=True)
class LiveApi:
    api_id: str
    endpoint: str
    cors: dict[str, Any] | None
    tags: dict[str, str]


def _normalize_cors(cors: dict[str, Any] | None) -> dict[str, list[str]]:
    cors = cors or {}
    return {key: sorted(cors.get(key, [])) for key in CORS_CONFIGURATION}


class RouteCollectionReconciler(Reconciler[ApiSpec, LiveApi]):
    """The project's shared HTTP API with an auto-deployed ``$default`` stage."""

    resource_type = ResourceType.ROUTE_COLLECTION

    def name(self, spec: ApiSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("apigatewayv2")

    async def find(self, spec: ApiSpec) -> LiveApi | None:
        client = await self._client()
        for api in await _paginate(client.get_apis):
            if api.get("Name") == spec.name:
                return LiveApi(
                    api_id=api["ApiId"],
                    endpoint=api.get("ApiEndpoint") or api_endpoint(api["ApiId"], spec.region),
                    cors=api.get("CorsConfiguration"),
                    tags=dict(api.get("Tags", {})),
                )
        return None

    def diff(self, spec: ApiSpec, live: LiveApi) -> set[str]:
        if _normalize_cors(live.cors) != _normalize_cors(CORS_CONFIGURATION):
            return {"cors"}
        return set()

    async def create(self, spec: ApiSpec) -> DeploymentResult:
        client = await self._client()
        response = await client.create_api(
            Name=spec.name,
            ProtocolType="HTTP",
            CorsConfiguration=CORS_CONFIGURATION,
            Tags=self.tags,
        )
        api_id = response["ApiId"]
        await client.create_stage(ApiId=api_id, StageName="$default", AutoDeploy=True)
        endpoint = response.get("ApiEndpoint") or api_endpoint(api_id, spec.region)
        return result_for(self, api_id, spec.name, DeploymentStatus.CREATED, endpoint=endpoint)

    async def update(self, spec: ApiSpec, live: LiveApi, changed: set[str]) -> DeploymentResult:
        client = await self._client()
        await client.update_api(ApiId=live.api_id, CorsConfiguration=CORS_CONFIGURATION)
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(self, spec: ApiSpec, live: LiveApi, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.api_id, spec.name, status, endpoint=live.endpoint)

    def live_tags(self, live: LiveApi) -> dict[str, str]:
        return live.tags

    async def apply_tags(self, spec: ApiSpec, live: LiveApi, tags: dict[str, str]) -> None:
        client = await self._client()
        await client.tag_resource(ResourceArn=api_arn(live.api_id, spec.region), Tags=tags)


async def delete_api(client: Any, api_id: str) -> bool:
    try:
        await client.delete_api(ApiId=api_id)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("API %s not found, skipping", api_id)
            return False
        raise
    logger.info("Deleted API %s", api_id)
    return True


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RouteSpec:
    api_id: str
    route_key: str
    function_arn: str

    @property
    def path(self) -> str:
        return self.route_key.split(" ", 1)[1]

    @property
    def statement_id(self) -> str:
        return f"apigateway-{self.api_id}"

    @property
    def source_arn(self) -> str:
        region = region_from_arn(self.function_arn)
        account = account_from_arn(self.function_arn)
        return f"arn:aws:execute-api:{region}:{account}:{self.api_id}/*/*"


@dataclass(frozen=True)
class LiveRoute:
    route_id: str
    target: str | None
    integration_id: str | None
    has_permission: bool


class RouteReconciler(Reconciler[RouteSpec, LiveRoute]):
    """
    One ``{METHOD} {path}`` route on the shared API.

    An existing route under the same key is looked up and left alone when
    it already targets the function's integration.
    """

    resource_type = ResourceType.ROUTE_COLLECTION
    kind = "route"

    def name(self, spec: RouteSpec) -> str:
        return spec.route_key

    async def _client(self) -> Any:
        return await self.clients.get("apigatewayv2")

    async def find_integration(self, spec: RouteSpec) -> str | None:
        client = await self._client()
        for integration in await _paginate(client.get_integrations, ApiId=spec.api_id):
            if integration.get("IntegrationUri") == spec.function_arn:
                return str(integration["IntegrationId"])
        return None

    async def find(self, spec: RouteSpec) -> LiveRoute | None:
        client = await self._client()
        routes = await _paginate(client.get_routes, ApiId=spec.api_id)
        route = next((r for r in routes if r.get("RouteKey") == spec.route_key), None)
        if route is None:
            return None
        lambda_client = await self.clients.get("lambda")
        sids = await permission_statement_ids(lambda_client, spec.function_arn)
        return LiveRoute(
            route_id=route["RouteId"],
            target=route.get("Target"),
            integration_id=await self.find_integration(spec),
            has_permission=spec.statement_id in sids,
        )

    def diff(self, spec: RouteSpec, live: LiveRoute) -> set[str]:
        changed: set[str] = set()
        if live.integration_id is None or live.target != f"integrations/{live.integration_id}":
            changed.add("target")
        if not live.has_permission:
            changed.add("permission")
        return changed

    async def ensure_integration(self, spec: RouteSpec, existing: str | None = None) -> str:
        if existing:
            return existing
        client = await self._client()
        response = await client.create_integration(
            ApiId=spec.api_id,
            IntegrationType="AWS_PROXY",
            IntegrationUri=spec.function_arn,
            IntegrationMethod="POST",
            PayloadFormatVersion="2.0",
        )
        return str(response["IntegrationId"])

    async def ensure_permission(self, spec: RouteSpec) -> None:
        lambda_client = await self.clients.get("lambda")
        await ensure_invoke_permission(
            lambda_client,
            spec.function_arn,
            spec.statement_id,
            "apigateway.amazonaws.com",
            spec.source_arn,
        )

    async def create(self, spec: RouteSpec) -> DeploymentResult:
        client = await self._client()
        integration_id = await self.ensure_integration(spec, await self.find_integration(spec))
        response = await client.create_route(
            ApiId=spec.api_id,
            RouteKey=spec.route_key,
            Target=f"integrations/{integration_id}",
        )
        await self.ensure_permission(spec)
        return self._result(spec, response["RouteId"], DeploymentStatus.CREATED)

    async def update(self, spec: RouteSpec, live: LiveRoute, changed: set[str]) -> DeploymentResult:
        if "target" in changed:
            client = await self._client()
            integration_id = await self.ensure_integration(spec, live.integration_id)
            await client.update_route(
                ApiId=spec.api_id,
                RouteId=live.route_id,
                Target=f"integrations/{integration_id}",
            )
        if "permission" in changed:
            await self.ensure_permission(spec)
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(self, spec: RouteSpec, live: LiveRoute, status: DeploymentStatus) -> DeploymentResult:
        return self._result(spec, live.route_id, status)

    def _result(self, spec: RouteSpec, route_id: str, status: DeploymentStatus) -> DeploymentResult:
        region = region_from_arn(spec.function_arn)
        url = f"{api_endpoint(spec.api_id, region)}{spec.path}"
        return result_for(self, route_id, spec.route_key, status, url=url)


async def remove_stale_routes(client: Any, api_id: str, active_keys: set[str]) -> list[str]:
    """
    Delete every route of the API whose key is not in ``active_keys``.

    Returns:
        The removed route keys
    """
    removed: list[str] = []
    for route in await _paginate(client.get_routes, ApiId=api_id):
        key = route.get("RouteKey")
        if key in active_keys:
            continue
        logger.info("Removing stale route %s", key)
        await client.delete_route(ApiId=api_id, RouteId=route["RouteId"])
        removed.append(str(key))
    return removed
