"""Project-level deployment: bounded-concurrency handler tasks plus pruning."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection, Sequence
from pathlib import Path

from .clients import GLOBAL_REGION, AwsClients
from .config import DEFAULT_CONCURRENCY
from .exceptions import ValidationError
from .handlers import AppHandler, HandlerSpec, HttpHandler, StaticSiteHandler
from .inventory import ResourceInventory, find_orphans
from .layer_builder import LayerBuilder
from .models import CleanupReport, HandlerDeployment, LayerManifest, ProjectDeploymentSummary
from .naming import api_name
from .pipeline import CodeLoader, HandlerPipeline, SharedApi
from .reconcilers.distribution import distribution_function_arns
from .reconcilers.edge_function import cleanup_orphaned_functions
from .reconcilers.role import ROLE_PROPAGATION_DELAY
from .reconcilers.routes import ApiSpec, RouteCollectionReconciler, remove_stale_routes
from .resolver import build_name_maps, resolve_handler
from .tags import SHARED_HANDLER, ResourceType, TagContext

logger = logging.getLogger(__name__)


def active_route_keys(handlers: Sequence[HandlerSpec]) -> set[str]:
    """Route keys the declared handlers own, independent of task outcomes."""
    keys = {h.route_key for h in handlers if isinstance(h, HttpHandler)}
    for handler in handlers:
        if isinstance(handler, AppHandler):
            keys.update(handler.route_keys)
    return keys


def needs_api(handlers: Sequence[HandlerSpec]) -> bool:
    return any(
        isinstance(h, (HttpHandler, AppHandler))
        or (isinstance(h, StaticSiteHandler) and h.routes)
        for h in handlers
    )


def validate_unique_names(handlers: Sequence[HandlerSpec]) -> None:
    seen: set[str] = set()
    for handler in handlers:
        if handler.name in seen:
            raise ValidationError("handler", handler.name, "Duplicate handler name")
        seen.add(handler.name)


class ProjectDeployer:
    """
    Deploy every declared handler of a project stage.

    Handler tasks run concurrently under a semaphore; each task captures
    its own failure, so one failing handler never cancels the others.

    Example:
        async with AwsClients(region="eu-central-1") as clients:
            deployer = ProjectDeployer(clients, "acme", "dev", root=Path("."))
            summary = await deployer.deploy_project(manifest.handlers)
            for failed in summary.failed:
                print(failed.failure)
    """

    def __init__(
        self,
        clients: AwsClients,
        project: str,
        stage: str,
        root: Path | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        layer_builder: LayerBuilder | None = None,
        build_layer: bool = True,
        code_loader: CodeLoader | None = None,
        cleanup_orphans: bool = False,
        role_propagation_delay: float = ROLE_PROPAGATION_DELAY,
    ) -> None:
        if concurrency < 1:
            raise ValidationError("concurrency", concurrency, "Must be at least 1")
        self.clients = clients
        self.project = project
        self.stage = stage
        self.root = root or Path.cwd()
        self.concurrency = concurrency
        self.layer_builder = layer_builder
        self.build_layer = build_layer
        self.code_loader = code_loader
        self.cleanup_orphans = cleanup_orphans
        self.role_propagation_delay = role_propagation_delay

    @property
    def shared_context(self) -> TagContext:
        return TagContext(self.project, self.stage, SHARED_HANDLER)

    async def ensure_api(self, region: str) -> SharedApi:
        result = await RouteCollectionReconciler(self.clients, self.shared_context).ensure(
            ApiSpec(name=api_name(self.project, self.stage), region=region)
        )
        return SharedApi(api_id=result.identifier, endpoint=result.outputs["endpoint"])

    async def ensure_layer(self) -> LayerManifest | None:
        if not self.build_layer:
            return None
        builder = self.layer_builder or LayerBuilder(self.clients, self.project, self.stage)
        return await builder.ensure_layer(self.root)

    async def deploy_project(
        self,
        handlers: Sequence[HandlerSpec],
        only: Collection[str] | None = None,
    ) -> ProjectDeploymentSummary:
        """
        Deploy ``handlers`` and prune shared state they no longer use.

        ``only`` restricts which handlers get a task. Name maps, route
        pruning and orphan detection still use the full declared list.

        Returns:
            ProjectDeploymentSummary with one HandlerDeployment per handler,
            in declaration order
        """
        validate_unique_names(handlers)
        summary = ProjectDeploymentSummary(project=self.project, stage=self.stage)
        region = await self.clients.resolved_region()
        name_maps = build_name_maps(handlers, self.project, self.stage)

        summary.layer = await self.ensure_layer()
        api = await self.ensure_api(region) if needs_api(handlers) else None
        if api:
            summary.api_url = api.endpoint

        pipeline = HandlerPipeline(
            self.clients,
            self.project,
            self.stage,
            region=region,
            root=self.root,
            api=api,
            code_loader=self.code_loader,
            role_propagation_delay=self.role_propagation_delay,
        )
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(handler: HandlerSpec) -> HandlerDeployment:
            async with semaphore:
                bindings = resolve_handler(handler, name_maps, self.project, self.stage)
                layer = summary.layer if handler.runs_code else None
                return await pipeline.deploy_handler(handler, layer, bindings)

        selected = [h for h in handlers if only is None or h.name in only]
        logger.info(
            "Deploying %d handlers of %s/%s (concurrency %d)",
            len(selected),
            self.project,
            self.stage,
            self.concurrency,
        )
        summary.handlers = list(await asyncio.gather(*(run(h) for h in selected)))

        if api:
            apigateway = await self.clients.get("apigatewayv2")
            summary.removed_routes = await remove_stale_routes(
                apigateway, api.api_id, active_route_keys(handlers)
            )
        if any(isinstance(h, StaticSiteHandler) for h in handlers):
            summary.removed_edge_functions = await self.prune_viewer_functions()
        if self.cleanup_orphans:
            summary.cleanup = await self.remove_orphans(handlers)

        logger.info(
            "Deployed %s/%s: %d succeeded, %d failed",
            self.project,
            self.stage,
            len(summary.succeeded),
            len(summary.failed),
        )
        return summary

    async def prune_viewer_functions(self) -> list[str]:
        """Delete this stage's viewer functions that no distribution uses anymore."""
        inventory = ResourceInventory(self.clients)
        resources = await inventory.list_tagged_resources(self.project, self.stage)
        distribution_ids = [
            r.name
            for r in resources
            if r.resource_type is ResourceType.DISTRIBUTION and ":distribution/" in r.arn
        ]
        cloudfront = await self.clients.get("cloudfront", GLOBAL_REGION)
        active = await distribution_function_arns(cloudfront, distribution_ids)
        return await cleanup_orphaned_functions(
            cloudfront, f"{self.project}-{self.stage}-", active
        )

    async def remove_orphans(self, handlers: Sequence[HandlerSpec]) -> CleanupReport:
        """Delete tagged resources whose handler is no longer declared."""
        inventory = ResourceInventory(self.clients)
        resources = await inventory.list_tagged_resources(self.project, self.stage)
        declared = [h.name for h in handlers] + [SHARED_HANDLER]
        orphans = find_orphans(resources, declared)
        if not orphans:
            return CleanupReport()
        logger.info(
            "Removing %d orphaned resources of %s",
            len(orphans),
            ", ".join(sorted({o.handler for o in orphans})),
        )
        return await inventory.delete_resources([o.resource for o in orphans])
