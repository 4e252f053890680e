"""Per-handler deployment pipeline.

Each handler kind runs a fixed, strictly sequential sequence of
reconcilers where every step consumes the previous step's output:

- http: role, function, route on the shared API
- table / fifo-queue / bucket: the upstream resource first, then (when
  the handler runs code) role, function and the binding from the
  resource to the function
- mailer: the sending-domain identity
- static-site: build command, bucket, origin access control, viewer
  function, distribution, bucket policy, file sync and invalidation
- app: build command, role, function bundling the site files, routes on
  the shared API

Any exception aborts only the handler at hand and comes back as a
:class:`~effortless_deploy.models.HandlerFailure`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from botocore.exceptions import ClientError

from .artifacts import app_bundle, load_code_artifact, run_build
from .clients import GLOBAL_REGION, AwsClients
from .exceptions import DeploymentError, ValidationError, classify_error
from .handlers import (
    AppHandler,
    BucketHandler,
    HandlerSpec,
    HttpHandler,
    MailerHandler,
    QueueHandler,
    StaticSiteHandler,
    TableHandler,
)
from .models import DeploymentResult, HandlerDeployment, HandlerFailure, LayerManifest
from .naming import (
    bucket_name,
    function_name,
    origin_access_control_name,
    queue_name,
    role_name,
    site_bucket_name,
    table_name,
    viewer_function_name,
)
from .polling import FUNCTION_ACTIVE, TABLE_ACTIVE, RetryPolicy
from .reconcilers.bucket import (
    BucketNotificationReconciler,
    BucketReconciler,
    BucketSpec,
    NotificationSpec,
    distribution_read_policy,
    ensure_bucket_policy,
    sync_directory,
)
from .reconcilers.distribution import (
    DistributionReconciler,
    DistributionSpec,
    OriginAccessControlReconciler,
    OriginAccessControlSpec,
    find_certificate,
    invalidate,
)
from .reconcilers.edge_function import ViewerFunctionReconciler, ViewerFunctionSpec
from .reconcilers.event_source import (
    EventSourceMappingReconciler,
    EventSourceSpec,
    remove_stale_stream_mappings,
)
from .reconcilers.function import FunctionReconciler, FunctionSpec
from .reconcilers.mail import MailIdentityReconciler, MailIdentitySpec
from .reconcilers.queue import QueueReconciler, QueueSpec
from .reconcilers.role import ROLE_PROPAGATION_DELAY, RoleReconciler, RoleSpec
from .reconcilers.routes import RouteReconciler, RouteSpec
from .reconcilers.table import TableReconciler, TableSpec
from .resolver import ENV_PREFIX, SELF_ENV_VAR, ResolvedBindings, effective_permissions
from .tags import TagContext

logger = logging.getLogger(__name__)

ERROR_PAGE_KEY = "_effortless/404.html"
ERROR_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>404 - Page not found</title>
</head>
<body>
<h1>404</h1>
<p>The page you are looking for does not exist.</p>
<a href="/">Home</a>
</body>
</html>
"""

CodeLoader = Callable[[HandlerSpec], bytes]


@dataclass(frozen=True)
class SharedApi:
    """The project's HTTP API, ensured once before handler tasks start."""

    api_id: str
    endpoint: str

    @property
    def domain(self) -> str:
        return self.endpoint.removeprefix("https://").rstrip("/")


def identity_environment(ctx: TagContext) -> dict[str, str]:
    return {
        f"{ENV_PREFIX}_PROJECT": ctx.project,
        f"{ENV_PREFIX}_STAGE": ctx.stage,
        f"{ENV_PREFIX}_HANDLER": ctx.handler,
    }


class HandlerPipeline:
    """
    Deploy single handlers of one project stage.

    Args:
        clients: Shared client pool
        project: Project name
        stage: Deploy stage
        region: Region that regional resources are created in
        root: Project root that code paths and site directories resolve against
        api: Shared HTTP API, required by http handlers and routed sites
        code_loader: Returns the code artifact of a handler. Defaults to
            reading the handler's ``code`` path under ``root``.
    """

    def __init__(
        self,
        clients: AwsClients,
        project: str,
        stage: str,
        region: str,
        root: Path,
        api: SharedApi | None = None,
        code_loader: CodeLoader | None = None,
        role_propagation_delay: float = ROLE_PROPAGATION_DELAY,
        function_activation: RetryPolicy = FUNCTION_ACTIVE,
        table_activation: RetryPolicy = TABLE_ACTIVE,
    ) -> None:
        self.clients = clients
        self.project = project
        self.stage = stage
        self.region = region
        self.root = root
        self.api = api
        self.code_loader = code_loader or self._load_code
        self.role_propagation_delay = role_propagation_delay
        self.function_activation = function_activation
        self.table_activation = table_activation

    def _load_code(self, handler: HandlerSpec) -> bytes:
        options = handler.function
        static_globs = options.static_globs if options else ()
        if isinstance(handler, AppHandler):
            return app_bundle(self.root, handler.dir, static_globs)
        return load_code_artifact(self.root, options.code if options else None, static_globs)

    def context(self, handler: HandlerSpec) -> TagContext:
        return TagContext(project=self.project, stage=self.stage, handler=handler.name)

    async def deploy_handler(
        self,
        handler: HandlerSpec,
        layer: LayerManifest | None = None,
        bindings: ResolvedBindings | None = None,
    ) -> HandlerDeployment:
        """
        Deploy one handler; never raises.

        Returns:
            HandlerDeployment with one result per reconciled resource, or
            a failure record naming the handler and its kind
        """
        bindings = bindings or ResolvedBindings()
        deployment = HandlerDeployment(handler=handler.name, kind=handler.kind.value)
        logger.info("Deploying %s handler %s", handler.kind.value, handler.name)
        try:
            if isinstance(handler, HttpHandler):
                await self._deploy_http(handler, layer, bindings, deployment)
            elif isinstance(handler, TableHandler):
                await self._deploy_table(handler, layer, bindings, deployment)
            elif isinstance(handler, QueueHandler):
                await self._deploy_queue(handler, layer, bindings, deployment)
            elif isinstance(handler, BucketHandler):
                await self._deploy_bucket(handler, layer, bindings, deployment)
            elif isinstance(handler, MailerHandler):
                await self._deploy_mailer(handler, deployment)
            elif isinstance(handler, StaticSiteHandler):
                await self._deploy_static_site(handler, deployment)
            elif isinstance(handler, AppHandler):
                await self._deploy_app(handler, layer, bindings, deployment)
            else:
                raise DeploymentError(handler.name, handler.kind.value, "Unsupported handler kind")
        except Exception as e:
            error = classify_error(e, handler.name) if isinstance(e, ClientError) else e
            deployment.failure = HandlerFailure(
                handler=handler.name,
                kind=handler.kind.value,
                error_type=type(error).__name__,
                message=str(error),
            )
            logger.error(
                "Deployment of %s handler %s failed: %s",
                handler.kind.value,
                handler.name,
                error,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return deployment

        logger.info(
            "Deployed %s handler %s (%s)",
            handler.kind.value,
            handler.name,
            deployment.status.value if deployment.status else "nothing to do",
        )
        return deployment

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    async def _ensure_role(
        self,
        handler: HandlerSpec,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> str:
        ctx = self.context(handler)
        spec = RoleSpec(
            name=role_name(self.project, self.stage, handler.name),
            permissions=effective_permissions(handler, bindings),
        )
        reconciler = RoleReconciler(
            self.clients, ctx, propagation_delay=self.role_propagation_delay
        )
        result = await reconciler.ensure(spec)
        deployment.results["role"] = result
        return result.identifier

    def _environment(
        self,
        handler: HandlerSpec,
        bindings: ResolvedBindings,
        self_ref: str | None,
        extra: dict[str, str] | None = None,
    ) -> dict[str, str]:
        env = identity_environment(self.context(handler))
        env.update(bindings.to_environment())
        if self_ref:
            env[SELF_ENV_VAR] = self_ref
        env.update(extra or {})
        return env

    async def _ensure_function(
        self,
        handler: HandlerSpec,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
        self_ref: str | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> DeploymentResult:
        options = handler.function
        if options is None:
            raise DeploymentError(handler.name, handler.kind.value, "No function configuration")
        role_arn = await self._ensure_role(handler, bindings, deployment)
        spec = FunctionSpec(
            name=function_name(self.project, self.stage, handler.name),
            role_arn=role_arn,
            code=self.code_loader(handler),
            runtime=options.runtime,
            entrypoint=options.entrypoint,
            memory=options.memory,
            timeout=options.timeout,
            environment=self._environment(handler, bindings, self_ref, extra_env),
            layers=(layer.arn,) if layer else (),
        )
        reconciler = FunctionReconciler(
            self.clients, self.context(handler), activation=self.function_activation
        )
        result = await reconciler.ensure(spec)
        deployment.results["function"] = result
        return result

    # -------------------------------------------------------------------------
    # Kinds
    # -------------------------------------------------------------------------

    async def _deploy_http(
        self,
        handler: HttpHandler,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> None:
        if self.api is None:
            raise DeploymentError(handler.name, handler.kind.value, "Shared HTTP API is not available")
        function = await self._ensure_function(handler, layer, bindings, deployment)
        route = await RouteReconciler(self.clients, self.context(handler)).ensure(
            RouteSpec(
                api_id=self.api.api_id,
                route_key=handler.route_key,
                function_arn=function.identifier,
            )
        )
        deployment.results["route"] = route
        deployment.url = route.outputs.get("url")

    async def _deploy_app(
        self,
        handler: AppHandler,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> None:
        if self.api is None:
            raise DeploymentError(handler.name, handler.kind.value, "Shared HTTP API is not available")
        if handler.build:
            await asyncio.to_thread(run_build, self.root, handler.build)
        function = await self._ensure_function(
            handler,
            layer,
            bindings,
            deployment,
            extra_env={
                f"{ENV_PREFIX}_APP_PATH": handler.base_path,
                f"{ENV_PREFIX}_APP_INDEX": handler.index,
                f"{ENV_PREFIX}_APP_SPA": "true" if handler.spa else "false",
            },
        )
        reconciler = RouteReconciler(self.clients, self.context(handler))
        for result_key, route_key in zip(("route", "proxy_route"), handler.route_keys):
            deployment.results[result_key] = await reconciler.ensure(
                RouteSpec(
                    api_id=self.api.api_id, route_key=route_key, function_arn=function.identifier
                )
            )
        deployment.url = deployment.results["route"].outputs.get("url")

    async def _deploy_table(
        self,
        handler: TableHandler,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> None:
        ctx = self.context(handler)
        name = table_name(self.project, self.stage, handler.name)
        table = await TableReconciler(self.clients, ctx, activation=self.table_activation).ensure(
            TableSpec(
                name=name,
                partition_key=(handler.partition_key.name, handler.partition_key.type),
                sort_key=(
                    (handler.sort_key.name, handler.sort_key.type) if handler.sort_key else None
                ),
                billing_mode=handler.billing_mode,
                stream_view=handler.stream_view,
            )
        )
        deployment.results["table"] = table
        if handler.function is None:
            return

        stream_arn = table.outputs.get("stream_arn")
        if not stream_arn:
            raise DeploymentError(handler.name, handler.kind.value, f"Table {name} has no stream")
        function = await self._ensure_function(
            handler, layer, bindings, deployment, self_ref=f"table:{name}"
        )
        deployment.results["event_source"] = await EventSourceMappingReconciler(
            self.clients, ctx
        ).ensure(
            EventSourceSpec(
                function_name=function.name,
                source_arn=stream_arn,
                batch_size=handler.batch_size,
                batch_window=handler.batch_window,
                starting_position=handler.starting_position,
            )
        )
        lambda_client = await self.clients.get("lambda")
        await remove_stale_stream_mappings(
            lambda_client, function.name, table.identifier, stream_arn
        )

    async def _deploy_queue(
        self,
        handler: QueueHandler,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> None:
        ctx = self.context(handler)
        name = queue_name(self.project, self.stage, handler.name)
        queue = await QueueReconciler(self.clients, ctx).ensure(
            QueueSpec(
                name=name,
                visibility_timeout=handler.effective_visibility_timeout(),
                retention_period=handler.retention_period,
                content_based_deduplication=handler.content_based_deduplication,
            )
        )
        deployment.results["queue"] = queue

        function = await self._ensure_function(
            handler, layer, bindings, deployment, self_ref=f"queue:{name}"
        )
        deployment.results["event_source"] = await EventSourceMappingReconciler(
            self.clients, ctx
        ).ensure(
            EventSourceSpec(
                function_name=function.name,
                source_arn=queue.identifier,
                batch_size=handler.batch_size,
                batch_window=handler.batch_window,
            )
        )

    async def _deploy_bucket(
        self,
        handler: BucketHandler,
        layer: LayerManifest | None,
        bindings: ResolvedBindings,
        deployment: HandlerDeployment,
    ) -> None:
        ctx = self.context(handler)
        name = bucket_name(self.project, self.stage, handler.name)
        deployment.results["bucket"] = await BucketReconciler(self.clients, ctx).ensure(
            BucketSpec(name=name, region=self.region)
        )
        if handler.function is None:
            return

        function = await self._ensure_function(
            handler, layer, bindings, deployment, self_ref=f"bucket:{name}"
        )
        deployment.results["notification"] = await BucketNotificationReconciler(
            self.clients, ctx
        ).ensure(
            NotificationSpec(
                bucket=name,
                function_arn=function.identifier,
                events=handler.events,
                prefix=handler.prefix,
                suffix=handler.suffix,
            )
        )

    async def _deploy_mailer(self, handler: MailerHandler, deployment: HandlerDeployment) -> None:
        domain = handler.domain_for(self.stage)
        if not domain:
            logger.info("Mailer %s has no domain for stage %s, skipping", handler.name, self.stage)
            return
        result = await MailIdentityReconciler(self.clients, self.context(handler)).ensure(
            MailIdentitySpec(domain=domain)
        )
        deployment.results["identity"] = result
        if not result.outputs.get("verified"):
            logger.warning(
                "Domain %s is not verified yet. Publish these DKIM CNAME records:\n%s",
                domain,
                "\n".join(f"  {r['name']} -> {r['value']}" for r in result.outputs["dkim_records"]),
            )

    async def _site_domain(
        self, handler: StaticSiteHandler
    ) -> tuple[tuple[str, ...], str | None, str | None]:
        """Aliases, certificate ARN and the www domain to redirect, for the stage's domain."""
        domain = handler.domain_for(self.stage)
        if not domain:
            return (), None, None
        if handler.certificate_arn:
            return (domain,), handler.certificate_arn, None

        certificate = await find_certificate(self.clients, domain)
        # Only apex domains get a www redirect
        if domain.count(".") != 1:
            return (domain,), certificate.arn, None
        www = f"www.{domain}"
        if certificate.covers(www):
            logger.debug("Certificate covers %s, enabling www redirect", www)
            return (domain, www), certificate.arn, www
        logger.warning(
            "Certificate %s does not cover %s; add it to enable the www redirect",
            certificate.arn,
            www,
        )
        return (domain,), certificate.arn, None

    async def _deploy_static_site(
        self, handler: StaticSiteHandler, deployment: HandlerDeployment
    ) -> None:
        ctx = self.context(handler)
        if handler.routes and self.api is None:
            raise DeploymentError(
                handler.name, handler.kind.value, "Site declares routes but no HTTP API exists"
            )
        if handler.build:
            await asyncio.to_thread(run_build, self.root, handler.build)

        bucket = site_bucket_name(self.project, self.stage, handler.name)
        deployment.results["bucket"] = await BucketReconciler(self.clients, ctx).ensure(
            BucketSpec(name=bucket, region=self.region)
        )
        oac = await OriginAccessControlReconciler(self.clients, ctx).ensure(
            OriginAccessControlSpec(name=origin_access_control_name(self.project, self.stage))
        )
        deployment.results["origin_access_control"] = oac

        aliases, certificate_arn, www = await self._site_domain(handler)
        viewer_function_arn = None
        if not handler.spa or www:
            viewer = await ViewerFunctionReconciler(self.clients, ctx).ensure(
                ViewerFunctionSpec(
                    name=viewer_function_name(self.project, self.stage, handler.name, bool(www)),
                    rewrite_urls=not handler.spa,
                    redirect_www_domain=www,
                )
            )
            deployment.results["viewer_function"] = viewer
            viewer_function_arn = viewer.identifier

        if handler.spa:
            error_page_path = None
        else:
            error_page_path = f"/{handler.error_page or ERROR_PAGE_KEY}"

        distribution = await DistributionReconciler(self.clients, ctx).ensure(
            DistributionSpec(
                handler=handler.name,
                bucket_name=bucket,
                bucket_region=self.region,
                oac_id=oac.identifier,
                index=handler.index,
                spa=handler.spa,
                aliases=aliases,
                certificate_arn=certificate_arn,
                viewer_function_arn=viewer_function_arn,
                api_origin_domain=self.api.domain if self.api and handler.routes else None,
                route_patterns=handler.routes,
                error_page_path=error_page_path,
                comment=f"effortless: {self.project}/{self.stage}/{handler.name}",
            )
        )
        deployment.results["distribution"] = distribution

        s3 = await self.clients.get("s3")
        await ensure_bucket_policy(s3, bucket, distribution_read_policy(bucket, distribution.identifier))

        extra_files: dict[str, bytes] = {}
        if not handler.spa and not handler.error_page:
            extra_files[ERROR_PAGE_KEY] = ERROR_PAGE_HTML.encode("utf-8")
        source_dir = self.root / handler.dir
        if not source_dir.is_dir():
            raise ValidationError("dir", str(source_dir), "Site directory does not exist")
        synced = await sync_directory(s3, bucket, source_dir, extra_files)

        if synced.changed or distribution.changed:
            cloudfront = await self.clients.get("cloudfront", GLOBAL_REGION)
            await invalidate(cloudfront, distribution.outputs["distribution_id"])

        domain = aliases[0] if aliases else distribution.outputs["domain_name"]
        deployment.url = f"https://{domain}"
