"""Tests for the handler pipeline and the project deployer."""

import asyncio
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from effortless_deploy.exceptions import ValidationError
from effortless_deploy.handlers import (
    AppHandler,
    BucketHandler,
    FunctionOptions,
    HttpHandler,
    MailerHandler,
    QueueHandler,
    StaticSiteHandler,
    TableHandler,
)
from effortless_deploy.models import DeploymentStatus, HandlerDeployment
from effortless_deploy.naming import bucket_name, queue_name, site_bucket_name
from effortless_deploy.orchestrator import (
    ProjectDeployer,
    active_route_keys,
    needs_api,
    validate_unique_names,
)
from effortless_deploy.pipeline import HandlerPipeline, SharedApi
from effortless_deploy.polling import RetryPolicy
from effortless_deploy.reconcilers.distribution import DistributionReconciler, DistributionSpec
from effortless_deploy.reconcilers.edge_function import ViewerFunctionReconciler, ViewerFunctionSpec
from effortless_deploy.tags import TagContext
from tests.fixtures.fake_aws import FakeAws

CREATE_ORDER = HttpHandler(
    name="createOrder",
    method="POST",
    path="/orders",
    function=FunctionOptions(code="build"),
)


def deployer(aws: FakeAws, **kwargs) -> ProjectDeployer:
    return ProjectDeployer(
        aws,  # type: ignore[arg-type]
        "acme",
        "dev",
        root=Path("."),
        build_layer=False,
        code_loader=lambda handler: b"def handler(event, context): return {}",
        role_propagation_delay=0,
        **kwargs,
    )


class TestHelpers:
    """Pure helpers of the orchestrator."""

    def test_active_route_keys(self) -> None:
        handlers = [CREATE_ORDER, TableHandler(name="orders")]
        assert active_route_keys(handlers) == {"POST /orders"}
        docs = AppHandler(name="docs", path="/docs")
        assert active_route_keys([docs]) == {"GET /docs", "GET /docs/{proxy+}"}

    def test_needs_api(self) -> None:
        assert needs_api([CREATE_ORDER])
        assert not needs_api([TableHandler(name="orders")])
        assert needs_api([StaticSiteHandler(name="web", routes=("/api/*",))])
        assert not needs_api([StaticSiteHandler(name="web")])
        assert needs_api([AppHandler(name="docs")])

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_unique_names([CREATE_ORDER, CREATE_ORDER])

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ProjectDeployer(Mock(), "acme", "dev", concurrency=0)


class TestHttpDeploy:
    """End-to-end HTTP handler deploys against recording fakes."""

    async def test_first_deploy_creates_everything(self) -> None:
        aws = FakeAws()
        summary = await deployer(aws).deploy_project([CREATE_ORDER])

        assert summary.ok
        deployment = summary.get("createOrder")
        assert deployment is not None
        assert {name: r.status for name, r in deployment.results.items()} == {
            "role": DeploymentStatus.CREATED,
            "function": DeploymentStatus.CREATED,
            "route": DeploymentStatus.CREATED,
        }
        api_id = aws.apigateway.apis[0]["ApiId"]
        assert deployment.url == f"https://{api_id}.execute-api.us-east-1.amazonaws.com/orders"
        assert summary.api_url == f"https://{api_id}.execute-api.us-east-1.amazonaws.com"

        function = aws.lambda_.functions["acme-dev-createOrder"]
        assert function["Role"].endswith(":role/acme-dev-createOrder-role")
        assert function["Environment"]["Variables"] == {
            "EFF_PROJECT": "acme",
            "EFF_STAGE": "dev",
            "EFF_HANDLER": "createOrder",
        }
        assert aws.lambda_.tags["acme-dev-createOrder"] == {
            "effortless:project": "acme",
            "effortless:stage": "dev",
            "effortless:handler": "createOrder",
            "effortless:type": "function",
        }
        assert aws.apigateway.apis[0]["Tags"]["effortless:handler"] == "_project"

    async def test_redeploy_is_a_no_op(self) -> None:
        aws = FakeAws()
        await deployer(aws).deploy_project([CREATE_ORDER])
        aws.reset_log()

        summary = await deployer(aws).deploy_project([CREATE_ORDER])

        deployment = summary.get("createOrder")
        assert deployment is not None
        assert deployment.status is DeploymentStatus.UNCHANGED
        assert all(r.status is DeploymentStatus.UNCHANGED for r in deployment.results.values())
        assert aws.mutations() == []

    async def test_memory_change_updates_configuration_only(self) -> None:
        aws = FakeAws()
        await deployer(aws).deploy_project([CREATE_ORDER])
        aws.reset_log()

        changed = CREATE_ORDER.with_function(memory=512)
        summary = await deployer(aws).deploy_project([changed])

        deployment = summary.get("createOrder")
        assert deployment is not None
        assert deployment.results["function"].status is DeploymentStatus.UPDATED
        assert deployment.results["route"].status is DeploymentStatus.UNCHANGED
        assert deployment.results["role"].status is DeploymentStatus.UNCHANGED
        assert aws.mutations() == [("lambda", "update_function_configuration")]
        update = next(kwargs for _, op, kwargs in aws.log if op == "update_function_configuration")
        assert update == {"FunctionName": "acme-dev-createOrder", "MemorySize": 512}

    async def test_stale_routes_are_removed(self) -> None:
        aws = FakeAws()
        old = HttpHandler(name="listOrders", path="/orders", function=FunctionOptions())
        await deployer(aws).deploy_project([CREATE_ORDER, old])

        summary = await deployer(aws).deploy_project([CREATE_ORDER])

        assert summary.removed_routes == ["GET /orders"]
        api_id = aws.apigateway.apis[0]["ApiId"]
        assert [r["RouteKey"] for r in aws.apigateway.routes[api_id]] == ["POST /orders"]

    async def test_subset_deploy_keeps_other_routes(self) -> None:
        aws = FakeAws()
        other = HttpHandler(name="listOrders", path="/orders", function=FunctionOptions())
        await deployer(aws).deploy_project([CREATE_ORDER, other])

        summary = await deployer(aws).deploy_project([CREATE_ORDER, other], only={"createOrder"})

        assert [d.handler for d in summary.handlers] == ["createOrder"]
        assert summary.removed_routes == []

    async def test_failure_is_isolated(self) -> None:
        aws = FakeAws()
        aws.lambda_.fail_on.add("acme-dev-broken")
        broken = HttpHandler(name="broken", method="DELETE", path="/orders", function=FunctionOptions())

        summary = await deployer(aws).deploy_project([CREATE_ORDER, broken])

        assert not summary.ok
        assert [d.handler for d in summary.succeeded] == ["createOrder"]
        failure = summary.get("broken").failure  # type: ignore[union-attr]
        assert failure is not None
        assert failure.kind == "http"
        assert failure.error_type == "PermissionDeniedError"
        # The failed handler's route is still declared, so it survives pruning
        assert summary.removed_routes == []


class TestPipeline:
    """Single-handler pipeline edge cases."""

    async def test_http_without_api_fails(self) -> None:
        aws = FakeAws()
        pipeline = HandlerPipeline(aws, "acme", "dev", "us-east-1", Path("."))  # type: ignore[arg-type]
        deployment = await pipeline.deploy_handler(CREATE_ORDER)
        assert deployment.failure is not None
        assert deployment.failure.error_type == "DeploymentError"
        assert aws.mutations() == []

    async def test_mailer_without_stage_domain_is_skipped(self) -> None:
        aws = FakeAws()
        pipeline = HandlerPipeline(aws, "acme", "dev", "us-east-1", Path("."))  # type: ignore[arg-type]
        mailer = MailerHandler(name="mail", domain={"prod": "acme.com"})
        deployment = await pipeline.deploy_handler(mailer)
        assert deployment.succeeded
        assert deployment.results == {}
        assert deployment.status is None

    async def test_missing_code_is_reported(self, tmp_path: Path) -> None:
        aws = FakeAws()
        pipeline = HandlerPipeline(
            aws,  # type: ignore[arg-type]
            "acme",
            "dev",
            "us-east-1",
            tmp_path,
            api=SharedApi("api0001", "https://api0001.execute-api.us-east-1.amazonaws.com"),
            role_propagation_delay=0,
        )
        deployment = await pipeline.deploy_handler(CREATE_ORDER)
        assert deployment.failure is not None
        assert deployment.failure.error_type == "ValidationError"

    def test_shared_api_domain(self) -> None:
        api = SharedApi("abc", "https://abc.execute-api.eu-west-1.amazonaws.com")
        assert api.domain == "abc.execute-api.eu-west-1.amazonaws.com"


class TestConcurrency:
    """Handler tasks run under a bounded semaphore."""

    async def test_concurrency_cap(self) -> None:
        running = 0
        peak = 0

        async def fake_deploy(handler, layer, bindings):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return HandlerDeployment(handler=handler.name, kind=handler.kind.value)

        handlers = [TableHandler(name=f"table{i}") for i in range(8)]
        with patch("effortless_deploy.orchestrator.HandlerPipeline") as pipeline_cls:
            pipeline_cls.return_value.deploy_handler = fake_deploy
            summary = await deployer(FakeAws(), concurrency=3).deploy_project(handlers)

        assert peak == 3
        assert [d.handler for d in summary.handlers] == [f"table{i}" for i in range(8)]

    async def test_layer_only_for_handlers_that_run_code(self) -> None:
        layers: dict[str, object] = {}
        manifest = Mock()

        async def fake_deploy(handler, layer, bindings):
            layers[handler.name] = layer
            return HandlerDeployment(handler=handler.name, kind=handler.kind.value)

        layer_builder = Mock()

        async def ensure_layer(root):
            return manifest

        layer_builder.ensure_layer = ensure_layer
        handlers = [
            TableHandler(name="orders"),
            MailerHandler(name="mail", domain="acme.com"),
        ]
        aws = FakeAws()
        with patch("effortless_deploy.orchestrator.HandlerPipeline") as pipeline_cls:
            pipeline_cls.return_value.deploy_handler = fake_deploy
            deploy = ProjectDeployer(
                aws,  # type: ignore[arg-type]
                "acme",
                "dev",
                layer_builder=layer_builder,
            )
            summary = await deploy.deploy_project(handlers)

        assert summary.layer is manifest
        assert layers == {"orders": manifest, "mail": None}


class TestResourceOnlyHandlers:
    """Table and bucket handlers without code, against moto."""

    async def test_table_and_bucket_without_function(self, moto_clients) -> None:
        pipeline = HandlerPipeline(
            moto_clients,
            "acme",
            "dev",
            "us-east-1",
            Path("."),
            table_activation=RetryPolicy(attempts=3, interval=0),
        )

        table = await pipeline.deploy_handler(TableHandler(name="orders"))
        bucket = await pipeline.deploy_handler(BucketHandler(name="uploads"))
        again = await pipeline.deploy_handler(TableHandler(name="orders"))

        assert table.failure is None
        assert list(table.results) == ["table"]
        assert table.status is DeploymentStatus.CREATED
        assert table.results["table"].name == "acme-dev-orders"
        assert bucket.results["bucket"].identifier == "arn:aws:s3:::acme-dev-uploads"
        assert again.status is DeploymentStatus.UNCHANGED


FAST = RetryPolicy(attempts=3, interval=0)


def event_pipeline(clients, root: Path = Path(".")) -> HandlerPipeline:
    return HandlerPipeline(
        clients,
        "acme",
        "dev",
        "us-east-1",
        root,
        code_loader=lambda handler: b"def handler(event, context): return {}",
        role_propagation_delay=0,
        function_activation=FAST,
        table_activation=FAST,
    )


class TestEventHandlers:
    """Resource handlers with a function: fakes for IAM and Lambda, moto for the rest."""

    async def test_table_with_function(self, moto_clients) -> None:
        aws = FakeAws(fallback=moto_clients)
        handler = TableHandler(name="orders", function=FunctionOptions())

        deployment = await event_pipeline(aws).deploy_handler(handler)

        assert deployment.failure is None
        assert list(deployment.results) == ["table", "role", "function", "event_source"]
        env = aws.lambda_.functions["acme-dev-orders"]["Environment"]["Variables"]
        assert env["EFF_DEP_SELF"] == "table:acme-dev-orders"
        stream_arn = deployment.results["table"].outputs["stream_arn"]
        [mapping] = aws.lambda_.mappings.values()
        assert mapping["EventSourceArn"] == stream_arn
        assert mapping["StartingPosition"] == "LATEST"
        assert mapping["BatchSize"] == 100

    async def test_stale_stream_mapping_is_removed(self, moto_clients) -> None:
        aws = FakeAws(fallback=moto_clients)
        handler = TableHandler(name="orders", function=FunctionOptions())
        first = await event_pipeline(aws).deploy_handler(handler)
        table_arn = first.results["table"].identifier
        aws.lambda_.mappings["esm-old"] = {
            "UUID": "esm-old",
            "FunctionName": "acme-dev-orders",
            "EventSourceArn": f"{table_arn}/stream/2020-01-01T00:00:00.000",
            "State": "Enabled",
        }
        aws.reset_log()

        again = await event_pipeline(aws).deploy_handler(handler)

        assert again.status is DeploymentStatus.UNCHANGED
        assert aws.mutations() == [("lambda", "delete_event_source_mapping")]
        assert "esm-old" not in aws.lambda_.mappings
        assert len(aws.lambda_.mappings) == 1

    async def test_queue_with_function(self, moto_clients) -> None:
        aws = FakeAws(fallback=moto_clients)
        handler = QueueHandler(name="jobs", function=FunctionOptions())

        deployment = await event_pipeline(aws).deploy_handler(handler)

        assert deployment.failure is None
        assert list(deployment.results) == ["queue", "role", "function", "event_source"]
        env = aws.lambda_.functions["acme-dev-jobs"]["Environment"]["Variables"]
        assert env["EFF_DEP_SELF"] == f"queue:{queue_name('acme', 'dev', 'jobs')}"
        [mapping] = aws.lambda_.mappings.values()
        assert mapping["EventSourceArn"] == deployment.results["queue"].identifier
        assert mapping["StartingPosition"] is None

    async def test_bucket_with_function(self, moto_clients) -> None:
        aws = FakeAws(fallback=moto_clients)
        handler = BucketHandler(name="uploads", function=FunctionOptions(), suffix=".csv")

        deployment = await event_pipeline(aws).deploy_handler(handler)

        assert deployment.failure is None, deployment.failure
        assert list(deployment.results) == ["bucket", "role", "function", "notification"]
        bucket = bucket_name("acme", "dev", "uploads")
        env = aws.lambda_.functions["acme-dev-uploads"]["Environment"]["Variables"]
        assert env["EFF_DEP_SELF"] == f"bucket:{bucket}"
        assert aws.lambda_.policies["acme-dev-uploads"]
        s3 = await moto_clients.get("s3")
        config = await s3.get_bucket_notification_configuration(Bucket=bucket)
        [target] = config["LambdaFunctionConfigurations"]
        assert target["LambdaFunctionArn"] == deployment.results["function"].identifier

    async def test_missing_function_config_fails_before_role(self) -> None:
        aws = FakeAws()
        pipeline = HandlerPipeline(
            aws,  # type: ignore[arg-type]
            "acme",
            "dev",
            "us-east-1",
            Path("."),
            api=SharedApi("api0001", "https://api0001.execute-api.us-east-1.amazonaws.com"),
            role_propagation_delay=0,
        )

        deployment = await pipeline.deploy_handler(HttpHandler(name="noCode", path="/x"))

        assert deployment.failure is not None
        assert deployment.failure.error_type == "DeploymentError"
        assert "No function configuration" in deployment.failure.message
        assert deployment.results == {}
        assert not [op for service, op, _ in aws.log if service == "iam"]


def site_pipeline(clients, root: Path) -> HandlerPipeline:
    return HandlerPipeline(clients, "acme", "dev", "us-east-1", root, role_propagation_delay=0)


class TestStaticSite:
    """Static sites: S3 through moto, CloudFront through the recording fake."""

    BUILD = "mkdir -p site && printf '<h1>hi</h1>' > site/index.html"

    async def test_deploy_then_redeploy(self, moto_clients, tmp_path: Path) -> None:
        aws = FakeAws(fallback=moto_clients)
        handler = StaticSiteHandler(name="web", dir="site", build=self.BUILD)

        first = await site_pipeline(aws, tmp_path).deploy_handler(handler)

        assert first.failure is None, first.failure
        assert list(first.results) == [
            "bucket",
            "origin_access_control",
            "viewer_function",
            "distribution",
        ]
        assert first.status is DeploymentStatus.CREATED
        assert first.url == "https://d1.cloudfront.net"
        assert aws.cloudfront.invalidations == ["EDIST1"]
        config = aws.cloudfront.distributions["EDIST1"]["config"]
        behavior = config["DefaultCacheBehavior"]
        assert behavior["FunctionAssociations"]["Items"][0]["FunctionARN"] == (
            first.results["viewer_function"].identifier
        )
        s3 = await moto_clients.get("s3")
        bucket = site_bucket_name("acme", "dev", "web")
        keys = await s3.list_objects_v2(Bucket=bucket)
        assert sorted(o["Key"] for o in keys["Contents"]) == ["_effortless/404.html", "index.html"]

        aws.reset_log()
        second = await site_pipeline(aws, tmp_path).deploy_handler(handler)

        assert second.status is DeploymentStatus.UNCHANGED
        assert aws.mutations() == []
        assert aws.cloudfront.invalidations == ["EDIST1"]

    async def test_changed_file_invalidates(self, moto_clients, tmp_path: Path) -> None:
        aws = FakeAws(fallback=moto_clients)
        (tmp_path / "site").mkdir()
        (tmp_path / "site" / "index.html").write_text("v1")
        handler = StaticSiteHandler(name="web", dir="site", spa=True)
        await site_pipeline(aws, tmp_path).deploy_handler(handler)

        (tmp_path / "site" / "index.html").write_text("v2")
        deployment = await site_pipeline(aws, tmp_path).deploy_handler(handler)

        assert deployment.failure is None
        assert "viewer_function" not in deployment.results
        assert aws.cloudfront.invalidations == ["EDIST1", "EDIST1"]

    async def test_failed_build_stops_before_any_resource(self, tmp_path: Path) -> None:
        aws = FakeAws()
        handler = StaticSiteHandler(name="web", dir="site", build="echo broken >&2; exit 3")

        deployment = await site_pipeline(aws, tmp_path).deploy_handler(handler)

        assert deployment.failure is not None
        assert deployment.failure.error_type == "BuildCommandError"
        assert "broken" in deployment.failure.message
        assert aws.log == []


class TestAppHandler:
    """Function-served sites behind the shared API."""

    async def test_app_routes_and_environment(self, tmp_path: Path) -> None:
        (tmp_path / "site").mkdir()
        (tmp_path / "site" / "index.html").write_text("<h1>docs</h1>")
        aws = FakeAws()
        app = AppHandler(name="docs", dir="site", path="/app/", spa=True)
        deploy = ProjectDeployer(
            aws,  # type: ignore[arg-type]
            "acme",
            "dev",
            root=tmp_path,
            build_layer=False,
            role_propagation_delay=0,
        )

        summary = await deploy.deploy_project([app])

        deployment = summary.get("docs")
        assert deployment is not None
        assert deployment.failure is None, deployment.failure
        assert list(deployment.results) == ["role", "function", "route", "proxy_route"]
        api_id = aws.apigateway.apis[0]["ApiId"]
        assert [r["RouteKey"] for r in aws.apigateway.routes[api_id]] == [
            "GET /app",
            "GET /app/{proxy+}",
        ]
        assert deployment.url == f"https://{api_id}.execute-api.us-east-1.amazonaws.com/app"
        function = aws.lambda_.functions["acme-dev-docs"]
        assert function["Handler"] == "effortless_app.handler"
        assert function["Timeout"] == 5
        env = function["Environment"]["Variables"]
        assert env["EFF_APP_PATH"] == "/app"
        assert env["EFF_APP_INDEX"] == "index.html"
        assert env["EFF_APP_SPA"] == "true"

        aws.reset_log()
        again = await deploy.deploy_project([app])
        assert again.removed_routes == []
        assert aws.mutations() == []

    async def test_missing_site_dir_is_reported(self, tmp_path: Path) -> None:
        aws = FakeAws()
        deploy = ProjectDeployer(
            aws,  # type: ignore[arg-type]
            "acme",
            "dev",
            root=tmp_path,
            build_layer=False,
            role_propagation_delay=0,
        )

        summary = await deploy.deploy_project([AppHandler(name="docs", dir="missing")])

        failure = summary.get("docs").failure  # type: ignore[union-attr]
        assert failure is not None
        assert failure.error_type == "ValidationError"


class TestPruneViewerFunctions:
    """Viewer functions no distribution references are deleted."""

    async def test_prune(self) -> None:
        aws = FakeAws()
        ctx = TagContext("acme", "dev", "web")
        viewer = await ViewerFunctionReconciler(aws, ctx).ensure(  # type: ignore[arg-type]
            ViewerFunctionSpec(name="acme-dev-web-viewer")
        )
        await ViewerFunctionReconciler(aws, ctx).ensure(  # type: ignore[arg-type]
            ViewerFunctionSpec(name="acme-dev-old-viewer", rewrite_urls=False)
        )
        await DistributionReconciler(aws, ctx).ensure(  # type: ignore[arg-type]
            DistributionSpec(
                handler="web",
                bucket_name="acme-dev-web",
                bucket_region="us-east-1",
                oac_id="OAC1",
                viewer_function_arn=viewer.identifier,
            )
        )

        deleted = await deployer(aws).prune_viewer_functions()

        assert deleted == ["acme-dev-old-viewer"]
        assert list(aws.cloudfront.functions) == ["acme-dev-web-viewer"]
