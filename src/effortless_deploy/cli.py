"""Command-line interface for effortless-deploy."""

import asyncio
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .clients import AwsClients
from .config import ProjectManifest
from .exceptions import EffortlessError
from .inventory import ResourceInventory, find_orphans, group_by_handler
from .layer_builder import STRATEGIES, STRATEGY_INSTALLED, LayerBuilder
from .logs import TAIL_INTERVAL, LogTail, log_group_name, parse_since
from .models import CleanupReport, ProjectDeploymentSummary, TaggedResource
from .naming import function_name, layer_name
from .orchestrator import ProjectDeployer
from .params import check_missing_params, collect_required_params
from .reconcilers.layer import delete_layer_versions
from .tags import SHARED_HANDLER


def _project_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that operates on a manifest."""
    options = [
        click.option(
            "--manifest",
            "manifest_path",
            type=click.Path(path_type=Path),
            help="Path to effortless.yaml or its directory (default: current directory)",
        ),
        click.option("--stage", help="Deploy stage (default: EFFORTLESS_STAGE, manifest, 'dev')"),
        click.option("--region", help="AWS region (default: use boto3 defaults)"),
        click.option(
            "--endpoint-url",
            help=(
                "AWS endpoint URL "
                "(e.g., http://localhost:4566 for LocalStack, or other AWS-compatible services)"
            ),
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load_manifest(
    manifest_path: Path | None, stage: str | None, region: str | None
) -> ProjectManifest:
    try:
        return ProjectManifest.load(manifest_path, stage=stage, region=region)
    except EffortlessError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(package_name="effortless-deploy")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """effortless-deploy: deploy serverless handlers from effortless.yaml."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s" if verbose else "%(message)s",
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def _print_summary(summary: ProjectDeploymentSummary) -> None:
    click.echo()
    if summary.layer:
        state = "reused" if summary.layer.reused else "published"
        click.echo(
            f"Layer: version {summary.layer.version} {state} "
            f"({len(summary.layer.packages)} packages, hash {summary.layer.content_hash})"
        )
    if summary.api_url:
        click.echo(f"API: {summary.api_url}")
    for deployment in summary.handlers:
        if deployment.failure:
            click.echo(
                f"✗ {deployment.handler} ({deployment.kind}): "
                f"{deployment.failure.error_type}: {deployment.failure.message}",
                err=True,
            )
            continue
        status = deployment.status.value if deployment.status else "skipped"
        line = f"✓ {deployment.handler} ({deployment.kind}): {status}"
        if deployment.url:
            line += f"  {deployment.url}"
        click.echo(line)
    for route in summary.removed_routes:
        click.echo(f"  Removed stale route {route}")
    for function in summary.removed_edge_functions:
        click.echo(f"  Removed viewer function {function}")
    if summary.cleanup:
        _print_cleanup(summary.cleanup)


def _print_cleanup(report: CleanupReport) -> None:
    click.echo(
        f"Cleanup: {report.deleted_count} deleted, {report.skipped_count} skipped, "
        f"{report.failed_count} failed"
    )
    for arn, message in report.failed:
        click.echo(f"  ✗ {arn}: {message}", err=True)


@cli.command()
@_project_options
@click.option(
    "--handler",
    "handler_names",
    multiple=True,
    help="Deploy only this handler (repeatable)",
)
@click.option(
    "--concurrency",
    type=click.IntRange(1, 50),
    help="Maximum handlers deployed at once (default: manifest value or 5)",
)
@click.option(
    "--layer/--no-layer",
    default=True,
    help="Build and attach the shared dependency layer (default: enabled)",
)
@click.option(
    "--layer-strategy",
    type=click.Choice(STRATEGIES),
    default=STRATEGY_INSTALLED,
    help="Package installed dependencies or pip-install them for Lambda",
)
@click.option(
    "--cleanup-orphans",
    is_flag=True,
    help="Delete resources of handlers no longer declared",
)
def deploy(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
    handler_names: tuple[str, ...],
    concurrency: int | None,
    layer: bool,
    layer_strategy: str,
    cleanup_orphans: bool,
) -> None:
    """Deploy every handler declared in the manifest."""
    manifest = _load_manifest(manifest_path, stage, region)
    unknown = set(handler_names) - set(manifest.handler_names)
    if unknown:
        click.echo(f"✗ Unknown handler(s): {', '.join(sorted(unknown))}", err=True)
        sys.exit(1)

    async def _deploy() -> ProjectDeploymentSummary:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            builder = LayerBuilder(
                clients,
                manifest.project,
                manifest.stage,
                runtime=manifest.defaults.runtime,
                strategy=layer_strategy,
            )
            deployer = ProjectDeployer(
                clients,
                manifest.project,
                manifest.stage,
                root=manifest.root,
                concurrency=concurrency or manifest.concurrency,
                layer_builder=builder,
                build_layer=layer,
                cleanup_orphans=cleanup_orphans,
            )
            return await deployer.deploy_project(
                manifest.handlers, only=set(handler_names) or None
            )

    click.echo(f"Deploying {manifest.project}/{manifest.stage}")
    click.echo(f"  Region: {manifest.region or 'default'}")
    click.echo(f"  Handlers: {len(handler_names) or len(manifest.handlers)}")
    try:
        summary = asyncio.run(_deploy())
    except Exception as e:
        click.echo(f"✗ Deployment failed: {e}", err=True)
        sys.exit(1)

    _print_summary(summary)
    if not summary.ok:
        sys.exit(1)


def _print_resources(resources: list[TaggedResource], declared: set[str]) -> None:
    for handler, group in sorted(group_by_handler(resources).items()):
        marker = "" if handler in declared else "  (orphaned)"
        click.echo(f"{handler}{marker}")
        for resource in group:
            click.echo(f"  {resource.type_tag or '?':<20} {resource.arn}")


@cli.command()
@_project_options
def status(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """List the deployed resources of the stage, grouped by handler."""
    manifest = _load_manifest(manifest_path, stage, region)

    async def _status() -> list[TaggedResource]:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            inventory = ResourceInventory(clients)
            return await inventory.list_tagged_resources(manifest.project, manifest.stage)

    try:
        resources = asyncio.run(_status())
    except Exception as e:
        click.echo(f"✗ Failed to get status: {e}", err=True)
        sys.exit(1)

    if not resources:
        click.echo(f"No resources found for {manifest.project}/{manifest.stage}")
        return
    click.echo(f"{manifest.project}/{manifest.stage}: {len(resources)} resources")
    _print_resources(resources, set(manifest.handler_names) | {SHARED_HANDLER})


@cli.command()
@_project_options
@click.option("--all", "delete_all", is_flag=True, help="Delete every resource of the stage")
@click.option("--handler", "handler_name", help="Delete the resources of one handler")
@click.option("--orphans", is_flag=True, help="Delete resources of handlers no longer declared")
@click.option("--dry-run", is_flag=True, help="Only show what would be deleted")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def cleanup(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
    delete_all: bool,
    handler_name: str | None,
    orphans: bool,
    dry_run: bool,
    yes: bool,
) -> None:
    """Delete deployed resources discovered by their ownership tags."""
    if sum((delete_all, bool(handler_name), orphans)) != 1:
        click.echo("✗ Choose exactly one of --all, --handler or --orphans", err=True)
        sys.exit(1)
    manifest = _load_manifest(manifest_path, stage, region)
    declared = set(manifest.handler_names) | {SHARED_HANDLER}

    async def _cleanup() -> CleanupReport | None:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            inventory = ResourceInventory(clients)
            resources = await inventory.list_tagged_resources(manifest.project, manifest.stage)
            if orphans:
                targets = [o.resource for o in find_orphans(resources, declared)]
            elif handler_name:
                targets = group_by_handler(resources).get(handler_name, [])
            else:
                targets = resources

            if not targets:
                click.echo("Nothing to delete")
                return None
            click.echo(f"{len(targets)} resources to delete:")
            _print_resources(targets, declared)
            if dry_run:
                return None
            if not yes and not click.confirm("Delete these resources?"):
                return None

            report = await inventory.delete_resources(targets)
            if delete_all:
                # Layer versions carry no tags, so they are found by name
                client = await clients.get("lambda")
                name = layer_name(manifest.project, manifest.stage)
                for version in await delete_layer_versions(client, name):
                    report.deleted.append(f"layer/{name}:{version}")
            return report

    try:
        report = asyncio.run(_cleanup())
    except Exception as e:
        click.echo(f"✗ Cleanup failed: {e}", err=True)
        sys.exit(1)

    if report is not None:
        _print_cleanup(report)
        if report.failed:
            sys.exit(1)


@cli.command()
@_project_options
@click.argument("handler_name", metavar="HANDLER")
@click.option("-f", "--tail", "follow", is_flag=True, help="Keep polling for new log events")
@click.option(
    "--since", default="5m", show_default=True, help="How far back to start (e.g. 30s, 1h)"
)
def logs(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
    handler_name: str,
    follow: bool,
    since: str,
) -> None:
    """Show the function logs of a handler."""
    manifest = _load_manifest(manifest_path, stage, region)
    handler = next((h for h in manifest.handlers if h.name == handler_name), None)
    if handler is None or not handler.has_function:
        click.echo(f"✗ Handler '{handler_name}' does not run a function", err=True)
        names = [h.name for h in manifest.handlers if h.has_function]
        click.echo(f"  Handlers with functions: {', '.join(names) or 'none'}", err=True)
        sys.exit(1)
    try:
        since_seconds = parse_since(since)
    except EffortlessError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    group = log_group_name(function_name(manifest.project, manifest.stage, handler_name))

    async def _logs() -> None:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            tail = LogTail(await clients.get("logs"), group, since_seconds)
            click.echo(f"Logs for {handler_name} ({group}):\n")
            lines = await tail.poll()
            for line in lines:
                click.echo(line)
            if not follow:
                if not lines:
                    click.echo("No logs found. Try --since 1h or --tail to wait for new logs.")
                return
            if not lines:
                click.echo("Waiting for logs... (Ctrl+C to stop)\n")
            while True:
                await asyncio.sleep(TAIL_INTERVAL)
                for line in await tail.poll():
                    click.echo(line)

    try:
        asyncio.run(_logs())
    except KeyboardInterrupt:
        return
    except Exception as e:
        click.echo(f"✗ Failed to read logs: {e}", err=True)
        sys.exit(1)


@cli.group()
def layers() -> None:
    """Inspect and prune the dependency layer."""
    pass


@layers.command("show")
@_project_options
def layers_show(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Show the resolved dependency closure and the published versions."""
    manifest = _load_manifest(manifest_path, stage, region)

    async def _show() -> None:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            builder = LayerBuilder(clients, manifest.project, manifest.stage)
            packages = builder.resolve(manifest.root)
            click.echo(f"Layer: {builder.name}")
            click.echo(f"Production packages: {len(packages)}")
            for package in packages:
                click.echo(f"  {package.pin}")
            versions = await builder.list_versions()
            click.echo(f"Published versions: {len(versions)}")
            for version in versions:
                click.echo(f"  {version.version:>4}  {version.content_hash or '-':<8}  {version.created}")

    try:
        asyncio.run(_show())
    except Exception as e:
        click.echo(f"✗ Failed to list layer versions: {e}", err=True)
        sys.exit(1)


@layers.command("prune")
@_project_options
@click.option("--all", "delete_all", is_flag=True, help="Also delete the newest version")
def layers_prune(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
    delete_all: bool,
) -> None:
    """Delete old published layer versions."""
    manifest = _load_manifest(manifest_path, stage, region)

    async def _prune() -> list[int]:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            builder = LayerBuilder(clients, manifest.project, manifest.stage)
            return await builder.prune(keep_latest=not delete_all)

    try:
        deleted = asyncio.run(_prune())
    except Exception as e:
        click.echo(f"✗ Failed to prune layer versions: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Deleted {len(deleted)} layer versions")


@cli.command()
@_project_options
def params(
    manifest_path: Path | None,
    stage: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Check that every parameter the handlers read exists."""
    manifest = _load_manifest(manifest_path, stage, region)
    required = collect_required_params(manifest.handlers, manifest.project, manifest.stage)
    if not required:
        click.echo("No parameters declared")
        return

    async def _check() -> list[Any]:
        async with AwsClients(manifest.region, endpoint_url) as clients:
            return await check_missing_params(clients, required)

    try:
        missing = asyncio.run(_check())
    except Exception as e:
        click.echo(f"✗ Check failed: {e}", err=True)
        sys.exit(1)

    if not missing:
        click.echo(f"✓ All {len(required)} parameters exist")
        return
    click.echo(f"✗ {len(missing)} parameters are missing:", err=True)
    for param in missing:
        click.echo(f"  {param.path}  ({param.handler}.{param.property_name})", err=True)
        click.echo(
            f'    aws ssm put-parameter --name "{param.path}" --type SecureString --value "..."',
            err=True,
        )
    sys.exit(1)


if __name__ == "__main__":
    cli()
