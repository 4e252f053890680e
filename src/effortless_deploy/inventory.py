"""Tag-based inventory, orphan detection and ordered cleanup.

Every resource this package creates carries the four ownership tags, so
the tagging API is the only source of truth for what exists: there is no
local state file. Untagged resources are never listed and never deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from botocore.exceptions import ClientError

from .clients import GLOBAL_REGION, AwsClients
from .exceptions import is_not_found
from .models import UNKNOWN_HANDLER, CleanupReport, OrphanCandidate, TaggedResource
from .naming import derived_role_name
from .polling import DISTRIBUTION_DEPLOYED, RetryPolicy
from .reconcilers.bucket import delete_bucket
from .reconcilers.distribution import disable_and_delete_distribution
from .reconcilers.layer import delete_layer_versions
from .reconcilers.mail import delete_mail_identity
from .reconcilers.queue import delete_queue
from .reconcilers.role import delete_role
from .reconcilers.routes import delete_api
from .reconcilers.table import delete_table
from .tags import ResourceType, from_aws_tag_list, project_tag_filters

logger = logging.getLogger(__name__)

DELETE_ORDER: dict[ResourceType, int] = {
    ResourceType.FUNCTION: 0,
    ResourceType.ROUTE_COLLECTION: 0,
    ResourceType.DISTRIBUTION: 1,
    ResourceType.QUEUE: 2,
    ResourceType.MAIL_IDENTITY: 2,
    ResourceType.TABLE: 3,
    ResourceType.BUCKET: 3,
    ResourceType.DEPENDENCY_PACKAGE: 4,
    ResourceType.ROLE: 5,
}
"""Consumers first, IAM roles last. Unknown types sort after everything."""


def group_by_handler(resources: Iterable[TaggedResource]) -> dict[str, list[TaggedResource]]:
    """
    Partition resources by their handler tag.

    Resources without a handler tag are grouped under ``"unknown"``.
    """
    groups: dict[str, list[TaggedResource]] = {}
    for resource in resources:
        groups.setdefault(resource.handler or UNKNOWN_HANDLER, []).append(resource)
    return groups


def find_orphans(
    resources: Iterable[TaggedResource], current_handlers: Iterable[str]
) -> list[OrphanCandidate]:
    """Return the resources whose handler tag is not a currently declared handler."""
    declared = set(current_handlers)
    return [
        OrphanCandidate(resource=resource, handler=resource.handler or UNKNOWN_HANDLER)
        for resource in resources
        if resource.handler not in declared
    ]


def deletion_order(resources: Iterable[TaggedResource]) -> list[TaggedResource]:
    """Sort resources into the fixed type-based deletion order (stable)."""
    unknown = len(DELETE_ORDER) + 1

    def rank(resource: TaggedResource) -> int:
        resource_type = resource.resource_type
        return DELETE_ORDER.get(resource_type, unknown) if resource_type else unknown

    return sorted(resources, key=rank)


class ResourceInventory:
    """
    Discover and delete the tagged resources of one project stage.

    Example:
        async with AwsClients(region="eu-central-1") as clients:
            inventory = ResourceInventory(clients)
            resources = await inventory.list_tagged_resources("acme", "dev")
            orphans = find_orphans(resources, ["createOrder"])
            report = await inventory.delete_resources([o.resource for o in orphans])
    """

    def __init__(
        self,
        clients: AwsClients,
        distribution_policy: RetryPolicy = DISTRIBUTION_DEPLOYED,
    ) -> None:
        self.clients = clients
        self.distribution_policy = distribution_policy

    async def _get_resources(self, region: str | None, project: str, stage: str) -> list[TaggedResource]:
        client = await self.clients.get("resourcegroupstaggingapi", region)
        found: list[TaggedResource] = []
        kwargs: dict[str, Any] = {"TagFilters": project_tag_filters(project, stage)}
        while True:
            response = await client.get_resources(**kwargs)
            for mapping in response.get("ResourceTagMappingList", []):
                found.append(
                    TaggedResource(
                        arn=mapping["ResourceARN"],
                        tags=from_aws_tag_list(mapping.get("Tags")),
                    )
                )
            token = response.get("PaginationToken")
            if not token:
                return found
            kwargs["PaginationToken"] = token

    async def list_tagged_resources(self, project: str, stage: str) -> list[TaggedResource]:
        """
        List every tagged resource of ``project``/``stage``.

        Queries the deploy region and us-east-1 (where global CloudFront
        resources are indexed), de-duplicated by ARN.
        """
        regions: list[str | None] = [self.clients.region]
        if self.clients.region != GLOBAL_REGION:
            regions.append(GLOBAL_REGION)

        seen: dict[str, TaggedResource] = {}
        for region in regions:
            for resource in await self._get_resources(region, project, stage):
                seen.setdefault(resource.arn, resource)
        logger.debug("Found %d tagged resources for %s/%s", len(seen), project, stage)
        return list(seen.values())

    async def delete_resource(self, resource: TaggedResource) -> bool:
        """
        Delete one resource according to its type tag.

        Returns:
            True if deleted, False if it was already gone

        Raises:
            ValueError: If the type tag is missing or unknown
        """
        resource_type = resource.resource_type
        name = resource.name

        if resource_type is ResourceType.FUNCTION:
            client = await self.clients.get("lambda")
            try:
                await client.delete_function(FunctionName=name)
            except ClientError as e:
                if is_not_found(e):
                    return False
                raise
            logger.info("Deleted function %s", name)
            return True
        if resource_type is ResourceType.ROLE:
            return await delete_role(await self.clients.get("iam"), name)
        if resource_type is ResourceType.TABLE:
            return await delete_table(await self.clients.get("dynamodb"), name)
        if resource_type is ResourceType.ROUTE_COLLECTION:
            return await delete_api(await self.clients.get("apigatewayv2"), name)
        if resource_type is ResourceType.QUEUE:
            return await delete_queue(await self.clients.get("sqs"), name)
        if resource_type is ResourceType.BUCKET:
            return await delete_bucket(await self.clients.get("s3"), name)
        if resource_type is ResourceType.MAIL_IDENTITY:
            return await delete_mail_identity(await self.clients.get("sesv2"), name)
        if resource_type is ResourceType.DISTRIBUTION:
            client = await self.clients.get("cloudfront", GLOBAL_REGION)
            return await disable_and_delete_distribution(client, name, self.distribution_policy)
        if resource_type is ResourceType.DEPENDENCY_PACKAGE:
            layer, _, version = name.partition(":")
            client = await self.clients.get("lambda")
            if version:
                await client.delete_layer_version(LayerName=layer, VersionNumber=int(version))
                return True
            return bool(await delete_layer_versions(client, layer))
        raise ValueError(f"Unknown resource type {resource.type_tag!r} for {resource.arn}")

    async def delete_resources(self, resources: Iterable[TaggedResource]) -> CleanupReport:
        """
        Delete ``resources`` in type order, then their derived roles.

        Each failure is logged and recorded; deletion always continues with
        the remaining resources.
        """
        report = CleanupReport()
        ordered = deletion_order(resources)
        deleted_roles: set[str] = set()
        function_names: list[str] = []

        for resource in ordered:
            resource_type = resource.resource_type
            if resource_type is None:
                logger.warning(
                    "Skipping %s: unknown resource type %r", resource.arn, resource.type_tag
                )
                report.skipped.append(resource.arn)
                continue
            try:
                deleted = await self.delete_resource(resource)
            except Exception as e:
                logger.warning("Failed to delete %s: %s", resource.arn, e)
                report.failed.append((resource.arn, str(e)))
                continue
            if resource_type is ResourceType.FUNCTION:
                function_names.append(resource.name)
            if resource_type is ResourceType.ROLE:
                deleted_roles.add(resource.name)
            if deleted:
                report.deleted.append(resource.arn)
            else:
                report.skipped.append(resource.arn)

        report.extend(await self._delete_derived_roles(function_names, deleted_roles))
        return report

    async def _delete_derived_roles(
        self, function_names: list[str], already_deleted: set[str]
    ) -> CleanupReport:
        """Second pass: roles implied by function names but not found by tag."""
        report = CleanupReport()
        iam = None
        for function in function_names:
            role = derived_role_name(function)
            if role in already_deleted:
                continue
            if iam is None:
                iam = await self.clients.get("iam")
            try:
                if await delete_role(iam, role):
                    report.deleted.append(f"role/{role}")
            except Exception as e:
                logger.warning("Failed to delete role %s: %s", role, e)
                report.failed.append((f"role/{role}", str(e)))
        return report
