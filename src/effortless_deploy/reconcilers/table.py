"""DynamoDB table reconciler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from botocore.exceptions import ClientError

from ..clients import AwsClients
from ..exceptions import InfrastructureError, ValidationError, is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..polling import CONFLICT_RETRY, TABLE_ACTIVE, RetryPolicy, retry_on_conflict, wait_until
from ..tags import ResourceType, TagContext, to_aws_tag_list
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    name: str
    partition_key: tuple[str, str]
    sort_key: tuple[str, str] | None = None
    billing_mode: str = "PAY_PER_REQUEST"
    stream_view: str | None = "NEW_AND_OLD_IMAGES"

    @property
    def key_schema(self) -> list[dict[str, str]]:
        schema = [{"AttributeName": self.partition_key[0], "KeyType": "HASH"}]
        if self.sort_key:
            schema.append({"AttributeName": self.sort_key[0], "KeyType": "RANGE"})
        return schema

    @property
    def attribute_definitions(self) -> list[dict[str, str]]:
        keys = [self.partition_key] + ([self.sort_key] if self.sort_key else [])
        return [{"AttributeName": name, "AttributeType": kind} for name, kind in keys]


@dataclass(frozen=True)
class LiveTable:
    arn: str
    status: str
    key_schema: list[dict[str, str]]
    billing_mode: str
    stream_enabled: bool
    stream_view: str | None
    stream_arn: str | None
    tags: dict[str, str] | None = None


class TableReconciler(Reconciler[TableSpec, LiveTable]):
    """Create the table or converge billing mode and stream settings."""

    resource_type = ResourceType.TABLE

    def __init__(
        self,
        clients: AwsClients,
        ctx: TagContext,
        activation: RetryPolicy = TABLE_ACTIVE,
        conflict_retry: RetryPolicy = CONFLICT_RETRY,
    ) -> None:
        super().__init__(clients, ctx)
        self.activation = activation
        self.conflict_retry = conflict_retry

    def name(self, spec: TableSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("dynamodb")

    async def describe(self, name: str) -> LiveTable | None:
        client = await self._client()
        try:
            response = await client.describe_table(TableName=name)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        table = response["Table"]
        stream = table.get("StreamSpecification") or {}
        billing = (table.get("BillingModeSummary") or {}).get("BillingMode", "PROVISIONED")
        return LiveTable(
            arn=table["TableArn"],
            status=table.get("TableStatus", "ACTIVE"),
            key_schema=table.get("KeySchema", []),
            billing_mode=billing,
            stream_enabled=bool(stream.get("StreamEnabled")),
            stream_view=stream.get("StreamViewType"),
            stream_arn=table.get("LatestStreamArn"),
        )

    async def find(self, spec: TableSpec) -> LiveTable | None:
        live = await self.describe(spec.name)
        if live is None:
            return None
        client = await self._client()
        response = await client.list_tags_of_resource(ResourceArn=live.arn)
        tags = {t["Key"]: t["Value"] for t in response.get("Tags", [])}
        return replace(live, tags=tags)

    def diff(self, spec: TableSpec, live: LiveTable) -> set[str]:
        if live.key_schema and live.key_schema != spec.key_schema:
            raise ValidationError(
                "key_schema",
                spec.key_schema,
                f"Table {spec.name} exists with key schema {live.key_schema}; "
                "key schema cannot change in place",
            )
        changed: set[str] = set()
        if live.billing_mode != spec.billing_mode:
            changed.add("billing_mode")
        if spec.stream_view:
            if not live.stream_enabled or live.stream_view != spec.stream_view:
                changed.add("stream")
        elif live.stream_enabled:
            changed.add("stream")
        return changed

    async def create(self, spec: TableSpec) -> DeploymentResult:
        client = await self._client()
        params: dict[str, Any] = {
            "TableName": spec.name,
            "KeySchema": spec.key_schema,
            "AttributeDefinitions": spec.attribute_definitions,
            "BillingMode": spec.billing_mode,
            "Tags": to_aws_tag_list(self.tags),
        }
        if spec.billing_mode == "PROVISIONED":
            params["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
        if spec.stream_view:
            params["StreamSpecification"] = {
                "StreamEnabled": True,
                "StreamViewType": spec.stream_view,
            }
        await client.create_table(**params)
        live = await self.wait_until_active(spec.name)
        return self.result(spec, live, DeploymentStatus.CREATED)

    async def update(self, spec: TableSpec, live: LiveTable, changed: set[str]) -> DeploymentResult:
        if "billing_mode" in changed:
            params: dict[str, Any] = {"TableName": spec.name, "BillingMode": spec.billing_mode}
            if spec.billing_mode == "PROVISIONED":
                params["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
            await self._update_table(params)
            live = await self.wait_until_active(spec.name)

        if "stream" in changed:
            # The view type of an enabled stream cannot change; disable it first
            if live.stream_enabled:
                await self._update_table(
                    {"TableName": spec.name, "StreamSpecification": {"StreamEnabled": False}}
                )
                live = await self.wait_until_active(spec.name)
            if spec.stream_view:
                await self._update_table(
                    {
                        "TableName": spec.name,
                        "StreamSpecification": {
                            "StreamEnabled": True,
                            "StreamViewType": spec.stream_view,
                        },
                    }
                )
                live = await self.wait_until_active(spec.name)

        return self.result(spec, live, DeploymentStatus.UPDATED)

    async def _update_table(self, params: dict[str, Any]) -> None:
        client = await self._client()
        name = params["TableName"]

        async def _update() -> Any:
            return await client.update_table(**params)

        await retry_on_conflict(
            _update,
            self.conflict_retry,
            self.kind,
            name,
            before_retry=lambda: self.wait_until_active(name),
        )

    def result(self, spec: TableSpec, live: LiveTable, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status, stream_arn=live.stream_arn)

    def live_tags(self, live: LiveTable) -> dict[str, str] | None:
        return live.tags

    async def apply_tags(self, spec: TableSpec, live: LiveTable, tags: dict[str, str]) -> None:
        client = await self._client()
        await client.tag_resource(ResourceArn=live.arn, Tags=to_aws_tag_list(tags))

    async def wait_until_active(self, name: str) -> LiveTable:
        latest: LiveTable | None = None

        async def settled() -> tuple[bool, str | None]:
            nonlocal latest
            latest = await self.describe(name)
            if latest is None:
                return False, "MISSING"
            return latest.status == "ACTIVE", latest.status

        await wait_until(settled, self.activation, f"table {name} to become ACTIVE")
        if latest is None:
            raise InfrastructureError(f"Table {name} disappeared while waiting")
        return latest


async def delete_table(client: Any, name: str) -> bool:
    try:
        await client.delete_table(TableName=name)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("Table %s not found, skipping", name)
            return False
        raise
    logger.info("Deleted table %s", name)
    return True
