"""SQS FIFO queue reconciler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from ..exceptions import is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    name: str
    visibility_timeout: int = 30
    retention_period: int = 345600
    content_based_deduplication: bool = True

    def __post_init__(self) -> None:
        if not self.name.endswith(".fifo"):
            raise ValueError(f"FIFO queue name must end with .fifo: {self.name}")

    @property
    def attributes(self) -> dict[str, str]:
        """Mutable attributes, in the string form SQS reports them."""
        return {
            "VisibilityTimeout": str(self.visibility_timeout),
            "MessageRetentionPeriod": str(self.retention_period),
            "ContentBasedDeduplication": str(self.content_based_deduplication).lower(),
        }


@dataclass(frozen=True)
class LiveQueue:
    url: str
    arn: str
    attributes: dict[str, str]
    tags: dict[str, str]


ATTRIBUTE_FIELDS = {
    "VisibilityTimeout": "visibility_timeout",
    "MessageRetentionPeriod": "retention_period",
    "ContentBasedDeduplication": "content_based_deduplication",
}


class QueueReconciler(Reconciler[QueueSpec, LiveQueue]):
    resource_type = ResourceType.QUEUE

    def name(self, spec: QueueSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("sqs")

    async def find(self, spec: QueueSpec) -> LiveQueue | None:
        client = await self._client()
        url = await get_queue_url(client, spec.name)
        if url is None:
            return None
        attrs = await client.get_queue_attributes(QueueUrl=url, AttributeNames=["All"])
        tags = await client.list_queue_tags(QueueUrl=url)
        attributes = attrs.get("Attributes", {})
        return LiveQueue(
            url=url,
            arn=attributes.get("QueueArn", ""),
            attributes=attributes,
            tags=tags.get("Tags", {}),
        )

    def diff(self, spec: QueueSpec, live: LiveQueue) -> set[str]:
        return {
            ATTRIBUTE_FIELDS[key]
            for key, value in spec.attributes.items()
            if live.attributes.get(key, "").lower() != value.lower()
        }

    async def create(self, spec: QueueSpec) -> DeploymentResult:
        client = await self._client()
        response = await client.create_queue(
            QueueName=spec.name,
            Attributes={"FifoQueue": "true", **spec.attributes},
            tags=self.tags,
        )
        url = response["QueueUrl"]
        attrs = await client.get_queue_attributes(QueueUrl=url, AttributeNames=["QueueArn"])
        arn = attrs["Attributes"]["QueueArn"]
        return result_for(self, arn, spec.name, DeploymentStatus.CREATED, queue_url=url)

    async def update(self, spec: QueueSpec, live: LiveQueue, changed: set[str]) -> DeploymentResult:
        client = await self._client()
        attributes = {
            key: value
            for key, value in spec.attributes.items()
            if ATTRIBUTE_FIELDS[key] in changed
        }
        await client.set_queue_attributes(QueueUrl=live.url, Attributes=attributes)
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(self, spec: QueueSpec, live: LiveQueue, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status, queue_url=live.url)

    def live_tags(self, live: LiveQueue) -> dict[str, str]:
        return live.tags

    async def apply_tags(self, spec: QueueSpec, live: LiveQueue, tags: dict[str, str]) -> None:
        client = await self._client()
        await client.tag_queue(QueueUrl=live.url, Tags=tags)


async def get_queue_url(client: Any, name: str) -> str | None:
    try:
        response = await client.get_queue_url(QueueName=name)
    except ClientError as e:
        if is_not_found(e):
            return None
        raise
    return str(response["QueueUrl"])


async def delete_queue(client: Any, name: str) -> bool:
    url = await get_queue_url(client, name)
    if url is None:
        logger.debug("Queue %s not found, skipping", name)
        return False
    await client.delete_queue(QueueUrl=url)
    logger.info("Deleted queue %s", name)
    return True
