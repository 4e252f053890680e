"""Event-source mappings from streams and queues to functions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..clients import AwsClients
from ..models import DeploymentResult, DeploymentStatus
from ..polling import CONFLICT_RETRY, RetryPolicy, retry_on_conflict, wait_until
from ..tags import ResourceType, TagContext
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

STABILITY = RetryPolicy(attempts=15, interval=2.0)
TRANSITIONAL_STATES = frozenset({"Creating", "Enabling", "Disabling", "Updating"})


@dataclass(frozen=True)
class EventSourceSpec:
    function_name: str
    source_arn: str
    batch_size: int
    batch_window: int = 0
    starting_position: str | None = None
    """Required for streams, must be None for queues."""
    enabled: bool = True


@dataclass(frozen=True)
class LiveEventSource:
    uuid: str
    batch_size: int | None
    batch_window: int | None
    state: str | None


class EventSourceMappingReconciler(Reconciler[EventSourceSpec, LiveEventSource]):
    resource_type = ResourceType.FUNCTION
    kind = "event-source"

    def __init__(
        self,
        clients: AwsClients,
        ctx: TagContext,
        conflict_retry: RetryPolicy = CONFLICT_RETRY,
        stability: RetryPolicy = STABILITY,
    ) -> None:
        super().__init__(clients, ctx)
        self.conflict_retry = conflict_retry
        self.stability = stability

    def name(self, spec: EventSourceSpec) -> str:
        return f"{spec.source_arn.rsplit(':', 1)[-1]} -> {spec.function_name}"

    async def _client(self) -> Any:
        return await self.clients.get("lambda")

    async def find(self, spec: EventSourceSpec) -> LiveEventSource | None:
        client = await self._client()
        response = await client.list_event_source_mappings(
            FunctionName=spec.function_name, EventSourceArn=spec.source_arn
        )
        mappings = response.get("EventSourceMappings", [])
        if not mappings:
            return None
        mapping = mappings[0]
        return LiveEventSource(
            uuid=mapping["UUID"],
            batch_size=mapping.get("BatchSize"),
            batch_window=mapping.get("MaximumBatchingWindowInSeconds", 0),
            state=mapping.get("State"),
        )

    def diff(self, spec: EventSourceSpec, live: LiveEventSource) -> set[str]:
        changed: set[str] = set()
        if live.batch_size != spec.batch_size:
            changed.add("batch_size")
        if (live.batch_window or 0) != spec.batch_window:
            changed.add("batch_window")
        enabled = live.state not in ("Disabled", "Disabling")
        if enabled != spec.enabled:
            changed.add("enabled")
        return changed

    async def create(self, spec: EventSourceSpec) -> DeploymentResult:
        client = await self._client()
        params: dict[str, Any] = {
            "FunctionName": spec.function_name,
            "EventSourceArn": spec.source_arn,
            "BatchSize": spec.batch_size,
            "MaximumBatchingWindowInSeconds": spec.batch_window,
            "Enabled": spec.enabled,
        }
        if spec.starting_position:
            params["StartingPosition"] = spec.starting_position
        response = await client.create_event_source_mapping(**params)
        return result_for(self, response["UUID"], self.name(spec), DeploymentStatus.CREATED)

    async def update(
        self, spec: EventSourceSpec, live: LiveEventSource, changed: set[str]
    ) -> DeploymentResult:
        client = await self._client()

        async def _update() -> Any:
            return await client.update_event_source_mapping(
                UUID=live.uuid,
                BatchSize=spec.batch_size,
                MaximumBatchingWindowInSeconds=spec.batch_window,
                Enabled=spec.enabled,
            )

        await retry_on_conflict(
            _update,
            self.conflict_retry,
            self.kind,
            self.name(spec),
            before_retry=lambda: self.wait_until_stable(spec),
        )
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(
        self, spec: EventSourceSpec, live: LiveEventSource, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(self, live.uuid, self.name(spec), status)

    async def wait_until_stable(self, spec: EventSourceSpec) -> None:
        """Wait until the mapping leaves any transitional state."""

        async def settled() -> tuple[bool, str | None]:
            live = await self.find(spec)
            state = live.state if live else None
            return state not in TRANSITIONAL_STATES, state

        await wait_until(settled, self.stability, f"event source {self.name(spec)} to settle")


async def remove_stale_stream_mappings(
    client: Any, function_name: str, table_arn: str, current_stream_arn: str
) -> list[str]:
    """
    Delete mappings from older streams of ``table_arn`` onto ``function_name``.

    Re-enabling a table stream issues a new stream ARN, leaving the mapping
    on the previous stream in place. Mappings from other sources are kept.

    Returns:
        UUIDs of the deleted mappings
    """
    stream_prefix = f"{table_arn}/stream/"
    stale: list[str] = []
    marker: str | None = None
    while True:
        params: dict[str, Any] = {"FunctionName": function_name}
        if marker:
            params["Marker"] = marker
        response = await client.list_event_source_mappings(**params)
        for mapping in response.get("EventSourceMappings", []):
            source = mapping.get("EventSourceArn", "")
            if source.startswith(stream_prefix) and source != current_stream_arn:
                stale.append(mapping["UUID"])
        marker = response.get("NextMarker")
        if not marker:
            break

    for uuid in stale:
        await client.delete_event_source_mapping(UUID=uuid)
        logger.info("Deleted stale stream mapping %s for %s", uuid, function_name)
    return stale
