"""Generic find/diff/create/update reconciler."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from botocore.exceptions import ClientError

from ..clients import AwsClients
from ..exceptions import is_already_exists
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType, TagContext, make_tags, missing_tags

logger = logging.getLogger(__name__)

SpecT = TypeVar("SpecT")
LiveT = TypeVar("LiveT")


class Reconciler(ABC, Generic[SpecT, LiveT]):
    """
    Converge one provider resource onto a desired spec.

    Subclasses implement the provider-specific pieces:

    - :meth:`name`: deterministic name from the tag context and spec
    - :meth:`find`: live state by that name, or None when absent
    - :meth:`diff`: the set of fields whose live value differs
    - :meth:`create` / :meth:`update`: the mutating calls
    - :meth:`live_tags` / :meth:`apply_tags`: tag drift repair

    :meth:`ensure` ties them together and never issues a mutating call
    when the live state already matches.
    """

    resource_type: ResourceType

    def __init__(self, clients: AwsClients, ctx: TagContext) -> None:
        self.clients = clients
        self.ctx = ctx

    @property
    def tags(self) -> dict[str, str]:
        return make_tags(self.ctx, self.resource_type)

    @property
    def kind(self) -> str:
        return self.resource_type.value

    @abstractmethod
    def name(self, spec: SpecT) -> str: ...

    @abstractmethod
    async def find(self, spec: SpecT) -> LiveT | None: ...

    @abstractmethod
    def diff(self, spec: SpecT, live: LiveT) -> set[str]: ...

    @abstractmethod
    async def create(self, spec: SpecT) -> DeploymentResult: ...

    @abstractmethod
    async def update(self, spec: SpecT, live: LiveT, changed: set[str]) -> DeploymentResult: ...

    @abstractmethod
    def result(self, spec: SpecT, live: LiveT, status: DeploymentStatus) -> DeploymentResult:
        """Build the result for an existing resource."""

    def live_tags(self, live: LiveT) -> dict[str, str] | None:
        """Tags reported on the live resource, None when not tracked."""
        return None

    async def apply_tags(self, spec: SpecT, live: LiveT, tags: dict[str, str]) -> None:
        """Write ``tags`` onto an existing resource."""

    async def sync_tags(self, spec: SpecT, live: LiveT) -> None:
        current = self.live_tags(live)
        if current is None:
            return
        drift = missing_tags(self.tags, current)
        if drift:
            logger.debug("Re-tagging %s %s: %s", self.kind, self.name(spec), sorted(drift))
            await self.apply_tags(spec, live, drift)

    async def ensure(self, spec: SpecT) -> DeploymentResult:
        """
        Create, update or leave alone the resource described by ``spec``.

        Returns:
            DeploymentResult with status created, updated or unchanged
        """
        name = self.name(spec)
        live = await self.find(spec)

        if live is None:
            logger.info("Creating %s %s", self.kind, name)
            try:
                return await self.create(spec)
            except ClientError as e:
                if not is_already_exists(e):
                    raise
                # Lost a race with a concurrent create; converge on what exists
                logger.debug("%s %s already exists, reconciling", self.kind, name)
                live = await self.find(spec)
                if live is None:
                    raise

        changed = self.diff(spec, live)
        if not changed:
            await self.sync_tags(spec, live)
            logger.debug("%s %s is up to date", self.kind, name)
            return self.result(spec, live, DeploymentStatus.UNCHANGED)

        logger.info("Updating %s %s (%s)", self.kind, name, ", ".join(sorted(changed)))
        result = await self.update(spec, live, changed)
        await self.sync_tags(spec, live)
        return result


def result_for(
    reconciler: Reconciler[Any, Any],
    identifier: str,
    name: str,
    status: DeploymentStatus,
    **outputs: Any,
) -> DeploymentResult:
    return DeploymentResult(
        identifier=identifier,
        status=status,
        kind=reconciler.kind,
        name=name,
        outputs=outputs,
    )
