"""Result, binding and inventory models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .tags import HANDLER_TAG, PROJECT_TAG, STAGE_TAG, TYPE_TAG, ResourceType

UNKNOWN_HANDLER = "unknown"
"""Group key for tagged resources that carry no handler tag."""


class DeploymentStatus(str, Enum):
    """Outcome of a single reconcile call."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class DeploymentResult:
    """
    Result of reconciling one resource.

    Attributes:
        identifier: ARN, URL or provider id of the reconciled resource
        status: Whether the resource was created, updated or left alone
        kind: Resource kind that was reconciled
        name: Deterministic resource name
        outputs: Extra values later steps need (stream ARN, queue URL, ...)
    """

    identifier: str
    status: DeploymentStatus
    kind: str
    name: str
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.status is not DeploymentStatus.UNCHANGED


class DependencyKind(str, Enum):
    TABLE = "table"
    BUCKET = "bucket"
    MAILER = "mailer"


@dataclass(frozen=True)
class DependencyBinding:
    """A declared dependency key resolved to another handler's resource."""

    key: str
    kind: DependencyKind
    resource_name: str

    @property
    def env_value(self) -> str:
        return f"{self.kind.value}:{self.resource_name}"


@dataclass(frozen=True)
class ParamBinding:
    """A declared parameter resolved to its full parameter-store path."""

    property_name: str
    parameter_path: str


@dataclass(frozen=True)
class LayerManifest:
    """A published (or reused) dependency-package layer version."""

    content_hash: str
    packages: tuple[str, ...]
    version: int
    arn: str
    reused: bool = False


@dataclass(frozen=True)
class TaggedResource:
    """A resource discovered through the tagging API."""

    arn: str
    tags: dict[str, str]

    @property
    def handler(self) -> str | None:
        return self.tags.get(HANDLER_TAG)

    @property
    def project(self) -> str | None:
        return self.tags.get(PROJECT_TAG)

    @property
    def stage(self) -> str | None:
        return self.tags.get(STAGE_TAG)

    @property
    def type_tag(self) -> str | None:
        return self.tags.get(TYPE_TAG)

    @property
    def resource_type(self) -> ResourceType | None:
        return ResourceType.parse(self.type_tag)

    @property
    def name(self) -> str:
        """
        Provider-level name extracted from the ARN.

        Handles the ARN shapes of every owned resource type:
        ``function:NAME``, ``table/NAME``, ``role/NAME``, ``apis/ID``,
        ``distribution/ID``, ``identity/DOMAIN``, ``layer:NAME:VERSION``,
        ``:::BUCKET`` and ``:QUEUE``.
        """
        arn = self.arn
        if ":function:" in arn:
            return arn.split(":function:", 1)[1].split(":", 1)[0]
        if ":layer:" in arn:
            return arn.split(":layer:", 1)[1]
        if arn.startswith("arn:aws:s3:::"):
            return arn[len("arn:aws:s3:::") :]
        if ":sqs:" in arn:
            return arn.rsplit(":", 1)[1]
        return arn.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class OrphanCandidate:
    """A tagged resource whose owning handler is no longer declared."""

    resource: TaggedResource
    handler: str

    @property
    def arn(self) -> str:
        return self.resource.arn


@dataclass(frozen=True)
class HandlerFailure:
    """Per-handler failure record captured at the task boundary."""

    handler: str
    kind: str
    error_type: str
    message: str


@dataclass
class HandlerDeployment:
    """Everything one handler pipeline produced."""

    handler: str
    kind: str
    results: dict[str, DeploymentResult] = field(default_factory=dict)
    failure: HandlerFailure | None = None
    url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def status(self) -> DeploymentStatus | None:
        """Aggregate status: created wins over updated wins over unchanged."""
        statuses = {r.status for r in self.results.values()}
        for candidate in (
            DeploymentStatus.CREATED,
            DeploymentStatus.UPDATED,
            DeploymentStatus.UNCHANGED,
        ):
            if candidate in statuses:
                return candidate
        return None


@dataclass
class CleanupReport:
    """Outcome of a best-effort deletion pass."""

    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def extend(self, other: CleanupReport) -> None:
        self.deleted.extend(other.deleted)
        self.skipped.extend(other.skipped)
        self.failed.extend(other.failed)


@dataclass
class ProjectDeploymentSummary:
    """Aggregate result of one project deploy."""

    project: str
    stage: str
    handlers: list[HandlerDeployment] = field(default_factory=list)
    layer: LayerManifest | None = None
    api_url: str | None = None
    removed_routes: list[str] = field(default_factory=list)
    removed_edge_functions: list[str] = field(default_factory=list)
    cleanup: CleanupReport | None = None

    @property
    def failed(self) -> list[HandlerDeployment]:
        return [h for h in self.handlers if not h.succeeded]

    @property
    def succeeded(self) -> list[HandlerDeployment]:
        return [h for h in self.handlers if h.succeeded]

    @property
    def ok(self) -> bool:
        return not self.failed

    def get(self, handler: str) -> HandlerDeployment | None:
        for deployment in self.handlers:
            if deployment.handler == handler:
                return deployment
        return None
