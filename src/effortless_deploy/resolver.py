"""Cross-handler dependency and permission resolution.

A handler declares the other handlers it talks to (``deps``) and the
parameters it reads (``params``). The resolver turns those declarations
into typed bindings plus the IAM actions they imply. Bindings stay typed
until the function reconciler flattens them into environment variables.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .handlers import (
    BucketHandler,
    HandlerKind,
    HandlerSpec,
    MailerHandler,
    ParamEntry,
    TableHandler,
)
from .models import DependencyBinding, DependencyKind, ParamBinding
from .naming import bucket_name, table_name

logger = logging.getLogger(__name__)

ENV_PREFIX = "EFF"
DEP_ENV_PREFIX = f"{ENV_PREFIX}_DEP_"
PARAM_ENV_PREFIX = f"{ENV_PREFIX}_PARAM_"
SELF_ENV_VAR = f"{ENV_PREFIX}_DEP_SELF"

TABLE_CLIENT_PERMISSIONS: tuple[str, ...] = (
    "dynamodb:GetItem",
    "dynamodb:PutItem",
    "dynamodb:DeleteItem",
    "dynamodb:Query",
    "dynamodb:Scan",
    "dynamodb:UpdateItem",
    "dynamodb:BatchGetItem",
    "dynamodb:BatchWriteItem",
)
BUCKET_CLIENT_PERMISSIONS: tuple[str, ...] = (
    "s3:GetObject",
    "s3:PutObject",
    "s3:DeleteObject",
    "s3:ListBucket",
)
MAILER_CLIENT_PERMISSIONS: tuple[str, ...] = ("ses:SendEmail", "ses:SendRawEmail")
PARAM_PERMISSIONS: tuple[str, ...] = ("ssm:GetParameter", "ssm:GetParameters")

DEPENDENCY_PERMISSIONS: dict[DependencyKind, tuple[str, ...]] = {
    DependencyKind.TABLE: TABLE_CLIENT_PERMISSIONS,
    DependencyKind.BUCKET: BUCKET_CLIENT_PERMISSIONS,
    DependencyKind.MAILER: MAILER_CLIENT_PERMISSIONS,
}

KIND_DEFAULT_PERMISSIONS: dict[HandlerKind, tuple[str, ...]] = {
    HandlerKind.HTTP: (),
    HandlerKind.APP: (),
    HandlerKind.TABLE: ("dynamodb:*", "logs:*"),
    HandlerKind.FIFO_QUEUE: ("sqs:*", "logs:*"),
    HandlerKind.BUCKET: ("s3:*", "logs:*"),
}
"""Actions every function of a kind needs to consume its own trigger."""


def env_key(name: str) -> str:
    """Environment variable names allow letters, digits and underscores only."""
    return name.replace("-", "_")


def parameter_path(project: str, stage: str, key: str) -> str:
    return f"/{project}/{stage}/{key}"


@dataclass(frozen=True)
class NameMaps:
    """Handler name to resource name, per dependency kind."""

    tables: dict[str, str] = field(default_factory=dict)
    buckets: dict[str, str] = field(default_factory=dict)
    mailers: dict[str, str] = field(default_factory=dict)

    def lookup(self, key: str) -> tuple[DependencyKind, str] | None:
        """Find ``key`` in table, bucket then mailer order; first match wins."""
        for kind, mapping in (
            (DependencyKind.TABLE, self.tables),
            (DependencyKind.BUCKET, self.buckets),
            (DependencyKind.MAILER, self.mailers),
        ):
            if key in mapping:
                return kind, mapping[key]
        return None


def build_name_maps(handlers: Iterable[HandlerSpec], project: str, stage: str) -> NameMaps:
    """
    Compute the deterministic resource name of every dependable handler.

    Mailers without a domain for ``stage`` are left out, so dependencies
    on them resolve to nothing for that stage.
    """
    maps = NameMaps()
    for handler in handlers:
        if isinstance(handler, TableHandler):
            maps.tables[handler.name] = table_name(project, stage, handler.name)
        elif isinstance(handler, BucketHandler):
            maps.buckets[handler.name] = bucket_name(project, stage, handler.name)
        elif isinstance(handler, MailerHandler):
            domain = handler.domain_for(stage)
            if domain:
                maps.mailers[handler.name] = domain
    return maps


@dataclass(frozen=True)
class ResolvedBindings:
    """Typed dependency and parameter bindings plus the actions they need."""

    dependencies: tuple[DependencyBinding, ...] = ()
    params: tuple[ParamBinding, ...] = ()
    permissions: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.dependencies or self.params)

    def to_environment(self) -> dict[str, str]:
        """Flatten to the ``EFF_DEP_*`` / ``EFF_PARAM_*`` variables the runtime reads."""
        env: dict[str, str] = {}
        for dep in self.dependencies:
            env[f"{DEP_ENV_PREFIX}{env_key(dep.key)}"] = dep.env_value
        for param in self.params:
            env[f"{PARAM_ENV_PREFIX}{env_key(param.property_name)}"] = param.parameter_path
        return env


def resolve_deps(keys: Sequence[str], name_maps: NameMaps) -> ResolvedBindings:
    """
    Resolve declared dependency keys against the name maps.

    Each matched kind adds its permission template once per matched key.
    Keys that match no handler are logged and skipped.
    """
    bindings: list[DependencyBinding] = []
    permissions: list[str] = []
    for key in keys:
        match = name_maps.lookup(key)
        if match is None:
            logger.warning("Dependency %r does not match any table, bucket or mailer handler", key)
            continue
        kind, resource = match
        bindings.append(DependencyBinding(key=key, kind=kind, resource_name=resource))
        permissions.extend(DEPENDENCY_PERMISSIONS[kind])
    return ResolvedBindings(dependencies=tuple(bindings), permissions=tuple(permissions))


def resolve_params(entries: Sequence[ParamEntry], project: str, stage: str) -> ResolvedBindings:
    """Map each parameter entry to ``/{project}/{stage}/{key}``."""
    if not entries:
        return ResolvedBindings()
    params = tuple(
        ParamBinding(
            property_name=entry.property_name,
            parameter_path=parameter_path(project, stage, entry.key),
        )
        for entry in entries
    )
    return ResolvedBindings(params=params, permissions=PARAM_PERMISSIONS)


def merge(*bindings: ResolvedBindings) -> ResolvedBindings:
    """Structural union. Permission lists are concatenated as-is."""
    return ResolvedBindings(
        dependencies=tuple(dep for b in bindings for dep in b.dependencies),
        params=tuple(param for b in bindings for param in b.params),
        permissions=tuple(action for b in bindings for action in b.permissions),
    )


def resolve_handler(
    handler: HandlerSpec, name_maps: NameMaps, project: str, stage: str
) -> ResolvedBindings:
    """Dependencies and parameters of one handler, merged."""
    return merge(
        resolve_deps(handler.deps, name_maps),
        resolve_params(handler.params, project, stage),
    )


def effective_permissions(handler: HandlerSpec, bindings: ResolvedBindings) -> tuple[str, ...]:
    """Kind defaults, then declared permissions, then binding permissions."""
    declared = handler.function.permissions if handler.function else ()
    return (
        KIND_DEFAULT_PERMISSIONS.get(handler.kind, ())
        + tuple(declared)
        + bindings.permissions
    )
