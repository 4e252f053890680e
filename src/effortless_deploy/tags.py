"""Ownership tags stamped on every resource this package creates.

A resource is owned by exactly one deployment unit, identified by the
``(project, stage, handler)`` triple plus the kind of resource. The four
tags are the only way inventory and cleanup discover resources, so a
resource without them is never touched.
"""

from dataclasses import dataclass
from enum import Enum

TAG_PREFIX = "effortless:"
PROJECT_TAG = f"{TAG_PREFIX}project"
STAGE_TAG = f"{TAG_PREFIX}stage"
HANDLER_TAG = f"{TAG_PREFIX}handler"
TYPE_TAG = f"{TAG_PREFIX}type"


class ResourceType(str, Enum):
    """Value of the ``effortless:type`` tag."""

    FUNCTION = "function"
    ROLE = "role"
    TABLE = "table"
    ROUTE_COLLECTION = "route-collection"
    DEPENDENCY_PACKAGE = "dependency-package"
    BUCKET = "bucket"
    DISTRIBUTION = "distribution"
    QUEUE = "queue"
    MAIL_IDENTITY = "mail-identity"

    @classmethod
    def parse(cls, value: str | None) -> "ResourceType | None":
        """Return the member for ``value`` or None when unknown."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class TagContext:
    """Identity of one deployment unit."""

    project: str
    stage: str
    handler: str

    def tags(self, resource_type: ResourceType) -> dict[str, str]:
        return make_tags(self, resource_type)


def make_tags(ctx: TagContext, resource_type: ResourceType) -> dict[str, str]:
    """Build the full ownership tag set for a resource."""
    return {
        PROJECT_TAG: ctx.project,
        STAGE_TAG: ctx.stage,
        HANDLER_TAG: ctx.handler,
        TYPE_TAG: resource_type.value,
    }


def to_aws_tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    """Convert a tag mapping to the ``[{"Key": ..., "Value": ...}]`` shape."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def from_aws_tag_list(tags: list[dict[str, str]] | None) -> dict[str, str]:
    """Convert a ``Key``/``Value`` list (or None) back to a mapping."""
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


def missing_tags(desired: dict[str, str], live: dict[str, str] | None) -> dict[str, str]:
    """Return the desired tags that are absent from or differ on the live resource."""
    live = live or {}
    return {key: value for key, value in desired.items() if live.get(key) != value}


def project_tag_filters(project: str, stage: str) -> list[dict[str, list[str]]]:
    """Tag filters selecting every resource of one project stage."""
    return [
        {"Key": PROJECT_TAG, "Values": [project]},
        {"Key": STAGE_TAG, "Values": [stage]},
    ]


SHARED_HANDLER = "_project"
"""Handler tag value of resources shared by a whole project stage (the HTTP API).

Handler names must start with a letter, so this value never collides."""
