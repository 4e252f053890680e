"""Deterministic resource naming.

Every resource name is a pure function of ``(project, stage, handler,
resource kind)``, so repeated deploys of an unchanged definition always
resolve to the same identifier and lookup-by-name stays idempotent.

Names must satisfy the most restrictive provider rules involved:
- Alphanumeric characters, hyphens (and underscores in handler names)
- Project and stage must start with a letter
- IAM role names are limited to 64 characters
"""

import os
import re

from .exceptions import ValidationError

DEFAULT_STAGE = "dev"
"""Stage used when neither the caller nor the environment selects one."""

STAGE_ENV_VAR = "EFFORTLESS_STAGE"
"""Environment variable for overriding the default stage."""

REGION_ENV_VAR = "EFFORTLESS_REGION"
"""Environment variable for overriding the deploy region."""

QUEUE_SUFFIX = ".fifo"
SITE_SUFFIX = "-site"
ROLE_SUFFIX = "-role"
LAYER_SUFFIX = "-deps"

MAX_ROLE_NAME_LENGTH = 64
MAX_FUNCTION_NAME_LENGTH = 64

PROJECT_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
HANDLER_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")


def validate_name(field: str, value: str) -> None:
    """
    Validate a project or stage identifier.

    Args:
        field: Name of the field being validated (used in the error)
        value: The user-provided identifier

    Raises:
        ValidationError: If the value is empty or contains invalid characters
    """
    if not value:
        raise ValidationError(field, value, "Name cannot be empty")
    if "_" in value:
        raise ValidationError(
            field,
            value,
            "Contains underscore. Use hyphens instead (e.g., 'my-app' not 'my_app')",
        )
    if " " in value:
        raise ValidationError(field, value, "Contains spaces. Use hyphens instead")
    if not PROJECT_PATTERN.match(value):
        raise ValidationError(
            field,
            value,
            "Must start with a letter and contain only alphanumeric characters and hyphens",
        )


def validate_handler_name(name: str) -> None:
    """Validate a handler name. Underscores are allowed here."""
    if not name:
        raise ValidationError("handler", name, "Name cannot be empty")
    if not HANDLER_PATTERN.match(name):
        raise ValidationError(
            "handler",
            name,
            "Must start with a letter and contain only alphanumerics, hyphens or underscores",
        )


def resource_name(project: str, stage: str, handler: str, suffix: str = "") -> str:
    """Return ``{project}-{stage}-{handler}{suffix}``."""
    return f"{project}-{stage}-{handler}{suffix}"


def function_name(project: str, stage: str, handler: str) -> str:
    name = resource_name(project, stage, handler)
    if len(name) > MAX_FUNCTION_NAME_LENGTH:
        raise ValidationError(
            "function_name", name, f"Exceeds {MAX_FUNCTION_NAME_LENGTH} characters"
        )
    return name


def role_name(project: str, stage: str, handler: str) -> str:
    name = resource_name(project, stage, handler, ROLE_SUFFIX)
    if len(name) > MAX_ROLE_NAME_LENGTH:
        raise ValidationError("role_name", name, f"Exceeds {MAX_ROLE_NAME_LENGTH} characters")
    return name


def derived_role_name(function: str) -> str:
    """Role name implied by a function name."""
    return f"{function}{ROLE_SUFFIX}"


def table_name(project: str, stage: str, handler: str) -> str:
    return resource_name(project, stage, handler)


def queue_name(project: str, stage: str, handler: str) -> str:
    return resource_name(project, stage, handler, QUEUE_SUFFIX)


def bucket_name(project: str, stage: str, handler: str) -> str:
    # S3 bucket names must be lowercase
    return resource_name(project, stage, handler).lower()


def site_bucket_name(project: str, stage: str, handler: str) -> str:
    return resource_name(project, stage, handler, SITE_SUFFIX).lower()


def api_name(project: str, stage: str) -> str:
    return f"{project}-{stage}"


def layer_name(project: str, stage: str) -> str:
    return f"{project}-{stage}{LAYER_SUFFIX}"


def origin_access_control_name(project: str, stage: str) -> str:
    return f"{project}-{stage}-oac"


def viewer_function_name(project: str, stage: str, handler: str, redirect_www: bool) -> str:
    """
    Name of the CloudFront viewer-request function for a static site.

    A plain URL-rewrite function is shared by every site of the stage; a
    function that also redirects ``www.`` is specific to one handler.
    """
    if redirect_www:
        return resource_name(project, stage, handler, "-viewer-req")
    return f"{project}-{stage}-url-rewrite"


def resolve_stage(stage: str | None = None) -> str:
    """
    Resolve the deploy stage.

    Resolution order:
        1. Explicit ``stage`` argument (if not None)
        2. ``EFFORTLESS_STAGE`` environment variable (if set and non-empty)
        3. ``DEFAULT_STAGE`` ("dev")
    """
    if stage is not None:
        return stage
    env_value = os.environ.get(STAGE_ENV_VAR)
    if env_value:
        return env_value
    return DEFAULT_STAGE


def resolve_region(region: str | None = None) -> str | None:
    """
    Resolve the deploy region.

    Explicit value first, then ``EFFORTLESS_REGION``, then ``AWS_REGION``;
    None leaves the choice to the boto3 default chain.
    """
    if region:
        return region
    return os.environ.get(REGION_ENV_VAR) or os.environ.get("AWS_REGION") or None
