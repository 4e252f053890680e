"""Parameter-store checks run before a deploy."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .clients import AwsClients
from .handlers import HandlerSpec
from .resolver import parameter_path

logger = logging.getLogger(__name__)

GET_PARAMETERS_BATCH_SIZE = 10


@dataclass(frozen=True)
class RequiredParam:
    handler: str
    property_name: str
    path: str


def collect_required_params(
    handlers: Iterable[HandlerSpec], project: str, stage: str
) -> list[RequiredParam]:
    """Every parameter path the declared handlers read, in declaration order."""
    return [
        RequiredParam(
            handler=handler.name,
            property_name=entry.property_name,
            path=parameter_path(project, stage, entry.key),
        )
        for handler in handlers
        for entry in handler.params
    ]


async def check_missing_params(
    clients: AwsClients, required: Iterable[RequiredParam]
) -> list[RequiredParam]:
    """
    Return the required parameters that do not exist yet.

    Paths are looked up with ``get_parameters`` in batches of ten, the
    most the API accepts per call.
    """
    required = list(required)
    paths = sorted({param.path for param in required})
    if not paths:
        return []

    client = await clients.get("ssm")
    missing: set[str] = set()
    for start in range(0, len(paths), GET_PARAMETERS_BATCH_SIZE):
        batch = paths[start : start + GET_PARAMETERS_BATCH_SIZE]
        response = await client.get_parameters(Names=batch)
        missing.update(response.get("InvalidParameters", []))

    if missing:
        logger.warning("%d of %d parameters are missing", len(missing), len(paths))
    return [param for param in required if param.path in missing]
