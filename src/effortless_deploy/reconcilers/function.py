"""Lambda function reconciler."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError

from ..clients import AwsClients
from ..exceptions import InfrastructureError, error_code, error_message, is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..polling import FUNCTION_ACTIVE, RetryPolicy, retry_on_conflict, wait_until
from ..tags import ResourceType, TagContext
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

ROLE_ASSUME_RETRY = RetryPolicy(attempts=5, interval=3.0)
CONFIG_UPDATE_RETRY = RetryPolicy(attempts=2, interval=2.0)


def code_sha256(code: bytes) -> str:
    """Digest in the format Lambda reports as ``CodeSha256``."""
    return base64.b64encode(hashlib.sha256(code).digest()).decode("ascii")


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    role_arn: str
    code: bytes
    runtime: str
    entrypoint: str
    memory: int
    timeout: int
    environment: dict[str, str] = field(default_factory=dict)
    layers: tuple[str, ...] = ()

    @property
    def code_sha256(self) -> str:
        return code_sha256(self.code)


@dataclass(frozen=True)
class LiveFunction:
    arn: str
    code_sha256: str
    runtime: str | None
    entrypoint: str | None
    memory: int | None
    timeout: int | None
    role: str | None
    environment: dict[str, str]
    layers: tuple[str, ...]
    tags: dict[str, str]

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> LiveFunction:
        config = response["Configuration"]
        return cls(
            arn=config["FunctionArn"],
            code_sha256=config.get("CodeSha256", ""),
            runtime=config.get("Runtime"),
            entrypoint=config.get("Handler"),
            memory=config.get("MemorySize"),
            timeout=config.get("Timeout"),
            role=config.get("Role"),
            environment=dict(config.get("Environment", {}).get("Variables", {})),
            layers=tuple(layer["Arn"] for layer in config.get("Layers", [])),
            tags=dict(response.get("Tags", {})),
        )


class FunctionReconciler(Reconciler[FunctionSpec, LiveFunction]):
    """Create or update a function; code and configuration update independently."""

    resource_type = ResourceType.FUNCTION

    def __init__(
        self,
        clients: AwsClients,
        ctx: TagContext,
        activation: RetryPolicy = FUNCTION_ACTIVE,
        role_retry: RetryPolicy = ROLE_ASSUME_RETRY,
    ) -> None:
        super().__init__(clients, ctx)
        self.activation = activation
        self.role_retry = role_retry

    def name(self, spec: FunctionSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("lambda")

    async def find(self, spec: FunctionSpec) -> LiveFunction | None:
        client = await self._client()
        try:
            response = await client.get_function(FunctionName=spec.name)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return LiveFunction.from_response(response)

    def diff(self, spec: FunctionSpec, live: LiveFunction) -> set[str]:
        changed: set[str] = set()
        if live.code_sha256 != spec.code_sha256:
            changed.add("code")
        if live.memory != spec.memory:
            changed.add("memory")
        if live.timeout != spec.timeout:
            changed.add("timeout")
        if live.entrypoint != spec.entrypoint:
            changed.add("entrypoint")
        if live.runtime != spec.runtime:
            changed.add("runtime")
        if live.layers != spec.layers:
            changed.add("layers")
        if live.environment != spec.environment:
            changed.add("environment")
        if live.role != spec.role_arn:
            changed.add("role")
        return changed

    async def create(self, spec: FunctionSpec) -> DeploymentResult:
        client = await self._client()
        params: dict[str, Any] = {
            "FunctionName": spec.name,
            "Role": spec.role_arn,
            "Runtime": spec.runtime,
            "Handler": spec.entrypoint,
            "Code": {"ZipFile": spec.code},
            "MemorySize": spec.memory,
            "Timeout": spec.timeout,
            "Environment": {"Variables": spec.environment},
            "Tags": self.tags,
        }
        if spec.layers:
            params["Layers"] = list(spec.layers)

        response = await self._create_with_role_retry(client, params)
        await self.wait_until_ready(spec.name)
        return result_for(self, response["FunctionArn"], spec.name, DeploymentStatus.CREATED)

    async def _create_with_role_retry(self, client: Any, params: dict[str, Any]) -> Any:
        for attempt in range(1, self.role_retry.attempts + 1):
            try:
                return await client.create_function(**params)
            except ClientError as e:
                if not _is_role_not_ready(e) or attempt == self.role_retry.attempts:
                    raise
                logger.debug(
                    "Role for %s not assumable yet (attempt %d/%d)",
                    params["FunctionName"],
                    attempt,
                    self.role_retry.attempts,
                )
                await asyncio.sleep(self.role_retry.interval)

    async def update(
        self, spec: FunctionSpec, live: LiveFunction, changed: set[str]
    ) -> DeploymentResult:
        client = await self._client()

        if "code" in changed:
            await client.update_function_code(FunctionName=spec.name, ZipFile=spec.code)
            await self.wait_until_ready(spec.name)

        config = self._configuration_params(spec, changed)
        if config:

            async def _update() -> Any:
                return await client.update_function_configuration(FunctionName=spec.name, **config)

            await retry_on_conflict(
                _update,
                CONFIG_UPDATE_RETRY,
                self.kind,
                spec.name,
                before_retry=lambda: self.wait_until_ready(spec.name),
            )
            await self.wait_until_ready(spec.name)

        return result_for(self, live.arn, spec.name, DeploymentStatus.UPDATED)

    @staticmethod
    def _configuration_params(spec: FunctionSpec, changed: set[str]) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if "memory" in changed:
            params["MemorySize"] = spec.memory
        if "timeout" in changed:
            params["Timeout"] = spec.timeout
        if "entrypoint" in changed:
            params["Handler"] = spec.entrypoint
        if "runtime" in changed:
            params["Runtime"] = spec.runtime
        if "layers" in changed:
            params["Layers"] = list(spec.layers)
        if "environment" in changed:
            params["Environment"] = {"Variables": spec.environment}
        if "role" in changed:
            params["Role"] = spec.role_arn
        return params

    def result(
        self, spec: FunctionSpec, live: LiveFunction, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status)

    def live_tags(self, live: LiveFunction) -> dict[str, str]:
        return live.tags

    async def apply_tags(self, spec: FunctionSpec, live: LiveFunction, tags: dict[str, str]) -> None:
        client = await self._client()
        await client.tag_resource(Resource=live.arn, Tags=tags)

    async def wait_until_ready(self, name: str) -> None:
        """Poll until the function is Active with no update in flight."""
        client = await self._client()

        async def settled() -> tuple[bool, str | None]:
            config = await client.get_function_configuration(FunctionName=name)
            state = config.get("State", "Active")
            update_status = config.get("LastUpdateStatus", "Successful")
            if state == "Failed" or update_status == "Failed":
                reason = config.get("LastUpdateStatusReason") or config.get("StateReason") or ""
                raise InfrastructureError(f"Function {name} entered a failed state: {reason}")
            ready = state == "Active" and update_status != "InProgress"
            return ready, f"{state}/{update_status}"

        await wait_until(settled, self.activation, f"function {name} to become active")


def _is_role_not_ready(error: ClientError) -> bool:
    return (
        error_code(error) == "InvalidParameterValueException"
        and "role" in error_message(error).lower()
        and "assume" in error_message(error).lower()
    )


# ---------------------------------------------------------------------------
# Resource-based invoke permissions
# ---------------------------------------------------------------------------


async def permission_statement_ids(client: Any, function_name: str) -> set[str]:
    """Sids of the function's resource policy (empty when it has none)."""
    try:
        response = await client.get_policy(FunctionName=function_name)
    except ClientError as e:
        if is_not_found(e):
            return set()
        raise
    policy = json.loads(response.get("Policy", "{}"))
    return {statement.get("Sid", "") for statement in policy.get("Statement", [])}


async def ensure_invoke_permission(
    client: Any,
    function_name: str,
    statement_id: str,
    principal: str,
    source_arn: str,
    source_account: str | None = None,
) -> bool:
    """
    Grant ``principal`` permission to invoke the function.

    Returns:
        True when a statement was added, False when it already existed
    """
    if statement_id in await permission_statement_ids(client, function_name):
        return False
    params: dict[str, Any] = {
        "FunctionName": function_name,
        "StatementId": statement_id,
        "Action": "lambda:InvokeFunction",
        "Principal": principal,
        "SourceArn": source_arn,
    }
    if source_account:
        params["SourceAccount"] = source_account
    try:
        await client.add_permission(**params)
    except ClientError as e:
        if error_code(e) != "ResourceConflictException":
            raise
        logger.debug("Permission %s already exists on %s", statement_id, function_name)
        return False
    return True


def account_from_arn(arn: str) -> str:
    return arn.split(":")[4]


def region_from_arn(arn: str) -> str:
    return arn.split(":")[3]
