"""IAM execution role reconciler."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from botocore.exceptions import ClientError

from ..clients import AwsClients
from ..exceptions import is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType, TagContext, from_aws_tag_list, to_aws_tag_list
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

BASIC_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
INLINE_POLICY_NAME = "effortless-permissions"
ROLE_PROPAGATION_DELAY = 10.0
"""Seconds to wait after creating a role before a function may assume it."""


def assume_role_policy(service: str) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def permissions_policy(permissions: tuple[str, ...]) -> dict[str, Any]:
    """Inline policy granting ``permissions`` on every resource."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": list(permissions),
                "Resource": "*",
            }
        ],
    }


@dataclass(frozen=True)
class RoleSpec:
    name: str
    permissions: tuple[str, ...] = ()
    service: str = "lambda.amazonaws.com"
    managed_policies: tuple[str, ...] = (BASIC_EXECUTION_POLICY_ARN,)


@dataclass(frozen=True)
class LiveRole:
    arn: str
    policy: dict[str, Any] | None
    tags: dict[str, str]
    trusted_services: tuple[str, ...] = ()
    managed_policies: tuple[str, ...] = ()


def _policy_actions(policy: dict[str, Any] | None) -> list[str]:
    if not policy:
        return []
    actions: list[str] = []
    for statement in policy.get("Statement", []):
        action = statement.get("Action", [])
        actions.extend([action] if isinstance(action, str) else action)
    return actions


def _parse_policy_document(document: Any) -> dict[str, Any]:
    if isinstance(document, dict):
        return document
    return dict(json.loads(unquote(document)))


def _trusted_services(document: dict[str, Any] | None) -> tuple[str, ...]:
    if not document:
        return ()
    services: set[str] = set()
    for statement in document.get("Statement", []):
        service = (statement.get("Principal") or {}).get("Service", [])
        services.update([service] if isinstance(service, str) else service)
    return tuple(sorted(services))


class RoleReconciler(Reconciler[RoleSpec, LiveRole]):
    """Create the execution role or converge its trust and permission policies."""

    resource_type = ResourceType.ROLE

    def __init__(
        self,
        clients: AwsClients,
        ctx: TagContext,
        propagation_delay: float = ROLE_PROPAGATION_DELAY,
    ) -> None:
        super().__init__(clients, ctx)
        self.propagation_delay = propagation_delay

    def name(self, spec: RoleSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("iam")

    async def find(self, spec: RoleSpec) -> LiveRole | None:
        client = await self._client()
        try:
            response = await client.get_role(RoleName=spec.name)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        role = response["Role"]

        policy: dict[str, Any] | None = None
        try:
            policy_response = await client.get_role_policy(
                RoleName=spec.name, PolicyName=INLINE_POLICY_NAME
            )
            policy = _parse_policy_document(policy_response["PolicyDocument"])
        except ClientError as e:
            if not is_not_found(e):
                raise

        trust = role.get("AssumeRolePolicyDocument")
        return LiveRole(
            arn=role["Arn"],
            policy=policy,
            tags=from_aws_tag_list(role.get("Tags")),
            trusted_services=_trusted_services(_parse_policy_document(trust) if trust else None),
            managed_policies=tuple(sorted(await self._attached_policies(client, spec.name))),
        )

    async def _attached_policies(self, client: Any, role_name: str) -> list[str]:
        arns: list[str] = []
        kwargs: dict[str, Any] = {"RoleName": role_name}
        while True:
            response = await client.list_attached_role_policies(**kwargs)
            arns.extend(p["PolicyArn"] for p in response.get("AttachedPolicies", []))
            if not response.get("IsTruncated"):
                return arns
            kwargs["Marker"] = response["Marker"]

    def diff(self, spec: RoleSpec, live: LiveRole) -> set[str]:
        changed: set[str] = set()
        if sorted(set(_policy_actions(live.policy))) != sorted(set(spec.permissions)):
            changed.add("policy")
        if live.trusted_services != (spec.service,):
            changed.add("trust")
        if set(live.managed_policies) != set(spec.managed_policies):
            changed.add("managed_policies")
        return changed

    async def create(self, spec: RoleSpec) -> DeploymentResult:
        client = await self._client()
        response = await client.create_role(
            RoleName=spec.name,
            AssumeRolePolicyDocument=json.dumps(assume_role_policy(spec.service)),
            Tags=to_aws_tag_list(self.tags),
        )
        for policy_arn in spec.managed_policies:
            await client.attach_role_policy(RoleName=spec.name, PolicyArn=policy_arn)
        if spec.permissions:
            await self._put_policy(client, spec)

        if self.propagation_delay > 0:
            logger.debug(
                "Waiting %.0fs for role %s to propagate", self.propagation_delay, spec.name
            )
            await asyncio.sleep(self.propagation_delay)

        return result_for(self, response["Role"]["Arn"], spec.name, DeploymentStatus.CREATED)

    async def update(self, spec: RoleSpec, live: LiveRole, changed: set[str]) -> DeploymentResult:
        client = await self._client()
        if "policy" in changed:
            if spec.permissions:
                await self._put_policy(client, spec)
            else:
                await client.delete_role_policy(RoleName=spec.name, PolicyName=INLINE_POLICY_NAME)
        if "trust" in changed:
            await client.update_assume_role_policy(
                RoleName=spec.name, PolicyDocument=json.dumps(assume_role_policy(spec.service))
            )
        if "managed_policies" in changed:
            desired = set(spec.managed_policies)
            for policy_arn in sorted(desired - set(live.managed_policies)):
                await client.attach_role_policy(RoleName=spec.name, PolicyArn=policy_arn)
            for policy_arn in sorted(set(live.managed_policies) - desired):
                await client.detach_role_policy(RoleName=spec.name, PolicyArn=policy_arn)
        return result_for(self, live.arn, spec.name, DeploymentStatus.UPDATED)

    async def _put_policy(self, client: Any, spec: RoleSpec) -> None:
        await client.put_role_policy(
            RoleName=spec.name,
            PolicyName=INLINE_POLICY_NAME,
            PolicyDocument=json.dumps(permissions_policy(spec.permissions)),
        )

    def result(self, spec: RoleSpec, live: LiveRole, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status)

    def live_tags(self, live: LiveRole) -> dict[str, str]:
        return live.tags

    async def apply_tags(self, spec: RoleSpec, live: LiveRole, tags: dict[str, str]) -> None:
        client = await self._client()
        await client.tag_role(RoleName=spec.name, Tags=to_aws_tag_list(tags))


async def delete_role(client: Any, role_name: str) -> bool:
    """
    Detach, empty and delete a role.

    Returns:
        False when the role did not exist
    """
    try:
        inline = await client.list_role_policies(RoleName=role_name)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("Role %s not found, skipping", role_name)
            return False
        raise
    for policy_name in inline.get("PolicyNames", []):
        await client.delete_role_policy(RoleName=role_name, PolicyName=policy_name)

    attached = await client.list_attached_role_policies(RoleName=role_name)
    for policy in attached.get("AttachedPolicies", []):
        await client.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])

    await client.delete_role(RoleName=role_name)
    logger.info("Deleted role %s", role_name)
    return True
