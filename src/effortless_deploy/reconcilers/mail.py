"""SES v2 sending-domain identity reconciler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from ..exceptions import is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType, to_aws_tag_list
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailIdentitySpec:
    domain: str


@dataclass(frozen=True)
class LiveMailIdentity:
    domain: str
    verified: bool
    tokens: tuple[str, ...]


def dkim_records(domain: str, tokens: tuple[str, ...]) -> list[dict[str, str]]:
    """CNAME records the domain owner must publish for DKIM verification."""
    return [
        {"name": f"{token}._domainkey.{domain}", "value": f"{token}.dkim.amazonses.com"}
        for token in tokens
    ]


class MailIdentityReconciler(Reconciler[MailIdentitySpec, LiveMailIdentity]):
    resource_type = ResourceType.MAIL_IDENTITY

    def name(self, spec: MailIdentitySpec) -> str:
        return spec.domain

    async def _client(self) -> Any:
        return await self.clients.get("sesv2")

    async def find(self, spec: MailIdentitySpec) -> LiveMailIdentity | None:
        client = await self._client()
        try:
            response = await client.get_email_identity(EmailIdentity=spec.domain)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        dkim = response.get("DkimAttributes", {})
        return LiveMailIdentity(
            domain=spec.domain,
            verified=dkim.get("Status") == "SUCCESS",
            tokens=tuple(dkim.get("Tokens", [])),
        )

    def diff(self, spec: MailIdentitySpec, live: LiveMailIdentity) -> set[str]:
        return set()

    async def create(self, spec: MailIdentitySpec) -> DeploymentResult:
        client = await self._client()
        await client.create_email_identity(
            EmailIdentity=spec.domain,
            DkimSigningAttributes={"NextSigningKeyLength": "RSA_2048_BIT"},
            Tags=to_aws_tag_list(self.tags),
        )
        live = await self.find(spec)
        tokens = live.tokens if live else ()
        return result_for(
            self,
            spec.domain,
            spec.domain,
            DeploymentStatus.CREATED,
            verified=False,
            dkim_records=dkim_records(spec.domain, tokens),
        )

    async def update(
        self, spec: MailIdentitySpec, live: LiveMailIdentity, changed: set[str]
    ) -> DeploymentResult:
        return self.result(spec, live, DeploymentStatus.UNCHANGED)

    def result(
        self, spec: MailIdentitySpec, live: LiveMailIdentity, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(
            self,
            spec.domain,
            spec.domain,
            status,
            verified=live.verified,
            dkim_records=dkim_records(spec.domain, live.tokens),
        )


async def delete_mail_identity(client: Any, domain: str) -> bool:
    try:
        await client.delete_email_identity(EmailIdentity=domain)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("Mail identity %s not found, skipping", domain)
            return False
        raise
    logger.info("Deleted mail identity %s", domain)
    return True
