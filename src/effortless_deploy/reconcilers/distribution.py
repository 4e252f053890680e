"""CloudFront distribution, origin access control and certificate lookup."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError

from ..clients import GLOBAL_REGION, AwsClients
from ..exceptions import ResourceNotFoundError, error_code, is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..polling import (
    CONFLICT_RETRY,
    DISTRIBUTION_DEPLOYED,
    RetryPolicy,
    retry_on_conflict,
    wait_until,
)
from ..tags import (
    HANDLER_TAG,
    ResourceType,
    TagContext,
    from_aws_tag_list,
    project_tag_filters,
    to_aws_tag_list,
)
from .base import Reconciler, result_for

logger = logging.getLogger(__name__)

# AWS managed policies
CACHING_OPTIMIZED_POLICY_ID = "658327ea-f89d-4fab-a63d-7e88639e58f6"
CACHING_DISABLED_POLICY_ID = "4135ea2d-6df8-44a3-9df3-4b5a84be39ad"
ALL_VIEWER_EXCEPT_HOST_HEADER_POLICY_ID = "b689b0a8-53d0-40ab-baf2-68738e2966ac"
SECURITY_HEADERS_POLICY_ID = "67f7725c-6f97-4210-82d7-5512b31e9d03"

API_METHODS = ["GET", "HEAD", "OPTIONS", "PUT", "POST", "PATCH", "DELETE"]
CACHED_METHODS = ["GET", "HEAD"]

EMPTY_LIST: dict[str, Any] = {"Quantity": 0, "Items": []}


def _listing(items: list[Any]) -> dict[str, Any]:
    return {"Quantity": len(items), "Items": items}


# ---------------------------------------------------------------------------
# Origin access control
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OriginAccessControlSpec:
    name: str


@dataclass(frozen=True)
class LiveOriginAccessControl:
    oac_id: str


class OriginAccessControlReconciler(
    Reconciler[OriginAccessControlSpec, LiveOriginAccessControl]
):
    resource_type = ResourceType.DISTRIBUTION
    kind = "origin-access-control"

    def name(self, spec: OriginAccessControlSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("cloudfront", GLOBAL_REGION)

    async def find(self, spec: OriginAccessControlSpec) -> LiveOriginAccessControl | None:
        client = await self._client()
        kwargs: dict[str, Any] = {}
        while True:
            response = await client.list_origin_access_controls(**kwargs)
            listing = response.get("OriginAccessControlList", {})
            for item in listing.get("Items", []):
                if item.get("Name") == spec.name:
                    return LiveOriginAccessControl(oac_id=item["Id"])
            marker = listing.get("NextMarker")
            if not marker:
                return None
            kwargs["Marker"] = marker

    def diff(self, spec: OriginAccessControlSpec, live: LiveOriginAccessControl) -> set[str]:
        return set()

    async def create(self, spec: OriginAccessControlSpec) -> DeploymentResult:
        client = await self._client()
        response = await client.create_origin_access_control(
            OriginAccessControlConfig={
                "Name": spec.name,
                "Description": f"effortless: {spec.name}",
                "SigningProtocol": "sigv4",
                "SigningBehavior": "always",
                "OriginAccessControlOriginType": "s3",
            }
        )
        oac_id = response["OriginAccessControl"]["Id"]
        return result_for(self, oac_id, spec.name, DeploymentStatus.CREATED)

    async def update(
        self, spec: OriginAccessControlSpec, live: LiveOriginAccessControl, changed: set[str]
    ) -> DeploymentResult:
        return self.result(spec, live, DeploymentStatus.UNCHANGED)

    def result(
        self,
        spec: OriginAccessControlSpec,
        live: LiveOriginAccessControl,
        status: DeploymentStatus,
    ) -> DeploymentResult:
        return result_for(self, live.oac_id, spec.name, status)


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Certificate:
    arn: str
    domains: tuple[str, ...]

    def covers(self, domain: str) -> bool:
        if domain in self.domains:
            return True
        parent = domain.split(".", 1)[1] if "." in domain else ""
        return f"*.{parent}" in self.domains


async def find_certificate(clients: AwsClients, domain: str) -> Certificate:
    """
    Find an issued ACM certificate in us-east-1 covering ``domain``.

    Raises:
        ResourceNotFoundError: If no issued certificate covers the domain
    """
    client = await clients.get("acm", GLOBAL_REGION)
    kwargs: dict[str, Any] = {"CertificateStatuses": ["ISSUED"]}
    while True:
        response = await client.list_certificates(**kwargs)
        for summary in response.get("CertificateSummaryList", []):
            names = [summary.get("DomainName", "")]
            names += summary.get("SubjectAlternativeNameSummaries", [])
            certificate = Certificate(arn=summary["CertificateArn"], domains=tuple(names))
            if certificate.covers(domain):
                return certificate
        token = response.get("NextToken")
        if not token:
            break
        kwargs["NextToken"] = token
    raise ResourceNotFoundError("certificate", domain)


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DistributionSpec:
    handler: str
    bucket_name: str
    bucket_region: str
    oac_id: str
    index: str = "index.html"
    spa: bool = False
    aliases: tuple[str, ...] = ()
    certificate_arn: str | None = None
    viewer_function_arn: str | None = None
    api_origin_domain: str | None = None
    route_patterns: tuple[str, ...] = ()
    error_page_path: str | None = None
    comment: str = ""

    @property
    def s3_origin_id(self) -> str:
        return f"S3-{self.bucket_name}"

    @property
    def s3_origin_domain(self) -> str:
        return f"{self.bucket_name}.s3.{self.bucket_region}.amazonaws.com"

    @property
    def has_api_routes(self) -> bool:
        return bool(self.api_origin_domain and self.route_patterns)

    @property
    def api_origin_id(self) -> str:
        return f"API-{self.api_origin_domain}"

    def origins(self) -> list[dict[str, Any]]:
        origins: list[dict[str, Any]] = [
            {
                "Id": self.s3_origin_id,
                "DomainName": self.s3_origin_domain,
                "OriginPath": "",
                "OriginAccessControlId": self.oac_id,
                "S3OriginConfig": {"OriginAccessIdentity": ""},
                "CustomHeaders": EMPTY_LIST,
            }
        ]
        if self.has_api_routes:
            origins.append(
                {
                    "Id": self.api_origin_id,
                    "DomainName": self.api_origin_domain,
                    "OriginPath": "",
                    "ConnectionAttempts": 3,
                    "ConnectionTimeout": 10,
                    "CustomOriginConfig": {
                        "HTTPPort": 80,
                        "HTTPSPort": 443,
                        "OriginProtocolPolicy": "https-only",
                        "OriginSslProtocols": _listing(["TLSv1.2"]),
                        "OriginReadTimeout": 30,
                        "OriginKeepaliveTimeout": 5,
                    },
                    "CustomHeaders": EMPTY_LIST,
                }
            )
        return origins

    def function_associations(self) -> dict[str, Any]:
        if not self.viewer_function_arn:
            return EMPTY_LIST
        return _listing([{"FunctionARN": self.viewer_function_arn, "EventType": "viewer-request"}])

    def default_cache_behavior(self) -> dict[str, Any]:
        return {
            "TargetOriginId": self.s3_origin_id,
            "ViewerProtocolPolicy": "redirect-to-https",
            "AllowedMethods": {
                **_listing(list(CACHED_METHODS)),
                "CachedMethods": _listing(list(CACHED_METHODS)),
            },
            "Compress": True,
            "CachePolicyId": CACHING_OPTIMIZED_POLICY_ID,
            "ResponseHeadersPolicyId": SECURITY_HEADERS_POLICY_ID,
            "FunctionAssociations": self.function_associations(),
            "LambdaFunctionAssociations": EMPTY_LIST,
        }

    def cache_behaviors(self) -> dict[str, Any]:
        if not self.has_api_routes:
            return EMPTY_LIST
        return _listing(
            [
                {
                    "PathPattern": pattern,
                    "TargetOriginId": self.api_origin_id,
                    "ViewerProtocolPolicy": "redirect-to-https",
                    "AllowedMethods": {
                        **_listing(list(API_METHODS)),
                        "CachedMethods": _listing(list(CACHED_METHODS)),
                    },
                    "Compress": True,
                    "SmoothStreaming": False,
                    "CachePolicyId": CACHING_DISABLED_POLICY_ID,
                    "OriginRequestPolicyId": ALL_VIEWER_EXCEPT_HOST_HEADER_POLICY_ID,
                    "FunctionAssociations": EMPTY_LIST,
                    "LambdaFunctionAssociations": EMPTY_LIST,
                    "FieldLevelEncryptionId": "",
                }
                for pattern in self.route_patterns
            ]
        )

    def custom_error_responses(self) -> dict[str, Any]:
        if self.spa:
            code, page = "200", f"/{self.index}"
        elif self.error_page_path:
            code, page = "404", self.error_page_path
        else:
            return EMPTY_LIST
        return _listing(
            [
                {
                    "ErrorCode": error,
                    "ResponseCode": code,
                    "ResponsePagePath": page,
                    "ErrorCachingMinTTL": 0,
                }
                for error in (403, 404)
            ]
        )

    def viewer_certificate(self) -> dict[str, Any] | None:
        if not self.certificate_arn:
            return None
        return {
            "ACMCertificateArn": self.certificate_arn,
            "SSLSupportMethod": "sni-only",
            "MinimumProtocolVersion": "TLSv1.2_2021",
        }

    def apply_to(self, config: dict[str, Any]) -> dict[str, Any]:
        """Overlay the managed fields onto a (possibly live) distribution config."""
        updated = {
            **config,
            "Comment": self.comment,
            "Origins": _listing(self.origins()),
            "DefaultCacheBehavior": self.default_cache_behavior(),
            "CacheBehaviors": self.cache_behaviors(),
            "Aliases": _listing(list(self.aliases)),
            "DefaultRootObject": self.index,
            "CustomErrorResponses": self.custom_error_responses(),
            "Enabled": True,
        }
        certificate = self.viewer_certificate()
        if certificate:
            updated["ViewerCertificate"] = certificate
        return updated

    def new_config(self, caller_reference: str) -> dict[str, Any]:
        return self.apply_to(
            {
                "CallerReference": caller_reference,
                "PriceClass": "PriceClass_All",
                "HttpVersion": "http2and3",
            }
        )


@dataclass(frozen=True)
class LiveDistribution:
    distribution_id: str
    arn: str
    domain_name: str
    etag: str
    config: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)


def _items(listing: dict[str, Any] | None) -> list[Any]:
    return list((listing or {}).get("Items") or [])


def distribution_diff(spec: DistributionSpec, config: dict[str, Any]) -> set[str]:
    """Fields of a live distribution config that differ from the desired one."""
    changed: set[str] = set()
    origins = _items(config.get("Origins"))
    s3_origin = origins[0] if origins else {}
    behavior = config.get("DefaultCacheBehavior", {})

    if s3_origin.get("DomainName") != spec.s3_origin_domain:
        changed.add("origin")
    if s3_origin.get("OriginAccessControlId") != spec.oac_id:
        changed.add("origin_access_control")
    if config.get("DefaultRootObject") != spec.index:
        changed.add("default_root_object")
    if behavior.get("CachePolicyId") != CACHING_OPTIMIZED_POLICY_ID:
        changed.add("cache_policy")
    if behavior.get("ResponseHeadersPolicyId") != SECURITY_HEADERS_POLICY_ID:
        changed.add("response_headers_policy")

    live_functions = [a.get("FunctionARN") for a in _items(behavior.get("FunctionAssociations"))]
    desired_functions = [spec.viewer_function_arn] if spec.viewer_function_arn else []
    if live_functions != desired_functions:
        changed.add("function_associations")

    if sorted(_items(config.get("Aliases"))) != sorted(spec.aliases):
        changed.add("aliases")
    live_cert = (config.get("ViewerCertificate") or {}).get("ACMCertificateArn")
    if live_cert != spec.certificate_arn:
        changed.add("certificate")

    def _error_key(item: dict[str, Any]) -> tuple[int, str, str]:
        return (int(item["ErrorCode"]), str(item.get("ResponseCode")), item.get("ResponsePagePath", ""))

    live_errors = sorted(_error_key(i) for i in _items(config.get("CustomErrorResponses")))
    desired_errors = sorted(_error_key(i) for i in _items(spec.custom_error_responses()))
    if live_errors != desired_errors:
        changed.add("error_responses")

    live_patterns = sorted(b.get("PathPattern") for b in _items(config.get("CacheBehaviors")))
    api_origin_ok = not spec.has_api_routes or any(
        o.get("DomainName") == spec.api_origin_domain for o in origins
    )
    if (
        len(origins) != len(spec.origins())
        or live_patterns != sorted(spec.route_patterns if spec.has_api_routes else ())
        or not api_origin_ok
    ):
        changed.add("route_origins")
    return changed


class DistributionReconciler(Reconciler[DistributionSpec, LiveDistribution]):
    """
    The static-site distribution, discovered through its ownership tags.

    Distributions have provider-generated ids, so lookup goes through the
    tagging API instead of a deterministic name.
    """

    resource_type = ResourceType.DISTRIBUTION

    def __init__(
        self, clients: AwsClients, ctx: TagContext, conflict_retry: RetryPolicy = CONFLICT_RETRY
    ) -> None:
        super().__init__(clients, ctx)
        self.conflict_retry = conflict_retry

    def name(self, spec: DistributionSpec) -> str:
        return f"{self.ctx.project}-{self.ctx.stage}-{spec.handler}"

    async def _client(self) -> Any:
        return await self.clients.get("cloudfront", GLOBAL_REGION)

    async def _tagged_distribution_ids(self, spec: DistributionSpec) -> list[str]:
        tagging = await self.clients.get("resourcegroupstaggingapi", GLOBAL_REGION)
        ids: list[str] = []
        kwargs: dict[str, Any] = {
            "TagFilters": [
                *project_tag_filters(self.ctx.project, self.ctx.stage),
                {"Key": HANDLER_TAG, "Values": [spec.handler]},
            ],
            "ResourceTypeFilters": ["cloudfront:distribution"],
        }
        while True:
            response = await tagging.get_resources(**kwargs)
            for mapping in response.get("ResourceTagMappingList", []):
                ids.append(mapping["ResourceARN"].rsplit("/", 1)[-1])
            token = response.get("PaginationToken")
            if not token:
                return ids
            kwargs["PaginationToken"] = token

    async def find(self, spec: DistributionSpec) -> LiveDistribution | None:
        client = await self._client()
        for distribution_id in await self._tagged_distribution_ids(spec):
            try:
                response = await client.get_distribution(Id=distribution_id)
            except ClientError as e:
                if is_not_found(e):
                    # Tag index entries can outlive the distribution
                    logger.debug("Distribution %s no longer exists, skipping", distribution_id)
                    continue
                raise
            distribution = response["Distribution"]
            config = await client.get_distribution_config(Id=distribution_id)
            tags = await client.list_tags_for_resource(Resource=distribution["ARN"])
            return LiveDistribution(
                distribution_id=distribution_id,
                arn=distribution["ARN"],
                domain_name=distribution["DomainName"],
                etag=config["ETag"],
                config=config["DistributionConfig"],
                tags=from_aws_tag_list(tags.get("Tags", {}).get("Items")),
            )
        return None

    def diff(self, spec: DistributionSpec, live: LiveDistribution) -> set[str]:
        return distribution_diff(spec, live.config)

    async def create(self, spec: DistributionSpec) -> DeploymentResult:
        client = await self._client()
        config = spec.new_config(f"{self.name(spec)}-{int(time.time() * 1000)}")
        tags = {"Items": to_aws_tag_list(self.tags)}
        try:
            response = await client.create_distribution_with_tags(
                DistributionConfigWithTags={"DistributionConfig": config, "Tags": tags}
            )
        except ClientError as e:
            if error_code(e) != "CNAMEAlreadyExists" or not spec.aliases:
                raise
            logger.warning(
                "Domain %s is still associated with another distribution. Creating the "
                "distribution without a custom domain; update DNS and redeploy to attach it.",
                ", ".join(spec.aliases),
            )
            config = {**config, "Aliases": EMPTY_LIST}
            response = await client.create_distribution_with_tags(
                DistributionConfigWithTags={"DistributionConfig": config, "Tags": tags}
            )
        distribution = response["Distribution"]
        return result_for(
            self,
            distribution["ARN"],
            self.name(spec),
            DeploymentStatus.CREATED,
            distribution_id=distribution["Id"],
            domain_name=distribution["DomainName"],
        )

    async def update(
        self, spec: DistributionSpec, live: LiveDistribution, changed: set[str]
    ) -> DeploymentResult:
        client = await self._client()
        etag, config = live.etag, live.config

        async def _update() -> Any:
            return await client.update_distribution(
                Id=live.distribution_id, IfMatch=etag, DistributionConfig=spec.apply_to(config)
            )

        async def _refresh() -> None:
            # A concurrent writer invalidates the ETag; rebase on the current config
            nonlocal etag, config
            response = await client.get_distribution_config(Id=live.distribution_id)
            etag, config = response["ETag"], response["DistributionConfig"]

        await retry_on_conflict(
            _update, self.conflict_retry, self.kind, self.name(spec), before_retry=_refresh
        )
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(
        self, spec: DistributionSpec, live: LiveDistribution, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(
            self,
            live.arn,
            self.name(spec),
            status,
            distribution_id=live.distribution_id,
            domain_name=live.domain_name,
        )

    def live_tags(self, live: LiveDistribution) -> dict[str, str]:
        return live.tags

    async def apply_tags(
        self, spec: DistributionSpec, live: LiveDistribution, tags: dict[str, str]
    ) -> None:
        client = await self._client()
        await client.tag_resource(Resource=live.arn, Tags={"Items": to_aws_tag_list(tags)})


async def invalidate(client: Any, distribution_id: str) -> None:
    logger.debug("Invalidating distribution %s", distribution_id)
    await client.create_invalidation(
        DistributionId=distribution_id,
        InvalidationBatch={
            "CallerReference": str(int(time.time() * 1000)),
            "Paths": _listing(["/*"]),
        },
    )


async def distribution_function_arns(client: Any, distribution_ids: list[str]) -> set[str]:
    """Viewer function ARNs associated with the given distributions."""
    arns: set[str] = set()
    for distribution_id in distribution_ids:
        try:
            response = await client.get_distribution_config(Id=distribution_id)
        except ClientError as e:
            if is_not_found(e):
                continue
            raise
        behavior = response["DistributionConfig"].get("DefaultCacheBehavior", {})
        for association in _items(behavior.get("FunctionAssociations")):
            if association.get("FunctionARN"):
                arns.add(association["FunctionARN"])
    return arns


async def disable_and_delete_distribution(
    client: Any,
    distribution_id: str,
    policy: RetryPolicy = DISTRIBUTION_DEPLOYED,
    conflict_retry: RetryPolicy = CONFLICT_RETRY,
) -> bool:
    """
    Disable a distribution, wait for the change to deploy, then delete it.

    Deleting an enabled (or still deploying) distribution is rejected by
    CloudFront, so the wait is mandatory.

    Returns:
        False when the distribution did not exist
    """
    try:
        response = await client.get_distribution_config(Id=distribution_id)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("Distribution %s not found, skipping", distribution_id)
            return False
        raise

    config = response["DistributionConfig"]
    etag = response["ETag"]
    if config.get("Enabled"):
        logger.info("Disabling distribution %s", distribution_id)

        async def _disable() -> Any:
            return await client.update_distribution(
                Id=distribution_id, IfMatch=etag, DistributionConfig={**config, "Enabled": False}
            )

        async def _refresh() -> None:
            nonlocal etag, config
            current = await client.get_distribution_config(Id=distribution_id)
            etag, config = current["ETag"], current["DistributionConfig"]

        disabled = await retry_on_conflict(
            _disable, conflict_retry, "distribution", distribution_id, before_retry=_refresh
        )
        etag = disabled["ETag"]

    async def settled() -> tuple[bool, str | None]:
        status = (await client.get_distribution(Id=distribution_id))["Distribution"]["Status"]
        return status == "Deployed", status

    await wait_until(settled, policy, f"distribution {distribution_id} to finish deploying")
    await client.delete_distribution(Id=distribution_id, IfMatch=etag)
    logger.info("Deleted distribution %s", distribution_id)
    return True
