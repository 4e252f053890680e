"""S3 bucket reconciler, bucket notifications and static file sync."""

from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from ..exceptions import error_code, is_not_found
from ..models import DeploymentResult, DeploymentStatus
from ..tags import ResourceType, from_aws_tag_list, to_aws_tag_list
from .base import Reconciler, result_for
from .function import account_from_arn, ensure_invoke_permission, permission_statement_ids

logger = logging.getLogger(__name__)

PUBLIC_ACCESS_BLOCK = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}

DELETE_BATCH_SIZE = 1000

HTML_CACHE_CONTROL = "public, max-age=0, must-revalidate"
ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class BucketSpec:
    name: str
    region: str


@dataclass(frozen=True)
class LiveBucket:
    name: str
    public_access_block: dict[str, bool] | None
    tags: dict[str, str]

    @property
    def arn(self) -> str:
        return f"arn:aws:s3:::{self.name}"


class BucketReconciler(Reconciler[BucketSpec, LiveBucket]):
    """Private bucket with every public access path blocked."""

    resource_type = ResourceType.BUCKET

    def name(self, spec: BucketSpec) -> str:
        return spec.name

    async def _client(self) -> Any:
        return await self.clients.get("s3")

    async def find(self, spec: BucketSpec) -> LiveBucket | None:
        client = await self._client()
        try:
            await client.head_bucket(Bucket=spec.name)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        block: dict[str, bool] | None = None
        try:
            response = await client.get_public_access_block(Bucket=spec.name)
            block = response.get("PublicAccessBlockConfiguration")
        except ClientError as e:
            if error_code(e) != "NoSuchPublicAccessBlockConfiguration":
                raise

        try:
            tagging = await client.get_bucket_tagging(Bucket=spec.name)
            tags = from_aws_tag_list(tagging.get("TagSet"))
        except ClientError as e:
            if not is_not_found(e):
                raise
            tags = {}

        return LiveBucket(name=spec.name, public_access_block=block, tags=tags)

    def diff(self, spec: BucketSpec, live: LiveBucket) -> set[str]:
        if live.public_access_block != PUBLIC_ACCESS_BLOCK:
            return {"public_access_block"}
        return set()

    async def create(self, spec: BucketSpec) -> DeploymentResult:
        client = await self._client()
        params: dict[str, Any] = {"Bucket": spec.name}
        # us-east-1 rejects an explicit location constraint
        if spec.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": spec.region}
        await client.create_bucket(**params)
        await client.put_public_access_block(
            Bucket=spec.name, PublicAccessBlockConfiguration=PUBLIC_ACCESS_BLOCK
        )
        await client.put_bucket_tagging(
            Bucket=spec.name, Tagging={"TagSet": to_aws_tag_list(self.tags)}
        )
        return result_for(
            self, f"arn:aws:s3:::{spec.name}", spec.name, DeploymentStatus.CREATED
        )

    async def update(self, spec: BucketSpec, live: LiveBucket, changed: set[str]) -> DeploymentResult:
        client = await self._client()
        await client.put_public_access_block(
            Bucket=spec.name, PublicAccessBlockConfiguration=PUBLIC_ACCESS_BLOCK
        )
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(self, spec: BucketSpec, live: LiveBucket, status: DeploymentStatus) -> DeploymentResult:
        return result_for(self, live.arn, spec.name, status)

    def live_tags(self, live: LiveBucket) -> dict[str, str]:
        return live.tags

    async def apply_tags(self, spec: BucketSpec, live: LiveBucket, tags: dict[str, str]) -> None:
        # put_bucket_tagging replaces the whole set, so merge with foreign tags
        client = await self._client()
        merged = {**live.tags, **tags}
        await client.put_bucket_tagging(
            Bucket=spec.name, Tagging={"TagSet": to_aws_tag_list(merged)}
        )


# ---------------------------------------------------------------------------
# Bucket -> function notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotificationSpec:
    bucket: str
    function_arn: str
    events: tuple[str, ...]
    prefix: str | None = None
    suffix: str | None = None

    @property
    def statement_id(self) -> str:
        return f"s3-{self.bucket}"

    @property
    def filter_rules(self) -> list[dict[str, str]]:
        rules = []
        if self.prefix:
            rules.append({"Name": "prefix", "Value": self.prefix})
        if self.suffix:
            rules.append({"Name": "suffix", "Value": self.suffix})
        return rules

    def configuration(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "LambdaFunctionArn": self.function_arn,
            "Events": list(self.events),
        }
        if self.filter_rules:
            config["Filter"] = {"Key": {"FilterRules": self.filter_rules}}
        return config


@dataclass(frozen=True)
class LiveNotification:
    configuration: dict[str, Any]
    others: list[dict[str, Any]]
    has_permission: bool


def _normalize_rules(config: dict[str, Any]) -> list[tuple[str, str]]:
    rules = config.get("Filter", {}).get("Key", {}).get("FilterRules", [])
    return sorted((r["Name"].lower(), r["Value"]) for r in rules)


class BucketNotificationReconciler(Reconciler[NotificationSpec, LiveNotification]):
    """Wire bucket events to a function (invoke permission first)."""

    resource_type = ResourceType.BUCKET
    kind = "bucket-notification"

    def name(self, spec: NotificationSpec) -> str:
        return f"{spec.bucket} -> {spec.function_arn.rsplit(':', 1)[-1]}"

    async def _existing_configurations(self, spec: NotificationSpec) -> list[dict[str, Any]]:
        s3 = await self.clients.get("s3")
        response = await s3.get_bucket_notification_configuration(Bucket=spec.bucket)
        return list(response.get("LambdaFunctionConfigurations", []))

    async def find(self, spec: NotificationSpec) -> LiveNotification | None:
        configurations = await self._existing_configurations(spec)
        ours = [c for c in configurations if c.get("LambdaFunctionArn") == spec.function_arn]
        if not ours:
            return None
        lambda_client = await self.clients.get("lambda")
        sids = await permission_statement_ids(lambda_client, spec.function_arn)
        others = [c for c in configurations if c.get("LambdaFunctionArn") != spec.function_arn]
        return LiveNotification(
            configuration=ours[0], others=others, has_permission=spec.statement_id in sids
        )

    def diff(self, spec: NotificationSpec, live: LiveNotification) -> set[str]:
        changed: set[str] = set()
        if sorted(live.configuration.get("Events", [])) != sorted(spec.events):
            changed.add("events")
        if _normalize_rules(live.configuration) != _normalize_rules(spec.configuration()):
            changed.add("filter")
        if not live.has_permission:
            changed.add("permission")
        return changed

    async def _apply(self, spec: NotificationSpec, others: list[dict[str, Any]]) -> None:
        lambda_client = await self.clients.get("lambda")
        await ensure_invoke_permission(
            lambda_client,
            spec.function_arn,
            spec.statement_id,
            "s3.amazonaws.com",
            f"arn:aws:s3:::{spec.bucket}",
            source_account=account_from_arn(spec.function_arn),
        )
        s3 = await self.clients.get("s3")
        await s3.put_bucket_notification_configuration(
            Bucket=spec.bucket,
            NotificationConfiguration={
                "LambdaFunctionConfigurations": [*others, spec.configuration()],
            },
        )

    async def create(self, spec: NotificationSpec) -> DeploymentResult:
        configurations = await self._existing_configurations(spec)
        await self._apply(spec, configurations)
        return result_for(self, spec.bucket, self.name(spec), DeploymentStatus.CREATED)

    async def update(
        self, spec: NotificationSpec, live: LiveNotification, changed: set[str]
    ) -> DeploymentResult:
        await self._apply(spec, live.others)
        return self.result(spec, live, DeploymentStatus.UPDATED)

    def result(
        self, spec: NotificationSpec, live: LiveNotification, status: DeploymentStatus
    ) -> DeploymentResult:
        return result_for(self, spec.bucket, self.name(spec), status)


# ---------------------------------------------------------------------------
# Static content
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    uploaded: int = 0
    deleted: int = 0
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.deleted)


async def list_object_etags(client: Any, bucket: str) -> dict[str, str]:
    etags: dict[str, str] = {}
    kwargs: dict[str, Any] = {"Bucket": bucket}
    while True:
        response = await client.list_objects_v2(**kwargs)
        for obj in response.get("Contents", []):
            etags[obj["Key"]] = obj["ETag"]
        if not response.get("IsTruncated"):
            return etags
        kwargs["ContinuationToken"] = response["NextContinuationToken"]


def content_type_for(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or "application/octet-stream"


def cache_control_for(key: str) -> str:
    if key.lower().endswith((".html", ".htm")):
        return HTML_CACHE_CONTROL
    return ASSET_CACHE_CONTROL


async def sync_directory(
    client: Any,
    bucket: str,
    source_dir: Path,
    extra_files: dict[str, bytes] | None = None,
) -> SyncResult:
    """
    Mirror ``source_dir`` into ``bucket``.

    Uploads only files whose MD5 differs from the object's ETag and
    deletes objects with no local counterpart.
    """
    existing = await list_object_etags(client, bucket)
    local: dict[str, bytes] = {}
    for path in sorted(source_dir.rglob("*")):
        if path.is_file():
            local[path.relative_to(source_dir).as_posix()] = path.read_bytes()
    for key, content in (extra_files or {}).items():
        local.setdefault(key, content)

    result = SyncResult()
    for key, content in local.items():
        etag = f'"{hashlib.md5(content).hexdigest()}"'
        if existing.get(key) == etag:
            result.unchanged += 1
            continue
        await client.put_object(
            Bucket=bucket,
            Key=key,
            Body=content,
            ContentType=content_type_for(key),
            CacheControl=cache_control_for(key),
        )
        result.uploaded += 1

    stale = [key for key in existing if key not in local]
    for start in range(0, len(stale), DELETE_BATCH_SIZE):
        batch = stale[start : start + DELETE_BATCH_SIZE]
        await client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
        )
        result.deleted += len(batch)

    logger.debug(
        "S3 sync %s: %d uploaded, %d deleted, %d unchanged",
        bucket,
        result.uploaded,
        result.deleted,
        result.unchanged,
    )
    return result


def distribution_read_policy(bucket: str, distribution_arn: str) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AllowCloudFrontServicePrincipalReadOnly",
                "Effect": "Allow",
                "Principal": {"Service": "cloudfront.amazonaws.com"},
                "Action": "s3:GetObject",
                "Resource": f"arn:aws:s3:::{bucket}/*",
                "Condition": {"StringEquals": {"AWS:SourceArn": distribution_arn}},
            }
        ],
    }


async def ensure_bucket_policy(client: Any, bucket: str, policy: dict[str, Any]) -> bool:
    """Write ``policy`` unless the bucket already carries it. Returns True on write."""
    try:
        response = await client.get_bucket_policy(Bucket=bucket)
        if json.loads(response["Policy"]) == policy:
            return False
    except ClientError as e:
        if not is_not_found(e):
            raise
    await client.put_bucket_policy(Bucket=bucket, Policy=json.dumps(policy))
    return True


async def empty_bucket(client: Any, bucket: str) -> None:
    keys = list(await list_object_etags(client, bucket))
    for start in range(0, len(keys), DELETE_BATCH_SIZE):
        batch = keys[start : start + DELETE_BATCH_SIZE]
        await client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
        )


async def delete_bucket(client: Any, bucket: str) -> bool:
    try:
        await empty_bucket(client, bucket)
        await client.delete_bucket(Bucket=bucket)
    except ClientError as e:
        if is_not_found(e):
            logger.debug("Bucket %s not found, skipping", bucket)
            return False
        raise
    logger.info("Deleted bucket %s", bucket)
    return True
