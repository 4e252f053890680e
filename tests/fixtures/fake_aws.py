"""
In-memory fakes of the IAM, Lambda, API Gateway v2 and CloudFront calls
the pipelines make.

Every fake records its mutating calls, so tests can assert that a deploy
of an unchanged project performs none.
"""

from __future__ import annotations

import json
from typing import Any

from botocore.exceptions import ClientError

from effortless_deploy.reconcilers.function import code_sha256

ACCOUNT = "123456789012"
REGION = "us-east-1"

MUTATING_PREFIXES = (
    "create_",
    "update_",
    "put_",
    "attach_",
    "detach_",
    "tag_",
    "add_",
    "delete_",
    "publish_",
)


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeService:
    """Records every call as ``(service, operation, kwargs)``."""

    service = ""

    def __init__(self, log: list[tuple[str, str, dict[str, Any]]]) -> None:
        self.log = log

    def record(self, operation: str, **kwargs: Any) -> None:
        self.log.append((self.service, operation, kwargs))


class FakeIam(FakeService):
    service = "iam"

    def __init__(self, log: list[tuple[str, str, dict[str, Any]]]) -> None:
        super().__init__(log)
        self.roles: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, dict[str, Any]] = {}
        self.attached: dict[str, list[str]] = {}

    async def get_role(self, RoleName: str) -> dict[str, Any]:
        self.record("get_role", RoleName=RoleName)
        if RoleName not in self.roles:
            raise client_error("NoSuchEntity", "GetRole")
        return {"Role": self.roles[RoleName]}

    async def get_role_policy(self, RoleName: str, PolicyName: str) -> dict[str, Any]:
        self.record("get_role_policy", RoleName=RoleName)
        if RoleName not in self.policies:
            raise client_error("NoSuchEntity", "GetRolePolicy")
        return {"PolicyDocument": self.policies[RoleName]}

    async def create_role(
        self,
        RoleName: str,
        AssumeRolePolicyDocument: str,
        Tags: list[dict[str, str]],
        **kwargs: Any,
    ) -> Any:
        self.record("create_role", RoleName=RoleName)
        self.roles[RoleName] = {
            "Arn": f"arn:aws:iam::{ACCOUNT}:role/{RoleName}",
            "AssumeRolePolicyDocument": json.loads(AssumeRolePolicyDocument),
            "Tags": Tags,
        }
        self.attached[RoleName] = []
        return {"Role": self.roles[RoleName]}

    async def update_assume_role_policy(self, RoleName: str, PolicyDocument: str) -> None:
        self.record("update_assume_role_policy", RoleName=RoleName)
        self.roles[RoleName]["AssumeRolePolicyDocument"] = json.loads(PolicyDocument)

    async def list_attached_role_policies(self, RoleName: str, **kwargs: Any) -> dict[str, Any]:
        self.record("list_attached_role_policies", RoleName=RoleName)
        arns = self.attached.get(RoleName, [])
        return {
            "AttachedPolicies": [{"PolicyArn": arn} for arn in arns],
            "IsTruncated": False,
        }

    async def attach_role_policy(self, RoleName: str, PolicyArn: str) -> None:
        self.record("attach_role_policy", RoleName=RoleName, PolicyArn=PolicyArn)
        self.attached.setdefault(RoleName, []).append(PolicyArn)

    async def detach_role_policy(self, RoleName: str, PolicyArn: str) -> None:
        self.record("detach_role_policy", RoleName=RoleName, PolicyArn=PolicyArn)
        self.attached[RoleName].remove(PolicyArn)

    async def put_role_policy(self, RoleName: str, PolicyName: str, PolicyDocument: str) -> None:
        self.record("put_role_policy", RoleName=RoleName)
        self.policies[RoleName] = json.loads(PolicyDocument)

    async def delete_role_policy(self, RoleName: str, PolicyName: str) -> None:
        self.record("delete_role_policy", RoleName=RoleName)
        self.policies.pop(RoleName, None)

    async def tag_role(self, RoleName: str, Tags: list[dict[str, str]]) -> None:
        self.record("tag_role", RoleName=RoleName)


class FakeLambda(FakeService):
    service = "lambda"

    def __init__(self, log: list[tuple[str, str, dict[str, Any]]]) -> None:
        super().__init__(log)
        self.functions: dict[str, dict[str, Any]] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self.policies: dict[str, list[str]] = {}
        self.mappings: dict[str, dict[str, Any]] = {}
        self.fail_on: set[str] = set()

    @staticmethod
    def _name(function: str) -> str:
        return function.split(":function:", 1)[1] if ":function:" in function else function

    async def get_function(self, FunctionName: str) -> dict[str, Any]:
        self.record("get_function", FunctionName=FunctionName)
        if FunctionName not in self.functions:
            raise client_error("ResourceNotFoundException", "GetFunction")
        return {
            "Configuration": dict(self.functions[FunctionName]),
            "Tags": dict(self.tags[FunctionName]),
        }

    async def get_function_configuration(self, FunctionName: str) -> dict[str, Any]:
        self.record("get_function_configuration", FunctionName=FunctionName)
        return {"State": "Active", "LastUpdateStatus": "Successful"}

    async def create_function(self, **kwargs: Any) -> dict[str, Any]:
        name = kwargs["FunctionName"]
        self.record("create_function", FunctionName=name)
        if name in self.fail_on:
            raise client_error("AccessDeniedException", "CreateFunction", "not allowed")
        config = {
            "FunctionName": name,
            "FunctionArn": f"arn:aws:lambda:{REGION}:{ACCOUNT}:function:{name}",
            "CodeSha256": code_sha256(kwargs["Code"]["ZipFile"]),
            "Runtime": kwargs["Runtime"],
            "Handler": kwargs["Handler"],
            "MemorySize": kwargs["MemorySize"],
            "Timeout": kwargs["Timeout"],
            "Role": kwargs["Role"],
            "Environment": kwargs["Environment"],
            "Layers": [{"Arn": arn} for arn in kwargs.get("Layers", [])],
        }
        self.functions[name] = config
        self.tags[name] = dict(kwargs["Tags"])
        return config

    async def update_function_code(self, FunctionName: str, ZipFile: bytes) -> None:
        self.record("update_function_code", FunctionName=FunctionName)
        self.functions[FunctionName]["CodeSha256"] = code_sha256(ZipFile)

    async def update_function_configuration(self, FunctionName: str, **kwargs: Any) -> None:
        self.record("update_function_configuration", FunctionName=FunctionName, **kwargs)
        config = self.functions[FunctionName]
        if "Layers" in kwargs:
            kwargs["Layers"] = [{"Arn": arn} for arn in kwargs["Layers"]]
        config.update(kwargs)

    async def tag_resource(self, Resource: str, Tags: dict[str, str]) -> None:
        self.record("tag_resource", Resource=Resource)
        self.tags[self._name(Resource)].update(Tags)

    async def get_policy(self, FunctionName: str) -> dict[str, Any]:
        self.record("get_policy", FunctionName=FunctionName)
        sids = self.policies.get(self._name(FunctionName))
        if not sids:
            raise client_error("ResourceNotFoundException", "GetPolicy")
        return {"Policy": json.dumps({"Statement": [{"Sid": sid} for sid in sids]})}

    async def add_permission(self, FunctionName: str, StatementId: str, **kwargs: Any) -> None:
        self.record("add_permission", FunctionName=FunctionName, StatementId=StatementId)
        self.policies.setdefault(self._name(FunctionName), []).append(StatementId)

    async def list_event_source_mappings(
        self, FunctionName: str, EventSourceArn: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        self.record("list_event_source_mappings", FunctionName=FunctionName)
        name = self._name(FunctionName)
        return {
            "EventSourceMappings": [
                dict(m)
                for m in self.mappings.values()
                if m["FunctionName"] == name
                and (EventSourceArn is None or m["EventSourceArn"] == EventSourceArn)
            ]
        }

    async def create_event_source_mapping(
        self, FunctionName: str, EventSourceArn: str, Enabled: bool = True, **kwargs: Any
    ) -> dict[str, Any]:
        self.record(
            "create_event_source_mapping", FunctionName=FunctionName, EventSourceArn=EventSourceArn
        )
        uuid = f"esm-{len(self.mappings) + 1:04d}"
        self.mappings[uuid] = {
            "UUID": uuid,
            "FunctionName": self._name(FunctionName),
            "EventSourceArn": EventSourceArn,
            "BatchSize": kwargs.get("BatchSize"),
            "MaximumBatchingWindowInSeconds": kwargs.get("MaximumBatchingWindowInSeconds", 0),
            "StartingPosition": kwargs.get("StartingPosition"),
            "State": "Enabled" if Enabled else "Disabled",
        }
        return dict(self.mappings[uuid])

    async def update_event_source_mapping(
        self, UUID: str, Enabled: bool = True, **kwargs: Any
    ) -> None:
        self.record("update_event_source_mapping", UUID=UUID, **kwargs)
        self.mappings[UUID].update(kwargs, State="Enabled" if Enabled else "Disabled")

    async def delete_event_source_mapping(self, UUID: str) -> None:
        self.record("delete_event_source_mapping", UUID=UUID)
        del self.mappings[UUID]


class FakeApiGateway(FakeService):
    service = "apigatewayv2"

    def __init__(self, log: list[tuple[str, str, dict[str, Any]]]) -> None:
        super().__init__(log)
        self.apis: list[dict[str, Any]] = []
        self.routes: dict[str, list[dict[str, Any]]] = {}
        self.integrations: dict[str, list[dict[str, Any]]] = {}
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}{self._ids:04d}"

    async def get_apis(self, **kwargs: Any) -> dict[str, Any]:
        self.record("get_apis")
        return {"Items": [dict(api) for api in self.apis]}

    async def create_api(
        self, Name: str, CorsConfiguration: dict[str, Any], Tags: dict[str, str], **kwargs: Any
    ) -> Any:
        self.record("create_api", Name=Name)
        api_id = self._next_id("api")
        api = {
            "ApiId": api_id,
            "Name": Name,
            "ApiEndpoint": f"https://{api_id}.execute-api.{REGION}.amazonaws.com",
            "CorsConfiguration": CorsConfiguration,
            "Tags": dict(Tags),
        }
        self.apis.append(api)
        self.routes[api_id] = []
        self.integrations[api_id] = []
        return dict(api)

    async def create_stage(self, ApiId: str, StageName: str, AutoDeploy: bool) -> None:
        self.record("create_stage", ApiId=ApiId)

    async def update_api(self, ApiId: str, **kwargs: Any) -> None:
        self.record("update_api", ApiId=ApiId)

    async def tag_resource(self, ResourceArn: str, Tags: dict[str, str]) -> None:
        self.record("tag_resource", ResourceArn=ResourceArn)

    async def get_routes(self, ApiId: str, **kwargs: Any) -> dict[str, Any]:
        self.record("get_routes", ApiId=ApiId)
        return {"Items": [dict(route) for route in self.routes[ApiId]]}

    async def get_integrations(self, ApiId: str, **kwargs: Any) -> dict[str, Any]:
        self.record("get_integrations", ApiId=ApiId)
        return {"Items": [dict(i) for i in self.integrations[ApiId]]}

    async def create_integration(self, ApiId: str, IntegrationUri: str, **kwargs: Any) -> Any:
        self.record("create_integration", ApiId=ApiId)
        integration = {"IntegrationId": self._next_id("int"), "IntegrationUri": IntegrationUri}
        self.integrations[ApiId].append(integration)
        return integration

    async def create_route(self, ApiId: str, RouteKey: str, Target: str) -> Any:
        self.record("create_route", ApiId=ApiId, RouteKey=RouteKey)
        route = {"RouteId": self._next_id("rt"), "RouteKey": RouteKey, "Target": Target}
        self.routes[ApiId].append(route)
        return route

    async def update_route(self, ApiId: str, RouteId: str, Target: str) -> None:
        self.record("update_route", ApiId=ApiId, RouteId=RouteId)
        for route in self.routes[ApiId]:
            if route["RouteId"] == RouteId:
                route["Target"] = Target

    async def delete_route(self, ApiId: str, RouteId: str) -> None:
        self.record("delete_route", ApiId=ApiId, RouteId=RouteId)
        self.routes[ApiId] = [r for r in self.routes[ApiId] if r["RouteId"] != RouteId]


class FakeCloudFront(FakeService):
    service = "cloudfront"

    def __init__(self, log: list[tuple[str, str, dict[str, Any]]]) -> None:
        super().__init__(log)
        self.access_controls: list[dict[str, Any]] = []
        self.functions: dict[str, dict[str, Any]] = {}
        self.distributions: dict[str, dict[str, Any]] = {}
        self.invalidations: list[str] = []
        self.fail_next: list[ClientError] = []
        self._etags = 0

    def _etag(self) -> str:
        self._etags += 1
        return f"E{self._etags:04d}"

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def list_origin_access_controls(self, **kwargs: Any) -> dict[str, Any]:
        self.record("list_origin_access_controls")
        return {"OriginAccessControlList": {"Items": [dict(o) for o in self.access_controls]}}

    async def create_origin_access_control(self, OriginAccessControlConfig: dict[str, Any]) -> Any:
        name = OriginAccessControlConfig["Name"]
        self.record("create_origin_access_control", Name=name)
        item = {"Id": f"OAC{len(self.access_controls) + 1}", "Name": name}
        self.access_controls.append(item)
        return {"OriginAccessControl": dict(item)}

    # Viewer functions

    async def list_functions(self, **kwargs: Any) -> dict[str, Any]:
        self.record("list_functions")
        items = [
            {"Name": name, "FunctionMetadata": {"FunctionARN": f["arn"]}}
            for name, f in self.functions.items()
        ]
        return {"FunctionList": {"Items": items}}

    async def get_function(self, Name: str, Stage: str) -> dict[str, Any]:
        self.record("get_function", Name=Name, Stage=Stage)
        function = self.functions.get(Name)
        code = None
        if function is not None:
            code = function["live"] if Stage == "LIVE" else function["development"]
        if function is None or code is None:
            raise client_error("NoSuchFunctionExists", "GetFunction")
        return {"FunctionCode": code, "ETag": function["etag"]}

    async def describe_function(self, Name: str, **kwargs: Any) -> dict[str, Any]:
        self.record("describe_function", Name=Name)
        return {"ETag": self.functions[Name]["etag"]}

    async def create_function(
        self, Name: str, FunctionConfig: dict[str, Any], FunctionCode: bytes
    ) -> dict[str, Any]:
        self.record("create_function", Name=Name)
        arn = f"arn:aws:cloudfront::{ACCOUNT}:function/{Name}"
        self.functions[Name] = {
            "arn": arn,
            "development": FunctionCode,
            "live": None,
            "etag": self._etag(),
        }
        return {
            "ETag": self.functions[Name]["etag"],
            "FunctionSummary": {"FunctionMetadata": {"FunctionARN": arn}},
        }

    async def update_function(
        self, Name: str, IfMatch: str, FunctionCode: bytes, **kwargs: Any
    ) -> Any:
        self.record("update_function", Name=Name)
        function = self.functions[Name]
        function.update(development=FunctionCode, etag=self._etag())
        return {"ETag": function["etag"]}

    async def publish_function(self, Name: str, IfMatch: str) -> None:
        self.record("publish_function", Name=Name)
        function = self.functions[Name]
        function["live"] = function["development"]

    async def delete_function(self, Name: str, IfMatch: str) -> None:
        self.record("delete_function", Name=Name)
        del self.functions[Name]

    # Distributions

    async def create_distribution_with_tags(
        self, DistributionConfigWithTags: dict[str, Any]
    ) -> Any:
        self.record("create_distribution_with_tags")
        config = DistributionConfigWithTags
        distribution_id = f"EDIST{len(self.distributions) + 1}"
        distribution = {
            "Id": distribution_id,
            "ARN": f"arn:aws:cloudfront::{ACCOUNT}:distribution/{distribution_id}",
            "DomainName": f"d{len(self.distributions) + 1}.cloudfront.net",
            "Status": "Deployed",
            "config": config["DistributionConfig"],
            "tags": {t["Key"]: t["Value"] for t in config["Tags"]["Items"]},
            "etag": self._etag(),
        }
        self.distributions[distribution_id] = distribution
        return {"Distribution": self._summary(distribution)}

    @staticmethod
    def _summary(distribution: dict[str, Any]) -> dict[str, Any]:
        return {k: distribution[k] for k in ("Id", "ARN", "DomainName", "Status")}

    def _distribution(self, distribution_id: str, operation: str) -> dict[str, Any]:
        if distribution_id not in self.distributions:
            raise client_error("NoSuchDistribution", operation)
        return self.distributions[distribution_id]

    async def get_distribution(self, Id: str) -> dict[str, Any]:
        self.record("get_distribution", Id=Id)
        return {"Distribution": self._summary(self._distribution(Id, "GetDistribution"))}

    async def get_distribution_config(self, Id: str) -> dict[str, Any]:
        self.record("get_distribution_config", Id=Id)
        distribution = self._distribution(Id, "GetDistributionConfig")
        return {
            "ETag": distribution["etag"],
            "DistributionConfig": json.loads(json.dumps(distribution["config"])),
        }

    async def update_distribution(
        self, Id: str, IfMatch: str, DistributionConfig: dict[str, Any]
    ) -> dict[str, Any]:
        self.record("update_distribution", Id=Id, IfMatch=IfMatch)
        self._maybe_fail()
        distribution = self._distribution(Id, "UpdateDistribution")
        if IfMatch != distribution["etag"]:
            raise client_error("PreconditionFailed", "UpdateDistribution")
        distribution.update(config=DistributionConfig, etag=self._etag())
        return {"ETag": distribution["etag"]}

    async def delete_distribution(self, Id: str, IfMatch: str) -> None:
        self.record("delete_distribution", Id=Id, IfMatch=IfMatch)
        distribution = self._distribution(Id, "DeleteDistribution")
        if distribution["config"].get("Enabled"):
            raise client_error("DistributionNotDisabled", "DeleteDistribution")
        if IfMatch != distribution["etag"]:
            raise client_error("PreconditionFailed", "DeleteDistribution")
        del self.distributions[Id]

    async def list_tags_for_resource(self, Resource: str) -> dict[str, Any]:
        self.record("list_tags_for_resource", Resource=Resource)
        distribution = self._distribution(Resource.rsplit("/", 1)[-1], "ListTagsForResource")
        items = [{"Key": k, "Value": v} for k, v in distribution["tags"].items()]
        return {"Tags": {"Items": items}}

    async def tag_resource(self, Resource: str, Tags: dict[str, Any]) -> None:
        self.record("tag_resource", Resource=Resource)
        distribution = self._distribution(Resource.rsplit("/", 1)[-1], "TagResource")
        distribution["tags"].update({t["Key"]: t["Value"] for t in Tags["Items"]})

    async def create_invalidation(
        self, DistributionId: str, InvalidationBatch: dict[str, Any]
    ) -> None:
        self.record("create_invalidation", DistributionId=DistributionId)
        self.invalidations.append(DistributionId)


class FakeTagging(FakeService):
    """Tag index over the fake CloudFront distributions."""

    service = "resourcegroupstaggingapi"

    def __init__(
        self, log: list[tuple[str, str, dict[str, Any]]], cloudfront: FakeCloudFront
    ) -> None:
        super().__init__(log)
        self.cloudfront = cloudfront

    async def get_resources(
        self, TagFilters: list[dict[str, Any]], **kwargs: Any
    ) -> dict[str, Any]:
        self.record("get_resources")
        mappings = []
        for distribution in self.cloudfront.distributions.values():
            tags = distribution["tags"]
            if all(tags.get(f["Key"]) in f["Values"] for f in TagFilters):
                mappings.append(
                    {
                        "ResourceARN": distribution["ARN"],
                        "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                    }
                )
        return {"ResourceTagMappingList": mappings}


class FakeAws:
    """
    Stands in for AwsClients with the fake services above.

    Services without a fake (S3, DynamoDB, SQS) are served by ``fallback``,
    typically the moto-backed clients.
    """

    def __init__(self, region: str = REGION, fallback: Any = None) -> None:
        self.region = region
        self.fallback = fallback
        self.log: list[tuple[str, str, dict[str, Any]]] = []
        cloudfront = FakeCloudFront(self.log)
        self.services: dict[str, FakeService] = {
            "iam": FakeIam(self.log),
            "lambda": FakeLambda(self.log),
            "apigatewayv2": FakeApiGateway(self.log),
            "cloudfront": cloudfront,
            "resourcegroupstaggingapi": FakeTagging(self.log, cloudfront),
        }

    @property
    def iam(self) -> FakeIam:
        return self.services["iam"]  # type: ignore[return-value]

    @property
    def lambda_(self) -> FakeLambda:
        return self.services["lambda"]  # type: ignore[return-value]

    @property
    def apigateway(self) -> FakeApiGateway:
        return self.services["apigatewayv2"]  # type: ignore[return-value]

    @property
    def cloudfront(self) -> FakeCloudFront:
        return self.services["cloudfront"]  # type: ignore[return-value]

    async def get(self, service: str, region: str | None = None) -> Any:
        if service not in self.services and self.fallback is not None:
            return await self.fallback.get(service, region)
        return self.services[service]

    async def resolved_region(self) -> str:
        return self.region

    def mutations(self) -> list[tuple[str, str]]:
        return [
            (service, operation)
            for service, operation, _ in self.log
            if operation.startswith(MUTATING_PREFIXES)
        ]

    def reset_log(self) -> None:
        self.log.clear()
