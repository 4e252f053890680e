"""
effortless-deploy: tag-driven deployment of serverless handlers to AWS.

Handlers declared in ``effortless.yaml`` are reconciled into live cloud
resources. Every resource carries ownership tags, so a repeated deploy of
an unchanged project performs no mutating calls and cleanup can find what
a stage owns without a state file.

Example:
    from effortless_deploy import AwsClients, ProjectDeployer, ProjectManifest

    manifest = ProjectManifest.load("effortless.yaml", stage="dev")
    async with AwsClients(manifest.region) as clients:
        deployer = ProjectDeployer(clients, manifest.project, manifest.stage, root=manifest.root)
        summary = await deployer.deploy_project(manifest.handlers)
"""

from .clients import AwsClients
from .config import ProjectManifest
from .exceptions import (
    BuildCommandError,
    DeploymentError,
    EffortlessError,
    InfrastructureError,
    PermissionDeniedError,
    QuotaExceededError,
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationError,
    WaitTimeoutError,
)
from .handlers import (
    AppHandler,
    BucketHandler,
    FunctionOptions,
    HandlerKind,
    HandlerSpec,
    HttpHandler,
    MailerHandler,
    QueueHandler,
    StaticSiteHandler,
    TableHandler,
)
from .inventory import ResourceInventory, find_orphans, group_by_handler
from .layer_builder import LayerBuilder, compute_content_hash
from .models import (
    CleanupReport,
    DeploymentResult,
    DeploymentStatus,
    HandlerDeployment,
    HandlerFailure,
    LayerManifest,
    ProjectDeploymentSummary,
    TaggedResource,
)
from .orchestrator import ProjectDeployer
from .pipeline import HandlerPipeline
from .tags import TagContext

__version__ = "0.4.0"

__all__ = [
    "__version__",
    "AwsClients",
    "ProjectManifest",
    "ProjectDeployer",
    "HandlerPipeline",
    "LayerBuilder",
    "compute_content_hash",
    "ResourceInventory",
    "find_orphans",
    "group_by_handler",
    "TagContext",
    # Handlers
    "HandlerKind",
    "HandlerSpec",
    "FunctionOptions",
    "HttpHandler",
    "TableHandler",
    "QueueHandler",
    "BucketHandler",
    "MailerHandler",
    "StaticSiteHandler",
    "AppHandler",
    # Results
    "CleanupReport",
    "DeploymentResult",
    "DeploymentStatus",
    "HandlerDeployment",
    "HandlerFailure",
    "LayerManifest",
    "ProjectDeploymentSummary",
    "TaggedResource",
    # Exceptions
    "EffortlessError",
    "InfrastructureError",
    "DeploymentError",
    "BuildCommandError",
    "ValidationError",
    "ResourceNotFoundError",
    "ResourceConflictError",
    "WaitTimeoutError",
    "PermissionDeniedError",
    "QuotaExceededError",
]
