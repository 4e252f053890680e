"""Per-resource-kind reconcilers."""

from .base import Reconciler
from .bucket import BucketNotificationReconciler, BucketReconciler, BucketSpec, NotificationSpec
from .distribution import (
    DistributionReconciler,
    DistributionSpec,
    OriginAccessControlReconciler,
    OriginAccessControlSpec,
)
from .edge_function import ViewerFunctionReconciler, ViewerFunctionSpec
from .event_source import EventSourceMappingReconciler, EventSourceSpec
from .function import FunctionReconciler, FunctionSpec
from .layer import LayerReconciler, LayerSpec
from .mail import MailIdentityReconciler, MailIdentitySpec
from .queue import QueueReconciler, QueueSpec
from .role import RoleReconciler, RoleSpec
from .routes import ApiSpec, RouteCollectionReconciler, RouteReconciler, RouteSpec
from .table import TableReconciler, TableSpec

__all__ = [
    "Reconciler",
    "ApiSpec",
    "BucketNotificationReconciler",
    "BucketReconciler",
    "BucketSpec",
    "DistributionReconciler",
    "DistributionSpec",
    "EventSourceMappingReconciler",
    "EventSourceSpec",
    "FunctionReconciler",
    "FunctionSpec",
    "LayerReconciler",
    "LayerSpec",
    "MailIdentityReconciler",
    "MailIdentitySpec",
    "NotificationSpec",
    "OriginAccessControlReconciler",
    "OriginAccessControlSpec",
    "QueueReconciler",
    "QueueSpec",
    "RoleReconciler",
    "RoleSpec",
    "RouteCollectionReconciler",
    "RouteReconciler",
    "RouteSpec",
    "TableReconciler",
    "TableSpec",
    "ViewerFunctionReconciler",
    "ViewerFunctionSpec",
]
