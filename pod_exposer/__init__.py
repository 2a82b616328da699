"""Pod Exposer - exposes labelled pods through NodePort services."""

from .errors import (
    AlreadyExistsError,
    NotFoundError,
    PodExposerError,
    RemoteError,
    SyncTimeoutError,
    WatchClosedError,
)
from .models import EventType, PodEvent, PodSnapshot, ServiceSnapshot
from .reconciler import PodExposer, PodState
from .resource_client import KubernetesResourceClient, ResourceClient
from .watch import PodWatch

__all__ = [
    "AlreadyExistsError",
    "EventType",
    "KubernetesResourceClient",
    "NotFoundError",
    "PodEvent",
    "PodExposer",
    "PodExposerError",
    "PodSnapshot",
    "PodState",
    "PodWatch",
    "RemoteError",
    "ResourceClient",
    "ServiceSnapshot",
    "SyncTimeoutError",
    "WatchClosedError",
]
