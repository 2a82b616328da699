"""Typed snapshots of Kubernetes objects and pod watch events."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .config import CONTAINER_PORT, NAME_LABEL_KEY, OWNER_LABEL_KEY, OWNER_LABEL_VALUE
from .utils import labels_match


@dataclass(frozen=True)
class PodSnapshot:
    """Immutable view of a pod as seen by the watch."""
    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    uid: str = ""
    resource_version: str = ""
    
    def __post_init__(self):
        # Handlers receive the cached snapshot, so its labels must be read-only
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels or {})))
    
    @classmethod
    def from_k8s(cls, pod: Any) -> "PodSnapshot":
        """Create a PodSnapshot from a V1Pod object."""
        metadata = pod.metadata
        
        return cls(
            namespace=metadata.namespace or "",
            name=metadata.name or "",
            labels=metadata.labels or {},
            uid=metadata.uid or "",
            resource_version=metadata.resource_version or "",
        )
    
    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"
    
    def is_owned(self, key: str = OWNER_LABEL_KEY, value: str = OWNER_LABEL_VALUE) -> bool:
        """Check if the pod carries the ownership label."""
        return labels_match(self.labels, {key: value})


@dataclass(frozen=True)
class ServiceSnapshot:
    """Immutable view of a NodePort service exposing a pod."""
    namespace: str
    name: str
    port: int = CONTAINER_PORT
    node_port: Optional[int] = None
    selector: Mapping[str, str] = field(default_factory=dict)
    service_type: str = "NodePort"
    
    def __post_init__(self):
        object.__setattr__(self, "selector", MappingProxyType(dict(self.selector or {})))
    
    @classmethod
    def from_k8s(cls, service: Any) -> "ServiceSnapshot":
        """
        Create a ServiceSnapshot from a V1Service object.
        
        Only the first port of the service is considered.
        """
        metadata = service.metadata
        spec = service.spec
        ports = spec.ports or []
        first = ports[0] if ports else None
        
        return cls(
            namespace=metadata.namespace or "",
            name=metadata.name or "",
            port=first.port if first else CONTAINER_PORT,
            node_port=first.node_port if first else None,
            selector=spec.selector or {},
            service_type=spec.type or "",
        )
    
    def selects(self, pod: PodSnapshot) -> bool:
        """Check if this service routes traffic to the given pod."""
        return (
            self.namespace == pod.namespace
            and self.selector.get(NAME_LABEL_KEY) == pod.name
            and labels_match(pod.labels, self.selector)
        )


class EventType(str, Enum):
    """Kind of change reported by the pod watch."""
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class PodEvent:
    """A pod change notification. DELETED events carry the last-known snapshot."""
    type: EventType
    pod: PodSnapshot
