"""Reconciliation logic exposing owned pods through NodePort services."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .config import DEFAULT_NODE_PORT, OWNER_LABEL_KEY, OWNER_LABEL_VALUE
from .errors import AlreadyExistsError, NotFoundError, RemoteError
from .models import PodSnapshot, ServiceSnapshot
from .resource_client import ResourceClient
from .utils import pod_key

logger = logging.getLogger(__name__)


class PodState(str, Enum):
    """
    Reconciliation state of a single pod.
    
    Deleted pods are forgotten and read back as UNSEEN; REMOVED is only
    reported in the result of the delete.
    """
    UNSEEN = "Unseen"
    EXPOSED = "Exposed"
    REMOVED = "Removed"


class PodExposer:
    """Creates a service for every owned pod and deletes it with the pod."""
    
    def __init__(
        self,
        resource_client: ResourceClient,
        node_port: int = DEFAULT_NODE_PORT,
        owner_label_key: str = OWNER_LABEL_KEY,
        owner_label_value: str = OWNER_LABEL_VALUE,
    ):
        """
        Initialize the reconciler.
        
        Args:
            resource_client: Client used to create and delete services
            node_port: Node port requested for every exposed pod
            owner_label_key: Label marking pods managed by this reconciler
            owner_label_value: Required value of the ownership label
        """
        self.resource_client = resource_client
        self.node_port = node_port
        self.owner_label_key = owner_label_key
        self.owner_label_value = owner_label_value
        
        self._states: Dict[str, PodState] = {}
        self._node_ports: Dict[str, int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._guard = threading.Lock()
    
    def register(self, watch) -> None:
        """Subscribe the reconciler to a PodWatch."""
        watch.subscribe(
            on_added=self.on_added,
            on_updated=self.on_updated,
            on_deleted=self.on_deleted,
        )
    
    def is_owned(self, pod: PodSnapshot) -> bool:
        return pod.is_owned(self.owner_label_key, self.owner_label_value)
    
    def state_of(self, namespace: str, name: str) -> PodState:
        """Get the reconciliation state of a pod."""
        with self._guard:
            return self._states.get(pod_key(namespace, name), PodState.UNSEEN)
    
    def node_port_of(self, namespace: str, name: str) -> Optional[int]:
        """Get the node port allocated for an exposed pod, if known."""
        with self._guard:
            return self._node_ports.get(pod_key(namespace, name))
    
    @contextmanager
    def _serialized(self, key: str):
        """Hold the per-pod lock, dropping it once no caller uses it."""
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    del self._lock_users[key]
                    del self._locks[key]
    
    def _set_state(self, key: str, state: PodState) -> None:
        with self._guard:
            self._states[key] = state
    
    def on_added(self, pod: PodSnapshot) -> Optional[Dict[str, Any]]:
        """
        Handle a pod ADDED event.
        
        Args:
            pod: The added pod
        
        Returns:
            Result dict with status info, or None if the pod is not owned
        """
        if not self.is_owned(pod):
            return None
        
        with self._serialized(pod.key):
            return self._expose(pod)
    
    def on_updated(self, pod: PodSnapshot) -> Optional[Dict[str, Any]]:
        """
        Handle a pod UPDATED event.
        
        Owned pods that are not exposed yet (for example after a failed
        attempt) are exposed as if they had just been added.
        """
        if not self.is_owned(pod):
            return None
        
        with self._serialized(pod.key):
            if self.state_of(pod.namespace, pod.name) == PodState.EXPOSED:
                return None
            logger.info(f"Pod {pod.key} is not exposed yet, retrying")
            return self._expose(pod)
    
    def on_deleted(self, pod: PodSnapshot) -> Optional[Dict[str, Any]]:
        """
        Handle a pod DELETED event by deleting its paired service.
        
        Args:
            pod: Last known state of the deleted pod
        
        Returns:
            Result dict with status info, or None if the pod is not owned
        """
        if not self.is_owned(pod):
            return None
        
        with self._serialized(pod.key):
            result = self._new_result(pod, "delete-service")
            
            try:
                self.resource_client.delete_service(pod.namespace, pod.name)
                logger.info(f"Deleted service for deleted pod {pod.key}")
                result["status"] = "removed"
            except NotFoundError:
                logger.info(f"Service for deleted pod {pod.key} already gone")
                result["status"] = "removed"
            except RemoteError as e:
                logger.error(f"Error deleting service for pod {pod.key}: {e}")
                result["status"] = "error"
                result["error"] = str(e)
                return result
            
            # Deleted pods leave no per-pod entries behind
            with self._guard:
                self._states.pop(pod.key, None)
                self._node_ports.pop(pod.key, None)
            result["state"] = PodState.REMOVED.value
            return result
    
    def _expose(self, pod: PodSnapshot) -> Dict[str, Any]:
        """Create the service for an owned pod unless it is already exposed."""
        result = self._new_result(pod, "expose")
        
        if self.state_of(pod.namespace, pod.name) == PodState.EXPOSED:
            logger.debug(f"Pod {pod.key} already exposed, no action needed")
            result["status"] = "unchanged"
            result["nodePort"] = self.node_port_of(pod.namespace, pod.name)
            return result
        
        try:
            node_port = self.resource_client.expose_pod_on_node(
                pod.namespace, pod.name, self.node_port
            )
            logger.info(f"Created service for pod {pod.key} on node port {node_port}")
            result["status"] = "exposed"
        except AlreadyExistsError:
            service = self._existing_service(pod)
            if service is not None and not service.selects(pod):
                logger.error(f"Service {pod.key} already exists and does not select the pod")
                result["status"] = "conflict"
                result["error"] = f"Service {pod.key} exists but does not select the pod"
                return result
            logger.info(f"Service for pod {pod.key} already exists")
            node_port = service.node_port if service is not None else None
            result["status"] = "unchanged"
        except RemoteError as e:
            # Left unexposed; the next resync delivers the pod again
            logger.error(f"Error exposing pod {pod.key}: {e}")
            result["status"] = "error"
            result["error"] = str(e)
            return result
        
        self._set_state(pod.key, PodState.EXPOSED)
        result["state"] = PodState.EXPOSED.value
        if node_port is not None:
            with self._guard:
                self._node_ports[pod.key] = node_port
        result["nodePort"] = node_port
        return result
    
    def _existing_service(self, pod: PodSnapshot) -> Optional[ServiceSnapshot]:
        try:
            return self.resource_client.get_service(pod.namespace, pod.name)
        except RemoteError as e:
            logger.warning(f"Service for pod {pod.key} already exists but could not be read: {e}")
            return None
    
    @staticmethod
    def _new_result(pod: PodSnapshot, action: str) -> Dict[str, Any]:
        return {
            "name": pod.name,
            "namespace": pod.namespace,
            "action": action,
            "status": "pending",
            "lastUpdated": datetime.now(timezone.utc).isoformat()
        }
