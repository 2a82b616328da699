"""Client for namespace, pod and service lifecycle operations."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .config import (
    CONTAINER_IMAGE,
    CONTAINER_NAME,
    CONTAINER_PORT,
    CONTAINER_PORT_NAME,
    NAME_LABEL_KEY,
    OWNER_LABEL_KEY,
    OWNER_LABEL_VALUE,
    REQUEST_TIMEOUT_SECONDS,
)
from .errors import RemoteError, to_remote_error
from .models import ServiceSnapshot
from .utils import parse_label_selector

logger = logging.getLogger(__name__)

# Errors that mean a call reached (or tried to reach) the API and failed
REMOTE_ERRORS = (ApiException, HTTPError, OSError)

# Status codes for which a cluster-wide pod listing is not available
UNSUPPORTED_LISTING_STATUSES = (403, 405)


class ResourceClient(ABC):
    """Interface for the cluster operations used by the reconciler and CLI."""
    
    @abstractmethod
    def list_namespaces(self) -> List[str]:
        """List the names of all namespaces."""
        pass
    
    @abstractmethod
    def create_namespace(self, name: str) -> None:
        """Create a namespace."""
        pass
    
    @abstractmethod
    def delete_namespace(self, name: str) -> None:
        """Delete a namespace."""
        pass
    
    @abstractmethod
    def list_pods_by_label(self, selector: str) -> Dict[str, List[str]]:
        """Map each namespace to the names of its pods matching the selector."""
        pass
    
    @abstractmethod
    def create_pod(self, namespace: str, name: str) -> None:
        """Create a pod from the fixed template."""
        pass
    
    @abstractmethod
    def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod."""
        pass
    
    @abstractmethod
    def expose_pod_on_node(self, namespace: str, pod_name: str, desired_port: int) -> int:
        """Expose a pod through a NodePort service and return the allocated port."""
        pass
    
    @abstractmethod
    def get_service(self, namespace: str, name: str) -> ServiceSnapshot:
        """Read a service."""
        pass
    
    @abstractmethod
    def delete_service(self, namespace: str, name: str) -> None:
        """Delete a service."""
        pass


def build_pod(name: str) -> client.V1Pod:
    """
    Build the fixed single-container pod template.
    
    Args:
        name: Pod name, also used as the value of the name label
    
    Returns:
        V1Pod carrying the ownership label
    """
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=name,
            labels={
                OWNER_LABEL_KEY: OWNER_LABEL_VALUE,
                NAME_LABEL_KEY: name,
            },
        ),
        spec=client.V1PodSpec(
            containers=[
                client.V1Container(
                    name=CONTAINER_NAME,
                    image=CONTAINER_IMAGE,
                    ports=[
                        client.V1ContainerPort(
                            name=CONTAINER_PORT_NAME,
                            protocol="TCP",
                            container_port=CONTAINER_PORT,
                        )
                    ],
                )
            ]
        ),
    )


def build_node_port_service(pod_name: str, node_port: Optional[int]) -> client.V1Service:
    """
    Build a NodePort service exposing a single pod.
    
    The service is named after the pod and selects it through its name label.
    A node_port of None lets the control plane allocate one.
    """
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=pod_name,
            labels={
                OWNER_LABEL_KEY: OWNER_LABEL_VALUE,
                NAME_LABEL_KEY: pod_name,
            },
        ),
        spec=client.V1ServiceSpec(
            type="NodePort",
            selector={NAME_LABEL_KEY: pod_name},
            ports=[
                client.V1ServicePort(
                    protocol="TCP",
                    port=CONTAINER_PORT,
                    node_port=node_port,
                )
            ],
        ),
    )


def is_port_allocated_error(exc: ApiException) -> bool:
    """Check if the API rejected a service because its node port is taken."""
    if exc.status != 422:
        return False
    return "already allocated" in str(exc.body or exc.reason or "")


class KubernetesResourceClient(ResourceClient):
    """Typed CRUD operations against the Kubernetes CoreV1 API."""
    
    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        request_timeout: Optional[float] = REQUEST_TIMEOUT_SECONDS,
        cluster_wide_listing: bool = True,
    ):
        """
        Initialize the resource client.
        
        Args:
            core_api: CoreV1Api to use (a new one is created if omitted)
            request_timeout: Timeout in seconds applied to every request
            cluster_wide_listing: If False, always list pods one namespace at a time
        """
        self.v1 = core_api or client.CoreV1Api()
        self.request_timeout = request_timeout
        self.cluster_wide_listing = cluster_wide_listing
    
    def list_namespaces(self) -> List[str]:
        """
        List the names of all namespaces.
        
        Returns:
            Namespace names in the order returned by the API
        """
        try:
            response = self.v1.list_namespace(_request_timeout=self.request_timeout)
        except REMOTE_ERRORS as e:
            raise to_remote_error("list_namespaces", e) from e
        
        return [ns.metadata.name for ns in response.items]
    
    def create_namespace(self, name: str) -> None:
        """Create a namespace."""
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        
        try:
            self.v1.create_namespace(body=body, _request_timeout=self.request_timeout)
        except REMOTE_ERRORS as e:
            raise to_remote_error("create_namespace", e) from e
        
        logger.info(f"Created namespace {name}")
    
    def delete_namespace(self, name: str) -> None:
        """Delete a namespace and everything in it."""
        try:
            self.v1.delete_namespace(name=name, _request_timeout=self.request_timeout)
        except REMOTE_ERRORS as e:
            raise to_remote_error("delete_namespace", e) from e
        
        logger.info(f"Deleted namespace {name}")
    
    def list_pods_by_label(self, selector: str) -> Dict[str, List[str]]:
        """
        List pods matching a label selector across all namespaces.
        
        Falls back to one query per namespace when a cluster-wide query
        is not permitted.
        
        Args:
            selector: Label selector of the form key=value
        
        Returns:
            Mapping of namespace to the names of its matching pods
        """
        parse_label_selector(selector)
        
        if self.cluster_wide_listing:
            try:
                response = self.v1.list_pod_for_all_namespaces(
                    label_selector=selector,
                    _request_timeout=self.request_timeout
                )
                return self._group_by_namespace(response.items)
            except ApiException as e:
                if e.status not in UNSUPPORTED_LISTING_STATUSES:
                    raise to_remote_error("list_pods_by_label", e) from e
                logger.info(
                    f"Cluster-wide pod listing not available ({e.status}), "
                    f"listing per namespace"
                )
            except REMOTE_ERRORS as e:
                raise to_remote_error("list_pods_by_label", e) from e
        
        return self._list_pods_per_namespace(selector)
    
    def _list_pods_per_namespace(self, selector: str) -> Dict[str, List[str]]:
        """Merge the results of one scoped pod query per namespace."""
        result: Dict[str, List[str]] = {}
        
        for namespace in self.list_namespaces():
            try:
                response = self.v1.list_namespaced_pod(
                    namespace=namespace,
                    label_selector=selector,
                    _request_timeout=self.request_timeout
                )
            except REMOTE_ERRORS as e:
                raise to_remote_error("list_pods_by_label", e) from e
            
            for ns, names in self._group_by_namespace(response.items).items():
                result.setdefault(ns, []).extend(names)
        
        return result
    
    @staticmethod
    def _group_by_namespace(pods) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for pod in pods:
            grouped.setdefault(pod.metadata.namespace, []).append(pod.metadata.name)
        return grouped
    
    def create_pod(self, namespace: str, name: str) -> None:
        """
        Create a pod from the fixed template.
        
        Returns once the API accepted the pod; scheduling is not awaited.
        """
        try:
            self.v1.create_namespaced_pod(
                namespace=namespace,
                body=build_pod(name),
                _request_timeout=self.request_timeout
            )
        except REMOTE_ERRORS as e:
            raise to_remote_error("create_pod", e) from e
        
        logger.info(f"Created pod {namespace}/{name}")
    
    def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod."""
        try:
            self.v1.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except REMOTE_ERRORS as e:
            raise to_remote_error("delete_pod", e) from e
        
        logger.info(f"Deleted pod {namespace}/{name}")
    
    def expose_pod_on_node(self, namespace: str, pod_name: str, desired_port: int) -> int:
        """
        Expose a pod on every node through a NodePort service.
        
        Args:
            namespace: Namespace of the pod
            pod_name: Pod name, also used as the service name
            desired_port: Node port to request
        
        Returns:
            The node port actually allocated, which may differ from desired_port
        """
        try:
            service = self._create_service(namespace, pod_name, desired_port)
        except ApiException as e:
            if not is_port_allocated_error(e):
                raise to_remote_error("expose_pod_on_node", e) from e
            logger.warning(
                f"Node port {desired_port} already allocated, "
                f"letting the cluster pick one for {namespace}/{pod_name}"
            )
            try:
                service = self._create_service(namespace, pod_name, None)
            except REMOTE_ERRORS as retry_error:
                raise to_remote_error("expose_pod_on_node", retry_error) from retry_error
        except REMOTE_ERRORS as e:
            raise to_remote_error("expose_pod_on_node", e) from e
        
        node_port = ServiceSnapshot.from_k8s(service).node_port
        if node_port is None:
            raise RemoteError("expose_pod_on_node", ValueError("service has no node port"))
        
        logger.info(f"Exposed pod {namespace}/{pod_name} on node port {node_port}")
        return node_port
    
    def _create_service(self, namespace: str, pod_name: str, node_port: Optional[int]):
        return self.v1.create_namespaced_service(
            namespace=namespace,
            body=build_node_port_service(pod_name, node_port),
            _request_timeout=self.request_timeout
        )
    
    def get_service(self, namespace: str, name: str) -> ServiceSnapshot:
        """Read a service back from the API."""
        try:
            service = self.v1.read_namespaced_service(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except REMOTE_ERRORS as e:
            raise to_remote_error("get_service", e) from e
        
        return ServiceSnapshot.from_k8s(service)
    
    def delete_service(self, namespace: str, name: str) -> None:
        """Delete a service, releasing its node port."""
        try:
            self.v1.delete_namespaced_service(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except REMOTE_ERRORS as e:
            raise to_remote_error("delete_service", e) from e
        
        logger.info(f"Deleted service {namespace}/{name}")
