"""Shared fixtures and fakes for the Pod Exposer tests."""

import threading
import time
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from pod_exposer.config import NAME_LABEL_KEY, OWNER_LABEL_KEY, OWNER_LABEL_VALUE
from pod_exposer.errors import AlreadyExistsError, NotFoundError, RemoteError
from pod_exposer.models import ServiceSnapshot
from pod_exposer.resource_client import ResourceClient
from pod_exposer.utils import labels_match, parse_label_selector


def make_pod(
    namespace: str,
    name: str,
    labels: Optional[Dict[str, str]] = None,
    resource_version: str = "1",
    owned: bool = False,
) -> client.V1Pod:
    """Build a V1Pod with the given metadata."""
    labels = dict(labels or {})
    if owned:
        labels[OWNER_LABEL_KEY] = OWNER_LABEL_VALUE
        labels.setdefault(NAME_LABEL_KEY, name)

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            namespace=namespace,
            name=name,
            labels=labels,
            uid=f"uid-{namespace}-{name}",
            resource_version=resource_version,
        )
    )


def make_pod_list(pods: List[client.V1Pod], resource_version: str = "100") -> client.V1PodList:
    return client.V1PodList(
        items=list(pods),
        metadata=client.V1ListMeta(resource_version=resource_version),
    )


def make_event(event_type: str, pod: client.V1Pod) -> dict:
    return {"type": event_type, "object": pod, "raw_object": {}}


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll until the predicate holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeWatch:
    """
    Scripted stand-in for kubernetes.watch.Watch.

    Each call to stream() consumes one script entry: a list of raw events to
    yield, an exception to raise, or a callable returning either (called on
    the watch thread, so it may block). Once the script is exhausted, streams
    yield nothing and end after a short idle period.
    """

    def __init__(self, script=None, idle: float = 0.02):
        self.script = list(script or [])
        self.idle = idle
        self.calls: List[dict] = []
        self.stopped = threading.Event()

    def stream(self, func, *args, **kwargs):
        self.calls.append(kwargs)
        item = self.script.pop(0) if self.script else []
        if callable(item):
            item = item()
        if isinstance(item, BaseException):
            raise item
        for event in item:
            yield event
        self.stopped.wait(self.idle)

    def stop(self):
        self.stopped.set()


class FakeResourceClient(ResourceClient):
    """In-memory resource client recording every call."""

    def __init__(self, namespaces: Optional[List[str]] = None, first_free_port: int = 30001):
        self.namespaces: List[str] = list(namespaces or [])
        self.pods: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.services: Dict[Tuple[str, str], ServiceSnapshot] = {}
        self.calls: List[tuple] = []
        self.expose_failures = 0
        self._next_port = first_free_port

    def list_namespaces(self) -> List[str]:
        self.calls.append(("list_namespaces",))
        return list(self.namespaces)

    def create_namespace(self, name: str) -> None:
        self.calls.append(("create_namespace", name))
        if name in self.namespaces:
            raise AlreadyExistsError("create_namespace")
        self.namespaces.append(name)

    def delete_namespace(self, name: str) -> None:
        self.calls.append(("delete_namespace", name))
        if name not in self.namespaces:
            raise NotFoundError("delete_namespace")
        self.namespaces.remove(name)

    def list_pods_by_label(self, selector: str) -> Dict[str, List[str]]:
        self.calls.append(("list_pods_by_label", selector))
        key, value = parse_label_selector(selector)
        result: Dict[str, List[str]] = {}
        for (namespace, name), labels in self.pods.items():
            if labels_match(labels, {key: value}):
                result.setdefault(namespace, []).append(name)
        return result

    def create_pod(self, namespace: str, name: str) -> None:
        self.calls.append(("create_pod", namespace, name))
        if (namespace, name) in self.pods:
            raise AlreadyExistsError("create_pod")
        self.pods[(namespace, name)] = {
            OWNER_LABEL_KEY: OWNER_LABEL_VALUE,
            NAME_LABEL_KEY: name,
        }

    def delete_pod(self, namespace: str, name: str) -> None:
        self.calls.append(("delete_pod", namespace, name))
        if self.pods.pop((namespace, name), None) is None:
            raise NotFoundError("delete_pod")

    def expose_pod_on_node(self, namespace: str, pod_name: str, desired_port: int) -> int:
        self.calls.append(("expose_pod_on_node", namespace, pod_name, desired_port))
        if self.expose_failures > 0:
            self.expose_failures -= 1
            raise RemoteError("expose_pod_on_node", ConnectionError("connection refused"))
        if (namespace, pod_name) in self.services:
            raise AlreadyExistsError("expose_pod_on_node")

        used = {svc.node_port for svc in self.services.values()}
        port = desired_port
        if port in used:
            while self._next_port in used:
                self._next_port += 1
            port = self._next_port

        self.services[(namespace, pod_name)] = ServiceSnapshot(
            namespace=namespace,
            name=pod_name,
            port=80,
            node_port=port,
            selector={NAME_LABEL_KEY: pod_name},
        )
        return port

    def get_service(self, namespace: str, name: str) -> ServiceSnapshot:
        self.calls.append(("get_service", namespace, name))
        try:
            return self.services[(namespace, name)]
        except KeyError:
            raise NotFoundError("get_service") from None

    def delete_service(self, namespace: str, name: str) -> None:
        self.calls.append(("delete_service", namespace, name))
        if self.services.pop((namespace, name), None) is None:
            raise NotFoundError("delete_service")


@pytest.fixture
def fake_client():
    return FakeResourceClient(namespaces=["default", "kube-system"])


@pytest.fixture
def core_api():
    return MagicMock()
