"""List-then-watch machinery delivering pod events to subscribers."""

import functools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    MAX_RECONNECT_ATTEMPTS,
    REQUEST_TIMEOUT_SECONDS,
    RESYNC_INTERVAL_SECONDS,
    WATCH_TIMEOUT_SECONDS,
)
from .errors import SyncTimeoutError, WatchClosedError
from .models import EventType, PodEvent, PodSnapshot
from .utils import backoff_delay

logger = logging.getLogger(__name__)

Handler = Callable[[PodSnapshot], object]

# Errors that break the stream and require a relist
TRANSPORT_ERRORS = (ApiException, HTTPError, OSError, ValueError)


class ResourceVersionExpired(Exception):
    """The stream's resource version is too old (HTTP 410); relist."""


class PodWatch:
    """
    Maintains a local view of pods and delivers change events.
    
    A single dispatch thread lists all pods, delivers the listing as events,
    then streams incremental changes. Handlers run on that thread in the
    order they were subscribed, one event at a time.
    """
    
    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        namespace: str = "",
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
        request_timeout: Optional[float] = REQUEST_TIMEOUT_SECONDS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_max: float = BACKOFF_MAX_SECONDS,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ):
        """
        Initialize the pod watch.
        
        Args:
            core_api: CoreV1Api to list and watch pods with
            namespace: Namespace to watch ("" for all namespaces)
            watch_timeout: Upper bound in seconds for a single watch stream
            request_timeout: Timeout in seconds for list requests
            max_reconnect_attempts: Consecutive failures before giving up
            backoff_base: First reconnect delay in seconds
            backoff_max: Largest reconnect delay in seconds
            watch_factory: Creates the underlying stream watcher
        """
        self.v1 = core_api or client.CoreV1Api()
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self.request_timeout = request_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._watch_factory = watch_factory
        
        self._handlers: List[Tuple[Optional[Handler], Optional[Handler], Optional[Handler]]] = []
        self._store: Dict[Tuple[str, str], PodSnapshot] = {}
        self._lock = threading.RLock()
        
        self._stop_event = threading.Event()
        self._synced = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stream_watch: Optional[watch.Watch] = None
        self._response = None
        self._closed_error: Optional[WatchClosedError] = None
        self._resync_interval: Optional[float] = None
        self._resource_version = ""
    
    def subscribe(
        self,
        on_added: Optional[Handler] = None,
        on_updated: Optional[Handler] = None,
        on_deleted: Optional[Handler] = None,
    ) -> None:
        """Register handlers for each kind of pod event."""
        with self._lock:
            self._handlers.append((on_added, on_updated, on_deleted))
    
    def start(self, resync_interval: Optional[float] = RESYNC_INTERVAL_SECONDS) -> None:
        """
        Start the dispatch thread.
        
        Args:
            resync_interval: Seconds between forced full relists (0 or None disables)
        """
        with self._lock:
            if self._thread is not None:
                raise RuntimeError("Pod watch already started")
            self._resync_interval = resync_interval or None
            self._thread = threading.Thread(
                target=self._run,
                name="pod-watcher",
                daemon=True
            )
        
        logger.info(f"Starting pod watcher on {self.namespace or 'all namespaces'}")
        self._thread.start()
    
    def wait_for_sync(self, timeout: Optional[float] = None) -> None:
        """
        Block until the initial listing was delivered to every handler.
        
        Raises:
            SyncTimeoutError: If the listing was not delivered in time
            WatchClosedError: If the watch ended before syncing
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        
        while not self._synced.is_set():
            if self._done.is_set():
                raise self._closed_error or WatchClosedError("Pod watch closed before sync")
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise SyncTimeoutError(f"Pod watch did not sync within {timeout}s")
            wait_for = 0.1 if remaining is None else min(0.1, remaining)
            self._synced.wait(wait_for)
    
    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()
    
    def stop(self) -> None:
        """Stop the watch. Safe to call more than once and from any thread."""
        if self._stop_event.is_set():
            return
        
        logger.info("Stopping pod watcher...")
        self._stop_event.set()
        
        stream_watch = self._stream_watch
        if stream_watch is not None:
            stream_watch.stop()
        self._close_response()
    
    def _close_response(self) -> None:
        """Shut down the live stream connection, unblocking a pending read."""
        response = self._response
        if response is None:
            return
        try:
            response.shutdown()
            response.close()
        except (HTTPError, OSError) as e:
            logger.debug(f"Error closing watch stream: {e}")
    
    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the dispatch loop has ended.
        
        Returns:
            False if the timeout expired first
        
        Raises:
            WatchClosedError: Once the loop has ended
        """
        if not self._done.wait(timeout):
            return False
        raise self._closed_error or WatchClosedError("Pod watch closed")
    
    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the dispatch thread to exit without raising."""
        if self._thread is not None:
            self._thread.join(timeout)
    
    def get(self, namespace: str, name: str) -> Optional[PodSnapshot]:
        """Get a pod from the local view."""
        with self._lock:
            return self._store.get((namespace, name))
    
    def list(self) -> List[PodSnapshot]:
        """Get all pods in the local view."""
        with self._lock:
            return list(self._store.values())
    
    def _run(self) -> None:
        """Dispatch loop: list, stream, and relist on failure with backoff."""
        try:
            self._loop()
        except Exception as e:
            logger.exception(f"Pod watch failed: {e}")
            self._closed_error = WatchClosedError(f"Pod watch failed: {e}")
        finally:
            if self._closed_error is None:
                self._closed_error = WatchClosedError("Pod watch stopped")
            self._done.set()
            logger.info("Pod watcher stopped")
    
    def _loop(self) -> None:
        failures = 0
        relist = True
        resync = False
        next_resync = None
        
        while not self._stop_event.is_set():
            try:
                if relist:
                    self._list_and_sync(resync)
                    relist = resync = False
                    if self._resync_interval:
                        next_resync = time.monotonic() + self._resync_interval
                
                self._stream(next_resync)
                failures = 0
                
                if next_resync is not None and time.monotonic() >= next_resync:
                    logger.debug("Resync interval elapsed, relisting pods")
                    relist = resync = True
            
            except ResourceVersionExpired:
                logger.info("Resource version expired, relisting pods")
                relist = True
            
            except TRANSPORT_ERRORS as e:
                if self._stop_event.is_set():
                    break
                
                failures += 1
                if failures > self.max_reconnect_attempts:
                    logger.error(f"Pod watch giving up after {failures - 1} reconnect attempts: {e}")
                    self._closed_error = WatchClosedError(
                        f"Reconnect budget exhausted after {failures - 1} attempts: {e}"
                    )
                    break
                
                delay = backoff_delay(failures, self.backoff_base, self.backoff_max)
                logger.warning(f"Pod watch error: {e}; reconnecting in {delay:.1f}s")
                relist = True
                self._stop_event.wait(delay)
    
    def _list_pods(self):
        if self.namespace:
            return self.v1.list_namespaced_pod(
                namespace=self.namespace,
                _request_timeout=self.request_timeout
            )
        return self.v1.list_pod_for_all_namespaces(_request_timeout=self.request_timeout)
    
    def _list_and_sync(self, resync: bool) -> None:
        """
        List all pods and reconcile the listing with the local view.
        
        New pods are delivered as ADDED, changed pods as UPDATED and pods
        missing from the listing as DELETED. During a periodic resync the
        unchanged pods are delivered as UPDATED as well.
        """
        response = self._list_pods()
        listed = [PodSnapshot.from_k8s(pod) for pod in response.items]
        
        events: List[PodEvent] = []
        seen = set()
        
        with self._lock:
            for pod in listed:
                key = (pod.namespace, pod.name)
                seen.add(key)
                cached = self._store.get(key)
                if cached is None:
                    events.append(PodEvent(EventType.ADDED, pod))
                elif resync or cached.resource_version != pod.resource_version:
                    events.append(PodEvent(EventType.UPDATED, pod))
            
            for key, cached in self._store.items():
                if key not in seen:
                    events.append(PodEvent(EventType.DELETED, cached))
        
        self._resource_version = response.metadata.resource_version or ""
        
        logger.debug(f"Listed {len(listed)} pods at resource version {self._resource_version}")
        
        for event in events:
            if self._stop_event.is_set():
                return
            self._apply(event)
        
        if not self._synced.is_set():
            self._synced.set()
            logger.info(f"Pod watcher synced ({len(listed)} pods)")
    
    def _stream(self, next_resync: Optional[float]) -> None:
        """Deliver events from one watch stream until it ends."""
        timeout = self.watch_timeout
        if next_resync is not None:
            timeout = min(timeout, max(1, int(next_resync - time.monotonic())))
        
        kwargs = {"timeout_seconds": timeout, "allow_watch_bookmarks": True}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        if self.namespace:
            func = self.v1.list_namespaced_pod
            kwargs["namespace"] = self.namespace
        else:
            func = self.v1.list_pod_for_all_namespaces
        
        self._stream_watch = self._watch_factory()
        if self._stop_event.is_set():
            return
        
        stream = self._stream_watch.stream(self._tracked(func), **kwargs)
        try:
            for raw_event in stream:
                if self._stop_event.is_set():
                    break
                self._handle_raw_event(raw_event)
        except ApiException as e:
            if e.status == 410:
                raise ResourceVersionExpired() from e
            raise
        finally:
            stream.close()
            self._response = None
    
    def _tracked(self, func):
        """Wrap a list function so the watch keeps a handle on its response."""
        @functools.wraps(func)
        def open_stream(*args, **kwargs):
            self._response = func(*args, **kwargs)
            if self._stop_event.is_set():
                self._close_response()
            return self._response
        return open_stream
    
    def _handle_raw_event(self, raw_event: dict) -> None:
        """Translate a watch event into a typed event and dispatch it."""
        event_type = raw_event.get("type")
        obj = raw_event.get("object")
        
        if event_type == "ERROR":
            raw_object = raw_event.get("raw_object") or {}
            if raw_object.get("code") == 410:
                raise ResourceVersionExpired()
            raise ApiException(
                status=raw_object.get("code", 500),
                reason=raw_object.get("message", "watch error")
            )
        
        metadata = getattr(obj, "metadata", None)
        resource_version = getattr(metadata, "resource_version", None)
        if resource_version:
            self._resource_version = resource_version
        
        if event_type == "BOOKMARK":
            return
        
        pod = PodSnapshot.from_k8s(obj)
        key = (pod.namespace, pod.name)
        
        with self._lock:
            cached = self._store.get(key)
        
        if event_type == "DELETED":
            self._apply(PodEvent(EventType.DELETED, pod))
        elif event_type in ("ADDED", "MODIFIED"):
            kind = EventType.ADDED if cached is None else EventType.UPDATED
            self._apply(PodEvent(kind, pod))
        else:
            logger.debug(f"Ignoring watch event of type {event_type}")
    
    def _apply(self, event: PodEvent) -> None:
        """Update the local view, then deliver the event to every subscriber."""
        key = (event.pod.namespace, event.pod.name)
        
        with self._lock:
            if event.type == EventType.DELETED:
                self._store.pop(key, None)
            else:
                self._store[key] = event.pod
            handlers = list(self._handlers)
        
        logger.debug(f"Pod {event.type.value}: {event.pod.key}")
        
        index = {EventType.ADDED: 0, EventType.UPDATED: 1, EventType.DELETED: 2}[event.type]
        for handler_set in handlers:
            handler = handler_set[index]
            if handler is None:
                continue
            try:
                handler(event.pod)
            except Exception as e:
                logger.exception(f"Handler failed for {event.type.value} {event.pod.key}: {e}")
