#!/usr/bin/env python3
"""
Pod Exposer - Entry Point

Lists namespaces and pods by label, creates a namespace with a pod exposed
on every node, waits for confirmation, then cleans everything up. With
--watch, runs the reconciler that exposes every owned pod until interrupted.

Usage:
    python run.py [--kubeconfig-path PATH] [--create-only | --delete-only]
    python run.py --watch [--namespace NAMESPACE] [--in-cluster]
"""

import argparse
import logging
import os
import sys

from kubernetes import client, config

from pod_exposer.config import (
    DEFAULT_LABEL_SELECTOR,
    DEFAULT_NAMESPACE_NAME,
    DEFAULT_NODE_PORT,
    DEFAULT_POD_NAME,
    RESYNC_INTERVAL_SECONDS,
)
from pod_exposer.errors import PodExposerError, RemoteError, WatchClosedError
from pod_exposer.reconciler import PodExposer
from pod_exposer.resource_client import KubernetesResourceClient
from pod_exposer.watch import PodWatch

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Pod Exposer - Manage namespaces, pods and NodePort services"
    )
    parser.add_argument(
        "--kubeconfig-path",
        default=os.path.join(os.path.expanduser("~"), ".kube", "config"),
        help="Path to kubeconfig (default: ~/.kube/config)"
    )
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use in-cluster config (for running inside Kubernetes)"
    )
    parser.add_argument(
        "--new-ns-name",
        default=DEFAULT_NAMESPACE_NAME,
        help="Name of the namespace to be created"
    )
    parser.add_argument(
        "--new-pod-name",
        default=DEFAULT_POD_NAME,
        help="Name of the pod to be created"
    )
    parser.add_argument(
        "--label-selector",
        default=DEFAULT_LABEL_SELECTOR,
        help="Label selector to filter pods by"
    )
    parser.add_argument(
        "--node-port",
        type=int,
        default=DEFAULT_NODE_PORT,
        help="Node port to request when exposing pods"
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "--create-only",
        action="store_true",
        help="Only execute create resource operations"
    )
    modes.add_argument(
        "--delete-only",
        action="store_true",
        help="Only execute delete resource operations"
    )
    modes.add_argument(
        "--watch",
        action="store_true",
        help="Expose every owned pod until interrupted"
    )
    parser.add_argument(
        "--namespace", "-n",
        default="",
        help="Namespace to watch (default: all namespaces)"
    )
    parser.add_argument(
        "--resync-interval",
        type=float,
        default=RESYNC_INTERVAL_SECONDS,
        help="Seconds between full relists in watch mode (0 disables)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging"
    )
    return parser


def load_config(args) -> None:
    """Load Kubernetes credentials."""
    if args.in_cluster:
        config.load_incluster_config()
        logger.info("Loaded in-cluster configuration")
    else:
        config.load_kube_config(config_file=args.kubeconfig_path)
        logger.info(f"Loaded kubeconfig from {args.kubeconfig_path}")


def list_resources(resource_client, label_selector: str) -> None:
    namespaces = resource_client.list_namespaces()
    print("available namespaces:", namespaces)
    
    ns_to_pods = resource_client.list_pods_by_label(label_selector)
    print("available pods with label", label_selector, ":", ns_to_pods)


def create_resources(resource_client, namespace: str, pod_name: str, node_port: int) -> None:
    resource_client.create_namespace(namespace)
    print("created namespace:", namespace)
    
    resource_client.create_pod(namespace, pod_name)
    print("created pod", pod_name, "in namespace", namespace)
    
    port = resource_client.expose_pod_on_node(namespace, pod_name, node_port)
    print("exposed pod", pod_name, "on node port", port)


def delete_resources(resource_client, namespace: str, pod_name: str) -> None:
    resource_client.delete_pod(namespace, pod_name)
    print("deleted pod", pod_name, "in namespace", namespace)
    
    resource_client.delete_namespace(namespace)
    print("deleted namespace", namespace)


def run_crud(resource_client, args) -> None:
    """List, create, prompt, then delete, as selected by the flags."""
    list_resources(resource_client, args.label_selector)
    print()
    
    if not args.delete_only:
        create_resources(resource_client, args.new_ns_name, args.new_pod_name, args.node_port)
        if not args.create_only:
            input("All resources created. Press [Enter] to continue and clean up the cluster")
    
    if not args.create_only:
        delete_resources(resource_client, args.new_ns_name, args.new_pod_name)


def run_watch(resource_client, core_api, args) -> None:
    """Run the reconciler until interrupted."""
    pod_watch = PodWatch(core_api=core_api, namespace=args.namespace)
    exposer = PodExposer(resource_client, node_port=args.node_port)
    exposer.register(pod_watch)
    
    pod_watch.start(resync_interval=args.resync_interval)
    logger.info("Pod exposer is running. Press Ctrl+C to stop.")
    
    try:
        while not pod_watch.wait(timeout=1):
            pass
    except KeyboardInterrupt:
        logger.info("Shutdown requested...")
        pod_watch.stop()
        pod_watch.join(timeout=5)


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    
    try:
        load_config(args)
    except Exception as e:
        logger.error(f"Failed to load Kubernetes config: {e}")
        sys.exit(1)
    
    core_api = client.CoreV1Api()
    resource_client = KubernetesResourceClient(core_api=core_api)
    
    try:
        if args.watch:
            run_watch(resource_client, core_api, args)
        else:
            run_crud(resource_client, args)
    except WatchClosedError as e:
        logger.error(f"Pod watch closed: {e}")
        sys.exit(1)
    except RemoteError as e:
        logger.error(str(e))
        sys.exit(1)
    except (PodExposerError, ValueError) as e:
        logger.error(f"Pod exposer error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
