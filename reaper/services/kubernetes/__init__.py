"""
Kubernetes Module

This module contains all Kubernetes-specific code:
- KubernetesClient: Low-level Kubernetes API interactions (list/watch, exec, port-forward)
- ShutdownExecutor: Delivers a shutdown recipe to one container
- EventRecorder: Publishes Killing events on the pod being handled
"""

from .client import KubernetesClient, get_k8s_client
from .events import EventRecorder, pod_reference
from .executor import (
    ExecFailed,
    HttpRequestFailed,
    HttpTriggerError,
    PortUnavailable,
    RequestTimeout,
    ShutdownError,
    ShutdownExecutor,
    UndecodableBody,
    UnexpectedStatus,
)

__all__ = [
    # Client
    "KubernetesClient",
    "get_k8s_client",
    # Events
    "EventRecorder",
    "pod_reference",
    # Executor
    "ShutdownExecutor",
    "ShutdownError",
    "ExecFailed",
    "PortUnavailable",
    "HttpTriggerError",
    "RequestTimeout",
    "UnexpectedStatus",
    "UndecodableBody",
    "HttpRequestFailed",
]
