"""
Kubernetes Client for the Sidecar Reaper

This module wraps the kubernetes-python API calls the controller needs:
listing and watching pods, executing commands inside containers, opening
port-forwards, and publishing Events. Calls are blocking; async callers run
them through asyncio.to_thread.
"""

from kubernetes import client, config, watch
from kubernetes.stream import portforward, stream
import logging
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class KubernetesClient:
    """
    Thin wrapper around CoreV1Api for the pod operations the controller uses.
    """

    def __init__(self, namespace: str = ""):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        self.core_v1 = client.CoreV1Api()

        # Empty namespace means cluster-wide
        self.namespace = namespace

        logger.info(f"Kubernetes client initialized - Watching: {namespace or 'all namespaces'}")

    # =========================================================================
    # POD LIST / WATCH
    # =========================================================================

    def list_pods(self, label_selector: str) -> client.V1PodList:
        if self.namespace:
            return self.core_v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=label_selector
            )
        return self.core_v1.list_pod_for_all_namespaces(label_selector=label_selector)

    def watch_pods(
        self,
        watcher: watch.Watch,
        label_selector: str,
        resource_version: Optional[str],
        timeout_seconds: int
    ) -> Iterator[Dict[str, Any]]:
        """Stream pod watch events starting after resource_version."""
        kwargs: Dict[str, Any] = {
            "label_selector": label_selector,
            "timeout_seconds": timeout_seconds,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version

        if self.namespace:
            return watcher.stream(
                self.core_v1.list_namespaced_pod,
                namespace=self.namespace,
                **kwargs
            )
        return watcher.stream(self.core_v1.list_pod_for_all_namespaces, **kwargs)

    # =========================================================================
    # POD OPERATIONS
    # =========================================================================

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        The kubernetes-python `stream()` function temporarily patches the
        api_client.request method to use WebSocket. Using a fresh client per
        stream keeps concurrent regular API calls (watch, event creation) on
        the plain HTTP path.
        """
        return client.CoreV1Api()

    def exec_in_container(
        self,
        pod_name: str,
        namespace: str,
        container_name: str,
        command: List[str],
        timeout: int = 30
    ) -> str:
        """
        Execute a command in a container, discarding stdout.

        Args:
            pod_name: Name of the pod
            namespace: Namespace
            container_name: Container name within pod
            command: Command to execute as list
            timeout: Request timeout in seconds

        Returns:
            Whatever the command wrote to stderr
        """
        logger.debug(f"[K8S:EXEC] Executing in pod {pod_name}/{container_name}: {' '.join(command)}")

        stream_client = self._get_stream_client()

        return stream(
            stream_client.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            container=container_name,
            command=command,
            stderr=True,
            stdin=False,
            stdout=False,
            tty=False,
            _preload_content=True,
            _request_timeout=timeout
        )

    def open_portforward(self, pod_name: str, namespace: str, port: int):
        """
        Open a port-forward to a single port of a pod.

        Returns:
            kubernetes.stream.ws_client.PortForward; use .socket(port) for the
            byte stream and .error(port) for the tunnel's error, if any
        """
        logger.debug(f"[K8S:PORTFORWARD] Opening tunnel to {pod_name}:{port}")

        stream_client = self._get_stream_client()

        return portforward(
            stream_client.connect_get_namespaced_pod_portforward,
            pod_name,
            namespace,
            ports=str(port)
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    def create_event(self, namespace: str, event: client.CoreV1Event) -> client.CoreV1Event:
        return self.core_v1.create_namespaced_event(namespace=namespace, body=event)


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client(namespace: str = "") -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient(namespace=namespace)
    return _k8s_client_instance
