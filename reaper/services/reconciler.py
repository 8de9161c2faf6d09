"""
Sidecar Reconciler

One reconcile pass looks at a single pod: once the main container has
terminated, every sidecar that is still running is shut down in order,
using the recipe the action catalog defines for it.

- A sidecar without a recipe is counted and skipped.
- The first sidecar that fails to shut down ends the pass; the whole pod
  is retried from the top after error_requeue_seconds.
- Event publishing failures are logged and counted, never fatal.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from kubernetes import client

from ..actions import ShutdownRecipe
from ..metrics import ReaperMetrics
from ..pod import ClassificationError, PodSnapshot, classify
from .kubernetes.client import KubernetesClient
from .kubernetes.events import EventRecorder, pod_reference
from .kubernetes.executor import ShutdownError, ShutdownExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileAction:
    """When to look at a pod again; None waits for the next watch event."""
    requeue_after: Optional[float] = None

    @classmethod
    def await_change(cls) -> "ReconcileAction":
        return cls(requeue_after=None)

    @classmethod
    def requeue(cls, seconds: float) -> "ReconcileAction":
        return cls(requeue_after=seconds)


class ReconcileError(Exception):
    def __init__(self, pod_name: str, message: str):
        super().__init__(message)
        self.pod_name = pod_name


class RunningSidecarError(ReconcileError):
    def __init__(self, pod_name: str, cause: Exception):
        super().__init__(pod_name, f"{pod_name}: could not get running sidecars: {cause}")
        self.cause = cause


class SidecarShutdownFailed(ReconcileError):
    def __init__(self, pod_name: str, container_name: str, cause: Exception):
        super().__init__(pod_name, f"{pod_name}: could not shut down sidecar {container_name}: {cause}")
        self.container_name = container_name
        self.cause = cause


class Reconciler:
    def __init__(
        self,
        k8s: KubernetesClient,
        executor: ShutdownExecutor,
        actions: Mapping[str, ShutdownRecipe],
        metrics: ReaperMetrics,
        controller_name: str = "sidecar-reaper",
        controller_instance: str = "sidecar-reaper",
        job_label_key: str = "app",
        requeue_seconds: float = 300,
        error_requeue_seconds: float = 30,
        resync_idle_pods: bool = True
    ):
        self.k8s = k8s
        self.executor = executor
        self.actions = actions
        self.metrics = metrics
        self.controller_name = controller_name
        self.controller_instance = controller_instance
        self.job_label_key = job_label_key
        self.requeue_seconds = requeue_seconds
        self.error_requeue_seconds = error_requeue_seconds
        self.resync_idle_pods = resync_idle_pods

    def _done(self) -> ReconcileAction:
        if self.resync_idle_pods:
            return ReconcileAction.requeue(self.requeue_seconds)
        return ReconcileAction.await_change()

    async def reconcile(self, pod: client.V1Pod) -> ReconcileAction:
        """
        Shut down the running sidecars of a pod whose main container has exited.

        Raises:
            RunningSidecarError: If the pod cannot be classified
            SidecarShutdownFailed: If a sidecar could not be shut down
        """
        pod_name = pod.metadata.name if pod.metadata else ""

        try:
            snapshot = PodSnapshot.from_pod(pod, self.job_label_key)
            running_sidecars = classify(snapshot)
        except ClassificationError as e:
            raise RunningSidecarError(pod_name, e) from e

        if not running_sidecars:
            return self._done()

        namespace = snapshot.namespace
        job_name = snapshot.job_name
        recorder = EventRecorder(
            self.k8s,
            pod_reference(pod),
            self.controller_name,
            self.controller_instance
        )

        logger.debug(f"{pod_name}: needs help shutting down some residual containers")

        for sidecar in running_sidecars:
            sidecar_name = sidecar.name
            logger.debug(f"{pod_name}: found sidecar {sidecar_name}")

            recipe = self.actions.get(sidecar_name)
            if recipe is None:
                logger.warning(f"{pod_name}: missing defined action: {sidecar_name}")
                self.metrics.unsupported_sidecars.labels(sidecar_name, job_name, namespace).inc()
                continue

            try:
                await self.executor.execute(recipe, pod_name, namespace, sidecar_name)
            except ShutdownError as e:
                await self._publish(
                    recorder.warn,
                    pod_name,
                    f"Unsuccessfully shut down container {sidecar_name}: {e}"
                )
                self.metrics.failed_sidecar_shutdowns.labels(sidecar_name, job_name, namespace).inc()
                raise SidecarShutdownFailed(pod_name, sidecar_name, e) from e

            await self._publish(recorder.info, pod_name, f"Shut down container {sidecar_name}")
            self.metrics.sidecar_shutdowns.labels(sidecar_name, job_name, namespace).inc()

        return self._done()

    async def _publish(self, send, pod_name: str, message: str) -> None:
        try:
            await send(message)
        except Exception as e:
            logger.warning(f"{pod_name}: couldn't publish Kubernetes Event: {e}")
            self.metrics.total_unsuccessful_event_posts.inc()

    def error_policy(self, pod: client.V1Pod, error: Exception) -> ReconcileAction:
        return ReconcileAction.requeue(self.error_requeue_seconds)
