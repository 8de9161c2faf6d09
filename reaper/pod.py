"""
Pod Classification

Turns a V1Pod into an immutable PodSnapshot and decides which sidecars are
still running after the main application container has exited.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from kubernetes import client


class ClassificationError(Exception):
    """The pod does not have the shape needed to tell sidecars from the main container."""


class MissingLabel(ClassificationError):
    pass


class MainContainerNotFound(ClassificationError):
    pass


@dataclass(frozen=True)
class ContainerObservation:
    name: str
    terminated: bool


@dataclass(frozen=True)
class PodSnapshot:
    name: str
    namespace: str
    job_name: str
    containers: Tuple[ContainerObservation, ...]

    @classmethod
    def from_pod(cls, pod: client.V1Pod, job_label_key: str = "app") -> "PodSnapshot":
        """
        Build a snapshot from the pod's labels and container statuses.

        Raises:
            MissingLabel: If the pod has no labels or lacks job_label_key
        """
        metadata = pod.metadata or client.V1ObjectMeta()
        labels = metadata.labels
        if labels is None:
            raise MissingLabel("no labels found on pod")
        job_name = labels.get(job_label_key)
        if job_name is None:
            raise MissingLabel(f"no {job_label_key} name found on pod")

        statuses = (pod.status.container_statuses if pod.status else None) or []
        return cls(
            name=metadata.name or "",
            namespace=metadata.namespace or "default",
            job_name=job_name,
            containers=tuple(
                ContainerObservation(name=s.name, terminated=is_terminated(s))
                for s in statuses
            ),
        )

    def main_container(self) -> ContainerObservation:
        for container in self.containers:
            if container.name == self.job_name:
                return container
        raise MainContainerNotFound("couldn't determine main container")


def is_terminated(status: client.V1ContainerStatus) -> bool:
    """A container counts as terminated only when its state carries a terminated sub-state."""
    state: Optional[client.V1ContainerState] = status.state
    return state is not None and state.terminated is not None


def classify(snapshot: PodSnapshot) -> List[ContainerObservation]:
    """
    Get the sidecars that still need to be shut down.

    Returns an empty list while the pod is starting up (no statuses yet) or
    while the main container is still running.

    Raises:
        MainContainerNotFound: If no container is named after the job
    """
    if not snapshot.containers:
        return []

    main = snapshot.main_container()
    if not main.terminated:
        return []

    return [
        c for c in snapshot.containers
        if c.name != main.name and not c.terminated
    ]
