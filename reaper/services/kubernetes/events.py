"""
Kubernetes Event publishing for pods the reaper acts on.

Events are core/v1 Events with reason and action "Killing", matching what
the kubelet emits when it stops a container.
"""

import asyncio
import logging
from datetime import datetime, timezone

from kubernetes import client

from .client import KubernetesClient

logger = logging.getLogger(__name__)

EVENT_REASON = "Killing"
NORMAL = "Normal"
WARNING = "Warning"


def pod_reference(pod: client.V1Pod) -> client.V1ObjectReference:
    metadata = pod.metadata
    return client.V1ObjectReference(
        api_version=pod.api_version or "v1",
        kind=pod.kind or "Pod",
        name=metadata.name,
        namespace=metadata.namespace or "default",
        uid=metadata.uid,
        resource_version=metadata.resource_version,
    )


class EventRecorder:
    """Publishes Events for one specific object."""

    def __init__(
        self,
        k8s: KubernetesClient,
        reference: client.V1ObjectReference,
        controller: str,
        instance: str
    ):
        self.k8s = k8s
        self.reference = reference
        self.controller = controller
        self.instance = instance

    async def info(self, message: str) -> None:
        """Publish a Killing event with the type Normal."""
        await self.publish(NORMAL, message)

    async def warn(self, message: str) -> None:
        """Publish a Killing event with the type Warning."""
        await self.publish(WARNING, message)

    async def publish(self, event_type: str, message: str) -> None:
        await asyncio.to_thread(
            self.k8s.create_event,
            self.reference.namespace,
            self.event(event_type, message)
        )

    def event(self, event_type: str, message: str) -> client.CoreV1Event:
        now = datetime.now(timezone.utc)
        return client.CoreV1Event(
            action=EVENT_REASON,
            reason=EVENT_REASON,
            first_timestamp=now,
            last_timestamp=now,
            involved_object=self.reference,
            message=message,
            metadata=client.V1ObjectMeta(
                namespace=self.reference.namespace,
                generate_name=f"{self.controller}-",
            ),
            reporting_component=self.controller,
            reporting_instance=self.instance,
            source=client.V1EventSource(component=self.controller),
            type=event_type,
        )
