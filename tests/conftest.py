"""
Test configuration and fixtures for pytest.

Fixtures include: pod factories, isolated metrics registries, a mock
Kubernetes client and a mock shutdown executor.
"""

import sys
import os
from pathlib import Path
import pytest
from unittest.mock import Mock, AsyncMock

from kubernetes import client

# Add the project root to sys.path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    os.environ["LOG_LEVEL"] = "DEBUG"
    os.environ["CONTROLLER_INSTANCE"] = "sidecar-reaper-test"

    # Import and clear settings cache after env vars are set
    from reaper.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes client code")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def running_state():
    return client.V1ContainerState(
        running=client.V1ContainerStateRunning(started_at="2024-01-01T00:00:00Z")
    )


def terminated_state(exit_code=0):
    return client.V1ContainerState(
        terminated=client.V1ContainerStateTerminated(exit_code=exit_code)
    )


def waiting_state():
    return client.V1ContainerState(
        waiting=client.V1ContainerStateWaiting(reason="ContainerCreating")
    )


def container_status(name, state=None):
    return client.V1ContainerStatus(
        name=name,
        image=f"{name}:latest",
        image_id="",
        ready=False,
        restart_count=0,
        state=state,
    )


def make_pod(name, labels=None, statuses=None, namespace="default"):
    """Build a V1Pod with the given labels and container statuses."""
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            uid=f"uid-{name}",
            resource_version="1",
        ),
        status=client.V1PodStatus(container_statuses=statuses),
    )


@pytest.fixture
def job_pod():
    """
    Factory for a job pod whose main container (named after the pod) has
    terminated, followed by the given sidecar statuses.
    """
    def _make(name="oh-no", sidecars=None, namespace="default"):
        statuses = [container_status(name, terminated_state())] + list(sidecars or [])
        return make_pod(name, labels={"app": name}, statuses=statuses, namespace=namespace)

    return _make


@pytest.fixture
def metrics():
    """Metrics on a registry private to the test."""
    from reaper.metrics import ReaperMetrics
    return ReaperMetrics()


@pytest.fixture
def mock_k8s():
    """Mock KubernetesClient; event creation succeeds."""
    k8s = Mock()
    k8s.create_event = Mock(return_value=None)
    return k8s


@pytest.fixture
def mock_executor():
    executor = Mock()
    executor.execute = AsyncMock(return_value=None)
    return executor


@pytest.fixture
def reconciler(mock_k8s, mock_executor, metrics):
    from reaper.actions import load_catalog
    from reaper.services.reconciler import Reconciler

    return Reconciler(
        k8s=mock_k8s,
        executor=mock_executor,
        actions=load_catalog(),
        metrics=metrics,
        controller_name="sidecar-reaper",
        controller_instance="sidecar-reaper-test",
    )


def sample_value(metrics, name, container=None, job_name=None, namespace=None):
    """Read a counter value from a ReaperMetrics registry (0.0 when never incremented)."""
    labels = None
    if container is not None:
        labels = {"container": container, "job_name": job_name, "namespace": namespace}
    value = metrics.registry.get_sample_value(f"{name}_total", labels)
    return value or 0.0
