"""
Services for the Sidecar Reaper

- Reconciler: one pass over a single pod
- PodController: list/watch loop and per-pod work queue
"""

from .controller import PodController
from .reconciler import (
    ReconcileAction,
    ReconcileError,
    Reconciler,
    RunningSidecarError,
    SidecarShutdownFailed,
)

__all__ = [
    "PodController",
    "ReconcileAction",
    "ReconcileError",
    "Reconciler",
    "RunningSidecarError",
    "SidecarShutdownFailed",
]
