"""Sidecar Reaper: shuts down sidecars left running after a job pod's main container exits."""

__version__ = "0.1.0"
