from pydantic_settings import BaseSettings
from functools import lru_cache
import socket


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Pod Selection
    # ==========================================================================
    # Only pods carrying this label selector are watched
    pod_label_selector: str = "nais.io/naisjob=true"

    # Label whose value names the main application container
    job_label_key: str = "app"

    # Empty watches every namespace the service account can see
    watch_namespace: str = ""

    # Server-side timeout for a single watch stream before it is reopened
    watch_timeout_seconds: int = 300

    # ==========================================================================
    # Action Catalog
    # ==========================================================================
    # Path to a YAML file mapping container names to shutdown actions.
    # Empty uses the built-in catalog (see reaper.actions.DEFAULT_ACTIONS)
    actions_file: str = ""

    # Timeout for an exec shutdown command
    exec_timeout_seconds: int = 30

    # Threads reserved for port-forward HTTP triggers
    http_trigger_workers: int = 8

    # ==========================================================================
    # Reconcile Scheduling
    # ==========================================================================
    requeue_seconds: int = 300  # Next look at a pod after a successful pass
    error_requeue_seconds: int = 30  # Backoff after a failed pass

    # When False, pods are only looked at again on the next watch event
    resync_idle_pods: bool = True

    # ==========================================================================
    # Metrics & Events
    # ==========================================================================
    metrics_host: str = "127.0.0.1"
    metrics_port: int = 8999

    # Reported as the event source; instance defaults to the hostname
    controller_name: str = "sidecar-reaper"
    controller_instance: str = ""

    @property
    def reporting_instance(self) -> str:
        """Get the instance name attached to published events."""
        return self.controller_instance or socket.gethostname() or self.controller_name

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
