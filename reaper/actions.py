"""
Action Catalog

Maps known sidecar container names to the recipe used to shut them down.
Recipes are either a command executed inside the container or an HTTP
request sent to a port inside the pod through a port-forward.

The catalog is built once at startup, from DEFAULT_ACTIONS or from a YAML
file. A malformed entry raises CatalogError and the controller refuses to
start.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Tuple, Union
import logging

import yaml
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class Command:
    """Run argv inside the sidecar container."""
    argv: Tuple[str, ...]


@dataclass(frozen=True)
class HttpTrigger:
    """Send `method path` to a port inside the pod."""
    method: str
    path: str
    port: int


ShutdownRecipe = Union[Command, HttpTrigger]


class CatalogError(ValueError):
    """Raised when the action catalog cannot be built."""


class ExecActionConfig(BaseModel):
    kind: Literal["exec"]
    command: str

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, v: str) -> str:
        if not v.split():
            raise ValueError("command must not be empty")
        return v

    def to_recipe(self) -> Command:
        return Command(argv=tuple(self.command.split()))


class PortforwardActionConfig(BaseModel):
    kind: Literal["portforward"]
    method: str
    path: str
    port: int = Field(ge=1, le=65535)

    @field_validator("method")
    @classmethod
    def known_method(cls, v: str) -> str:
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method: {v}")
        return method

    @field_validator("path")
    @classmethod
    def absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must be absolute")
        return v

    def to_recipe(self) -> HttpTrigger:
        return HttpTrigger(method=self.method, path=self.path, port=self.port)


ActionConfig = Annotated[
    Union[ExecActionConfig, PortforwardActionConfig],
    Field(discriminator="kind"),
]

_action_adapter = TypeAdapter(ActionConfig)


# Modify this mapping to add or remove sidecar definitions and their
# associated shutdown procedures.
DEFAULT_ACTIONS: Dict[str, Dict[str, Any]] = {
    "cloudsql-proxy": {"kind": "exec", "command": "kill -s INT 1"},
    "vks-sidecar": {"kind": "exec", "command": "/bin/kill -s INT 1"},
    "secure-logs-configmap-reload": {"kind": "exec", "command": "/bin/killall configmap-reload"},
    "linkerd-proxy": {"kind": "portforward", "method": "POST", "path": "/shutdown", "port": 4191},
    "secure-logs-fluentd": {
        "kind": "portforward",
        "method": "GET",
        "path": "/api/processes.killWorkers",
        "port": 24444,
    },
}


def build_catalog(entries: Mapping[str, Any]) -> Dict[str, ShutdownRecipe]:
    """
    Validate raw catalog entries and convert them into recipes.

    Args:
        entries: Mapping of container name to an action definition

    Returns:
        Mapping of container name to ShutdownRecipe

    Raises:
        CatalogError: If any entry is malformed
    """
    if not isinstance(entries, Mapping):
        raise CatalogError("action catalog must be a mapping of container name to action")

    catalog: Dict[str, ShutdownRecipe] = {}
    for container_name, entry in entries.items():
        if not container_name:
            raise CatalogError("action catalog contains an empty container name")
        try:
            action = _action_adapter.validate_python(entry)
        except ValidationError as e:
            raise CatalogError(f"invalid action for container {container_name}: {e}") from e
        catalog[str(container_name)] = action.to_recipe()

    return catalog


def load_catalog(path: Optional[str] = None) -> Dict[str, ShutdownRecipe]:
    """Build the catalog from a YAML file, or from DEFAULT_ACTIONS when no path is given."""
    if not path:
        catalog = build_catalog(DEFAULT_ACTIONS)
        logger.info(f"Loaded built-in action catalog ({len(catalog)} sidecars)")
        return catalog

    try:
        with open(path, "r", encoding="utf-8") as f:
            entries = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise CatalogError(f"could not read action catalog {path}: {e}") from e

    catalog = build_catalog(entries)
    logger.info(f"Loaded action catalog from {path} ({len(catalog)} sidecars)")
    return catalog
