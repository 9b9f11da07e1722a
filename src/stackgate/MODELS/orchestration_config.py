"""
Models for overall orchestration configuration.
"""
import os
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict
from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class VolumeDefinition(BaseModel):
    """
    A named persistent volume declared at the top level of the manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "local"
    external: bool = False


class NetworkDefinition(BaseModel):
    """
    A named network declared at the top level of the manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "bridge"
    external: bool = False


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed compose file.
    """
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}

    def dependents_of(self, name: str) -> List[str]:
        """
        Services that declare a dependency edge onto ``name``.
        """
        return [
            svc.name for svc in self.services.values()
            if name in svc.dependency_names()
        ]

    def users_of_volume(self, volume: str) -> List[str]:
        return [
            svc.name for svc in self.services.values()
            if any(m.is_named and m.source == volume for m in svc.volumes)
        ]


class StackSettings(BaseModel):
    """
    Runtime knobs for one deployment instance of a stack.
    """
    project_name: str = "stackgate"
    base_dir: str = "."
    stop_timeout: float = 10.0
    probe_workers: int = 8

    @property
    def state_dir(self) -> str:
        return os.path.join(self.base_dir, ".stackgate", self.project_name)
