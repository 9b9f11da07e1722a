"""
Models for defining services, including dependencies, restart policies, health checks and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum


class DependencyCondition(str, Enum):
    """
    Condition an upstream service must meet before a dependent may start.
    """
    STARTED = "service_started"
    HEALTHY = "service_healthy"


class DependencyEdge(BaseModel):
    """
    A "must wait for" edge from the owning service to ``target``.
    """
    model_config = ConfigDict(frozen=True)

    target: str
    condition: DependencyCondition = DependencyCondition.STARTED


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NONE = "none"
    ON_FAILURE = "on-failure"


class RestartPolicy(BaseModel):
    """
    Defines how a service is relaunched after an abnormal exit.

    ``max_attempts`` of None means no cap. ``delay`` is the pause in seconds
    before each relaunch.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.ON_FAILURE
    max_attempts: Optional[int] = None
    delay: float = 5.0

    @field_validator("max_attempts")
    @classmethod
    def _non_negative_attempts(cls, value):
        if value is not None and value < 0:
            raise ValueError("max_attempts must not be negative")
        return value

    @field_validator("delay")
    @classmethod
    def _non_negative_delay(cls, value):
        if value < 0:
            raise ValueError("delay must not be negative")
        return value


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.

    ``test`` keeps the compose form: ``["CMD", ...]``, ``["CMD-SHELL", "..."]``
    or ``["NONE"]``.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

    @field_validator("test")
    @classmethod
    def _non_empty_test(cls, value):
        if not value or not any(part.strip() for part in value):
            raise ValueError("health check test must not be empty")
        if value[0] in ("CMD", "CMD-SHELL") and len(value) < 2:
            raise ValueError(f"health check test {value[0]} needs a command")
        return value

    @field_validator("interval", "timeout")
    @classmethod
    def _positive_duration(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("retries")
    @classmethod
    def _positive_retries(cls, value):
        if value < 1:
            raise ValueError("retries must be at least 1")
        return value

    @field_validator("start_period")
    @classmethod
    def _non_negative_start(cls, value):
        if value < 0:
            raise ValueError("start_period must not be negative")
        return value

    @property
    def disabled(self) -> bool:
        return self.test[0] == "NONE"


class VolumeMount(BaseModel):
    """
    Mounts a named volume (or a host path) at ``target`` inside a service.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes have no path separators and are not relative paths."""
        return not (self.source.startswith((".", "/", "~")) or "/" in self.source or "\\" in self.source)


class PortBinding(BaseModel):
    """
    A published port: ``host_ip:host_port:container_port/protocol``.
    """
    model_config = ConfigDict(frozen=True)

    container_port: int
    host_port: Optional[int] = None
    host_ip: str = "0.0.0.0"
    protocol: str = "tcp"


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the compose manifest.
    Immutable for the lifetime of a deployment.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image_name: str = ""

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[PortBinding] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[DependencyEdge] = []

    @property
    def command(self) -> List[str]:
        """
        Entrypoint followed by command, the way a container runtime combines them.
        """
        if self.entrypoint:
            return list(self.entrypoint) + list(self.cmd)
        return list(self.cmd)

    @property
    def has_health_check(self) -> bool:
        return self.health_check is not None and not self.health_check.disabled

    def dependency_names(self) -> List[str]:
        return [edge.target for edge in self.depends_on]
