"""
Runtime state of service instances: lifecycle states, allowed transitions,
read-only snapshots and the events the coordinator reacts to.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel


class ServiceState(str, Enum):
    """Lifecycle state of a runtime service instance."""

    PENDING = "pending"
    STARTING = "starting"
    STARTED = "started"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_running(self) -> bool:
        return self in RUNNING_STATES

    @property
    def is_live(self) -> bool:
        """A process exists (or is being launched) for this instance."""
        return self in LIVE_STATES


RUNNING_STATES: FrozenSet[ServiceState] = frozenset(
    {ServiceState.STARTED, ServiceState.HEALTHY, ServiceState.UNHEALTHY}
)
LIVE_STATES: FrozenSet[ServiceState] = RUNNING_STATES | {ServiceState.STARTING}

TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STARTING: frozenset({
        ServiceState.STARTED, ServiceState.FAILED,
        ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.STARTED: frozenset({
        ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.FAILED,
        ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.HEALTHY: frozenset({
        ServiceState.UNHEALTHY, ServiceState.FAILED,
        ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.UNHEALTHY: frozenset({
        ServiceState.HEALTHY, ServiceState.FAILED,
        ServiceState.STOPPING, ServiceState.STOPPED,
    }),
    ServiceState.FAILED: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STOPPING: frozenset({ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
}


def can_transition(current: ServiceState, target: ServiceState) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class InstanceSnapshot:
    """Read-only view of a runtime service instance at one point in time."""

    name: str
    state: ServiceState
    generation: int = 0
    restart_count: int = 0
    since: float = 0.0
    history: Tuple[Tuple[float, ServiceState], ...] = ()

    def entered_at(self, state: ServiceState) -> List[float]:
        """Times at which the instance entered ``state``, oldest first."""
        return [at for at, s in self.history if s == state]


# Events posted to the coordinator. ``generation`` ties an event to one launch
# attempt so events from an earlier attempt are ignored.

@dataclass(frozen=True)
class ProcessRunning:
    service: str
    generation: int


@dataclass(frozen=True)
class ProcessExited:
    service: str
    generation: int
    exit_code: int


@dataclass(frozen=True)
class ProbeCompleted:
    service: str
    generation: int
    success: bool
    output: str = ""


@dataclass(frozen=True)
class RestartDue:
    service: str
    generation: int


class ServiceStatus(BaseModel):
    """One row of the persisted project state."""

    state: ServiceState
    restart_count: int = 0
    pid: Optional[int] = None


class ProjectState(BaseModel):
    """Persisted view of a running stack, read by ``ps`` and ``down``."""

    project: str
    supervisor_pid: int
    services: Dict[str, ServiceStatus] = {}
    failures: List[str] = []
