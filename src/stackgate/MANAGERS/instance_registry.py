"""
Registry of runtime service instances, the single owner of their mutable state.
"""
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Tuple

from ..errors import InvalidTransition
from ..MODELS.runtime_state import InstanceSnapshot, ServiceState, can_transition

logger = logging.getLogger(__name__)


@dataclass
class _Instance:
    name: str
    state: ServiceState = ServiceState.PENDING
    generation: int = 0
    restart_count: int = 0
    since: float = 0.0
    history: List[Tuple[float, ServiceState]] = field(default_factory=list)

    def snapshot(self) -> InstanceSnapshot:
        return InstanceSnapshot(
            name=self.name,
            state=self.state,
            generation=self.generation,
            restart_count=self.restart_count,
            since=self.since,
            history=tuple(self.history),
        )


class InstanceRegistry:
    """
    Holds exactly one runtime instance per service. State only changes through
    ``transition``, which enforces the lifecycle state machine; everyone else
    reads frozen snapshots.
    """

    def __init__(self, names: Iterable[str], now: Callable[[], float]):
        """
        :param names: Service names, one instance is created for each.
        :param now: Time source used to stamp transitions.
        """
        self._now = now
        self._lock = threading.Lock()
        self._instances: Dict[str, _Instance] = {}
        for name in names:
            started = now()
            self._instances[name] = _Instance(
                name=name, since=started, history=[(started, ServiceState.PENDING)]
            )

    def __contains__(self, name: str) -> bool:
        return name in self._instances

    def transition(self, name: str, target: ServiceState) -> InstanceSnapshot:
        """
        Moves ``name`` to ``target``.

        Entering STARTING begins a new generation; leaving FAILED for STARTING
        also counts as a restart.

        :raises InvalidTransition: If the state machine does not allow it.
        """
        with self._lock:
            instance = self._instances[name]
            current = instance.state
            if not can_transition(current, target):
                raise InvalidTransition(name, current, target)

            if target == ServiceState.STARTING:
                instance.generation += 1
                if current == ServiceState.FAILED:
                    instance.restart_count += 1

            at = self._now()
            instance.state = target
            instance.since = at
            instance.history.append((at, target))
            snapshot = instance.snapshot()

        logger.debug("[%s] %s -> %s", name, current.value, target.value)
        return snapshot

    def get(self, name: str) -> InstanceSnapshot:
        with self._lock:
            return self._instances[name].snapshot()

    def state(self, name: str) -> ServiceState:
        with self._lock:
            return self._instances[name].state

    def snapshot(self) -> Mapping[str, InstanceSnapshot]:
        """
        A read-only copy of every instance, consistent at one point in time.
        """
        with self._lock:
            return MappingProxyType({n: i.snapshot() for n, i in self._instances.items()})

    def all_in(self, *states: ServiceState) -> bool:
        with self._lock:
            return all(i.state in states for i in self._instances.values())
