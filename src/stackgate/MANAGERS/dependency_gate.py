"""
Dependency gate: decides whether a service may leave PENDING.

A ``service_started`` edge is met once the target is running (STARTED,
HEALTHY or UNHEALTHY). A ``service_healthy`` edge needs the target HEALTHY,
except that a target without a health check satisfies it as soon as it is
running: such a target could otherwise never produce a HEALTHY transition
and every dependent would wait forever.
"""
from typing import List, Mapping

from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.runtime_state import InstanceSnapshot, ServiceState
from ..MODELS.service_definition import DependencyCondition, DependencyEdge, ServiceDefinition


class DependencyGate:
    """
    Evaluates the dependency edges of a service against a registry snapshot.
    """

    def __init__(self, config: OrchestrationConfig):
        self.config = config

    def satisfies(self, condition: DependencyCondition, target: InstanceSnapshot) -> bool:
        """
        Whether ``target`` currently meets ``condition``.
        """
        if condition is DependencyCondition.STARTED:
            return target.state.is_running
        if condition is DependencyCondition.HEALTHY:
            if target.state == ServiceState.HEALTHY:
                return True
            return target.state.is_running and not self.config.services[target.name].has_health_check
        raise ValueError(f"Unknown dependency condition: {condition}")

    def unmet(self, service: ServiceDefinition,
              snapshot: Mapping[str, InstanceSnapshot]) -> List[DependencyEdge]:
        """
        Edges of ``service`` that are not satisfied in ``snapshot``.
        """
        return [
            edge for edge in service.depends_on
            if not self.satisfies(edge.condition, snapshot[edge.target])
        ]

    def can_start(self, service: ServiceDefinition,
                  snapshot: Mapping[str, InstanceSnapshot]) -> bool:
        """
        True iff every dependency edge of ``service`` is satisfied.
        """
        return not self.unmet(service, snapshot)
