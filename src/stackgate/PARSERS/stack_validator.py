"""
Definition-time validation of a parsed stack. Every check here runs before
any service is started; a failed check blocks the whole deployment.
"""
import os
from typing import Dict, List, Tuple

from ..errors import CyclicDependencyError, DefinitionError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..RUNNERS.dependency_resolver import DependencyResolver


class StackValidator:
    """
    Checks cross references and the shape of the dependency graph.
    """
    def __init__(self):
        self.resolver = DependencyResolver()

    def problems(self, config: OrchestrationConfig) -> List[str]:
        """
        Lists every problem found, except dependency cycles.
        """
        problems: List[str] = []
        bindings: Dict[Tuple[str, int, str], str] = {}

        for name, svc in config.services.items():
            for edge in svc.depends_on:
                if edge.target not in config.services:
                    problems.append(f"Service {name} depends on undefined service {edge.target}")

            for network in svc.networks:
                if network not in config.networks:
                    problems.append(f"Service {name} uses undefined network {network}")

            for mount in svc.volumes:
                if mount.is_named and mount.source not in config.volumes:
                    problems.append(f"Service {name} mounts undefined volume {mount.source}")
                if _escapes_root(mount.target):
                    problems.append(f"Service {name} mounts {mount.source} outside its root at {mount.target}")

            if svc.working_dir and _escapes_root(svc.working_dir):
                problems.append(f"Service {name} has working_dir {svc.working_dir} outside its root")

            for port in svc.ports:
                if port.host_port is None:
                    continue
                key = (port.host_ip, port.host_port, port.protocol)
                if key in bindings:
                    problems.append(
                        f"Services {bindings[key]} and {name} both publish "
                        f"{port.host_ip}:{port.host_port}/{port.protocol}"
                    )
                else:
                    bindings[key] = name

        return problems

    def validate(self, config: OrchestrationConfig) -> None:
        """
        :raises CyclicDependencyError: If the only problem is a dependency cycle.
        :raises DefinitionError: If any other problem is found.
        """
        problems = self.problems(config)
        cycle = self.resolver.find_cycle(config)
        if cycle and not problems:
            raise CyclicDependencyError(cycle)
        if cycle:
            problems.append(f"Circular dependency detected: {' -> '.join(cycle)}")
        if problems:
            raise DefinitionError(problems)


def _escapes_root(path: str) -> bool:
    relative = os.path.normpath(path.lstrip("/\\"))
    return relative == os.pardir or relative.startswith(os.pardir + os.sep)
