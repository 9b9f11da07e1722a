"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, Dict, Optional
from ..MODELS.orchestration_config import OrchestrationConfig
from ..errors import CyclicDependencyError


class DependencyResolver:
    """
    Resolves the startup order of services based on their dependency edges.
    """
    def find_cycle(self, config: OrchestrationConfig) -> Optional[List[str]]:
        """
        Finds one dependency cycle, if any.

        :param config: The orchestration configuration.
        :return: The cycle as a path that starts and ends on the same service, or None.
        """
        services = config.services
        dependencies = {name: svc.dependency_names() for name, svc in services.items()}
        visited = set()
        stack: List[str] = []
        on_stack = set()

        def visit(name) -> Optional[List[str]]:
            visited.add(name)
            stack.append(name)
            on_stack.add(name)
            for dep in dependencies.get(name, []):
                if dep not in services:
                    continue
                if dep in on_stack:
                    return stack[stack.index(dep):] + [dep]
                if dep not in visited:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            stack.pop()
            on_stack.remove(name)
            return None

        for name in services:
            if name not in visited:
                cycle = visit(name)
                if cycle:
                    return cycle
        return None

    def resolve_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines an order to start services in using topological sort.

        :param config: The orchestration configuration.
        :return: Service names, dependencies before dependents.
        :raises CyclicDependencyError: If a circular dependency is detected.
        """
        return [name for wave in self.resolve_waves(config) for name in wave]

    def resolve_waves(self, config: OrchestrationConfig) -> List[List[str]]:
        """
        Groups services into waves: every service in a wave only depends on
        services from earlier waves. Names inside a wave keep manifest order.

        :raises CyclicDependencyError: If a circular dependency is detected.
        """
        cycle = self.find_cycle(config)
        if cycle:
            raise CyclicDependencyError(cycle)

        services = config.services
        depth: Dict[str, int] = {}

        def level(name) -> int:
            if name not in depth:
                deps = [d for d in services[name].dependency_names() if d in services]
                depth[name] = 1 + max((level(d) for d in deps), default=-1)
            return depth[name]

        waves: List[List[str]] = []
        for name in services:
            lvl = level(name)
            while len(waves) <= lvl:
                waves.append([])
            waves[lvl].append(name)
        return waves
