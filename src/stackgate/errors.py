"""
Exceptions raised while loading, validating and running a stack.
"""
from typing import Iterable, List, Optional


class StackError(Exception):
    """Base class for every stackgate error."""


class DefinitionError(StackError):
    """
    The stack definition is invalid. Raised at load time, before any service starts.
    """
    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = list(problems)
        super().__init__("; ".join(self.problems) or "invalid stack definition")


class CyclicDependencyError(DefinitionError):
    """The dependency graph contains a cycle."""
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__([f"Circular dependency detected: {' -> '.join(cycle)}"])


class MissingVariableError(DefinitionError):
    """Required variables are not set in the interpolation context."""
    def __init__(self, names: Iterable[str], messages: Optional[Iterable[str]] = None):
        self.names = sorted(set(names))
        problems = list(messages or [])
        if not problems:
            problems = [f"Required variable {name} is not set" for name in self.names]
        super().__init__(problems)


class PortConflictError(StackError):
    """A published host port is already bound by something else."""


class InvalidTransition(StackError):
    """An instance was asked to move to a state its current state cannot reach."""
    def __init__(self, service: str, current, target):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(f"[{service}] illegal transition {current.value} -> {target.value}")


class BringUpFailure(StackError):
    """A service exhausted its health-check budget without a single success."""
    def __init__(self, service: str, probes: int, last_output: str = ""):
        self.service = service
        self.probes = probes
        self.last_output = last_output
        message = f"Service {service} did not become healthy after {probes} probes"
        if last_output:
            message += f": {last_output}"
        super().__init__(message)


class RestartsExhausted(StackError):
    """A service failed again after reaching its restart cap."""
    def __init__(self, service: str, attempts: int):
        self.service = service
        self.attempts = attempts
        super().__init__(f"Service {service} exceeded max restart attempts ({attempts})")
