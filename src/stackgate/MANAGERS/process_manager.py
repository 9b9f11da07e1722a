"""
Lifecycle management for individual service processes, and the native
process driver the orchestrator launches services through.
"""
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

from ..MODELS.runtime_state import ProcessExited, ProcessRunning
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import ProcessRunner
from .environment_manager import EnvironmentManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

# Exit code reported when a service cannot be launched at all, as a shell would.
LAUNCH_FAILED = 127


class ProcessManager:
    """
    Manages the process of a single service.
    """
    def __init__(self,
                 service_def: ServiceDefinition,
                 volume_manager: VolumeManager,
                 base_dir: str = "."):
        """
        Initializes the process manager for a service.

        :param service_def: Definition of the service.
        :param volume_manager: Resolves the service's root and working directory.
        :param base_dir: Base directory for env files and relative paths.
        """
        self.service_def = service_def
        self.volume_manager = volume_manager
        self.env_manager = EnvironmentManager(base_dir)
        log_path = os.path.join(volume_manager.state_root, "logs", f"{service_def.name}.log")
        self.runner = ProcessRunner(service_def.name, log_file=log_path)

    def environment(self, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        return self.env_manager.get_merged_environment(self.service_def, extra_env)

    def working_dir(self) -> str:
        if self.service_def.working_dir:
            return self.volume_manager.resolve_target(self.service_def.working_dir, self.service_def.name)
        return self.volume_manager.service_root(self.service_def.name)

    def start(self, extra_env: Optional[Dict[str, str]] = None):
        """
        Starts the service process. Volumes must already be attached.

        :param extra_env: Additional environment variables (e.g., service discovery).
        :raises OSError: If there is no command or it cannot be executed.
        :raises ValueError: If ``working_dir`` escapes the service root.
        """
        command = self.service_def.command
        if not command:
            raise OSError(f"[{self.service_def.name}] No command specified, nothing to run.")
        self.runner.start(command, env=self.environment(extra_env), working_dir=self.working_dir())

    def wait(self) -> int:
        return self.runner.wait()

    def stop(self, timeout: float = 10):
        """
        Stops the service process and its children.
        """
        self.runner.stop(timeout)


class NativeProcessDriver:
    """
    Runs each service as a local process. Launch outcomes and exits are
    reported to the coordinator as events; a watcher thread per process waits
    for its exit.
    """
    def __init__(self,
                 volume_manager: VolumeManager,
                 base_dir: str = ".",
                 extra_env: Optional[Callable[[], Dict[str, str]]] = None):
        """
        :param volume_manager: Shared volume manager of the project.
        :param base_dir: Base directory for env files.
        :param extra_env: Returns environment added to every service (discovery).
        """
        self.volume_manager = volume_manager
        self.base_dir = base_dir
        self.extra_env = extra_env or dict
        self.managers: Dict[str, ProcessManager] = {}
        self._lock = threading.Lock()

    def manager(self, service: ServiceDefinition) -> ProcessManager:
        with self._lock:
            if service.name not in self.managers:
                self.managers[service.name] = ProcessManager(service, self.volume_manager, self.base_dir)
            return self.managers[service.name]

    def launch(self, service: ServiceDefinition, generation: int, post: Callable[[Any], None]) -> None:
        manager = self.manager(service)
        try:
            manager.start(extra_env=self.extra_env())
        except (OSError, ValueError) as e:
            logger.error("[%s] %s", service.name, e)
            post(ProcessExited(service.name, generation, LAUNCH_FAILED))
            return

        post(ProcessRunning(service.name, generation))
        watcher = threading.Thread(
            target=self._watch, args=(manager, generation, post),
            name=f"watch-{service.name}", daemon=True,
        )
        watcher.start()

    def stop(self, name: str, timeout: float) -> None:
        """
        Requests a stop without blocking; the exit arrives through the watcher.
        """
        manager = self.managers.get(name)
        if manager is None:
            return
        threading.Thread(target=manager.stop, args=(timeout,), name=f"stop-{name}", daemon=True).start()

    def pid(self, name: str) -> Optional[int]:
        manager = self.managers.get(name)
        if manager is None or not manager.runner.is_running():
            return None
        return manager.runner.pid

    def _watch(self, manager: ProcessManager, generation: int, post: Callable[[Any], None]) -> None:
        code = manager.wait()
        logger.info("[%s] exited with code %d", manager.service_def.name, code)
        post(ProcessExited(manager.service_def.name, generation, code))
