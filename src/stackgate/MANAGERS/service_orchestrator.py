# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration for multiple services: the control loop that gates starts on
dependencies, reacts to process and probe events, restarts failed services
and tears the stack down behind a join barrier.
"""
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from ..errors import BringUpFailure, InvalidTransition, RestartsExhausted, StackError
from ..MODELS.orchestration_config import OrchestrationConfig, StackSettings
from ..MODELS.runtime_state import (
    InstanceSnapshot,
    ProbeCompleted,
    ProcessExited,
    ProcessRunning,
    ProjectState,
    RestartDue,
    ServiceState,
    ServiceStatus,
)
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.clock import WallClock
from .dependency_gate import DependencyGate
from .environment_manager import EnvironmentManager
from .health_monitor import HealthMonitor, HealthVerdict, ProbeFactory, command_probe_factory
from .instance_registry import InstanceRegistry
from .network_manager import NetworkManager
from .process_manager import LAUNCH_FAILED, NativeProcessDriver
from .restart_supervisor import RestartSupervisor
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _BringUp:
    pass


@dataclass(frozen=True)
class _StopService:
    service: str


@dataclass(frozen=True)
class _Teardown:
    remove_volumes: bool = False


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    Every state change goes through a single event queue. ``post`` may be
    called from any thread; whichever thread finds the queue idle drains it,
    so transitions never run concurrently while processes and probes run on
    their own threads.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 settings: Optional[StackSettings] = None,
                 driver=None,
                 clock=None,
                 probe_factory: Optional[ProbeFactory] = None,
                 volume_manager: Optional[VolumeManager] = None,
                 network_manager: Optional[NetworkManager] = None,
                 state_store: Optional[StateStore] = None,
                 on_failure: Optional[Callable[[StackError], None]] = None):
        """
        Initializes the orchestrator.

        :param config: Configuration for all services.
        :param settings: Project name, base directory and runtime knobs.
        :param driver: Launches and stops service processes. Defaults to native processes.
        :param clock: Time source. Defaults to the wall clock.
        :param probe_factory: Builds health probes. Defaults to running the health check command.
        :param state_store: Where to persist the project state, if anywhere.
        :param on_failure: Called for every bring-up failure or exhausted restart budget.
        """
        self.config = config
        self.settings = settings or StackSettings(project_name=config.name or "stackgate")
        self.resolver = DependencyResolver()
        self.order = self.resolver.resolve_order(config)

        self._owns_clock = clock is None
        self.clock = clock or WallClock(self.settings.probe_workers)
        self.volume_manager = volume_manager or VolumeManager(self.settings.base_dir, self.settings.project_name)
        self.network_manager = network_manager or NetworkManager(self.settings.project_name)
        self.env_manager = EnvironmentManager(self.settings.base_dir)
        self.driver = driver or NativeProcessDriver(
            self.volume_manager, self.settings.base_dir, extra_env=self._discovery_env
        )
        self.state_store = state_store
        self.on_failure = on_failure

        self.registry = InstanceRegistry(self.order, self.clock.now)
        self.gate = DependencyGate(config)
        self.health_monitor = HealthMonitor(
            self.clock, self.post, probe_factory or command_probe_factory(self._service_environment)
        )
        self.restart_supervisor = RestartSupervisor(self.clock, self.post)

        self.failures: List[StackError] = []
        self._events: Deque[Any] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._changed = threading.Condition()
        self._started = False
        self._tearing_down = False
        self._remove_volumes = False
        self._torn_down = threading.Event()
        self._handlers: Dict[type, Callable[[Any], None]] = {
            _BringUp: self._on_bring_up,
            _StopService: self._on_stop_service,
            _Teardown: self._on_teardown,
            ProcessRunning: self._on_running,
            ProcessExited: self._on_exited,
            ProbeCompleted: self._on_probe,
            RestartDue: self._on_restart_due,
        }

    # Public API

    def up(self):
        """
        Provisions networks and published ports, then releases every service
        whose dependencies allow it. Returns without waiting for the stack.

        :raises PortConflictError: If a published port is taken; nothing is started.
        """
        if self._started:
            raise RuntimeError("Stack has already been started")
        self._started = True

        for definition in self.config.networks.values():
            self.network_manager.create_network(definition)
        for svc in self.config.services.values():
            self.network_manager.allocate_ports(svc)

        logger.info("Starting project %s: %s", self.settings.project_name, ", ".join(self.order))
        self.post(_BringUp())

    def stop(self, name: str):
        """
        Stops one service. A stopped service is never restarted.
        """
        if name not in self.config.services:
            raise KeyError(f"Unknown service {name}")
        self.post(_StopService(name))

    def request_teardown(self, remove_volumes: bool = False):
        """
        Broadcasts a stop to every service without waiting. Networks (and, if
        asked, volumes) are removed once every service has reached STOPPED.
        """
        self.post(_Teardown(remove_volumes))

    def down(self, timeout: Optional[float] = None, remove_volumes: bool = False) -> bool:
        """
        Stops every service and waits for the teardown to complete.

        :return: True if the stack was fully torn down within ``timeout``.
        """
        self.request_teardown(remove_volumes)
        if timeout is None:
            timeout = self.settings.stop_timeout + 5
        done = self._torn_down.wait(timeout)
        if not done:
            logger.warning("Teardown did not complete within %.1fs", timeout)
        if self._owns_clock:
            self.clock.shutdown()
        return done

    def wait_until_ready(self, timeout: Optional[float] = None):
        """
        Blocks until every service is HEALTHY (or has exited cleanly).

        :raises BringUpFailure: If a service never became healthy.
        :raises RestartsExhausted: If a service ran out of restarts.
        :raises TimeoutError: If ``timeout`` expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                if self.failures:
                    raise self.failures[0]
                if self.is_ready():
                    return
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    waiting = [n for n, s in self.ps().items() if s != ServiceState.HEALTHY.value]
                    raise TimeoutError(f"Stack not ready after {timeout}s, waiting on: {', '.join(waiting)}")
                self._changed.wait(remaining)

    def wait_torn_down(self, timeout: Optional[float] = None) -> bool:
        return self._torn_down.wait(timeout)

    def is_ready(self) -> bool:
        return not self._tearing_down and self.registry.all_in(ServiceState.HEALTHY, ServiceState.STOPPED)

    @property
    def torn_down(self) -> bool:
        return self._torn_down.is_set()

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their states.
        """
        return {name: snap.state.value for name, snap in self.registry.snapshot().items()}

    def status(self) -> Mapping[str, InstanceSnapshot]:
        return self.registry.snapshot()

    def blocked_on(self, name: str) -> List[str]:
        """
        Dependencies still holding ``name`` in PENDING.
        """
        svc = self.config.services[name]
        return [edge.target for edge in self.gate.unmet(svc, self.registry.snapshot())]

    # Event loop

    def post(self, event: Any):
        """
        Queues an event for the coordinator and drains the queue unless
        another thread is already doing so.
        """
        with self._lock:
            self._events.append(event)
            if self._draining:
                return
            self._draining = True

        try:
            while True:
                with self._lock:
                    if not self._events:
                        self._draining = False
                        return
                    event = self._events.popleft()
                self._dispatch(event)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _dispatch(self, event: Any):
        handler = self._handlers[type(event)]
        try:
            handler(event)
        except InvalidTransition:
            logger.exception("Ignoring event %s", event)

    def _on_bring_up(self, event: _BringUp):
        for name in self.order:
            self._release(name)

    def _on_running(self, event: ProcessRunning):
        snap = self.registry.get(event.service)
        if snap.generation != event.generation or snap.state != ServiceState.STARTING:
            return
        self._transition(event.service, ServiceState.STARTED)

        svc = self.config.services[event.service]
        if svc.has_health_check:
            self.health_monitor.watch(svc, event.generation)
        else:
            # Nothing will ever probe it, so it is healthy as soon as it runs
            self._transition(event.service, ServiceState.HEALTHY)
        self._release_dependents(event.service)

    def _on_probe(self, event: ProbeCompleted):
        verdict = self.health_monitor.record(event)
        if verdict is None:
            return
        name = event.service
        state = self.registry.state(name)
        if not state.is_running:
            return

        if verdict == HealthVerdict.HEALTHY:
            if state != ServiceState.HEALTHY:
                self._transition(name, ServiceState.HEALTHY)
                logger.info("[%s] is healthy", name)
                self._release_dependents(name)
        elif verdict == HealthVerdict.UNHEALTHY:
            if state != ServiceState.UNHEALTHY:
                self._transition(name, ServiceState.UNHEALTHY)
                logger.warning("[%s] is unhealthy: %s", name, event.output)
        elif verdict == HealthVerdict.EXHAUSTED:
            if state != ServiceState.UNHEALTHY:
                self._transition(name, ServiceState.UNHEALTHY)
            health = self.health_monitor.get_health(name)
            self._report(BringUpFailure(name, health.probes, event.output))

    def _on_exited(self, event: ProcessExited):
        name = event.service
        snap = self.registry.get(name)
        if snap.generation != event.generation:
            return
        self.health_monitor.unwatch(name)

        if snap.state == ServiceState.STOPPING:
            self._transition(name, ServiceState.STOPPED)
            self._on_stopped(name)
            return
        if not snap.state.is_live:
            return

        if event.exit_code == 0:
            logger.info("[%s] exited cleanly", name)
            self._transition(name, ServiceState.STOPPED)
            self._on_stopped(name)
            return

        failed = self._transition(name, ServiceState.FAILED)
        logger.warning("[%s] failed with exit code %d", name, event.exit_code)
        policy = self.config.services[name].restart_policy
        decision = self.restart_supervisor.on_failure(failed, policy)
        if decision.exhausted:
            self._report(RestartsExhausted(name, failed.restart_count))
        elif not decision.restart:
            logger.error("[%s] failed and its restart policy is %s", name, policy.condition.value)

    def _on_restart_due(self, event: RestartDue):
        snap = self.registry.get(event.service)
        if self._tearing_down or snap.state != ServiceState.FAILED or snap.generation != event.generation:
            return
        self._launch(event.service)

    def _on_stop_service(self, event: _StopService):
        self._stop_one(event.service)

    def _on_teardown(self, event: _Teardown):
        if not self._tearing_down:
            logger.info("Stopping project %s", self.settings.project_name)
        self._tearing_down = True
        self._remove_volumes = self._remove_volumes or event.remove_volumes
        self.restart_supervisor.cancel_all()
        self.health_monitor.unwatch_all()
        for name in reversed(self.order):
            self._stop_one(name)
        self._check_barrier()

    # Helpers, only called from handlers

    def _release(self, name: str):
        if self._tearing_down or self.registry.state(name) != ServiceState.PENDING:
            return
        svc = self.config.services[name]
        unmet = self.gate.unmet(svc, self.registry.snapshot())
        if unmet:
            logger.debug("[%s] waiting on %s", name,
                         ", ".join(f"{e.target} ({e.condition.value})" for e in unmet))
            return
        self._launch(name)

    def _release_dependents(self, name: str):
        for dependent in self.config.dependents_of(name):
            self._release(dependent)

    def _launch(self, name: str):
        svc = self.config.services[name]
        snap = self._transition(name, ServiceState.STARTING)
        logger.info("Starting service: %s", name)
        try:
            self.volume_manager.attach(svc)
        except (OSError, ValueError) as e:
            logger.error("[%s] could not mount volumes: %s", name, e)
            self.post(ProcessExited(name, snap.generation, LAUNCH_FAILED))
            return
        self.network_manager.connect(svc)
        self.driver.launch(svc, snap.generation, self.post)

    def _stop_one(self, name: str):
        state = self.registry.state(name)
        if state in (ServiceState.PENDING, ServiceState.FAILED):
            self.restart_supervisor.cancel(name)
            self._transition(name, ServiceState.STOPPED)
            self._on_stopped(name)
        elif state.is_live:
            self.health_monitor.unwatch(name)
            self._transition(name, ServiceState.STOPPING)
            logger.info("Stopping service: %s", name)
            self.driver.stop(name, self.settings.stop_timeout)

    def _on_stopped(self, name: str):
        self.volume_manager.detach(name)
        self.network_manager.disconnect(name)
        self._check_barrier()

    def _check_barrier(self):
        if not self._tearing_down or self._torn_down.is_set():
            return
        if not self.registry.all_in(ServiceState.STOPPED):
            return

        self.network_manager.remove_all()
        if self._remove_volumes:
            for volume in self.config.volumes.values():
                if not volume.external:
                    self.volume_manager.remove_volume(volume.name)
        self.volume_manager.remove_rootfs()
        if self.state_store is not None:
            self.state_store.clear()
        self._torn_down.set()
        logger.info("Project %s stopped", self.settings.project_name)
        with self._changed:
            self._changed.notify_all()

    def _transition(self, name: str, state: ServiceState) -> InstanceSnapshot:
        snap = self.registry.transition(name, state)
        self._persist()
        with self._changed:
            self._changed.notify_all()
        return snap

    def _report(self, failure: StackError):
        logger.error("%s", failure)
        self.failures.append(failure)
        self._persist()
        if self.on_failure is not None:
            self.on_failure(failure)
        with self._changed:
            self._changed.notify_all()

    def _persist(self):
        if self.state_store is None or self._torn_down.is_set():
            return
        services = {
            name: ServiceStatus(state=snap.state, restart_count=snap.restart_count,
                                pid=self.driver.pid(name))
            for name, snap in self.registry.snapshot().items()
        }
        self.state_store.write(ProjectState(
            project=self.settings.project_name,
            supervisor_pid=os.getpid(),
            services=services,
            failures=[str(f) for f in self.failures],
        ))

    def _discovery_env(self) -> Dict[str, str]:
        return self.network_manager.get_service_discovery_env(list(self.config.services))

    def _service_environment(self, service) -> Dict[str, str]:
        return self.env_manager.get_merged_environment(service, self._discovery_env())
