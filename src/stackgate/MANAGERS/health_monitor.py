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
Health monitoring for services: periodic probes, the bring-up retry budget,
and HEALTHY/UNHEALTHY verdicts for the coordinator.
"""
import logging
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..MODELS.runtime_state import ProbeCompleted
from ..MODELS.service_definition import HealthCheck, ServiceDefinition

logger = logging.getLogger(__name__)

Probe = Callable[[], Any]
ProbeFactory = Callable[[ServiceDefinition], Probe]


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


class HealthVerdict(str, Enum):
    """What a probe result means for the instance."""

    HOLD = "hold"  # bring-up failure, still inside the retry budget
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXHAUSTED = "exhausted"  # bring-up budget spent without a success


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    budget_used: int = 0
    probes: int = 0
    ever_healthy: bool = False
    bring_up_done: bool = False
    last_check: Optional[float] = None
    last_output: str = ""


class CommandProbe:
    """
    Runs a compose-style health check command once.
    """

    def __init__(self, health_check: HealthCheck, env: Optional[Dict[str, str]] = None):
        self.health_check = health_check
        self.env = env

    def __call__(self) -> Tuple[bool, str]:
        cmd = self.health_check.test
        use_shell = False

        # Parse command format
        if cmd[0] == "CMD":
            real_cmd: Union[List[str], str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = cmd[1]
            use_shell = True
        elif cmd[0] == "NONE":
            return True, ""
        else:
            real_cmd = cmd

        try:
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=self.env,
                capture_output=True,
                timeout=self.health_check.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return False, "Health check timed out"
        except OSError as e:
            return False, str(e)

        if result.returncode == 0:
            return True, result.stdout[:500] if result.stdout else ""
        return False, (
            result.stderr[:500] if result.stderr else f"Exit code: {result.returncode}"
        )


def command_probe_factory(env_for: Callable[[ServiceDefinition], Dict[str, str]]) -> ProbeFactory:
    """
    Builds probes that run each service's health check command in its environment.
    """
    def factory(service: ServiceDefinition) -> Probe:
        return CommandProbe(service.health_check, env_for(service))
    return factory


@dataclass
class _Watch:
    service: ServiceDefinition
    generation: int
    started_at: float
    probe: Probe
    handle: Any = None


class HealthMonitor:
    """
    Probes services on their own interval and turns results into verdicts.

    Before the first success of a service, failures are counted against the
    health check's ``retries`` (failures inside ``start_period`` are free) and
    the instance is held where it is. Spending the budget yields EXHAUSTED and
    probing stops. Once bring-up is over, by a success or by a spent budget,
    every result flips the verdict directly without smoothing, also for later
    launch attempts.
    """

    def __init__(self, clock, post: Callable[[Any], None], probe_factory: ProbeFactory):
        """
        :param clock: Time source scheduling the probes.
        :param post: Delivers ProbeCompleted events to the coordinator.
        :param probe_factory: Builds the probe callable for a service. A probe
            returns a bool or a ``(bool, output)`` pair and may raise.
        """
        self.clock = clock
        self.post = post
        self.probe_factory = probe_factory
        self._lock = threading.Lock()
        self._health: Dict[str, ServiceHealth] = {}
        self._watched: Dict[str, _Watch] = {}

    def watch(self, service: ServiceDefinition, generation: int) -> None:
        """
        Starts probing ``service`` for launch attempt ``generation``. The first
        probe runs one interval from now.
        """
        hc = service.health_check
        watch = _Watch(service, generation, self.clock.now(), self.probe_factory(service))
        with self._lock:
            self._cancel(service.name)
            health = self._health.setdefault(service.name, ServiceHealth())
            health.failing_streak = 0
            health.status = HealthStatus.STARTING
            self._watched[service.name] = watch
            watch.handle = self.clock.call_later(
                hc.interval, lambda: self._tick(service.name, generation)
            )

    def unwatch(self, name: str) -> None:
        with self._lock:
            self._cancel(name)

    def unwatch_all(self) -> None:
        with self._lock:
            for name in list(self._watched):
                self._cancel(name)

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health status of a service.

        Args:
            service_name: Name of the service.

        Returns:
            ServiceHealth object.
        """
        with self._lock:
            return self._health.get(service_name, ServiceHealth())

    def record(self, event: ProbeCompleted) -> Optional[HealthVerdict]:
        """
        Applies one probe result and schedules the next probe.

        :return: The verdict, or None when the result belongs to an instance
            that is no longer watched (stopped, failed or relaunched).
        """
        with self._lock:
            watch = self._watched.get(event.service)
            if watch is None or watch.generation != event.generation:
                return None

            hc = watch.service.health_check
            health = self._health[event.service]
            now = self.clock.now()
            health.probes += 1
            health.last_check = now
            health.last_output = event.output

            if event.success:
                health.failing_streak = 0
                health.ever_healthy = True
                health.bring_up_done = True
                health.status = HealthStatus.HEALTHY
                verdict = HealthVerdict.HEALTHY
            else:
                health.failing_streak += 1
                if health.bring_up_done:
                    health.status = HealthStatus.UNHEALTHY
                    verdict = HealthVerdict.UNHEALTHY
                else:
                    if now - watch.started_at >= hc.start_period:
                        health.budget_used += 1
                    if health.budget_used >= hc.retries:
                        health.status = HealthStatus.UNHEALTHY
                        health.bring_up_done = True
                        self._cancel(event.service)
                        return HealthVerdict.EXHAUSTED
                    verdict = HealthVerdict.HOLD

            watch.handle = self.clock.call_later(
                hc.interval, lambda: self._tick(event.service, event.generation)
            )
            return verdict

    def _tick(self, name: str, generation: int) -> None:
        """
        Runs one probe off the coordinator and posts the result.
        """
        with self._lock:
            watch = self._watched.get(name)
            if watch is None or watch.generation != generation:
                return
            probe = watch.probe
            timeout = watch.service.health_check.timeout

        try:
            result = self.clock.run_with_timeout(probe, timeout)
            if isinstance(result, tuple):
                success, output = bool(result[0]), str(result[1])
            else:
                success, output = bool(result), ""
        except TimeoutError:
            success, output = False, "Health check timed out"
        except Exception as e:
            success, output = False, str(e)

        logger.debug("[%s] probe %s", name, "passed" if success else f"failed: {output}")
        self.post(ProbeCompleted(name, generation, success, output))

    def _cancel(self, name: str) -> None:
        watch = self._watched.pop(name, None)
        if watch is not None and watch.handle is not None:
            watch.handle.cancel()
