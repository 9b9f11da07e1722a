"""
Restart supervisor: decides what happens after a service fails.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..MODELS.runtime_state import InstanceSnapshot, RestartDue
from ..MODELS.service_definition import RestartPolicy, RestartPolicyCondition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestartDecision:
    restart: bool
    delay: float = 0.0
    exhausted: bool = False


class RestartSupervisor:
    """
    Applies a service's restart policy to a FAILED instance.

    ``on-failure`` schedules exactly one relaunch per failure, ``delay``
    seconds later, until ``max_attempts`` relaunches have been made (no cap
    when unset). Stopped instances never reach this class: a stop is not a
    failure.
    """

    def __init__(self, clock, post: Callable[[Any], None]):
        """
        :param clock: Time source used to delay relaunches.
        :param post: Delivers RestartDue events to the coordinator.
        """
        self.clock = clock
        self.post = post
        self._lock = threading.Lock()
        self._pending: Dict[str, Any] = {}
        self._scheduled_for: Dict[str, int] = {}

    def decide(self, instance: InstanceSnapshot, policy: RestartPolicy) -> RestartDecision:
        if policy.condition == RestartPolicyCondition.NONE:
            return RestartDecision(restart=False)
        if policy.max_attempts is not None and instance.restart_count >= policy.max_attempts:
            return RestartDecision(restart=False, exhausted=True)
        return RestartDecision(restart=True, delay=policy.delay)

    def on_failure(self, instance: InstanceSnapshot, policy: RestartPolicy) -> RestartDecision:
        """
        Called once per transition into FAILED.

        :param instance: Snapshot taken right after the FAILED transition.
        :param policy: The service's restart policy.
        """
        decision = self.decide(instance, policy)
        if not decision.restart:
            return decision

        with self._lock:
            # One relaunch per failed generation
            if self._scheduled_for.get(instance.name) == instance.generation:
                return decision
            self._scheduled_for[instance.name] = instance.generation
            event = RestartDue(instance.name, instance.generation)
            logger.info("[%s] restarting in %.1fs (attempt %d)",
                        instance.name, decision.delay, instance.restart_count + 1)
            if decision.delay > 0:
                self._pending[instance.name] = self.clock.call_later(
                    decision.delay, lambda: self._fire(event)
                )
        if decision.delay <= 0:
            self.post(event)
        return decision

    def cancel(self, name: str) -> None:
        with self._lock:
            handle = self._pending.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._pending.values())
            self._pending.clear()
        for handle in handles:
            handle.cancel()

    def pending(self, name: str) -> Optional[int]:
        """Generation whose relaunch is still waiting, if any."""
        with self._lock:
            return self._scheduled_for.get(name) if name in self._pending else None

    def _fire(self, event: RestartDue) -> None:
        with self._lock:
            self._pending.pop(event.service, None)
        self.post(event)
