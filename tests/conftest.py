"""
Shared fixtures: a simulated clock, a process driver that only records what
it is asked to do, and stack builders.
"""
import pytest

from stackgate.MANAGERS.network_manager import NetworkManager
from stackgate.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackgate.MODELS.orchestration_config import StackSettings
from stackgate.MODELS.runtime_state import ProcessExited, ProcessRunning
from stackgate.PARSERS.compose_parser import ComposeParser
from stackgate.STACKS import bundled_stack_path
from stackgate.UTILS.clock import ManualClock

ERPNEXT_ENV = {
    "HOST_PORT": "8080",
    "CUSTOMER_DOMAIN": "acme.example.com",
    "DB_ROOT_PASSWORD": "s3cret",
}


class FakeDriver:
    """
    Stands in for real processes. With ``auto_run`` every launch reports the
    process as running straight away; with ``exit_on_stop`` a stop request is
    answered with a SIGTERM exit.
    """

    def __init__(self, auto_run=True, exit_on_stop=True):
        self.auto_run = auto_run
        self.exit_on_stop = exit_on_stop
        self.launches = []
        self.stops = []
        self.generations = {}
        self.post = None

    def launch(self, service, generation, post):
        self.post = post
        self.launches.append(service.name)
        self.generations[service.name] = generation
        if self.auto_run:
            post(ProcessRunning(service.name, generation))

    def stop(self, name, timeout):
        self.stops.append(name)
        if self.exit_on_stop:
            self.post(ProcessExited(name, self.generations[name], -15))

    def pid(self, name):
        return None

    def mark_running(self, name):
        self.post(ProcessRunning(name, self.generations[name]))

    def exit(self, name, code=0):
        self.post(ProcessExited(name, self.generations[name], code))

    def launch_count(self, name):
        return self.launches.count(name)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def parse_stack():
    """Parses a manifest string with the given interpolation variables."""
    def _parse(content, **context):
        return ComposeParser(context=context).parse_from_string(content)
    return _parse


@pytest.fixture
def erpnext_config():
    return ComposeParser(context=dict(ERPNEXT_ENV)).parse(bundled_stack_path("erpnext"))


@pytest.fixture
def make_orchestrator(tmp_path, clock, driver):
    """
    Builds an orchestrator on the simulated clock. ``probes`` maps service
    names to probe callables; services without an entry always pass.
    """
    def _make(config, probes=None, **kwargs):
        probes = probes or {}
        options = dict(
            driver=driver,
            clock=clock,
            probe_factory=lambda svc: probes.get(svc.name, lambda: True),
            network_manager=NetworkManager("test", check_ports=False),
        )
        options.update(kwargs)
        settings = StackSettings(project_name="test", base_dir=str(tmp_path))
        return ServiceOrchestrator(config, settings, **options)
    return _make
