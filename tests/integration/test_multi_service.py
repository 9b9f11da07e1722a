import os
import sys
import time

import yaml

from stackgate.errors import RestartsExhausted
from stackgate.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackgate.MANAGERS.state_store import StateStore
from stackgate.MODELS.orchestration_config import StackSettings
from stackgate.MODELS.runtime_state import ServiceState
from stackgate.PARSERS.compose_parser import ComposeParser

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def _load(tmp_path, compose_content):
    compose_file = tmp_path / "compose.yaml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)
    return ComposeParser().parse(str(compose_file))


def _orchestrator(tmp_path, config, project, **kwargs):
    settings = StackSettings(project_name=project, base_dir=str(tmp_path), stop_timeout=5)
    return ServiceOrchestrator(config, settings, **kwargs)


def _wait_for(predicate, timeout=30):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "timed out"
        time.sleep(0.05)


def test_multi_service_up_down(tmp_path):
    ready = tmp_path / "db.ready"
    config = _load(tmp_path, {
        'services': {
            'db': {
                'command': [sys.executable, DUMMY],
                'environment': {'APP_ENV': 'prod', 'READY_FILE': str(ready)},
                'healthcheck': {
                    'test': ['CMD', sys.executable, '-c',
                             f"import os, sys; sys.exit(0 if os.path.exists({str(ready)!r}) else 1)"],
                    'interval': '200ms',
                    'retries': 50,
                },
                'volumes': ['data:/var/lib/data'],
            },
            'web': {
                'command': [sys.executable, DUMMY],
                'depends_on': {'db': {'condition': 'service_healthy'}},
                'environment': {'APP_ENV': 'prod'},
                'volumes': ['data:/srv/data'],
            },
        },
        'volumes': {'data': {}},
    })
    store = StateStore(os.path.join(str(tmp_path), ".stackgate", "multi"))
    orchestrator = _orchestrator(tmp_path, config, "multi", state_store=store)

    orchestrator.up()
    try:
        orchestrator.wait_until_ready(timeout=30)
        assert orchestrator.ps() == {'db': 'healthy', 'web': 'healthy'}

        status = orchestrator.status()
        assert status['web'].entered_at(ServiceState.STARTING)[0] >= status['db'].entered_at(ServiceState.HEALTHY)[0]

        state = store.read()
        assert state.supervisor_pid == os.getpid()
        assert state.services['db'].pid is not None

        web_log = tmp_path / ".stackgate" / "multi" / "logs" / "web.log"
        _wait_for(lambda: web_log.exists() and "DB_HOST" in web_log.read_text())
    finally:
        assert orchestrator.down(timeout=30)

    assert orchestrator.ps() == {'db': 'stopped', 'web': 'stopped'}
    assert store.read() is None

    state_root = tmp_path / ".stackgate" / "multi"
    db_log = (state_root / "logs" / "db.log").read_text()
    web_log = (state_root / "logs" / "web.log").read_text()
    assert "APP_ENV: prod" in db_log
    assert "DB_HOST: 127.0.0.1" in web_log
    assert (state_root / "volumes" / "data").is_dir()
    assert not (state_root / "rootfs").exists()


def test_restarts_exhausted(tmp_path):
    config = _load(tmp_path, {
        'services': {
            'flaky': {
                'command': [sys.executable, DUMMY],
                'environment': {'EXIT_CODE': '3'},
                'deploy': {'restart_policy': {'condition': 'on-failure', 'max_attempts': 2, 'delay': 0}},
            },
        },
    })
    orchestrator = _orchestrator(tmp_path, config, "flaky")
    orchestrator.up()
    try:
        _wait_for(lambda: orchestrator.failures)
        assert isinstance(orchestrator.failures[0], RestartsExhausted)
        assert orchestrator.status()['flaky'].restart_count == 2
        assert orchestrator.ps()['flaky'] == 'failed'
    finally:
        assert orchestrator.down(timeout=30)


def test_unlaunchable_service_fails(tmp_path):
    config = _load(tmp_path, {
        'services': {
            'broken': {'command': ['/nonexistent/binary'], 'restart': 'no'},
            'after': {'command': [sys.executable, DUMMY], 'depends_on': ['broken']},
        },
    })
    orchestrator = _orchestrator(tmp_path, config, "broken")
    orchestrator.up()
    try:
        assert orchestrator.ps() == {'broken': 'failed', 'after': 'pending'}
    finally:
        assert orchestrator.down(timeout=30)
    assert orchestrator.ps() == {'broken': 'stopped', 'after': 'stopped'}


def test_clean_exit_is_not_restarted(tmp_path):
    config = _load(tmp_path, {
        'services': {
            'oneshot': {
                'command': [sys.executable, DUMMY],
                'environment': {'EXIT_CODE': '0'},
                'restart': 'on-failure',
            },
        },
    })
    orchestrator = _orchestrator(tmp_path, config, "oneshot")
    orchestrator.up()
    try:
        _wait_for(lambda: orchestrator.ps() == {'oneshot': 'stopped'})
        orchestrator.wait_until_ready(timeout=0)
        assert orchestrator.status()['oneshot'].restart_count == 0
    finally:
        assert orchestrator.down(timeout=30)
