import pytest
import yaml

from stackgate.errors import CyclicDependencyError, DefinitionError, MissingVariableError
from stackgate.MODELS.service_definition import DependencyCondition, RestartPolicyCondition
from stackgate.PARSERS.compose_parser import ComposeParser, merge_manifests
from stackgate.STACKS import bundled_stack_path


def test_parse(tmp_path):
    compose_content = {
        'services': {
            'web': {
                'image': 'nginx:latest',
                'command': 'nginx -g "daemon off;"',
                'ports': ['8080:80'],
                'environment': {
                    'DEBUG': True,
                    'WORKERS': 4,
                },
                'restart': 'on-failure:3',
                'depends_on': ['db'],
            },
            'db': {
                'image': 'postgres:13',
                'volumes': ['db_data:/var/lib/postgresql/data'],
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    compose_file = tmp_path / "compose.yaml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)

    config = ComposeParser(context={}).parse(str(compose_file))

    web = config.services['web']
    assert web.image_name == 'nginx:latest'
    assert web.command == ['nginx', '-g', 'daemon off;']
    assert web.ports[0].container_port == 80
    assert web.ports[0].host_port == 8080
    assert web.environment == {'DEBUG': 'true', 'WORKERS': '4'}
    assert web.restart_policy.condition == RestartPolicyCondition.ON_FAILURE
    assert web.restart_policy.max_attempts == 3
    assert web.depends_on[0].target == 'db'
    assert web.depends_on[0].condition == DependencyCondition.STARTED
    assert web.networks == ['default']

    assert 'db_data' in config.volumes
    assert 'default' in config.networks
    assert config.services['db'].volumes[0].source == 'db_data'
    assert config.services['db'].volumes[0].target == '/var/lib/postgresql/data'
    assert config.services['db'].restart_policy.condition == RestartPolicyCondition.NONE


def test_parse_erpnext_stack():
    context = {"HOST_PORT": "8080", "CUSTOMER_DOMAIN": "acme.example.com", "DB_ROOT_PASSWORD": "pw"}
    config = ComposeParser(context=context).parse(bundled_stack_path("erpnext"))

    assert set(config.services) == {
        'backend', 'db', 'frontend', 'queue-long', 'queue-short',
        'redis-queue', 'redis-cache', 'scheduler', 'websocket',
    }
    db = config.services['db']
    assert db.health_check.test == ["CMD-SHELL", "mysqladmin ping -h localhost --password=pw"]
    assert db.health_check.interval == 1.0
    assert db.health_check.retries == 20
    assert db.environment['MARIADB_ROOT_PASSWORD'] == 'pw'

    backend_edges = {e.target: e.condition for e in config.services['backend'].depends_on}
    assert backend_edges == {
        'db': DependencyCondition.HEALTHY,
        'redis-cache': DependencyCondition.STARTED,
        'redis-queue': DependencyCondition.STARTED,
    }

    frontend = config.services['frontend']
    assert frontend.ports[0].host_ip == '127.0.0.1'
    assert frontend.ports[0].host_port == 8080
    assert frontend.ports[0].container_port == 8080
    assert frontend.environment['FRAPPE_SITE_NAME_HEADER'] == 'acme.example.com'
    assert frontend.environment['PROXY_READ_TIMEOUT'] == '120'
    assert frontend.environment['CLIENT_MAX_BODY_SIZE'] == '50m'

    assert set(config.volumes) == {'db-data', 'redis-queue-data', 'sites', 'logs'}
    assert list(config.networks) == ['frappe_network']
    assert config.users_of_volume('sites') == [
        'backend', 'frontend', 'queue-long', 'queue-short', 'scheduler', 'websocket',
    ]


def test_erpnext_reports_every_missing_variable():
    with pytest.raises(MissingVariableError) as excinfo:
        ComposeParser(context={}).parse(bundled_stack_path("erpnext"))
    assert excinfo.value.names == ['CUSTOMER_DOMAIN', 'DB_ROOT_PASSWORD', 'HOST_PORT']
    assert len(excinfo.value.problems) == 3


def test_bundled_erpnext_keeps_image_commands():
    context = {"HOST_PORT": "8080", "CUSTOMER_DOMAIN": "acme.example.com", "DB_ROOT_PASSWORD": "pw"}
    services = ComposeParser(context=context).parse(bundled_stack_path("erpnext")).services
    for name in ('backend', 'redis-queue', 'redis-cache'):
        assert services[name].command == []
    assert services['db'].command[0] == '--character-set-server=utf8mb4'


def test_override_supplies_native_commands(tmp_path):
    override = tmp_path / "native.yaml"
    override.write_text("""
services:
  db:
    command: [mysqld, --character-set-server=utf8mb4]
    healthcheck:
      retries: 5
  redis-queue:
    command: [redis-server, --port, "6379"]
  redis-cache:
    command: [redis-server, --port, "6380"]
  backend:
    command: [bench, serve, --port, "8000"]
volumes:
  sites:
""")
    context = {"HOST_PORT": "8080", "CUSTOMER_DOMAIN": "acme.example.com", "DB_ROOT_PASSWORD": "pw"}
    config = ComposeParser(context=context).parse_files([bundled_stack_path("erpnext"), str(override)])

    assert all(svc.command for svc in config.services.values())
    db = config.services['db']
    assert db.command == ['mysqld', '--character-set-server=utf8mb4']
    assert db.health_check.retries == 5
    assert db.health_check.interval == 1.0
    assert db.environment['MARIADB_ROOT_PASSWORD'] == 'pw'
    assert config.services['backend'].dependency_names() == ['db', 'redis-cache', 'redis-queue']
    assert set(config.volumes) == {'db-data', 'redis-queue-data', 'sites', 'logs'}


def test_merge_manifests():
    base = {'services': {'web': {'command': ['a', 'b'], 'environment': {'A': '1', 'B': '2'}}}}
    override = {'services': {'web': {'command': ['c'], 'environment': {'B': '3'}}, 'db': {}}}
    assert merge_manifests(base, override) == {
        'services': {
            'web': {'command': ['c'], 'environment': {'A': '1', 'B': '3'}},
            'db': {},
        },
    }
    assert base['services']['web']['command'] == ['a', 'b']


def test_comments_are_not_interpolated(parse_stack):
    config = parse_stack("""
# needs ${NOT_SET} in production
services:
  app:
    command: ["run"]  # $ALSO_NOT_SET
    environment:
      GREETING: ${GREETING:-hello}
      PRICE: $$5
""")
    assert config.services['app'].environment == {'GREETING': 'hello', 'PRICE': '$5'}


def test_env_files_feed_interpolation(tmp_path, monkeypatch):
    monkeypatch.delenv("APP_PORT", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("APP_PORT=9000\n")
    config = ComposeParser(env_files=[str(env_file)]).parse_from_string(
        "services:\n  app:\n    ports: ['${APP_PORT}:80']\n"
    )
    assert config.services['app'].ports[0].host_port == 9000


def test_process_environment_overrides_env_files(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_PORT", "9100")
    env_file = tmp_path / ".env"
    env_file.write_text("APP_PORT=9000\n")
    parser = ComposeParser(env_files=[str(env_file)])
    assert parser.context['APP_PORT'] == '9100'


def test_healthcheck_forms(parse_stack):
    config = parse_stack("""
services:
  shell:
    healthcheck:
      test: curl -f http://localhost/
      interval: 1m30s
      timeout: 250ms
      start_period: 10s
  exec:
    healthcheck:
      test: ["CMD", "pg_isready", "-U", "postgres"]
  off:
    healthcheck:
      disable: true
""")
    shell = config.services['shell'].health_check
    assert shell.test == ["CMD-SHELL", "curl -f http://localhost/"]
    assert shell.interval == 90.0
    assert shell.timeout == 0.25
    assert shell.start_period == 10.0
    assert shell.retries == 3

    assert config.services['exec'].health_check.test == ["CMD", "pg_isready", "-U", "postgres"]
    assert config.services['exec'].health_check.interval == 30.0
    assert config.services['off'].health_check is None
    assert not config.services['off'].has_health_check


def test_restart_policy_forms(parse_stack):
    config = parse_stack("""
services:
  deployed:
    deploy:
      restart_policy:
        condition: on-failure
        max_attempts: 5
        delay: 2s
  plain:
    restart: on-failure
  never:
    deploy:
      restart_policy:
        condition: none
""")
    deployed = config.services['deployed'].restart_policy
    assert deployed.condition == RestartPolicyCondition.ON_FAILURE
    assert deployed.max_attempts == 5
    assert deployed.delay == 2.0

    plain = config.services['plain'].restart_policy
    assert plain.max_attempts is None
    assert plain.delay == 5.0
    assert config.services['never'].restart_policy.condition == RestartPolicyCondition.NONE


@pytest.mark.parametrize("restart", ["always", "unless-stopped"])
def test_unsupported_restart_is_rejected(parse_stack, restart):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack(f"services:\n  web:\n    restart: {restart}\n")
    assert excinfo.value.problems[0].startswith("services.web:")


def test_unsupported_dependency_condition_is_rejected(parse_stack):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack("""
services:
  db: {}
  web:
    depends_on:
      db:
        condition: service_completed_successfully
""")
    assert "service_completed_successfully" in excinfo.value.problems[0]


def test_invalid_healthcheck_is_rejected(parse_stack):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack("""
services:
  db:
    healthcheck:
      test: ["CMD", "true"]
      retries: 0
""")
    assert "services.db: healthcheck retries" in excinfo.value.problems[0]


def test_ports(parse_stack):
    config = parse_stack("""
services:
  app:
    ports:
      - "3000"
      - "8000:80"
      - "127.0.0.1:5353:53/udp"
      - target: 443
        published: 8443
""")
    ports = config.services['app'].ports
    assert (ports[0].container_port, ports[0].host_port) == (3000, None)
    assert (ports[1].host_ip, ports[1].host_port, ports[1].container_port) == ('0.0.0.0', 8000, 80)
    assert (ports[2].host_ip, ports[2].host_port, ports[2].protocol) == ('127.0.0.1', 5353, 'udp')
    assert (ports[3].host_port, ports[3].container_port) == (8443, 443)


def test_problems_are_collected_across_services(parse_stack):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack("""
services:
  web:
    restart: always
  worker:
    ports: ["8000-8010:80"]
""")
    problems = excinfo.value.problems
    assert len(problems) == 2
    assert problems[0].startswith("services.web:")
    assert problems[1].startswith("services.worker:")


def test_undefined_references_fail_validation(parse_stack):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack("""
services:
  web:
    depends_on: [api]
    networks: [front]
    volumes: ["data:/srv"]
""")
    problems = " | ".join(excinfo.value.problems)
    assert "undefined service api" in problems
    assert "undefined network front" in problems
    assert "undefined volume data" in problems


def test_paths_outside_service_root_fail_validation(parse_stack):
    with pytest.raises(DefinitionError) as excinfo:
        parse_stack("""
services:
  web:
    working_dir: /../srv
    volumes: ["./data:/../../etc"]
  api:
    working_dir: /srv/../app
    volumes: ["./data:/data/../cache"]
""")
    problems = excinfo.value.problems
    assert problems == [
        "Service web mounts ./data outside its root at /../../etc",
        "Service web has working_dir /../srv outside its root",
    ]


def test_cycle_fails_validation(parse_stack):
    with pytest.raises(CyclicDependencyError) as excinfo:
        parse_stack("""
services:
  a:
    depends_on: [b]
  b:
    depends_on: [a]
""")
    assert excinfo.value.cycle == ['a', 'b', 'a']


def test_validation_can_be_skipped():
    config = ComposeParser(context={}).parse_from_string(
        "services:\n  web:\n    depends_on: [api]\n", validate=False
    )
    assert config.services['web'].dependency_names() == ['api']


def test_invalid_yaml():
    with pytest.raises(DefinitionError) as excinfo:
        ComposeParser(context={}).parse_from_string("services: [unclosed")
    assert excinfo.value.problems[0].startswith("Invalid YAML")
