import pytest

from stackgate.errors import CyclicDependencyError
from stackgate.PARSERS.compose_parser import ComposeParser
from stackgate.RUNNERS.dependency_resolver import DependencyResolver


def _config(content):
    return ComposeParser(context={}).parse_from_string(content, validate=False)


def test_erpnext_waves(erpnext_config):
    waves = DependencyResolver().resolve_waves(erpnext_config)
    assert waves == [
        ['db', 'redis-queue', 'redis-cache'],
        ['backend', 'queue-long', 'queue-short', 'scheduler', 'websocket'],
        ['frontend'],
    ]


def test_resolve_order_puts_dependencies_first(erpnext_config):
    order = DependencyResolver().resolve_order(erpnext_config)
    for name, svc in erpnext_config.services.items():
        for dep in svc.dependency_names():
            assert order.index(dep) < order.index(name)


def test_find_cycle():
    config = _config("""
services:
  web:
    depends_on: [api]
  api:
    depends_on: [cache]
  cache:
    depends_on: [web]
  standalone: {}
""")
    resolver = DependencyResolver()
    assert resolver.find_cycle(config) == ['web', 'api', 'cache', 'web']
    with pytest.raises(CyclicDependencyError):
        resolver.resolve_order(config)


def test_self_dependency_is_a_cycle():
    config = _config("services:\n  loop:\n    depends_on: [loop]\n")
    assert DependencyResolver().find_cycle(config) == ['loop', 'loop']


def test_no_cycle():
    config = _config("services:\n  a: {}\n  b:\n    depends_on: [a]\n")
    assert DependencyResolver().find_cycle(config) is None
