"""
Unit tests for the dependency resolver.
"""
import pytest
from stackctl.errors import CircularDependencyError, UnknownDependencyError
from stackctl.MODELS.orchestration_config import OrchestrationConfig
from stackctl.MODELS.service_definition import ServiceDefinition, ServiceDependency


def make_config(graph, optional=()):
    services = {}
    for name, deps in graph.items():
        services[name] = ServiceDefinition(
            name=name,
            depends_on=[
                ServiceDependency(service=dep, required=(name, dep) not in optional)
                for dep in deps
            ],
        )
    return OrchestrationConfig(services=services)


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_dependencies_come_first(self, resolver):
        config = make_config({
            'app': ['pgsql', 'redis'],
            'fe': [],
            'pgsql': [],
            'redis': [],
            'mailpit': [],
        })
        order = resolver.resolve_order(config)
        assert order.index('pgsql') < order.index('app')
        assert order.index('redis') < order.index('app')
        assert sorted(order) == sorted(config.services)

    def test_declaration_order_is_kept(self, resolver):
        config = make_config({'c': [], 'a': [], 'b': []})
        assert resolver.resolve_order(config) == ['c', 'a', 'b']

    def test_cycle(self, resolver):
        config = make_config({'a': ['b'], 'b': ['c'], 'c': ['a']})
        with pytest.raises(CircularDependencyError) as exc:
            resolver.resolve_order(config)
        assert exc.value.cycle == ['a', 'b', 'c', 'a']

    def test_self_dependency(self, resolver):
        config = make_config({'a': ['a']})
        with pytest.raises(CircularDependencyError):
            resolver.resolve_order(config)

    def test_unknown_dependency(self, resolver):
        config = make_config({'app': ['db']})
        with pytest.raises(UnknownDependencyError) as exc:
            resolver.resolve_order(config)
        assert exc.value.service == 'app'
        assert exc.value.dependency == 'db'

    def test_optional_unknown_dependency_is_dropped(self, resolver):
        config = make_config({'app': ['db']}, optional=[('app', 'db')])
        assert resolver.resolve_order(config) == ['app']

    def test_startup_batches(self, resolver):
        config = make_config({
            'app': ['pgsql', 'redis'],
            'worker': ['app'],
            'pgsql': [],
            'redis': [],
            'fe': [],
        })
        assert resolver.startup_batches(config) == [
            ['pgsql', 'redis', 'fe'],
            ['app'],
            ['worker'],
        ]

    def test_startup_batches_empty(self, resolver):
        assert resolver.startup_batches(OrchestrationConfig(services={})) == []

    def test_dependents(self, resolver):
        config = make_config({
            'app': ['pgsql'],
            'worker': ['app'],
            'pgsql': [],
            'fe': [],
        })
        assert resolver.dependents(config, 'pgsql') == ['app', 'worker']
        assert resolver.dependents(config, 'fe') == []


@pytest.fixture
def resolver():
    from stackctl.RUNNERS.dependency_resolver import DependencyResolver
    return DependencyResolver()
