"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, Dict, Set
from ..errors import CircularDependencyError, UnknownDependencyError
from ..MODELS.orchestration_config import OrchestrationConfig


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def dependency_map(self, config: OrchestrationConfig) -> Dict[str, List[str]]:
        """
        Maps each service to the declared services it depends on.

        Optional edges (``required: false``) to undeclared services are dropped.

        :raises UnknownDependencyError: If a required edge names an undeclared service.
        """
        services = config.services
        dependencies = {}
        for name, svc in services.items():
            deps = []
            for dep in svc.depends_on:
                if dep.service in services:
                    deps.append(dep.service)
                elif dep.required:
                    raise UnknownDependencyError(name, dep.service)
            dependencies[name] = deps
        return dependencies

    def resolve_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines the correct order to start services using topological sort.
        Services without ordering constraints keep their declaration order.

        :param config: The orchestration configuration.
        :return: Service names in the order they should be started.
        :raises CircularDependencyError: If a circular dependency is detected.
        """
        dependencies = self.dependency_map(config)

        ordered = []
        visited: Set[str] = set()
        path: List[str] = []

        def visit(name):
            if name in path:
                raise CircularDependencyError(path[path.index(name):] + [name])
            if name in visited:
                return
            path.append(name)
            for dep in dependencies[name]:
                visit(dep)
            path.pop()
            visited.add(name)
            ordered.append(name)

        for name in config.services:
            visit(name)

        return ordered

    def startup_batches(self, config: OrchestrationConfig) -> List[List[str]]:
        """
        Groups services into batches; every service's dependencies sit in
        earlier batches, so the services of one batch may start together.
        """
        dependencies = self.dependency_map(config)
        level: Dict[str, int] = {}
        for name in self.resolve_order(config):
            level[name] = 1 + max((level[dep] for dep in dependencies[name]), default=-1)

        batches: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in config.services:
            batches[level[name]].append(name)
        return batches

    def dependents(self, config: OrchestrationConfig, name: str) -> List[str]:
        """
        Every service that depends on ``name`` directly or transitively,
        in startup order.
        """
        dependencies = self.dependency_map(config)
        affected = {name}
        result = []
        for candidate in self.resolve_order(config):
            if any(dep in affected for dep in dependencies[candidate]):
                affected.add(candidate)
                result.append(candidate)
        return result
