"""
Models for defining services, including restart policies, health checks and dependencies.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field
from enum import Enum

from ..UTILS.string_interpolation import EnvironmentInterpolator


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.0


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.

    ``test`` keeps the compose form: ``["CMD", "pg_isready"]``,
    ``["CMD-SHELL", "redis-cli ping"]`` or ``["NONE"]``.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

    @property
    def disabled(self) -> bool:
        return not self.test or self.test[0] == "NONE"


class DependencyCondition(str, Enum):
    """
    Status a dependency must reach before its dependent is started.
    """
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED_SUCCESSFULLY = "service_completed_successfully"


class ServiceDependency(BaseModel):
    """
    A ``depends_on`` edge.
    """
    service: str
    condition: DependencyCondition = DependencyCondition.STARTED
    required: bool = True


class EnvironmentBinding(BaseModel):
    """
    An environment variable of a service, kept as declared so the default
    of a ``${VAR:-default}`` reference stays visible.
    """
    name: str
    template: Optional[str] = None

    @property
    def default(self) -> Optional[str]:
        if self.template is None:
            return None
        for ref in EnvironmentInterpolator.references(self.template):
            if ref.default is not None:
                return ref.default
        return None

    def resolve(self, context: Dict[str, str]) -> Optional[str]:
        """
        Resolves the binding against ``context``.

        A binding without a value (``- DEBUG`` in list form) is passed
        through from the context and is None when the context lacks it.
        """
        if self.template is None:
            return context.get(self.name)
        return EnvironmentInterpolator.interpolate(self.template, context)


class PortMapping(BaseModel):
    """
    A published or exposed port.
    """
    target: int
    published: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path and a service path.
    """
    source: str
    target: str
    read_only: bool = False


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from a compose manifest.
    """
    name: str
    image_name: str = ""
    build_context: Optional[str] = None
    dockerfile_path: Optional[str] = None

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, EnvironmentBinding] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []
    hostname: Optional[str] = None
    extra_hosts: Dict[str, str] = {}

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[ServiceDependency] = []

    # Metadata
    labels: Dict[str, str] = {}
    user: Optional[str] = None

    @property
    def has_health_check(self) -> bool:
        return self.health_check is not None and not self.health_check.disabled

    def dependency_names(self) -> List[str]:
        return [dep.service for dep in self.depends_on]

    def resolve_environment(self, context: Dict[str, str]) -> Dict[str, str]:
        """
        Resolves every binding; unresolvable pass-through bindings are omitted.
        """
        resolved = {}
        for name, binding in self.environment.items():
            value = binding.resolve(context)
            if value is not None:
                resolved[name] = value
        return resolved
