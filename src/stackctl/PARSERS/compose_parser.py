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
Parsers for Docker Compose YAML files.
"""
import logging
import os
import shlex
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ManifestError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import (
    DependencyCondition,
    EnvironmentBinding,
    HealthCheck,
    PortMapping,
    RestartPolicy,
    ServiceDefinition,
    ServiceDependency,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .env_parser import EnvParser

logger = logging.getLogger(__name__)

HEALTHCHECK_KINDS = ("CMD", "CMD-SHELL", "NONE")


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of variables for interpolation.
            Defaults to the process environment.
        """
        self.context = dict(os.environ) if context is None else dict(context)

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        A ``.env`` file next to the manifest supplies interpolation values
        that the context does not already define.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        dotenv_path = os.path.join(os.path.dirname(os.path.abspath(compose_path)), ".env")
        context = dict(self.context)
        if os.path.exists(dotenv_path):
            logger.debug("Loading interpolation values from %s", dotenv_path)
            for key, value in EnvParser.parse(dotenv_path).items():
                context.setdefault(key, value)

        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, context=context)

    def parse_from_string(self, content: str,
                          context: Optional[Dict[str, str]] = None) -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param context: Interpolation values; defaults to the parser's context.
        :return: Parsed configuration.
        :raises ManifestError: If the document is invalid.
        """
        context = self.context if context is None else context
        if not content.strip():
            return OrchestrationConfig(services={})
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError("Compose file must be a mapping")

        services_spec = data.get('services') or {}
        if not isinstance(services_spec, dict):
            raise ManifestError("'services' must be a mapping")

        services = {}
        for name, spec in services_spec.items():
            try:
                services[name] = self._parse_service(name, spec or {}, context)
            except ManifestError:
                raise
            except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
                raise ManifestError(f"Invalid definition for service {name}: {e}") from e

        try:
            return OrchestrationConfig(
                name=data.get('name'),
                services=services,
                networks=self._top_level_names(data, 'networks'),
                volumes=self._top_level_names(data, 'volumes'),
            )
        except ValidationError as e:
            raise ManifestError(f"Invalid compose file: {e}") from e

    @staticmethod
    def _top_level_names(data: Dict[str, Any], key: str) -> List[str]:
        value = data.get(key)
        if not value:
            return []
        if not isinstance(value, dict):
            raise ManifestError(f"'{key}' must be a mapping")
        return [str(name) for name in value]

    def _parse_service(self, name: str, spec: Dict[str, Any],
                       context: Dict[str, str]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        Environment values keep their templates; everything else is
        interpolated here.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param context: Interpolation values.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise ManifestError(f"Service {name} must be a mapping")

        raw_environment = spec.get('environment', {})
        spec = self._interpolate({k: v for k, v in spec.items() if k != 'environment'}, context)

        build = spec.get('build')
        return ServiceDefinition(
            name=name,
            image_name=spec.get('image', ''),
            build_context=build.get('context') if isinstance(build, dict) else build,
            dockerfile_path=build.get('dockerfile') if isinstance(build, dict) else None,
            cmd=self._to_argv(spec.get('command')),
            entrypoint=self._to_argv(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            environment=self._parse_environment(raw_environment),
            environment_files=self._to_list(spec.get('env_file')),
            ports=self._parse_ports(spec.get('ports', [])),
            networks=self._parse_networks(spec.get('networks')),
            hostname=spec.get('hostname'),
            extra_hosts=self._parse_extra_hosts(spec.get('extra_hosts')),
            volumes=self._parse_volumes(spec.get('volumes', [])),
            restart_policy=self._parse_restart(spec.get('restart', 'no')),
            health_check=self._parse_health_check(spec.get('healthcheck')),
            depends_on=self._parse_depends_on(spec.get('depends_on')),
            labels=self._parse_labels(spec.get('labels')),
            user=str(spec['user']) if spec.get('user') is not None else None,
        )

    def _interpolate(self, node: Any, context: Dict[str, str]) -> Any:
        if isinstance(node, str):
            return EnvironmentInterpolator.interpolate(node, context)
        if isinstance(node, dict):
            return {key: self._interpolate(value, context) for key, value in node.items()}
        if isinstance(node, list):
            return [self._interpolate(item, context) for item in node]
        return node

    def _parse_environment(self, env_spec: Any) -> Dict[str, EnvironmentBinding]:
        environment = {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                if '=' in entry:
                    key, value = entry.split('=', 1)
                    environment[key] = EnvironmentBinding(name=key, template=value)
                else:
                    environment[entry] = EnvironmentBinding(name=entry)
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                template = None if value is None else self._scalar_to_str(value)
                environment[key] = EnvironmentBinding(name=key, template=template)
        elif env_spec:
            raise ManifestError("'environment' must be a list or a mapping")
        return environment

    def _parse_ports(self, ports_spec: List[Any]) -> List[PortMapping]:
        ports = []
        for p in ports_spec or []:
            if isinstance(p, dict):
                published = p.get('published')
                ports.append(PortMapping(
                    target=int(p['target']),
                    published=int(published) if published not in (None, '') else None,
                    host_ip=p.get('host_ip'),
                    protocol=p.get('protocol', 'tcp'),
                ))
                continue

            text = str(p)
            protocol = 'tcp'
            if '/' in text:
                text, protocol = text.rsplit('/', 1)
            parts = text.rsplit(':', 2)
            host_ip = None
            if len(parts) == 3:
                host_ip, published, target = parts
            elif len(parts) == 2:
                published, target = parts
            else:
                published, target = '', parts[0]

            targets = self._port_range(target)
            publishes = self._port_range(published) if published else [None] * len(targets)
            if len(publishes) != len(targets):
                raise ManifestError(f"Port range mismatch in {p!r}")
            for host_port, container_port in zip(publishes, targets):
                ports.append(PortMapping(
                    target=container_port,
                    published=host_port,
                    host_ip=host_ip or None,
                    protocol=protocol,
                ))
        return ports

    def _port_range(self, text: str) -> List[int]:
        if '-' in text:
            start, end = text.split('-', 1)
            return list(range(int(start), int(end) + 1))
        return [int(text)]

    def _parse_volumes(self, volumes_spec: List[Any]) -> List[VolumeMount]:
        volumes = []
        for v in volumes_spec or []:
            if isinstance(v, str):
                parts = v.split(':')
                if len(parts) == 1:
                    volumes.append(VolumeMount(source='', target=parts[0]))
                elif len(parts) == 2:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1]))
                else:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1],
                                               read_only=(parts[2] == 'ro')))
            elif isinstance(v, dict):
                volumes.append(VolumeMount(
                    source=v.get('source', ''),
                    target=v['target'],
                    read_only=bool(v.get('read_only', False)),
                ))
        return volumes

    def _parse_restart(self, restart: Any) -> RestartPolicy:
        if restart is False:
            restart = 'no'
        condition, _, retries = str(restart).partition(':')
        return RestartPolicy(condition=condition, max_retries=int(retries) if retries else 0)

    def _parse_health_check(self, spec: Optional[Dict[str, Any]]) -> Optional[HealthCheck]:
        """
        Parses a ``healthcheck`` block, applying the Docker defaults.
        """
        if not spec:
            return None
        if not isinstance(spec, dict):
            raise ManifestError("'healthcheck' must be a mapping")
        if spec.get('disable'):
            return HealthCheck(test=['NONE'])

        test = spec.get('test', [])
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        else:
            test = [str(t) for t in test]
        if test and test[0] not in HEALTHCHECK_KINDS:
            raise ManifestError(
                f"Health check test must start with one of {', '.join(HEALTHCHECK_KINDS)}, got {test[0]!r}"
            )

        options = {}
        for key in ('interval', 'timeout', 'start_period'):
            if spec.get(key) is not None:
                options[key] = parse_duration(spec[key])
        if spec.get('retries') is not None:
            options['retries'] = int(spec['retries'])
        return HealthCheck(test=test, **options)

    def _parse_depends_on(self, spec: Any) -> List[ServiceDependency]:
        if not spec:
            return []
        if isinstance(spec, list):
            return [ServiceDependency(service=name) for name in spec]
        if isinstance(spec, dict):
            dependencies = []
            for name, options in spec.items():
                options = options or {}
                if not isinstance(options, dict):
                    raise ManifestError(f"Options for dependency {name} must be a mapping")
                dependencies.append(ServiceDependency(
                    service=name,
                    condition=options.get('condition', DependencyCondition.STARTED),
                    required=self._to_bool(options.get('required', True)),
                ))
            return dependencies
        raise ManifestError("'depends_on' must be a list or a mapping")

    def _parse_extra_hosts(self, spec: Any) -> Dict[str, str]:
        if not spec:
            return {}
        if isinstance(spec, dict):
            return {str(k): str(v) for k, v in spec.items()}
        hosts = {}
        for entry in spec:
            separator = '=' if '=' in entry else ':'
            host, address = entry.split(separator, 1)
            hosts[host] = address
        return hosts

    def _parse_networks(self, spec: Any) -> List[str]:
        if not spec:
            return []
        if isinstance(spec, dict):
            return list(spec.keys())
        return list(spec)

    def _parse_labels(self, spec: Any) -> Dict[str, str]:
        if not spec:
            return {}
        if isinstance(spec, dict):
            return {str(k): self._scalar_to_str(v) for k, v in spec.items()}
        labels = {}
        for entry in spec:
            key, _, value = str(entry).partition('=')
            labels[key] = value
        return labels

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    def _to_argv(self, val: Any) -> List[str]:
        """
        A command in shell form is split into arguments the way compose does.
        """
        if isinstance(val, str):
            return shlex.split(val)
        return self._to_list(val)

    def _to_bool(self, val: Any) -> bool:
        if isinstance(val, str):
            return val.lower() in ('true', 'yes', '1')
        return bool(val)

    def _scalar_to_str(self, val: Any) -> str:
        # YAML booleans become "true"/"false" like compose renders them
        if isinstance(val, bool):
            return 'true' if val else 'false'
        return str(val)
