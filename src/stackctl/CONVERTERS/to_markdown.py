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
Converter that renders a markdown operating guide for a compose stack.
"""
import os
from typing import List, Optional

from jinja2 import Environment

from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import HealthCheck, PortMapping, ServiceDefinition
from ..RUNNERS.compose_proxy import SHORTCUTS
from ..RUNNERS.dependency_resolver import DependencyResolver

MARKDOWN_TEMPLATE = """\
# {{ title }}

## Services

| Service | Image | Ports | Health probe | Depends on |
|---------|-------|-------|--------------|------------|
{% for svc in services %}
| `{{ svc.name }}` | {{ image(svc) }} | {{ ports(svc.ports) }} | {{ probe(svc.health_check) }} | {{ depends(svc) }} |
{% endfor %}

## Startup order

{% for batch in batches %}
{{ loop.index }}. {% for name in batch %}`{{ name }}`{% if not loop.last %}, {% endif %}{% endfor %}

{% endfor %}

Services that declare `service_healthy` dependencies are not started until
those dependencies report healthy. A dependency that exhausts its probe
retries keeps its dependents from starting.
{% for svc in services if svc.environment %}
{% if loop.first %}

## Environment
{% endif %}

### `{{ svc.name }}`

| Variable | Value | Default |
|----------|-------|---------|
{% for name, binding in svc.environment.items() %}
| `{{ name }}` | {{ code(binding.template) }} | {{ code(binding.default) }} |
{% endfor %}
{% endfor %}

## Shortcut commands

| Command | Runs | Purpose |
|---------|------|---------|
{% for shortcut in shortcuts %}
| `stackctl {{ shortcut.name }}` | `{{ compose_bin }} {{ shortcut.args | join(' ') }}` | {{ shortcut.help }} |
{% endfor %}
"""


def _code(value: Optional[str]) -> str:
    if value is None or value == "":
        return "-"
    return "`" + value.replace("|", "\\|") + "`"


def _image(svc: ServiceDefinition) -> str:
    if svc.image_name:
        return _code(svc.image_name)
    if svc.build_context:
        return f"built from {_code(svc.build_context)}"
    return "-"


def _ports(ports: List[PortMapping]) -> str:
    if not ports:
        return "-"
    rendered = []
    for port in ports:
        text = f"{port.published}:{port.target}" if port.published else str(port.target)
        if port.protocol != "tcp":
            text += f"/{port.protocol}"
        rendered.append(text)
    return ", ".join(rendered)


def _probe(hc: Optional[HealthCheck]) -> str:
    if hc is None:
        return "-"
    if hc.disabled:
        return "disabled"
    command = " ".join(hc.test[1:]) if hc.test[0] in ("CMD", "CMD-SHELL") else " ".join(hc.test)
    return f"{_code(command)} every {hc.interval:g}s, timeout {hc.timeout:g}s, {hc.retries} retries"


def _depends(svc: ServiceDefinition) -> str:
    if not svc.depends_on:
        return "-"
    return ", ".join(f"`{dep.service}` ({dep.condition.value})" for dep in svc.depends_on)


class MarkdownConverter:
    """
    Renders the topology and operating guide of a stack as markdown.
    """

    def __init__(self, config: OrchestrationConfig, title: Optional[str] = None,
                 compose_bin: str = "docker compose"):
        """
        :param config: The parsed orchestration configuration.
        :param title: Document heading; defaults to the project name.
        :param compose_bin: Compose command shown for the shortcuts.
        """
        self.config = config
        self.title = title or (f"{config.name} stack" if config.name else "Application stack")
        self.compose_bin = compose_bin
        env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
        env.globals.update(code=_code, image=_image, ports=_ports, probe=_probe, depends=_depends)
        self.template = env.from_string(MARKDOWN_TEMPLATE)

    def render(self) -> str:
        return self.template.render(
            title=self.title,
            services=list(self.config.services.values()),
            batches=DependencyResolver().startup_batches(self.config),
            shortcuts=list(SHORTCUTS.values()),
            compose_bin=self.compose_bin,
        )

    def convert(self, output_path: str) -> str:
        """
        Writes the document to ``output_path``.

        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        return output_path
