import os
import subprocess
import sys

import pytest
from stackctl.errors import ManifestError
from stackctl.MANAGERS.health_monitor import HealthCheckRunner
from stackctl.MODELS.service_definition import HealthCheck
from stackctl.PARSERS.compose_parser import ComposeParser
from stackctl.RUNNERS.compose_proxy import ComposeProxy
from stackctl.RUNNERS.process_runner import ProcessRunner


def test_command_injection_attempt(tmp_path):
    """
    Shell operators in a service command are passed as literal arguments.
    """
    injected_file = tmp_path / "injected.txt"
    runner = ProcessRunner(name="test_injection")
    runner.start(command=["echo", "hello", ";", "touch", str(injected_file)], env=dict(os.environ))
    runner.wait(timeout=10)
    runner.stop()
    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_cmd_probe_is_not_shell_interpreted(tmp_path):
    injected_file = tmp_path / "probe-injected.txt"
    hc = HealthCheck(test=["CMD", sys.executable, "-c", "pass", "&&", "touch", str(injected_file)])
    result = HealthCheckRunner(hc).run_once()
    assert result.success
    assert not injected_file.exists()


def test_compose_proxy_does_not_use_shell(tmp_path):
    calls = []

    def run(command, **kwargs):
        calls.append((command, kwargs))
        return subprocess.CompletedProcess(command, 0)

    proxy = ComposeProxy(compose_bin="docker compose", compose_file="a.yml; rm -rf /", run=run)
    proxy.run_shortcut("docker-stop")
    command, kwargs = calls[0]
    assert command == ["docker", "compose", "-f", "a.yml; rm -rf /", "down"]
    assert not kwargs.get("shell")


def test_interpolated_values_are_not_reinterpolated():
    """A variable's value containing ``${...}`` is taken literally."""
    parser = ComposeParser(context={"TAG": "${SECRET}", "SECRET": "leaked"})
    config = parser.parse_from_string("services:\n  web:\n    image: app:${TAG}\n")
    assert config.services["web"].image_name == "app:${SECRET}"


def test_yaml_tags_are_rejected():
    content = "services:\n  web:\n    image: !!python/object/apply:os.system ['touch pwned']\n"
    with pytest.raises(ManifestError):
        ComposeParser(context={}).parse_from_string(content)


def test_missing_manifest_raises():
    with pytest.raises(FileNotFoundError):
        ComposeParser(context={}).parse("non_existent_file_12345.yml")
