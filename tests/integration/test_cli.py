import os
import shlex
import sys

import psutil
import pytest
import yaml
from click.testing import CliRunner
from stackctl.CLI import main as cli_main
from stackctl.CLI.main import cli
from stackctl.errors import StartupStepError

REPO_MANIFEST = os.path.join(os.path.dirname(__file__), "..", "..", "docker-compose.yml")


def write_manifest(tmp_path, services):
    path = tmp_path / "docker-compose.yml"
    path.write_text(yaml.dump({'services': services}))
    return str(path)


def probe_service(exit_code, retries=3):
    return {
        'image': 'dummy',
        'healthcheck': {
            'test': ["CMD", sys.executable, "-c", f"import sys; print('probe ran'); sys.exit({exit_code})"],
            'interval': "10ms",
            'retries': retries,
        },
    }


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('check', 'docs', 'probe', 'up', 'entrypoint', 'supervise', 'ssh', 'docker-refresh'):
        assert command in result.output


def test_cli_missing_file():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'check'])
    assert result.exit_code == 1
    assert 'Error: non_existent.yml not found.' in result.output


def test_check_repo_manifest():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', REPO_MANIFEST, 'check'])
    assert result.exit_code == 0
    assert 'is valid (5 services)' in result.output
    assert '2. app' in result.output


def test_check_reports_cycle(tmp_path):
    manifest = write_manifest(tmp_path, {
        'a': {'image': 'x', 'depends_on': ['b']},
        'b': {'image': 'x', 'depends_on': ['a']},
    })
    result = CliRunner().invoke(cli, ['-f', manifest, 'check'])
    assert result.exit_code == 1
    assert 'Circular dependency detected' in result.output


def test_check_reports_bad_yaml(tmp_path):
    path = tmp_path / "docker-compose.yml"
    path.write_text("services: [unclosed\n")
    result = CliRunner().invoke(cli, ['-f', str(path), 'check'])
    assert result.exit_code == 1
    assert 'Invalid YAML' in result.output


def test_docs_to_file(tmp_path):
    out = tmp_path / "STACK.md"
    result = CliRunner().invoke(cli, ['-f', REPO_MANIFEST, 'docs', '-o', str(out), '--title', 'Dev stack'])
    assert result.exit_code == 0
    assert out.read_text().startswith('# Dev stack')


def test_docs_to_stdout():
    result = CliRunner().invoke(cli, ['-f', REPO_MANIFEST, 'docs'])
    assert result.exit_code == 0
    assert '## Startup order' in result.output


class TestProbe:
    def test_healthy(self, tmp_path):
        manifest = write_manifest(tmp_path, {'db': probe_service(0)})
        result = CliRunner().invoke(cli, ['-f', manifest, 'probe', 'db'])
        assert result.exit_code == 0
        assert 'db: healthy' in result.output
        assert 'probe ran' in result.output

    def test_failing(self, tmp_path):
        manifest = write_manifest(tmp_path, {'db': probe_service(1)})
        result = CliRunner().invoke(cli, ['-f', manifest, 'probe', 'db'])
        assert result.exit_code == 1
        assert 'db: unhealthy' in result.output

    def test_wait_exhausts_retries(self, tmp_path):
        manifest = write_manifest(tmp_path, {'db': probe_service(1, retries=2)})
        result = CliRunner().invoke(cli, ['-f', manifest, 'probe', 'db', '--wait'])
        assert result.exit_code == 1
        assert 'db: unhealthy' in result.output

    def test_no_health_check(self, tmp_path):
        manifest = write_manifest(tmp_path, {'web': {'image': 'nginx'}})
        result = CliRunner().invoke(cli, ['-f', manifest, 'probe', 'web'])
        assert result.exit_code == 1
        assert 'has no health check' in result.output

    def test_unknown_service(self, tmp_path):
        manifest = write_manifest(tmp_path, {'web': {'image': 'nginx'}})
        result = CliRunner().invoke(cli, ['-f', manifest, 'probe', 'db'])
        assert result.exit_code == 1
        assert 'No such service: db' in result.output


class FakeSequencer:
    instances = []
    error = None

    def __init__(self, config, environ=None):
        self.config = config
        self.environ = environ
        FakeSequencer.instances.append(self)

    def run(self):
        if FakeSequencer.error:
            raise FakeSequencer.error


@pytest.fixture
def fake_sequencer(monkeypatch):
    FakeSequencer.instances = []
    FakeSequencer.error = None
    monkeypatch.setattr(cli_main, "StartupSequencer", FakeSequencer)
    return FakeSequencer


class TestEntrypoint:
    def test_env_file_supplies_flag(self, tmp_path, fake_sequencer):
        env_file = tmp_path / ".env"
        env_file.write_text("XDEBUG_ENABLED=true\nPROJECT_ROOT=/srv/app\n")
        result = CliRunner().invoke(cli, ['--env-file', str(env_file), 'entrypoint'],
                                    env={'XDEBUG_ENABLED': None, 'PROJECT_ROOT': None})
        assert result.exit_code == 0
        config = fake_sequencer.instances[0].config
        assert config.debug_enabled
        assert config.project_root == "/srv/app"

    def test_shell_overrides_env_file(self, tmp_path, fake_sequencer):
        env_file = tmp_path / ".env"
        env_file.write_text("XDEBUG_ENABLED=true\n")
        result = CliRunner().invoke(cli, ['--env-file', str(env_file), 'entrypoint'],
                                    env={'XDEBUG_ENABLED': 'false'})
        assert result.exit_code == 0
        assert not fake_sequencer.instances[0].config.debug_enabled

    def test_step_failure_exit_code(self, fake_sequencer):
        fake_sequencer.error = StartupStepError("link-storage", exit_code=2)
        result = CliRunner().invoke(cli, ['entrypoint'])
        assert result.exit_code == 2
        assert "link-storage" in result.output

    def test_strict_flag_rejects_unknown_value(self, fake_sequencer):
        result = CliRunner().invoke(cli, ['entrypoint'],
                                    env={'XDEBUG_ENABLED': 'yes', 'STACKCTL_STRICT_DEBUG_FLAG': 'true'})
        assert result.exit_code == 1
        assert "XDEBUG_ENABLED" in result.output
        assert fake_sequencer.instances == []

    def test_missing_env_file(self, tmp_path):
        result = CliRunner().invoke(cli, ['--env-file', str(tmp_path / "missing.env"), 'entrypoint'])
        assert result.exit_code == 1
        assert 'not found' in result.output


def test_supervise_requires_programs(tmp_path):
    config = tmp_path / "supervisord.conf"
    config.write_text("[supervisord]\nnodaemon=true\n")
    result = CliRunner().invoke(cli, ['supervise', '-c', str(config)])
    assert result.exit_code == 1
    assert 'No programs defined' in result.output


class TestShortcuts:
    @pytest.fixture
    def fake_compose(self, tmp_path):
        record = tmp_path / "args.txt"
        script = tmp_path / "fake_compose.py"
        script.write_text(
            "import sys\n"
            f"open({str(record)!r}, 'w').write(' '.join(sys.argv[1:]))\n"
            "sys.exit(3)\n"
        )
        return record, f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"

    def test_proxies_exit_code_and_args(self, fake_compose):
        record, compose_bin = fake_compose
        result = CliRunner().invoke(cli, ['docker-start'], env={'STACKCTL_COMPOSE_BIN': compose_bin})
        assert result.exit_code == 3
        assert record.read_text() == "up -d"

    def test_passes_explicit_compose_file(self, fake_compose):
        record, compose_bin = fake_compose
        result = CliRunner().invoke(cli, ['-f', 'stack.yml', 'ssh'], env={'STACKCTL_COMPOSE_BIN': compose_bin})
        assert result.exit_code == 3
        assert record.read_text() == "-f stack.yml exec -u www-data app bash"

    def test_missing_compose_binary(self):
        result = CliRunner().invoke(cli, ['docker-stop'],
                                    env={'STACKCTL_COMPOSE_BIN': 'definitely-missing-compose'})
        assert result.exit_code == 1
        assert 'Compose executable not found' in result.output


def test_up_stops_started_services_when_one_cannot_spawn(tmp_path):
    pid_file = tmp_path / "first.pid"
    manifest = write_manifest(tmp_path, {
        'first': {'image': 'dummy', 'command': [
            sys.executable, "-c",
            f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)",
        ]},
        'second': {'image': 'dummy', 'command': ["definitely-not-an-installed-binary"],
                   'depends_on': ['first']},
    })
    result = CliRunner().invoke(cli, ['-f', manifest, 'up'])
    assert result.exit_code == 1
    assert 'failed to start' in result.output
    assert 'blocked' in result.output
    if pid_file.exists() and pid_file.read_text():
        assert not psutil.pid_exists(int(pid_file.read_text()))
