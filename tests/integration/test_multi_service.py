import os
import sys

import pytest
import yaml
from stackctl.errors import DependencyFailedError
from stackctl.MANAGERS.health_monitor import HealthStatus
from stackctl.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackctl.PARSERS.compose_parser import ComposeParser

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")
LONG_RUNNING = [sys.executable, "-c", "import time; time.sleep(30)"]


def file_probe(path, retries=50):
    return {
        'test': ["CMD", sys.executable, "-c",
                 f"import os, sys; sys.exit(0 if os.path.exists({str(path)!r}) else 1)"],
        'interval': "100ms",
        'timeout': "5s",
        'retries': retries,
    }


def load(tmp_path, services):
    compose_file = tmp_path / "docker-compose.yml"
    with open(compose_file, 'w') as f:
        yaml.dump({'services': services}, f)
    return ComposeParser(context={}).parse(str(compose_file))


@pytest.fixture
def orchestrators():
    created = []
    yield created
    for orchestrator in created:
        orchestrator.down()


def test_dependent_waits_for_healthy_dependency(tmp_path, orchestrators):
    ready = tmp_path / "db.ready"
    config = load(tmp_path, {
        'db': {
            'image': 'dummy-db',
            'command': [sys.executable, DUMMY, "--ready-file", str(ready), "--delay", "0.5"],
            'environment': {'APP_ENV': 'prod', 'PYTHONUNBUFFERED': '1'},
            'healthcheck': file_probe(ready),
        },
        'web': {
            'image': 'dummy-web',
            'command': LONG_RUNNING,
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
    })

    orchestrator = ServiceOrchestrator(config, base_dir=str(tmp_path))
    orchestrators.append(orchestrator)
    orchestrator.up(monitor=False)

    assert ready.exists()
    assert orchestrator.ps() == {'db': 'running', 'web': 'running'}
    assert orchestrator.health()['db'] == HealthStatus.HEALTHY

    orchestrator.down()
    status = orchestrator.ps()
    assert 'exited' in status['db']
    assert 'exited' in status['web']
    assert (tmp_path / ".stackctl" / "logs" / "db.log").exists()
    assert (tmp_path / ".stackctl" / "logs" / "web.log").exists()


def test_unhealthy_dependency_blocks_dependents(tmp_path, orchestrators):
    config = load(tmp_path, {
        'db': {
            'image': 'dummy-db',
            'command': LONG_RUNNING,
            'healthcheck': file_probe(tmp_path / "never", retries=2),
        },
        'web': {
            'image': 'dummy-web',
            'command': LONG_RUNNING,
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
        'worker': {
            'image': 'dummy-worker',
            'command': LONG_RUNNING,
            'depends_on': ['web'],
        },
        'mail': {
            'image': 'dummy-mail',
            'command': LONG_RUNNING,
        },
    })

    orchestrator = ServiceOrchestrator(config, base_dir=str(tmp_path))
    orchestrators.append(orchestrator)
    with pytest.raises(DependencyFailedError) as exc:
        orchestrator.up(monitor=False)

    assert set(exc.value.blocked) == {'web', 'worker'}
    assert "db is unhealthy" in exc.value.blocked['web']
    status = orchestrator.ps()
    assert status['web'] == 'blocked'
    assert status['worker'] == 'blocked'
    assert status['db'] == 'running'
    assert status['mail'] == 'running'
    assert not orchestrator.managers['web'].started


def test_optional_dependency_does_not_block(tmp_path, orchestrators):
    config = load(tmp_path, {
        'cache': {
            'image': 'dummy-cache',
            'command': LONG_RUNNING,
            'healthcheck': file_probe(tmp_path / "never", retries=1),
        },
        'web': {
            'image': 'dummy-web',
            'command': LONG_RUNNING,
            'depends_on': {'cache': {'condition': 'service_healthy', 'required': False}},
        },
    })

    orchestrator = ServiceOrchestrator(config, base_dir=str(tmp_path))
    orchestrators.append(orchestrator)
    orchestrator.up(monitor=False)
    assert orchestrator.ps()['web'] == 'running'


def test_completed_successfully_condition(tmp_path, orchestrators):
    config = load(tmp_path, {
        'migrate': {
            'image': 'dummy',
            'command': [sys.executable, "-c", "pass"],
        },
        'seed': {
            'image': 'dummy',
            'command': [sys.executable, "-c", "import sys; sys.exit(3)"],
        },
        'web': {
            'image': 'dummy-web',
            'command': LONG_RUNNING,
            'depends_on': {'migrate': {'condition': 'service_completed_successfully'}},
        },
        'admin': {
            'image': 'dummy-admin',
            'command': LONG_RUNNING,
            'depends_on': {'seed': {'condition': 'service_completed_successfully'}},
        },
    })

    orchestrator = ServiceOrchestrator(config, base_dir=str(tmp_path), completion_timeout=30)
    orchestrators.append(orchestrator)
    with pytest.raises(DependencyFailedError) as exc:
        orchestrator.up(monitor=False)

    assert list(exc.value.blocked) == ['admin']
    assert "exit code 3" in exc.value.blocked['admin']
    status = orchestrator.ps()
    assert status['migrate'] == 'exited(0)'
    assert status['web'] == 'running'


def test_unspawnable_service_blocks_dependents(tmp_path, orchestrators):
    config = load(tmp_path, {
        'first': {'image': 'dummy', 'command': LONG_RUNNING},
        'second': {'image': 'dummy', 'command': ["definitely-not-an-installed-binary"]},
        'third': {'image': 'dummy', 'command': LONG_RUNNING, 'depends_on': ['second']},
    })

    orchestrator = ServiceOrchestrator(config, base_dir=str(tmp_path))
    orchestrators.append(orchestrator)
    with pytest.raises(DependencyFailedError) as exc:
        orchestrator.up(monitor=False)

    assert exc.value.blocked['second'].startswith("failed to start")
    assert "second was not started" in exc.value.blocked['third']
    assert orchestrator.ps()['first'] == 'running'

    orchestrator.down()
    assert not orchestrator.managers['first'].runner.is_running()
