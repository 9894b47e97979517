"""
Command Line Interface for stackctl.
"""
import logging
import os
import time

import click
from click.core import ParameterSource

from .. import __version__
from ..errors import (
    ConfigurationError,
    DependencyFailedError,
    ManifestError,
    StartupStepError,
)
from ..CONVERTERS.to_markdown import MarkdownConverter
from ..MANAGERS.health_monitor import HealthCheckRunner, HealthStatus, HealthTracker, wait_until_settled
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.supervisor import Supervisor
from ..MODELS.startup_config import StartupConfig
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.env_parser import EnvParser
from ..PARSERS.supervisor_parser import SupervisorConfigParser
from ..RUNNERS.compose_proxy import SHORTCUTS, ComposeProxy
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.startup_sequencer import StartupSequencer

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ClickEchoHandler(logging.Handler):
    """Writes log records to stderr through click."""

    def emit(self, record):
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def configure_logging(verbose: bool = False):
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, ClickEchoHandler):
            root.removeHandler(handler)
    handler = ClickEchoHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--env-file', type=click.Path(dir_okay=False), help='Extra variables for interpolation and startup')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.version_option(__version__, prog_name='stackctl')
@click.pass_context
def cli(ctx, file, env_file, verbose):
    """
    stackctl - operate a containerised web application stack.

    Validates the compose manifest, waits on health probes, prepares the
    application container on boot and wraps the usual docker compose calls.
    """
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['file_given'] = ctx.get_parameter_source('file') != ParameterSource.DEFAULT

    environ = dict(os.environ)
    if env_file:
        if not os.path.exists(env_file):
            raise click.ClickException(f"{env_file} not found.")
        # Variables already set in the shell win over the file
        for key, value in EnvParser.parse(env_file).items():
            environ.setdefault(key, value)
    ctx.obj['environ'] = environ


def _load_config(ctx):
    file = ctx.obj['file']
    if 'config' not in ctx.obj:
        if not os.path.exists(file):
            raise click.ClickException(f"{file} not found.")
        try:
            ctx.obj['config'] = ComposeParser(ctx.obj['environ']).parse(file)
        except ManifestError as e:
            raise click.ClickException(str(e))
    return ctx.obj['config']


@cli.command()
@click.pass_context
def check(ctx):
    """Validate the compose file and show the startup order."""
    config = _load_config(ctx)
    resolver = DependencyResolver()
    try:
        batches = resolver.startup_batches(config)
    except ManifestError as e:
        raise click.ClickException(str(e))

    click.echo(f"{ctx.obj['file']} is valid ({len(config.services)} services).")
    click.echo("Startup order:")
    for index, batch in enumerate(batches, start=1):
        click.echo(f"  {index}. {', '.join(batch)}")


@cli.command()
@click.option('--out', '-o', type=click.Path(dir_okay=False), help='Write to a file instead of stdout')
@click.option('--title', help='Document title')
@click.pass_context
def docs(ctx, out, title):
    """Render the stack's topology as markdown."""
    config = _load_config(ctx)
    try:
        converter = MarkdownConverter(config, title=title)
        if out:
            converter.convert(out)
            click.echo(f"Topology written to {out}")
        else:
            click.echo(converter.render(), nl=False)
    except ManifestError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument('service')
@click.option('--wait', 'wait_', is_flag=True, help='Probe until healthy or unhealthy')
@click.option('--timeout', type=float, help='Give up waiting after this many seconds')
@click.pass_context
def probe(ctx, service, wait_, timeout):
    """Run a service's health probe."""
    config = _load_config(ctx)
    svc = config.services.get(service)
    if svc is None:
        raise click.ClickException(f"No such service: {service}")
    if not svc.has_health_check:
        raise click.ClickException(f"Service {service} has no health check")

    env = EnvironmentManager(base_env=ctx.obj['environ']).get_merged_environment(svc)
    runner = HealthCheckRunner(svc.health_check, env=env)
    if wait_:
        tracker = HealthTracker(svc.health_check)
        status = wait_until_settled(runner, tracker, timeout=timeout)
        output = tracker.health.last_output
    else:
        result = runner.run_once()
        status = HealthStatus.HEALTHY if result.success else HealthStatus.UNHEALTHY
        output = result.output

    click.echo(f"{service}: {status.value}")
    if output:
        click.echo(output.rstrip())
    ctx.exit(0 if status == HealthStatus.HEALTHY else 1)


@cli.command()
@click.option('--health-timeout', type=float, help='Upper bound when waiting for a dependency to become healthy')
@click.pass_context
def up(ctx, health_timeout):
    """Run the services locally, honouring their dependencies."""
    config = _load_config(ctx)
    base_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    try:
        orchestrator = ServiceOrchestrator(
            config, base_dir=base_dir, base_env=ctx.obj['environ'], health_timeout=health_timeout
        )
    except ManifestError as e:
        raise click.ClickException(str(e))

    try:
        orchestrator.up()
    except DependencyFailedError as e:
        _print_status(orchestrator)
        orchestrator.down()
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        orchestrator.down()
        ctx.exit(130)
    except Exception:
        orchestrator.down()
        raise

    click.echo("Services started.")
    _print_status(orchestrator)
    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    finally:
        orchestrator.down()


def _print_status(orchestrator):
    health = orchestrator.health()
    click.echo(f"{'SERVICE':15} {'STATUS':12} {'HEALTH':10}")
    click.echo("-" * 38)
    for name, state in orchestrator.ps().items():
        click.echo(f"{name:15} {state:12} {health[name].value:10}")


@cli.command()
@click.pass_context
def entrypoint(ctx):
    """Prepare the application container and hand off to the supervisor."""
    try:
        config = StartupConfig.from_environ(ctx.obj['environ'])
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    try:
        StartupSequencer(config, environ=ctx.obj['environ']).run()
    except StartupStepError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(e.exit_code)


@cli.command()
@click.option('--config', '-c', 'config_path', required=True,
              type=click.Path(exists=True, dir_okay=False), help='supervisord-style configuration file')
@click.option('--log-dir', type=click.Path(file_okay=False), help='Write program output to <log-dir>/<program>.log')
@click.pass_context
def supervise(ctx, config_path, log_dir):
    """Run and supervise the programs of a configuration file."""
    try:
        config = SupervisorConfigParser(ctx.obj['environ']).parse(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    if not config.programs:
        raise click.ClickException(f"No programs defined in {config_path}")

    Supervisor(config, log_dir=log_dir, environ=ctx.obj['environ']).run_forever()


def _make_shortcut(name, shortcut):
    @click.pass_context
    def command(ctx):
        compose_file = ctx.obj['file'] if ctx.obj['file_given'] else None
        proxy = ComposeProxy(compose_bin=ctx.obj['environ'].get('STACKCTL_COMPOSE_BIN'),
                             compose_file=compose_file)
        try:
            code = proxy.run_shortcut(name)
        except FileNotFoundError:
            raise click.ClickException(f"Compose executable not found: {proxy.compose_bin[0]}")
        ctx.exit(code)

    return click.Command(name, callback=command, help=shortcut.help)


for _name, _shortcut in SHORTCUTS.items():
    cli.add_command(_make_shortcut(_name, _shortcut))


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
