"""
Lifecycle management for individual service processes.
"""
import logging
import os
from typing import Optional, Dict
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import ProcessRunner
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from .environment_manager import EnvironmentManager

logger = logging.getLogger(__name__)


class ProcessManager:
    """
    Manages the lifecycle of a single service.
    """
    def __init__(self,
                 service_def: ServiceDefinition,
                 base_dir: str = ".",
                 base_env: Optional[Dict[str, str]] = None):
        """
        Initializes the process manager for a service.

        :param service_def: Definition of the service.
        :param base_dir: Base directory for logs and relative paths.
        :param base_env: Environment the service's own variables are layered on.
        """
        self.service_def = service_def
        self.base_dir = base_dir

        self.env_manager = EnvironmentManager(base_dir, base_env=base_env)
        self.executor = EntrypointExecutor()
        log_path = os.path.join(base_dir, ".stackctl", "logs", f"{service_def.name}.log")
        self.runner = ProcessRunner(service_def.name, log_file=log_path)
        self.started = False

    def environment(self, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        The environment the service runs (and is probed) with.
        """
        env = self.env_manager.get_merged_environment(self.service_def)
        if extra_env:
            env.update(extra_env)
        return env

    def working_dir(self) -> Optional[str]:
        """
        The service's working directory; relative paths are taken from ``base_dir``.
        """
        working_dir = self.service_def.working_dir
        if working_dir and not os.path.isabs(working_dir):
            working_dir = os.path.join(self.base_dir, working_dir)
        return working_dir

    def probe_cwd(self) -> Optional[str]:
        """Where health probes run: the working directory once it exists."""
        working_dir = self.working_dir()
        if working_dir and os.path.isdir(working_dir):
            return working_dir
        return None

    def start(self, extra_env: Optional[Dict[str, str]] = None):
        """
        Prepares the environment and starts the service process.

        :param extra_env: Additional environment variables.
        :return: False when the service has no command to run.
        """
        env = self.environment(extra_env)
        command = self.executor.get_full_command(
            self.service_def.entrypoint,
            self.service_def.cmd
        )

        if not command:
            logger.warning("[%s] No command specified, nothing to run.", self.service_def.name)
            return False

        self.runner.start(
            command,
            env=env,
            working_dir=self.working_dir(),
            user=self.service_def.user,
        )
        self.started = True
        return True

    def stop(self):
        """
        Stops the service process.
        """
        self.runner.stop()

    def status(self) -> str:
        """
        Gets the current status of the service.

        :return: Status string ('running', 'stopped', 'exited(0)', ...).
        """
        if self.runner.is_running():
            return "running"
        exit_code = self.runner.get_exit_code()
        if exit_code is None:
            return "stopped"
        return f"exited({exit_code})"
