"""
Shortcut commands that proxy to the ``docker compose`` CLI.
"""
import logging
import os
import shlex
import subprocess
from typing import Callable, Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_BIN = "docker compose"


class Shortcut(NamedTuple):
    """A named compose invocation."""

    name: str
    args: List[str]
    help: str


SHORTCUTS: Dict[str, Shortcut] = {
    s.name: s
    for s in (
        Shortcut("ssh", ["exec", "-u", "www-data", "app", "bash"], "Open a shell in the app container as www-data."),
        Shortcut("rssh", ["exec", "app", "bash"], "Open a root shell in the app container."),
        Shortcut("fe-ssh", ["exec", "fe", "sh"], "Open a shell in the frontend container."),
        Shortcut("docker-build", ["build"], "Build the stack's images."),
        Shortcut("docker-start", ["up", "-d"], "Start the stack in the background."),
        Shortcut("docker-stop", ["down"], "Stop and remove the stack's containers."),
        Shortcut("docker-refresh", ["up", "--build", "--force-recreate", "--no-start"],
                 "Rebuild and recreate containers without starting them."),
    )
}


class ComposeProxy:
    """
    Builds and runs ``docker compose`` command lines. No shell is involved.
    """
    def __init__(self,
                 compose_bin: Optional[str] = None,
                 compose_file: Optional[str] = None,
                 project_dir: Optional[str] = None,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        """
        :param compose_bin: The compose executable, e.g. ``docker compose`` or
            ``docker-compose``; defaults to ``$STACKCTL_COMPOSE_BIN``.
        :param compose_file: Passed as ``-f`` when given.
        :param project_dir: Directory the command runs in.
        """
        self.compose_bin = shlex.split(
            compose_bin or os.environ.get("STACKCTL_COMPOSE_BIN") or DEFAULT_COMPOSE_BIN
        )
        self.compose_file = compose_file
        self.project_dir = project_dir
        self.run_command = run

    def command(self, args: List[str]) -> List[str]:
        command = list(self.compose_bin)
        if self.compose_file:
            command += ["-f", self.compose_file]
        return command + list(args)

    def shortcut_command(self, name: str) -> List[str]:
        """
        :raises KeyError: For an unknown shortcut.
        """
        return self.command(SHORTCUTS[name].args)

    def run(self, args: List[str]) -> int:
        """
        Runs compose with ``args``, inheriting the terminal.

        :return: The command's exit code.
        :raises FileNotFoundError: If the compose executable is missing.
        """
        command = self.command(args)
        logger.debug("Running: %s", " ".join(command))
        return self.run_command(command, cwd=self.project_dir).returncode

    def run_shortcut(self, name: str) -> int:
        return self.run(SHORTCUTS[name].args)
