"""
Utilities for resolving the full execution command for a service and for
handing the current process over to it.
"""
import logging
import os
import shutil
import sys
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EntrypointExecutor:
    """
    Merges ENTRYPOINT and CMD according to Docker rules and performs the
    final exec handoff.
    """
    def __init__(self, exec_func: Optional[Callable[[str, List[str], Dict[str, str]], None]] = None):
        """
        :param exec_func: Replacement for ``os.execvpe``, mainly for tests.
        """
        self.exec_func = exec_func or os.execvpe

    def get_full_command(self, entrypoint: List[str], cmd: List[str]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The ENTRYPOINT list.
        :param cmd: The CMD list.
        :return: The full command list.
        """
        # ENTRYPOINT is the executable and CMD its arguments; without an
        # ENTRYPOINT, CMD is the whole command.
        if entrypoint:
            return list(entrypoint) + list(cmd)
        return list(cmd)

    def handoff(self, command: List[str], env: Optional[Dict[str, str]] = None) -> None:
        """
        Replaces the current process with ``command``.

        Does not return when the exec succeeds.

        :raises ValueError: If the command is empty.
        :raises FileNotFoundError: If the executable is not on PATH.
        """
        if not command:
            raise ValueError("No command to hand off to")
        env = dict(os.environ) if env is None else env
        if shutil.which(command[0], path=env.get("PATH")) is None:
            raise FileNotFoundError(f"Executable not found: {command[0]}")

        logger.info("Handing off to: %s", " ".join(command))
        for handler in logging.getLogger().handlers:
            handler.flush()
        sys.stdout.flush()
        sys.stderr.flush()
        self.exec_func(command[0], command, env)
